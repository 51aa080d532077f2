"""Provisioning state machine, run model, and orchestration."""

from .models import (
    ProvisioningRun,
    RunError,
    RunErrorKind,
    RunPatch,
    StepResult,
    StepStatus,
    apply_patch,
)
from .states import (
    ALLOWED_TRANSITIONS,
    PIPELINE_SEQUENCE,
    TERMINAL_STATES,
    InvalidStateTransition,
    ProvisionState,
    describe_state,
    is_terminal,
    is_transition_allowed,
    validate_transition,
)

__all__ = [
    'ALLOWED_TRANSITIONS',
    'PIPELINE_SEQUENCE',
    'TERMINAL_STATES',
    'InvalidStateTransition',
    'ProvisionState',
    'ProvisioningRun',
    'RunError',
    'RunErrorKind',
    'RunPatch',
    'StepResult',
    'StepStatus',
    'apply_patch',
    'describe_state',
    'is_terminal',
    'is_transition_allowed',
    'validate_transition',
]
