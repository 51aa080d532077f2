"""State -> step handler dispatch.

``resolve_step`` is one exhaustive ``match`` over ``ProvisionState``.
Adding a state without a case makes ``assert_never`` fail type checking,
and ``validate_dispatch_table`` (run at app startup) fails fast at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, assert_never

from ..steps import finalize, github, supabase, vercel, voice_agents
from ..steps.base import StepHandler
from .errors import DispatchError
from .states import EXECUTABLE_STATES, ProvisionState, is_transition_allowed

S = ProvisionState


@dataclass(frozen=True, slots=True)
class StepBinding:
    """The single call a cycle makes in a given state.

    ``enter`` is set when the driver must first move the run into a
    different state before calling the handler (the INIT re-entry point).
    ``on_advance`` is where the run goes when the handler says advance.
    """

    name: str
    resource: str
    handler: StepHandler
    on_advance: ProvisionState
    enter: ProvisionState | None = None


def resolve_step(
    state: ProvisionState,
    metadata: Mapping[str, Any] | None = None,
) -> StepBinding:
    metadata = metadata or {}
    match state:
        case S.INIT:
            return StepBinding(
                'supabase.execute', 'supabase', supabase.execute,
                on_advance=S.SUPABASE_READY, enter=S.SUPABASE_CREATING,
            )
        case S.SUPABASE_CREATING:
            return StepBinding(
                'supabase.execute', 'supabase', supabase.execute, S.SUPABASE_READY,
            )
        case S.SUPABASE_READY:
            return StepBinding(
                'supabase.verify', 'supabase', supabase.verify, S.GITHUB_CREATING,
            )
        case S.GITHUB_CREATING:
            return StepBinding('github.execute', 'github', github.execute, S.GITHUB_READY)
        case S.GITHUB_READY:
            return StepBinding('github.verify', 'github', github.verify, S.VERCEL_CREATING)
        case S.VERCEL_CREATING:
            return StepBinding('vercel.execute', 'vercel', vercel.execute, S.VERCEL_READY)
        case S.VERCEL_READY:
            return StepBinding('vercel.verify', 'vercel', vercel.verify, S.SANDRA_CREATING)
        case S.SANDRA_CREATING:
            return StepBinding(
                'sandra.execute', 'sandra', voice_agents.sandra_execute, S.SANDRA_READY,
            )
        case S.SANDRA_READY:
            return StepBinding(
                'sandra.verify', 'sandra', voice_agents.sandra_verify, S.KIRA_CREATING,
            )
        case S.KIRA_CREATING:
            return StepBinding(
                'kira.execute', 'kira', voice_agents.kira_execute, S.KIRA_READY,
            )
        case S.KIRA_READY:
            return StepBinding(
                'kira.verify', 'kira', voice_agents.kira_verify, S.WEBHOOK_REGISTERING,
            )
        case S.WEBHOOK_REGISTERING:
            if finalize.is_requested(metadata):
                return StepBinding('finalize.verify', 'webhook', finalize.verify, S.COMPLETE)
            return StepBinding(
                'finalize.execute', 'webhook', finalize.execute, S.WEBHOOK_REGISTERING,
            )
        case S.COMPLETE | S.FAILED:
            raise DispatchError(state.value, 'terminal states are not executable')
        case _:
            assert_never(state)


def validate_dispatch_table() -> None:
    """Check every executable state resolves to a legal binding.

    Raises DispatchError on the first gap or illegal target.
    """
    probes: list[tuple[ProvisionState, Mapping[str, Any]]] = [
        (state, {}) for state in EXECUTABLE_STATES
    ]
    probes.append((S.WEBHOOK_REGISTERING, {finalize.MARKER_KEY: 'probe'}))
    for state, metadata in probes:
        binding = resolve_step(state, metadata)
        source = state
        if binding.enter is not None:
            if not is_transition_allowed(state, binding.enter):
                raise DispatchError(state.value, f'cannot enter {binding.enter.value}')
            source = binding.enter
        if not is_transition_allowed(source, binding.on_advance):
            raise DispatchError(
                state.value,
                f'{binding.name} advances to illegal {binding.on_advance.value}',
            )
