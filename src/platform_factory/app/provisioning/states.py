"""Provisioning state machine and transition table.

Implements the tenant platform pipeline:
  INIT -> SUPABASE_CREATING -> SUPABASE_READY -> GITHUB_CREATING
  -> GITHUB_READY -> VERCEL_CREATING -> VERCEL_READY -> SANDRA_CREATING
  -> SANDRA_READY -> KIRA_CREATING -> KIRA_READY -> WEBHOOK_REGISTERING
  -> COMPLETE

And the error transitions:
  any state -> FAILED
  FAILED --(explicit operator retry)--> INIT

``ALLOWED_TRANSITIONS`` is the only authority on legality. Every state
change is passed through ``validate_transition`` before it is persisted.
"""

from __future__ import annotations

import enum
from types import MappingProxyType
from typing import Mapping


class ProvisionState(str, enum.Enum):
    """Closed set of provisioning run states."""

    INIT = 'INIT'
    SUPABASE_CREATING = 'SUPABASE_CREATING'
    SUPABASE_READY = 'SUPABASE_READY'
    GITHUB_CREATING = 'GITHUB_CREATING'
    GITHUB_READY = 'GITHUB_READY'
    VERCEL_CREATING = 'VERCEL_CREATING'
    VERCEL_READY = 'VERCEL_READY'
    SANDRA_CREATING = 'SANDRA_CREATING'
    SANDRA_READY = 'SANDRA_READY'
    KIRA_CREATING = 'KIRA_CREATING'
    KIRA_READY = 'KIRA_READY'
    WEBHOOK_REGISTERING = 'WEBHOOK_REGISTERING'
    COMPLETE = 'COMPLETE'
    FAILED = 'FAILED'


S = ProvisionState

# Strict pipeline order, used for ordering checks and progress reporting.
PIPELINE_SEQUENCE: tuple[ProvisionState, ...] = (
    S.INIT,
    S.SUPABASE_CREATING,
    S.SUPABASE_READY,
    S.GITHUB_CREATING,
    S.GITHUB_READY,
    S.VERCEL_CREATING,
    S.VERCEL_READY,
    S.SANDRA_CREATING,
    S.SANDRA_READY,
    S.KIRA_CREATING,
    S.KIRA_READY,
    S.WEBHOOK_REGISTERING,
    S.COMPLETE,
)

TERMINAL_STATES = frozenset({S.COMPLETE, S.FAILED})

EXECUTABLE_STATES = frozenset(
    state for state in ProvisionState if state not in TERMINAL_STATES
)


def _pipeline_transitions() -> dict[ProvisionState, frozenset[ProvisionState]]:
    table: dict[ProvisionState, frozenset[ProvisionState]] = {}
    for current, following in zip(PIPELINE_SEQUENCE, PIPELINE_SEQUENCE[1:]):
        allowed = {following, S.FAILED}
        # Creating states and the finalize state may re-enter themselves.
        if current.value.endswith('_CREATING') or current is S.WEBHOOK_REGISTERING:
            allowed.add(current)
        table[current] = frozenset(allowed)
    table[S.COMPLETE] = frozenset({S.FAILED})
    table[S.FAILED] = frozenset({S.INIT})
    return table


ALLOWED_TRANSITIONS: Mapping[ProvisionState, frozenset[ProvisionState]] = (
    MappingProxyType(_pipeline_transitions())
)

STATE_DESCRIPTIONS: Mapping[ProvisionState, tuple[str, str]] = MappingProxyType(
    {
        S.INIT: ('Initializing', 'Preparing to provision your platform...'),
        S.SUPABASE_CREATING: (
            'Creating Database',
            'Setting up the Supabase database and authentication...',
        ),
        S.SUPABASE_READY: ('Database Created', 'Waiting for the database to come online...'),
        S.GITHUB_CREATING: (
            'Creating Repository',
            'Setting up the GitHub repository with platform code...',
        ),
        S.GITHUB_READY: ('Repository Created', 'Waiting for the repository contents...'),
        S.VERCEL_CREATING: ('Creating Deployment', 'Setting up the Vercel project...'),
        S.VERCEL_READY: ('Deploying', 'Building and deploying your platform...'),
        S.SANDRA_CREATING: ('Creating Sandra', 'Setting up your AI setup agent...'),
        S.SANDRA_READY: ('Sandra Created', 'Confirming the setup agent...'),
        S.KIRA_CREATING: ('Creating Kira', 'Setting up your AI insights agent...'),
        S.KIRA_READY: ('Kira Created', 'Confirming the insights agent...'),
        S.WEBHOOK_REGISTERING: (
            'Registering Webhooks',
            'Connecting agents to your platform and redeploying...',
        ),
        S.COMPLETE: ('Complete', 'Your platform is ready!'),
        S.FAILED: ('Failed', 'Provisioning encountered an error.'),
    }
)


class InvalidStateTransition(ValueError):
    """Raised for provisioning state transitions missing from the table."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def parse_state(value: str | ProvisionState) -> ProvisionState:
    """Coerce a persisted state string into ``ProvisionState``.

    Raises ValueError for unknown values (a malformed persisted state).
    """
    if isinstance(value, ProvisionState):
        return value
    try:
        return ProvisionState(value)
    except ValueError:
        raise ValueError(f'unknown provisioning state: {value!r}') from None


def is_transition_allowed(
    from_state: ProvisionState, to_state: ProvisionState,
) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def validate_transition(
    from_state: ProvisionState, to_state: ProvisionState,
) -> ProvisionState:
    """Return ``to_state`` if the move is legal, else raise."""
    if not is_transition_allowed(from_state, to_state):
        raise InvalidStateTransition(from_state.value, to_state.value)
    return to_state


def is_terminal(state: ProvisionState) -> bool:
    return state in TERMINAL_STATES


def pipeline_index(state: ProvisionState) -> int:
    """Position in the pipeline; FAILED has no position and returns -1."""
    try:
        return PIPELINE_SEQUENCE.index(state)
    except ValueError:
        return -1


def describe_state(state: ProvisionState) -> dict[str, str]:
    title, description = STATE_DESCRIPTIONS[state]
    return {'title': title, 'description': description}
