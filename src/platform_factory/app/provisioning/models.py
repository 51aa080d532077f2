"""Run record, step result, and structured error types.

``ProvisioningRun`` is the persisted shape of one tenant's attempt.
``StepResult`` is what a single execute/verify call hands back to the
driver; steps never persist anything themselves.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from .errors import MalformedRun
from .states import ProvisionState, is_terminal, parse_state

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError('datetime must be timezone-aware')


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from a store row or metadata value."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ── Errors recorded on a run ─────────────────────────────────────────


class RunErrorKind(str, enum.Enum):
    """Separates provider problems from orchestrator bugs and operator actions."""

    PROVIDER = 'provider'
    ORCHESTRATOR = 'orchestrator'
    OPERATOR = 'operator'


@dataclass(frozen=True, slots=True)
class RunError:
    kind: RunErrorKind
    code: str
    message: str
    state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'kind': self.kind.value,
            'code': self.code,
            'message': self.message,
            'state': self.state,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> RunError | None:
        if not payload:
            return None
        return cls(
            kind=RunErrorKind(payload.get('kind', RunErrorKind.ORCHESTRATOR.value)),
            code=str(payload.get('code', 'unknown')),
            message=str(payload.get('message', '')),
            state=payload.get('state'),
        )


# ── Run record ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProvisioningRun:
    """One tenant's provisioning run, keyed by slug.

    ``metadata`` accumulates resource identifiers and derived values. It
    is only ever extended by successful steps and only cleared by cleanup.
    The wait bookkeeping (``wait_count``, ``next_attempt_at``) lives
    outside metadata so that waiting never rewrites it.
    """

    slug: str
    state: ProvisionState
    metadata: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    last_error: RunError | None = None
    attempt: int = 1
    wait_count: int = 0
    next_attempt_at: datetime | None = None
    state_entered_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return not is_terminal(self.state)

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def with_changes(self, **changes: Any) -> ProvisioningRun:
        return replace(self, **changes)

    def to_row(self) -> dict[str, Any]:
        return {
            'slug': self.slug,
            'state': self.state.value,
            'metadata': dict(self.metadata),
            'last_error': self.last_error.to_dict() if self.last_error else None,
            'attempt': self.attempt,
            'wait_count': self.wait_count,
            'next_attempt_at': (
                self.next_attempt_at.isoformat() if self.next_attempt_at else None
            ),
            'state_entered_at': self.state_entered_at.isoformat(),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ProvisioningRun:
        """Raises MalformedRun when the stored state is not a known state."""
        slug = str(row['slug'])
        try:
            state = parse_state(row.get('state'))
        except ValueError:
            raise MalformedRun(slug, row.get('state')) from None
        created_at = parse_timestamp(row.get('created_at')) or utcnow()
        return cls(
            slug=slug,
            state=state,
            metadata=MappingProxyType(dict(row.get('metadata') or {})),
            last_error=RunError.from_dict(row.get('last_error')),
            attempt=int(row.get('attempt') or 1),
            wait_count=int(row.get('wait_count') or 0),
            next_attempt_at=parse_timestamp(row.get('next_attempt_at')),
            state_entered_at=parse_timestamp(row.get('state_entered_at')) or created_at,
            created_at=created_at,
            updated_at=parse_timestamp(row.get('updated_at')) or created_at,
        )


@dataclass(frozen=True, slots=True)
class RunPatch:
    """Partial update applied by a run store.

    ``metadata`` is merged key by key into the stored metadata; the
    remaining fields overwrite when set. ``clear_error`` / ``clear_next_attempt``
    exist because ``None`` already means "leave unchanged".
    """

    state: ProvisionState | None = None
    metadata: Mapping[str, Any] | None = None
    last_error: RunError | None = None
    clear_error: bool = False
    attempt: int | None = None
    wait_count: int | None = None
    next_attempt_at: datetime | None = None
    clear_next_attempt: bool = False
    state_entered_at: datetime | None = None


def apply_patch(run: ProvisioningRun, patch: RunPatch, *, now: datetime) -> ProvisioningRun:
    """Merge ``patch`` into ``run``; shared by every store implementation."""
    changes: dict[str, Any] = {'updated_at': now}
    if patch.state is not None:
        changes['state'] = patch.state
    if patch.metadata:
        merged = dict(run.metadata)
        merged.update(patch.metadata)
        changes['metadata'] = MappingProxyType(merged)
    if patch.clear_error:
        changes['last_error'] = None
    elif patch.last_error is not None:
        changes['last_error'] = patch.last_error
    if patch.attempt is not None:
        changes['attempt'] = patch.attempt
    if patch.wait_count is not None:
        changes['wait_count'] = patch.wait_count
    if patch.clear_next_attempt:
        changes['next_attempt_at'] = None
    elif patch.next_attempt_at is not None:
        changes['next_attempt_at'] = patch.next_attempt_at
    if patch.state_entered_at is not None:
        changes['state_entered_at'] = patch.state_entered_at
    return replace(run, **changes)


# ── Step results ─────────────────────────────────────────────────────


class StepStatus(str, enum.Enum):
    ADVANCE = 'advance'
    WAIT = 'wait'
    FAIL = 'fail'


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one execute or verify call.

    Produced by a step module and consumed immediately by the driver.
    """

    status: StepStatus
    metadata_patch: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    error: RunError | None = None
    reason: str = ''

    @classmethod
    def advance(cls, metadata_patch: Mapping[str, Any] | None = None) -> StepResult:
        return cls(
            status=StepStatus.ADVANCE,
            metadata_patch=MappingProxyType(dict(metadata_patch or {})),
        )

    @classmethod
    def wait(cls, reason: str = '') -> StepResult:
        return cls(status=StepStatus.WAIT, reason=reason)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        kind: RunErrorKind = RunErrorKind.PROVIDER,
    ) -> StepResult:
        return cls(
            status=StepStatus.FAIL,
            error=RunError(kind=kind, code=code, message=message),
            reason=message,
        )
