"""Provisioning driver: advances one run by exactly one step per call.

Each ``advance(slug)``:
  1. Loads the run and returns early for terminal runs.
  2. Claims the per-slug lock (``locked`` if another invocation holds it).
  3. Resolves the single handler for the current state.
  4. Calls it once (one provider round trip).
  5. Validates and persists the outcome: advance, wait, or fail.

There is no internal loop; an external, stateless trigger (cron, API
route, webhook) calls ``advance`` again for the next step. Exceptions
from a handler never escape: they move the run to FAILED with an error
whose ``kind`` separates provider trouble from orchestrator bugs.
"""

from __future__ import annotations

import enum
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ..protocols import RunLock, RunStore
from ..providers.http import ProviderAPIError
from ..providers.registry import ProviderClients
from ..steps.base import StepContext, StepSettings
from .backoff import next_attempt_at
from .dispatcher import StepBinding, resolve_step
from .errors import DispatchError, MalformedRun, RunNotFound
from .models import (
    ProvisioningRun,
    RunError,
    RunErrorKind,
    RunPatch,
    StepResult,
    StepStatus,
    utcnow,
)
from .states import (
    InvalidStateTransition,
    ProvisionState,
    is_terminal,
    validate_transition,
)

logger = logging.getLogger(__name__)


class AdvanceStatus(str, enum.Enum):
    ADVANCED = 'advanced'
    WAITING = 'waiting'
    FAILED = 'failed'
    NOOP = 'noop'
    LOCKED = 'locked'


@dataclass(frozen=True, slots=True)
class AdvanceOutcome:
    """What one ``advance`` call did."""

    slug: str
    state: ProvisionState
    status: AdvanceStatus
    previous_state: ProvisionState | None = None
    step: str | None = None
    error: RunError | None = None
    reason: str = ''

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'slug': self.slug,
            'state': self.state.value,
            'status': self.status.value,
            'step': self.step,
        }
        if self.previous_state is not None:
            payload['previous_state'] = self.previous_state.value
        if self.error is not None:
            payload['error'] = self.error.to_dict()
        if self.reason:
            payload['reason'] = self.reason
        return payload


class ProvisioningDriver:
    """Drives provisioning runs one step at a time.

    All collaborators are injected; the driver never reads configuration
    or constructs provider clients itself.
    """

    def __init__(
        self,
        *,
        run_store: RunStore,
        clients: ProviderClients,
        run_lock: RunLock | None = None,
        step_settings: StepSettings | None = None,
        lease_seconds: int = 360,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = run_store
        self._clients = clients
        self._lock = run_lock
        self._step_settings = step_settings or StepSettings()
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._rng = rng

    async def advance(self, slug: str) -> AdvanceOutcome:
        """Perform at most one execute-or-verify call for ``slug``.

        A stored state that is not a ProvisionState fails the run in
        place instead of raising. Raises RunNotFound if the slug has no run.
        """
        try:
            run = await self._load(slug)
        except MalformedRun as exc:
            return await self._fail_malformed(exc)
        if is_terminal(run.state):
            return AdvanceOutcome(slug, run.state, AdvanceStatus.NOOP)

        owner = f'advance-{uuid.uuid4().hex[:12]}'
        if self._lock is not None:
            acquired = await self._lock.acquire(
                slug, owner=owner, lease_seconds=self._lease_seconds,
            )
            if not acquired:
                logger.info('Run %s is locked; skipping', slug, extra={'slug': slug})
                return AdvanceOutcome(slug, run.state, AdvanceStatus.LOCKED)

        try:
            # Re-read under the lock; another invocation may have moved it.
            try:
                run = await self._load(slug)
            except MalformedRun as exc:
                return await self._fail_malformed(exc)
            if is_terminal(run.state):
                return AdvanceOutcome(slug, run.state, AdvanceStatus.NOOP)
            return await self._step(run)
        finally:
            if self._lock is not None:
                await self._lock.release(slug, owner=owner)

    async def _load(self, slug: str) -> ProvisioningRun:
        run = await self._store.get(slug)
        if run is None:
            raise RunNotFound(slug)
        return run

    async def _step(self, run: ProvisioningRun) -> AdvanceOutcome:
        now = self._clock()
        previous = run.state

        try:
            binding = resolve_step(run.state, run.metadata)
        except DispatchError as exc:
            return await self._fail(run, RunError(
                RunErrorKind.ORCHESTRATOR, 'dispatch_error', str(exc),
            ), now=now, previous=previous)

        if binding.enter is not None:
            validate_transition(run.state, binding.enter)
            run = await self._store.update(run.slug, RunPatch(
                state=binding.enter,
                state_entered_at=now,
                wait_count=0,
                clear_next_attempt=True,
                clear_error=True,
            ))
            logger.info(
                'Run %s entered %s',
                run.slug,
                binding.enter.value,
                extra={'slug': run.slug, 'state': binding.enter.value},
            )

        ctx = StepContext(
            slug=run.slug,
            metadata=run.metadata,
            clients=self._clients,
            settings=self._step_settings,
            now=now,
        )
        result = await self._call(binding, ctx, run)
        if isinstance(result, RunError):
            return await self._fail(run, result, now=now, previous=previous, step=binding.name)

        try:
            if result.status is StepStatus.ADVANCE:
                return await self._apply_advance(run, binding, result, now=now, previous=previous)
            if result.status is StepStatus.WAIT:
                return await self._apply_wait(run, binding, result, now=now, previous=previous)
        except InvalidStateTransition as exc:
            return await self._fail(run, RunError(
                RunErrorKind.ORCHESTRATOR, 'invalid_transition', str(exc),
            ), now=now, previous=previous, step=binding.name)

        error = result.error or RunError(RunErrorKind.PROVIDER, 'step_failed', result.reason)
        return await self._fail(run, error, now=now, previous=previous, step=binding.name)

    async def _call(
        self,
        binding: StepBinding,
        ctx: StepContext,
        run: ProvisioningRun,
    ) -> StepResult | RunError:
        log_extra = {'slug': run.slug, 'state': run.state.value, 'step': binding.name}
        try:
            return await binding.handler(ctx)
        except ProviderAPIError as exc:
            logger.warning(
                'Step %s raised provider error for %s: %s',
                binding.name, run.slug, exc,
                extra={**log_extra, 'provider': exc.provider},
            )
            return RunError(RunErrorKind.PROVIDER, exc.code, str(exc))
        except Exception as exc:
            logger.exception(
                'Step %s crashed for %s', binding.name, run.slug, extra=log_extra,
            )
            return RunError(
                RunErrorKind.ORCHESTRATOR,
                'unhandled_exception',
                f'{type(exc).__name__}: {exc}',
            )

    async def _apply_advance(
        self,
        run: ProvisioningRun,
        binding: StepBinding,
        result: StepResult,
        *,
        now: datetime,
        previous: ProvisionState,
    ) -> AdvanceOutcome:
        target = validate_transition(run.state, binding.on_advance)
        updated = await self._store.update(run.slug, RunPatch(
            state=target,
            metadata=result.metadata_patch,
            wait_count=0,
            clear_next_attempt=True,
            clear_error=True,
            state_entered_at=now if target is not run.state else None,
        ))
        logger.info(
            'Run %s advanced %s -> %s via %s',
            run.slug, run.state.value, target.value, binding.name,
            extra={'slug': run.slug, 'state': target.value, 'step': binding.name},
        )
        return AdvanceOutcome(
            run.slug, updated.state, AdvanceStatus.ADVANCED,
            previous_state=previous, step=binding.name,
        )

    async def _apply_wait(
        self,
        run: ProvisioningRun,
        binding: StepBinding,
        result: StepResult,
        *,
        now: datetime,
        previous: ProvisionState,
    ) -> AdvanceOutcome:
        # Only the wait bookkeeping is written; metadata stays untouched.
        wait_count = run.wait_count + 1
        updated = await self._store.update(run.slug, RunPatch(
            wait_count=wait_count,
            next_attempt_at=next_attempt_at(
                binding.resource, wait_count, now=now, rng=self._rng,
            ),
        ))
        logger.info(
            'Run %s waiting in %s (%d): %s',
            run.slug, run.state.value, wait_count, result.reason or binding.name,
            extra={'slug': run.slug, 'state': run.state.value, 'step': binding.name},
        )
        return AdvanceOutcome(
            run.slug, updated.state, AdvanceStatus.WAITING,
            previous_state=previous, step=binding.name, reason=result.reason,
        )

    async def _fail(
        self,
        run: ProvisioningRun,
        error: RunError,
        *,
        now: datetime,
        previous: ProvisionState,
        step: str | None = None,
    ) -> AdvanceOutcome:
        error = RunError(error.kind, error.code, error.message, state=run.state.value)
        validate_transition(run.state, ProvisionState.FAILED)
        updated = await self._store.update(run.slug, RunPatch(
            state=ProvisionState.FAILED,
            last_error=error,
            state_entered_at=now,
            clear_next_attempt=True,
        ))
        logger.error(
            'Run %s failed in %s: %s (%s)',
            run.slug, run.state.value, error.code, error.kind.value,
            extra={
                'slug': run.slug,
                'state': run.state.value,
                'error_code': error.code,
                'error_kind': error.kind.value,
            },
        )
        return AdvanceOutcome(
            run.slug, updated.state, AdvanceStatus.FAILED,
            previous_state=previous, step=step, error=error,
        )

    async def _fail_malformed(self, exc: MalformedRun) -> AdvanceOutcome:
        # No valid source state exists, so the transition table does not apply.
        error = RunError(
            RunErrorKind.ORCHESTRATOR,
            'malformed_state',
            str(exc),
            state=str(exc.raw_state),
        )
        updated = await self._store.mark_failed(exc.slug, error)
        logger.error(
            'Run %s has unknown state %r; marked FAILED',
            exc.slug, exc.raw_state,
            extra={
                'slug': exc.slug,
                'error_code': error.code,
                'error_kind': error.kind.value,
            },
        )
        return AdvanceOutcome(exc.slug, updated.state, AdvanceStatus.FAILED, error=error)
