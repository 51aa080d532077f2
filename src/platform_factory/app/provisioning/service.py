"""Provisioning service: the operations exposed to routes, cron and the CLI.

Enforces two rules on top of the driver:
  1. At most one active (non-terminal) run per slug.
  2. Re-provisioning a FAILED or COMPLETE slug, and operator retries,
     always clean up the previous resources first and restart from INIT.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from ..protocols import RunStore
from .cleanup import CleanupReport, RunCleaner
from .driver import AdvanceOutcome, ProvisioningDriver
from .errors import ActiveRunConflict, RetryNotAllowed, RunNotFound
from .models import ProvisioningRun, RunPatch, utcnow
from .naming import redact_metadata, slugify
from .states import (
    PIPELINE_SEQUENCE,
    ProvisionState,
    describe_state,
    pipeline_index,
)

logger = logging.getLogger(__name__)


def run_phase(state: ProvisionState) -> str:
    if state is ProvisionState.COMPLETE:
        return 'complete'
    if state is ProvisionState.FAILED:
        return 'failed'
    return 'running'


def status_payload(run: ProvisioningRun) -> dict[str, Any]:
    """Progress view of a run with secrets redacted."""
    index = pipeline_index(run.state)
    return {
        'slug': run.slug,
        'state': run.state.value,
        'phase': run_phase(run.state),
        **describe_state(run.state),
        'progress': {
            'step': index if index >= 0 else None,
            'total': len(PIPELINE_SEQUENCE) - 1,
        },
        'metadata': redact_metadata(run.metadata),
        'error': run.last_error.to_dict() if run.last_error else None,
        'attempt': run.attempt,
        'wait_count': run.wait_count,
        'next_attempt_at': run.next_attempt_at.isoformat() if run.next_attempt_at else None,
        'state_entered_at': run.state_entered_at.isoformat(),
        'created_at': run.created_at.isoformat(),
        'updated_at': run.updated_at.isoformat(),
    }


class ProvisioningService:
    def __init__(
        self,
        *,
        run_store: RunStore,
        driver: ProvisioningDriver,
        cleaner: RunCleaner,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = run_store
        self._driver = driver
        self._cleaner = cleaner
        self._clock = clock

    async def start_run(
        self,
        *,
        platform_name: str,
        company_name: str,
        contact_email: str,
        slug: str | None = None,
    ) -> ProvisioningRun:
        """Create a run at INIT for a new tenant.

        Raises ActiveRunConflict if the slug is mid-provisioning. A FAILED or
        COMPLETE run for the slug is cleaned up and restarted instead.
        """
        slug = slugify(slug or platform_name)
        tenant = {
            'platform_name': platform_name,
            'company_name': company_name,
            'contact_email': contact_email,
        }

        existing = await self._store.get(slug)
        if existing is None:
            run = await self._store.create(slug, ProvisionState.INIT, tenant)
            logger.info('Provisioning run created for %s', slug, extra={'slug': slug})
            return run

        if existing.is_active:
            raise ActiveRunConflict(slug, existing.state.value)

        logger.info(
            'Re-provisioning %s from %s; cleaning up first',
            slug, existing.state.value,
            extra={'slug': slug, 'state': existing.state.value},
        )
        await self._cleaner.cleanup(slug, attempt=existing.attempt + 1)
        return await self._store.update(slug, RunPatch(metadata=tenant))

    async def advance(self, slug: str) -> AdvanceOutcome:
        return await self._driver.advance(slug)

    async def get_run(self, slug: str) -> ProvisioningRun:
        run = await self._store.get(slug)
        if run is None:
            raise RunNotFound(slug)
        return run

    async def get_status(self, slug: str) -> dict[str, Any]:
        return status_payload(await self.get_run(slug))

    async def retry(self, slug: str) -> ProvisioningRun:
        """Operator retry: FAILED -> cleanup -> INIT with attempt + 1."""
        run = await self.get_run(slug)
        if run.state is not ProvisionState.FAILED:
            raise RetryNotAllowed(slug, run.state.value)
        await self._cleaner.cleanup(slug, attempt=run.attempt + 1)
        logger.info('Run %s retried (attempt %d)', slug, run.attempt + 1, extra={'slug': slug})
        return await self.get_run(slug)

    async def cleanup(self, slug: str) -> CleanupReport:
        return await self._cleaner.cleanup(slug)

    async def delete_platform(self, slug: str) -> CleanupReport:
        return await self._cleaner.delete_platform(slug)
