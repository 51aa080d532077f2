"""Periodic sweep over active runs, called by cron.

Each active run whose backoff has elapsed gets one ``advance`` call.
Runs are swept one after another and an error on one run never stops
the sweep. Rows whose stored state is unknown are handed to the driver
too, which marks them FAILED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..protocols import RunStore
from .driver import AdvanceStatus, ProvisioningDriver
from .errors import RunNotFound
from .models import ProvisioningRun, utcnow
from .states import ProvisionState

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    deferred: int = 0
    locked: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'processed': self.processed,
            'completed': self.completed,
            'failed': self.failed,
            'running': self.running,
            'deferred': self.deferred,
            'locked': self.locked,
            'errors': list(self.errors),
        }


async def process_active_runs(
    run_store: RunStore,
    driver: ProvisioningDriver,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> tuple[SweepSummary, list[ProvisioningRun]]:
    """Advance every due active run once.

    Returns the summary and the active runs as listed before the sweep
    (callers feed those to the stale-run detector).
    """
    now = now or utcnow()
    summary = SweepSummary()

    for malformed in await run_store.list_malformed():
        await _advance_one(driver, malformed.slug, summary)

    runs = await run_store.list_active()
    for run in runs:
        if limit is not None and summary.processed >= limit:
            summary.deferred += 1
            continue
        if not run.is_due(now):
            summary.deferred += 1
            continue
        await _advance_one(driver, run.slug, summary)

    logger.info(
        'Provisioning sweep: processed=%d completed=%d failed=%d running=%d deferred=%d locked=%d',
        summary.processed, summary.completed, summary.failed,
        summary.running, summary.deferred, summary.locked,
    )
    return summary, runs


async def _advance_one(driver: ProvisioningDriver, slug: str, summary: SweepSummary) -> None:
    summary.processed += 1
    try:
        outcome = await driver.advance(slug)
    except RunNotFound:
        # Deleted between listing and advancing.
        return
    except Exception as exc:
        logger.exception('Sweep failed to advance %s', slug, extra={'slug': slug})
        summary.errors.append(f'{slug}: {type(exc).__name__}: {exc}')
        return

    if outcome.status is AdvanceStatus.LOCKED:
        summary.locked += 1
    elif outcome.state is ProvisionState.COMPLETE:
        summary.completed += 1
    elif outcome.state is ProvisionState.FAILED:
        summary.failed += 1
    else:
        summary.running += 1
