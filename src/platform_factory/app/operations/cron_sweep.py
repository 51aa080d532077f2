"""One cron tick: advance due runs, then alert on stale ones.

Shared by the ``/api/v1/cron/provision`` route and the Modal schedule.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from ..protocols import AlertSink, RunStore
from ..provisioning.driver import ProvisioningDriver
from ..provisioning.models import utcnow
from ..provisioning.scheduler import process_active_runs
from .stale_run_detector import StaleRunDetector, StaleSweepReport

logger = logging.getLogger(__name__)


async def send_stale_alerts(report: StaleSweepReport, sink: AlertSink | None) -> int:
    if sink is None:
        return 0
    for entry in report.stale:
        await sink.send(entry.run.slug, entry.message, entry.fields())
    return report.stale_count


async def run_cron_sweep(
    *,
    run_store: RunStore,
    driver: ProvisioningDriver,
    detector: StaleRunDetector,
    alert_sink: AlertSink | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, Any]:
    summary, runs = await process_active_runs(run_store, driver, now=clock())
    # Re-list so runs that just completed or failed are not reported.
    active = await run_store.list_active()
    report = detector.sweep(active, now=clock())
    alerted = await send_stale_alerts(report, alert_sink)
    if report.stale_count:
        logger.warning(
            'Stale provisioning runs: %s', report.stale_by_state,
            extra={'stale': report.stale_count},
        )
    return {
        **summary.to_dict(),
        'active_before_sweep': len(runs),
        'stale': report.to_dict()['stale'],
        'alerts_sent': alerted,
    }
