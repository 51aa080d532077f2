"""Scheduled sweep endpoints.

  POST|GET /api/v1/cron/provision → advance every due active run once,
                                    then alert on stale runs
  GET      /api/v1/cron/health    → liveness for the scheduler

When a cron secret is configured, every request must carry
``Authorization: Bearer <secret>``.
"""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..operations.cron_sweep import run_cron_sweep
from ..operations.stale_run_detector import StaleRunDetector
from ..protocols import AlertSink, RunStore
from ..provisioning.driver import ProvisioningDriver
from ..provisioning.models import utcnow


def bearer_matches(header: str, secret: str) -> bool:
    scheme, _, token = header.partition(' ')
    return scheme.lower() == 'bearer' and hmac.compare_digest(token.strip(), secret)


def create_cron_router(
    *,
    run_store: RunStore,
    driver: ProvisioningDriver,
    detector: StaleRunDetector,
    alert_sink: AlertSink | None = None,
    cron_secret: str = '',
    clock: Callable[[], datetime] = utcnow,
) -> APIRouter:
    """Create the cron router.

    Args:
        run_store: Store listing the active runs.
        driver: Driver performing one step per due run.
        detector: Stale-run thresholds used after each sweep.
        alert_sink: Where stale-run alerts go. None disables alerting.
        cron_secret: Required bearer secret; empty disables the check.
    """
    router = APIRouter(prefix='/api/v1/cron', tags=['cron'])

    async def provision_sweep(request: Request):
        if cron_secret and not bearer_matches(
            request.headers.get('authorization', ''), cron_secret,
        ):
            return JSONResponse(
                status_code=401,
                content={'error': 'unauthorized', 'detail': 'invalid cron secret'},
            )
        return await run_cron_sweep(
            run_store=run_store,
            driver=driver,
            detector=detector,
            alert_sink=alert_sink,
            clock=clock,
        )

    router.add_api_route('/provision', provision_sweep, methods=['POST', 'GET'])

    @router.get('/health')
    async def cron_health():
        return {'status': 'ok', 'time': clock().isoformat()}

    return router
