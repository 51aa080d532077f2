"""Platform factory FastAPI application factory.

create_app() is the single entry point for building the ASGI application.
It wires the request-ID middleware and the provisioning and cron routers,
and injects the run store, lock, provider clients and alert sink.

Usage:
    # Local development (in-memory store, fake providers)
    from platform_factory.app import create_app, FactorySettings
    app = create_app(FactorySettings())

    # Non-local (Supabase run store, real provider clients)
    settings = FactorySettings.from_env()
    app = create_app(settings)

    # Testing (full DI control)
    app = create_app(settings, run_store=store, provider_clients=fakes)
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from .db.postgrest import PostgrestClient
from .db.run_lock import SupabaseRunLock
from .db.run_store import SupabaseRunStore
from .observability.logging import configure_logging, request_id_ctx
from .operations.alerts import SlackAlertSink
from .operations.stale_run_detector import StaleRunDetector
from .protocols import AlertSink, RunLock, RunStore
from .providers.registry import ProviderClients, build_provider_clients
from .provisioning.cleanup import RunCleaner
from .provisioning.dispatcher import validate_dispatch_table
from .provisioning.driver import ProvisioningDriver
from .provisioning.service import ProvisioningService
from .settings import FactorySettings
from .steps.base import StepSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for the injected store/provider instances and the
    components built on them.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    run_store: RunStore
    run_lock: RunLock
    provider_clients: ProviderClients
    alert_sink: AlertSink | None
    driver: ProvisioningDriver
    cleaner: RunCleaner
    service: ProvisioningService
    detector: StaleRunDetector


def build_dependencies(
    settings: FactorySettings,
    *,
    run_store: RunStore | None = None,
    run_lock: RunLock | None = None,
    provider_clients: ProviderClients | None = None,
    alert_sink: AlertSink | None = None,
) -> AppDependencies:
    """Fill missing collaborators and build driver, cleaner and service.

    Local mode defaults to in-memory implementations and fake providers.
    Other environments default to the Supabase run store, the real REST
    clients and the Slack alert sink.
    """
    if settings.is_local:
        from .inmemory import InMemoryAlertSink, InMemoryRunLock, InMemoryRunStore
        from .providers.inmemory import build_inmemory_provider_clients

        run_store = run_store or InMemoryRunStore()
        run_lock = run_lock or InMemoryRunLock()
        provider_clients = provider_clients or build_inmemory_provider_clients()
        alert_sink = alert_sink or InMemoryAlertSink()
    else:
        if run_store is None or run_lock is None:
            postgrest = PostgrestClient(
                supabase_url=settings.supabase_url,
                service_role_key=settings.supabase_service_role_key,
            )
            run_store = run_store or SupabaseRunStore(postgrest)
            run_lock = run_lock or SupabaseRunLock(postgrest)
        provider_clients = provider_clients or build_provider_clients(settings)
        alert_sink = alert_sink or SlackAlertSink(settings)

    driver = ProvisioningDriver(
        run_store=run_store,
        clients=provider_clients,
        run_lock=run_lock,
        step_settings=StepSettings.from_settings(settings),
        lease_seconds=settings.lock_lease_seconds,
    )
    cleaner = RunCleaner(
        run_store=run_store,
        clients=provider_clients,
        run_lock=run_lock,
        lease_seconds=settings.lock_lease_seconds,
    )
    return AppDependencies(
        run_store=run_store,
        run_lock=run_lock,
        provider_clients=provider_clients,
        alert_sink=alert_sink,
        driver=driver,
        cleaner=cleaner,
        service=ProvisioningService(run_store=run_store, driver=driver, cleaner=cleaner),
        detector=StaleRunDetector(
            max_age_minutes=settings.stale_run_max_age_minutes,
            max_state_minutes=settings.stale_state_max_minutes,
        ),
    )


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID and bind it into the log context."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: FactorySettings | None = None,
    *,
    run_store: RunStore | None = None,
    run_lock: RunLock | None = None,
    provider_clients: ProviderClients | None = None,
    alert_sink: AlertSink | None = None,
) -> FastAPI:
    """Create a configured platform-factory FastAPI application.

    Raises:
        ValueError: If settings validation fails.
        DispatchError: If a provisioning state has no step handler.
    """
    if settings is None:
        settings = FactorySettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Platform factory settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    configure_logging()
    validate_dispatch_table()

    deps = build_dependencies(
        settings,
        run_store=run_store,
        run_lock=run_lock,
        provider_clients=provider_clients,
        alert_sink=alert_sink,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Platform factory startup (environment=%s)", settings.environment)
        yield
        logger.info("Platform factory shutdown")

    app = FastAPI(
        title="Platform Factory",
        description="Provisions tenant platforms across Supabase, GitHub, Vercel and ElevenLabs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.deps = deps
    app.state.settings = settings

    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    from .routes.cron import create_cron_router
    from .routes.provisioning import create_provisioning_router

    app.include_router(create_provisioning_router(deps.service))
    app.include_router(create_cron_router(
        run_store=deps.run_store,
        driver=deps.driver,
        detector=deps.detector,
        alert_sink=deps.alert_sink,
        cron_secret=settings.cron_secret,
    ))

    return app


# For uvicorn, use --factory flag:
#   uvicorn platform_factory.app.main:create_app --factory
