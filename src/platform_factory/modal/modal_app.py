"""Modal deployment entrypoint for the platform factory.

Serves the FastAPI app and runs the provisioning sweep every minute.

Canonical deploy:
  modal deploy src/platform_factory/modal/modal_app.py
"""

from __future__ import annotations

import modal


APP_NAME = "platform-factory"
FACTORY_SECRET_NAME = "platform-factory"

MIN_CONTAINERS = 0
MAX_CONTAINERS = 4
TIMEOUT_SECONDS = 300
SWEEP_TIMEOUT_SECONDS = 240

# Env vars expected inside the Modal container via Modal Secret.
REQUIRED_ENV_VARS: tuple[str, ...] = (
    "ENVIRONMENT",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_ACCESS_TOKEN",
    "SUPABASE_ORG_ID",
    "GITHUB_TOKEN",
    "VERCEL_TOKEN",
    "ELEVENLABS_API_KEY",
    "CRON_SECRET",
)


def _build_factory_app():
    """Build the FastAPI app for Modal ASGI serving.

    Import inside function so `modal deploy` can analyze the module without
    importing app code at build time.
    """
    from platform_factory.app.main import create_app
    from platform_factory.app.settings import FactorySettings

    return create_app(FactorySettings.from_env())


async def _run_sweep() -> dict:
    from platform_factory.app.main import build_dependencies
    from platform_factory.app.observability.logging import configure_logging
    from platform_factory.app.operations.cron_sweep import run_cron_sweep
    from platform_factory.app.settings import FactorySettings

    configure_logging()
    settings = FactorySettings.from_env()
    errors = settings.validate()
    if errors:
        raise ValueError("; ".join(errors))
    deps = build_dependencies(settings)
    return await run_cron_sweep(
        run_store=deps.run_store,
        driver=deps.driver,
        detector=deps.detector,
        alert_sink=deps.alert_sink,
    )


IMAGE_PIP_DEPS: tuple[str, ...] = (
    "fastapi>=0.100.0",
    "uvicorn[standard]>=0.23.0",
    "httpx>=0.24.0",
    "pydantic>=2.0",
    "structlog>=23.1.0",
    "modal>=1.0.0",
)

_image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(*IMAGE_PIP_DEPS)
    .add_local_python_source("platform_factory")
)

_secrets = [modal.Secret.from_name(FACTORY_SECRET_NAME)]

app = modal.App(APP_NAME)


@app.function(
    image=_image,
    secrets=_secrets,
    min_containers=MIN_CONTAINERS,
    max_containers=MAX_CONTAINERS,
    timeout=TIMEOUT_SECONDS,
)
@modal.asgi_app()
def fastapi_app():
    return _build_factory_app()


@app.function(
    image=_image,
    secrets=_secrets,
    schedule=modal.Period(minutes=1),
    timeout=SWEEP_TIMEOUT_SECONDS,
)
async def provisioning_sweep():
    return await _run_sweep()
