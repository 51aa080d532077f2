"""Platform factory configuration settings.

FactorySettings is the single configuration object accepted by create_app()
and build_provider_clients(). It is a plain frozen dataclass (not env-coupled)
so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


# Most provider requests made under one lease: a step issues at most
# three, cleanup one delete per resource.
STEP_MAX_PROVIDER_CALLS = 3
CLEANUP_MAX_PROVIDER_CALLS = 5
LEASE_MARGIN_SECONDS = 30


def _env_int(env: dict[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class FactorySettings:
    """Configuration for the platform factory service.

    All fields have sensible defaults for local development, where
    in-memory stores and fake providers are used. Non-local environments
    must supply the run store and every provider credential.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    public_base_url: str = "http://localhost:8000"
    """Where this service is reachable (used in operator links)."""

    # ── Run store (Supabase PostgREST) ─────────────────────────────
    supabase_url: str = ""
    """Factory's own Supabase project URL holding provision_runs."""

    supabase_service_role_key: str = ""
    """Service-role key for the run store. Never log this."""

    # ── Provider credentials ───────────────────────────────────────
    supabase_access_token: str = ""
    """Supabase Management API personal access token."""

    supabase_org_id: str = ""
    supabase_region: str = "us-east-1"

    github_token: str = ""
    github_org: str = "connexions-platforms"
    github_template_repo: str = "universal-interviews"
    github_default_branch: str = "main"

    vercel_token: str = ""
    vercel_team_id: str = ""

    elevenlabs_api_key: str = ""

    provider_timeout_seconds: int = 15
    """Cap on one provider request attempt."""

    provider_max_retries: int = 2

    # ── Scheduling / operations ────────────────────────────────────
    cron_secret: str = ""
    """Bearer secret required by /api/v1/cron/* when set."""

    lock_lease_seconds: int = 360
    """Must outlast the provider calls of one step or cleanup; see validate()."""

    not_found_grace_seconds: int = 600
    """How long a 404 on a freshly created resource counts as eventual consistency."""

    stale_run_max_age_minutes: int = 60
    stale_state_max_minutes: int = 20

    slack_webhook_ops: str = ""
    slack_webhook_dev: str = ""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def min_lock_lease_seconds(self) -> float:
        """Longest a lease holder can spend in provider calls, plus margin."""
        from .providers.http import call_budget_seconds

        per_call = call_budget_seconds(self.provider_timeout_seconds, self.provider_max_retries)
        calls = max(STEP_MAX_PROVIDER_CALLS, CLEANUP_MAX_PROVIDER_CALLS)
        return calls * per_call + LEASE_MARGIN_SECONDS

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.lock_lease_seconds <= 0:
            errors.append("lock_lease_seconds must be positive")
        if self.provider_timeout_seconds <= 0 or self.provider_max_retries < 0:
            errors.append("provider timeout must be positive and retries non-negative")
        elif self.lock_lease_seconds < self.min_lock_lease_seconds:
            errors.append(
                f"lock_lease_seconds ({self.lock_lease_seconds}) is shorter than the "
                f"provider call budget ({self.min_lock_lease_seconds:.0f}s)"
            )
        if self.not_found_grace_seconds < 0:
            errors.append("not_found_grace_seconds must not be negative")
        if self.stale_run_max_age_minutes <= 0 or self.stale_state_max_minutes <= 0:
            errors.append("stale run thresholds must be positive")
        if not self.is_local:
            required = {
                "supabase_url": self.supabase_url,
                "supabase_service_role_key": self.supabase_service_role_key,
                "supabase_access_token": self.supabase_access_token,
                "supabase_org_id": self.supabase_org_id,
                "github_token": self.github_token,
                "vercel_token": self.vercel_token,
                "elevenlabs_api_key": self.elevenlabs_api_key,
            }
            for name, value in required.items():
                if not value:
                    errors.append(f"{self.environment}: {name} is required")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> FactorySettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct FactorySettings directly.
        """
        if env is None:
            env = dict(os.environ)

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            public_base_url=env.get("PUBLIC_BASE_URL", _default("public_base_url")),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_access_token=env.get("SUPABASE_ACCESS_TOKEN", ""),
            supabase_org_id=env.get("SUPABASE_ORG_ID", ""),
            supabase_region=env.get("SUPABASE_REGION", _default("supabase_region")),
            github_token=env.get("GITHUB_TOKEN", ""),
            github_org=env.get("GITHUB_ORG", _default("github_org")),
            github_template_repo=env.get("GITHUB_TEMPLATE_REPO", _default("github_template_repo")),
            github_default_branch=env.get("GITHUB_DEFAULT_BRANCH", _default("github_default_branch")),
            vercel_token=env.get("VERCEL_TOKEN", ""),
            vercel_team_id=env.get("VERCEL_TEAM_ID", ""),
            elevenlabs_api_key=env.get("ELEVENLABS_API_KEY", ""),
            provider_timeout_seconds=_env_int(
                env, "PROVIDER_TIMEOUT_SECONDS", _default("provider_timeout_seconds"),
            ),
            provider_max_retries=_env_int(
                env, "PROVIDER_MAX_RETRIES", _default("provider_max_retries"),
            ),
            cron_secret=env.get("CRON_SECRET", ""),
            lock_lease_seconds=_env_int(env, "LOCK_LEASE_SECONDS", _default("lock_lease_seconds")),
            not_found_grace_seconds=_env_int(
                env, "NOT_FOUND_GRACE_SECONDS", _default("not_found_grace_seconds"),
            ),
            stale_run_max_age_minutes=_env_int(
                env, "STALE_RUN_MAX_AGE_MINUTES", _default("stale_run_max_age_minutes"),
            ),
            stale_state_max_minutes=_env_int(
                env, "STALE_STATE_MAX_MINUTES", _default("stale_state_max_minutes"),
            ),
            slack_webhook_ops=env.get("SLACK_WEBHOOK_OPS", ""),
            slack_webhook_dev=env.get("SLACK_WEBHOOK_DEV", ""),
        )


def _default(name: str):
    # Slotted dataclasses drop class-level defaults; read them from the fields.
    return FactorySettings.__dataclass_fields__[name].default
