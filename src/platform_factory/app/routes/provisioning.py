"""Provisioning run API.

Exposes the provisioning service to operators and the onboarding form:
  POST   /api/v1/provision                 → create a run at INIT
  POST   /api/v1/provision/{slug}/advance  → perform one step now
  GET    /api/v1/provision/{slug}/status   → redacted progress view
  POST   /api/v1/provision/{slug}/retry    → FAILED → cleanup → INIT
  POST   /api/v1/provision/{slug}/cleanup  → delete resources, reset to INIT
  DELETE /api/v1/provision/{slug}          → delete resources and the record

Error bodies are ``{'error': <code>, 'detail': <message>}``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..provisioning.errors import (
    ActiveRunConflict,
    RetryNotAllowed,
    RunLocked,
    RunNotFound,
)
from ..provisioning.naming import SLUG_MAX_LENGTH, InvalidSlug
from ..provisioning.service import ProvisioningService
from ..provisioning.states import InvalidStateTransition

logger = logging.getLogger(__name__)


# ── Request schemas ───────────────────────────────────────────────────


class ProvisionRequest(BaseModel):
    platform_name: str = Field(min_length=1, max_length=200)
    company_name: str = Field(min_length=1, max_length=200)
    contact_email: str = Field(min_length=3, max_length=320, pattern=r'^[^@\s]+@[^@\s]+$')
    slug: str | None = Field(
        default=None,
        max_length=SLUG_MAX_LENGTH,
        description='Tenant slug. Derived from platform_name if omitted.',
    )


# ── Response helpers ──────────────────────────────────────────────────


def _error(status_code: int, code: str, detail: str, **extra: object) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': code, 'detail': detail, **extra},
    )


def _not_found(exc: RunNotFound) -> JSONResponse:
    return _error(404, 'run_not_found', str(exc))


def _locked(exc: RunLocked) -> JSONResponse:
    return _error(409, 'run_locked', str(exc))


# ── Route factory ─────────────────────────────────────────────────────


def create_provisioning_router(service: ProvisioningService) -> APIRouter:
    """Create the provisioning run router.

    Args:
        service: Provisioning service wired with the app's store, lock,
            and provider clients.
    """
    router = APIRouter(prefix='/api/v1/provision', tags=['provisioning'])

    @router.post('', status_code=201)
    async def start_provisioning(body: ProvisionRequest):
        try:
            run = await service.start_run(
                platform_name=body.platform_name,
                company_name=body.company_name,
                contact_email=body.contact_email,
                slug=body.slug,
            )
        except InvalidSlug as exc:
            return _error(422, 'invalid_slug', str(exc))
        except ActiveRunConflict as exc:
            return _error(409, 'active_run_conflict', str(exc), state=exc.state)
        except RunLocked as exc:
            return _locked(exc)
        return {'slug': run.slug, 'state': run.state.value}

    @router.post('/{slug}/advance')
    async def advance_run(slug: str):
        try:
            outcome = await service.advance(slug)
        except RunNotFound as exc:
            return _not_found(exc)
        return outcome.to_dict()

    @router.get('/{slug}/status')
    async def get_run_status(slug: str):
        try:
            return await service.get_status(slug)
        except RunNotFound as exc:
            return _not_found(exc)

    @router.post('/{slug}/retry')
    async def retry_run(slug: str):
        try:
            run = await service.retry(slug)
        except RunNotFound as exc:
            return _not_found(exc)
        except RetryNotAllowed as exc:
            return _error(409, 'retry_not_allowed', str(exc), state=exc.state)
        except RunLocked as exc:
            return _locked(exc)
        return {'slug': run.slug, 'state': run.state.value, 'attempt': run.attempt}

    @router.post('/{slug}/cleanup')
    async def cleanup_run(slug: str):
        try:
            report = await service.cleanup(slug)
        except RunNotFound as exc:
            return _not_found(exc)
        except RunLocked as exc:
            return _locked(exc)
        except InvalidStateTransition as exc:
            return _error(409, 'invalid_transition', str(exc))
        return report.to_dict()

    @router.delete('/{slug}')
    async def delete_platform(slug: str):
        try:
            report = await service.delete_platform(slug)
        except RunNotFound as exc:
            return _not_found(exc)
        except RunLocked as exc:
            return _locked(exc)
        logger.info('Platform %s deleted via API', slug, extra={'slug': slug})
        return report.to_dict()

    return router
