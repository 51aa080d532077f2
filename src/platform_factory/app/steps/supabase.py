"""Data-storage project step: create the tenant's Supabase project, then wait
for it to become healthy and hand out its API keys."""

from __future__ import annotations

import logging

from ..providers.http import ProviderAPIError
from ..providers.supabase import (
    FAILED_PROJECT_STATUSES,
    READY_PROJECT_STATUS,
    project_url,
)
from ..provisioning.models import StepResult
from .base import (
    StepContext,
    created_at_key,
    find_or_create,
    missing_identifier,
    provider_failure,
    resource_missing,
)

logger = logging.getLogger(__name__)

RESOURCE = 'supabase'
ID_KEY = 'supabase_project_ref'


async def execute(ctx: StepContext) -> StepResult:
    if ctx.metadata.get(ID_KEY):
        return StepResult.advance()

    name = ctx.resource_name()
    try:
        project, _ = await find_or_create(ctx.clients.storage, name, {})
    except ProviderAPIError as exc:
        return provider_failure(exc, action='project create')

    ref = str(project['id'])
    return StepResult.advance({
        ID_KEY: ref,
        'supabase_url': project_url(ref),
        created_at_key(RESOURCE): ctx.now.isoformat(),
    })


async def verify(ctx: StepContext) -> StepResult:
    ref = ctx.metadata.get(ID_KEY)
    if not ref:
        return missing_identifier(ID_KEY)

    try:
        project = await ctx.clients.storage.get(ref)
        if project is None:
            return resource_missing(ctx, RESOURCE, ref)

        status = str(project.get('status', ''))
        if status in FAILED_PROJECT_STATUSES:
            return StepResult.fail(
                'supabase_project_failed',
                f'project {ref} reported status {status}',
            )
        if status != READY_PROJECT_STATUS:
            return StepResult.wait(f'project {ref} status {status or "unknown"}')

        keys = await ctx.clients.storage.get_api_keys(ref)
    except ProviderAPIError as exc:
        return provider_failure(exc, action='project status')

    anon_key = keys.get('anon')
    service_role_key = keys.get('service_role')
    if not anon_key or not service_role_key:
        return StepResult.wait(f'project {ref} keys not generated yet')

    logger.info('Supabase project %s verified', ref, extra={'slug': ctx.slug})
    return StepResult.advance({
        'supabase_anon_key': anon_key,
        'supabase_service_role_key': service_role_key,
    })
