"""Hosting step: a Vercel project linked to the tenant repository.

Execute depends on the repository; the project is created with the
storage URL and keys as environment variables. Verify waits for the first
production deployment and triggers one itself if the git link never did.
"""

from __future__ import annotations

import logging

from ..providers.http import ProviderAPIError
from ..providers.vercel import (
    FAILED_DEPLOYMENT_STATES,
    READY_DEPLOYMENT_STATE,
    deployment_id,
    deployment_state,
    env_var,
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

RESOURCE = 'vercel'
ID_KEY = 'vercel_project_id'

# metadata key -> project environment variable
_STORAGE_ENV = (
    ('supabase_url', 'NEXT_PUBLIC_SUPABASE_URL'),
    ('supabase_anon_key', 'NEXT_PUBLIC_SUPABASE_ANON_KEY'),
    ('supabase_service_role_key', 'SUPABASE_SERVICE_ROLE_KEY'),
)


async def execute(ctx: StepContext) -> StepResult:
    if ctx.metadata.get(ID_KEY):
        return StepResult.advance()

    repo = ctx.metadata.get('github_repo')
    if not repo:
        return StepResult.wait('waiting for github_repo')

    name = ctx.resource_name()
    variables = [
        env_var(env_key, str(ctx.metadata[meta_key]))
        for meta_key, env_key in _STORAGE_ENV
        if ctx.metadata.get(meta_key)
    ]
    try:
        project, _ = await find_or_create(
            ctx.clients.hosting,
            name,
            {'repo': repo, 'environment_variables': variables},
        )
    except ProviderAPIError as exc:
        return provider_failure(exc, action='project create')

    return StepResult.advance({
        ID_KEY: str(project['id']),
        'vercel_project_name': project.get('name') or name,
        'vercel_url': project_url(project.get('name') or name),
        created_at_key(RESOURCE): ctx.now.isoformat(),
    })


async def verify(ctx: StepContext) -> StepResult:
    project_id = ctx.metadata.get(ID_KEY)
    if not project_id:
        return missing_identifier(ID_KEY)

    hosting = ctx.clients.hosting
    try:
        project = await hosting.get(project_id)
        if project is None:
            return resource_missing(ctx, RESOURCE, project_id)

        deployment = await hosting.latest_deployment(project_id)
        if deployment is None:
            # The git integration did not start a build; start one so the run
            # does not sit in wait forever.
            await hosting.create_deployment(
                ctx.metadata.get('vercel_project_name') or ctx.resource_name(),
                project_id=project_id,
                repo=ctx.metadata.get('github_repo'),
                ref=ctx.settings.default_branch,
            )
            return StepResult.wait(f'deployment triggered for {project_id}')
    except ProviderAPIError as exc:
        return provider_failure(exc, action='deployment status')

    state = deployment_state(deployment)
    if state in FAILED_DEPLOYMENT_STATES:
        return StepResult.fail(
            'vercel_deployment_failed',
            f'deployment {deployment_id(deployment)} ended in {state}',
        )
    if state != READY_DEPLOYMENT_STATE:
        return StepResult.wait(f'deployment {deployment_id(deployment)} is {state or "queued"}')

    logger.info('Vercel project %s deployed', project_id, extra={'slug': ctx.slug})
    return StepResult.advance({'vercel_deployment_id': deployment_id(deployment)})
