"""Finalize step (WEBHOOK_REGISTERING).

Execute writes the agent identifiers and webhook secret into the hosting
project's environment and triggers a production rebuild. Verify polls that
rebuild and then probes the webhook route on the live deployment.
"""

from __future__ import annotations

import logging
import secrets

from ..providers.http import ProviderAPIError
from ..providers.vercel import (
    FAILED_DEPLOYMENT_STATES,
    READY_DEPLOYMENT_STATE,
    deployment_id,
    deployment_state,
    env_var,
)
from ..provisioning.models import StepResult
from .base import (
    StepContext,
    missing_identifier,
    provider_failure,
    resource_missing,
    webhook_url,
)

logger = logging.getLogger(__name__)

RESOURCE = 'finalize'
MARKER_KEY = 'finalize_requested_at'

_REQUIRED_KEYS = ('vercel_project_id', 'vercel_url', 'sandra_agent_id', 'kira_agent_id')

# The route exists when it answers; 401/405 just mean it rejected a bare GET.
WEBHOOK_LIVE_STATUSES = frozenset({200, 401, 405})


def is_requested(metadata) -> bool:
    return bool(metadata.get(MARKER_KEY))


async def execute(ctx: StepContext) -> StepResult:
    if is_requested(ctx.metadata):
        return StepResult.advance()

    missing = [key for key in _REQUIRED_KEYS if not ctx.metadata.get(key)]
    if missing:
        return StepResult.wait(f'waiting for {", ".join(missing)}')

    project_id = ctx.metadata['vercel_project_id']
    secret = ctx.metadata.get('webhook_secret') or secrets.token_urlsafe(32)
    hook_url = webhook_url(ctx.metadata['vercel_url'])
    hosting = ctx.clients.hosting
    try:
        await hosting.upsert_env(project_id, [
            env_var('NEXT_PUBLIC_ELEVENLABS_AGENT_ID', ctx.metadata['sandra_agent_id']),
            env_var('NEXT_PUBLIC_KIRA_AGENT_ID', ctx.metadata['kira_agent_id']),
            env_var('ELEVENLABS_WEBHOOK_SECRET', secret),
        ])
        deployment = await hosting.create_deployment(
            ctx.metadata.get('vercel_project_name') or ctx.resource_name(),
            project_id=project_id,
            repo=ctx.metadata.get('github_repo'),
            ref=ctx.settings.default_branch,
            redeploy_of=ctx.metadata.get('vercel_deployment_id'),
        )
    except ProviderAPIError as exc:
        return provider_failure(exc, action='finalize redeploy')

    logger.info(
        'Finalize redeploy requested for %s',
        project_id,
        extra={'slug': ctx.slug, 'deployment_id': deployment_id(deployment)},
    )
    return StepResult.advance({
        'webhook_url': hook_url,
        'webhook_secret': secret,
        'finalize_deployment_id': deployment_id(deployment),
        MARKER_KEY: ctx.now.isoformat(),
    })


async def verify(ctx: StepContext) -> StepResult:
    dep_id = ctx.metadata.get('finalize_deployment_id')
    if not dep_id:
        return missing_identifier('finalize_deployment_id')

    try:
        deployment = await ctx.clients.hosting.get_deployment(dep_id)
    except ProviderAPIError as exc:
        return provider_failure(exc, action='redeploy status')
    if deployment is None:
        # Grace window measured from when the redeploy was requested.
        return resource_missing(ctx, RESOURCE, dep_id, since_key=MARKER_KEY)

    state = deployment_state(deployment)
    if state in FAILED_DEPLOYMENT_STATES:
        return StepResult.fail(
            'vercel_deployment_failed',
            f'redeploy {dep_id} ended in {state}',
        )
    if state != READY_DEPLOYMENT_STATE:
        return StepResult.wait(f'redeploy {dep_id} is {state or "queued"}')

    hook_url = ctx.metadata.get('webhook_url') or webhook_url(ctx.metadata['vercel_url'])
    status = await ctx.clients.prober.probe(hook_url)
    if status not in WEBHOOK_LIVE_STATUSES:
        return StepResult.wait(f'webhook endpoint answered {status}')

    logger.info('Platform %s finalized', ctx.slug, extra={'slug': ctx.slug})
    return StepResult.advance({'finalized_at': ctx.now.isoformat()})
