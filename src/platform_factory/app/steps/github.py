"""Source-repository step: generate the tenant repo from the platform template."""

from __future__ import annotations

import logging

from ..providers.http import ProviderAPIError
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

RESOURCE = 'github'
ID_KEY = 'github_repo'
# The template ships a Next.js app; its manifest appearing means the copy finished.
TEMPLATE_MARKER_FILE = 'package.json'


async def execute(ctx: StepContext) -> StepResult:
    if ctx.metadata.get(ID_KEY):
        return StepResult.advance()

    platform_name = ctx.metadata.get('platform_name') or ctx.slug
    company_name = ctx.metadata.get('company_name') or platform_name
    try:
        repo, _ = await find_or_create(
            ctx.clients.repository,
            ctx.resource_name(),
            {'description': f'{platform_name} interview platform for {company_name}'},
        )
    except ProviderAPIError as exc:
        return provider_failure(exc, action='repository generate')

    full_name = repo.get('full_name') or ctx.clients.repository.full_name(repo['name'])
    return StepResult.advance({
        ID_KEY: full_name,
        'github_repo_url': repo.get('html_url') or f'https://github.com/{full_name}',
        created_at_key(RESOURCE): ctx.now.isoformat(),
    })


async def verify(ctx: StepContext) -> StepResult:
    full_name = ctx.metadata.get(ID_KEY)
    if not full_name:
        return missing_identifier(ID_KEY)

    client = ctx.clients.repository
    try:
        repo = await client.get(full_name)
        if repo is None:
            return resource_missing(ctx, RESOURCE, full_name)
        if repo.get('archived'):
            return StepResult.fail(
                'github_repo_archived',
                f'repository {full_name} is archived',
            )
        if not await client.file_exists(full_name, TEMPLATE_MARKER_FILE):
            return StepResult.wait(f'{full_name} template content not copied yet')
        commit = await client.latest_commit(full_name)
    except ProviderAPIError as exc:
        return provider_failure(exc, action='repository status')

    if not commit or not commit.get('sha'):
        return StepResult.wait(f'{full_name} has no commits yet')

    logger.info(
        'GitHub repository %s verified at %s',
        full_name,
        commit['sha'][:7],
        extra={'slug': ctx.slug},
    )
    return StepResult.advance({'github_commit_sha': commit['sha']})
