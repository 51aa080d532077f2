"""Voice-agent steps: Sandra (setup) and Kira (insights).

Both agents are created the same way, differing only in role text and the
metadata key they own, so one ``AgentStep`` serves both. They depend on the
hosting URL because their webhooks point back at the tenant deployment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from ..protocols import ResourceProvider
from ..providers.elevenlabs import agent_id as extract_agent_id
from ..providers.http import ProviderAPIError
from ..provisioning.models import StepResult
from .base import (
    StepContext,
    created_at_key,
    find_or_create,
    missing_identifier,
    provider_failure,
    resource_missing,
    webhook_url,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentStep:
    resource: str
    client_field: str
    persona: str
    role: str

    @property
    def id_key(self) -> str:
        return f'{self.resource}_agent_id'

    def client(self, ctx: StepContext) -> ResourceProvider:
        return getattr(ctx.clients, self.client_field)

    def agent_params(self, ctx: StepContext) -> Mapping[str, Any]:
        platform_name = ctx.metadata.get('platform_name') or ctx.slug
        company_name = ctx.metadata.get('company_name') or platform_name
        return {
            'system_prompt': (
                f'You are {self.persona}, the {self.role} for {platform_name}, '
                f'working with {company_name}.'
            ),
            'first_message': f"Hello! I'm {self.persona}, your {self.role} for {platform_name}.",
            'webhook_url': webhook_url(ctx.metadata['vercel_url']),
        }

    async def execute(self, ctx: StepContext) -> StepResult:
        if ctx.metadata.get(self.id_key):
            return StepResult.advance()
        if not ctx.metadata.get('vercel_url'):
            return StepResult.wait('waiting for vercel_url')

        try:
            agent, _ = await find_or_create(
                self.client(ctx),
                ctx.resource_name(self.resource),
                self.agent_params(ctx),
            )
        except ProviderAPIError as exc:
            return provider_failure(exc, action=f'{self.resource} agent create')

        return StepResult.advance({
            self.id_key: extract_agent_id(agent),
            created_at_key(self.resource): ctx.now.isoformat(),
        })

    async def verify(self, ctx: StepContext) -> StepResult:
        expected = ctx.metadata.get(self.id_key)
        if not expected:
            return missing_identifier(self.id_key)

        try:
            agent = await self.client(ctx).get(expected)
        except ProviderAPIError as exc:
            return provider_failure(exc, action=f'{self.resource} agent status')
        if agent is None:
            return resource_missing(ctx, self.resource, expected)

        actual = extract_agent_id(agent)
        if actual != expected:
            return StepResult.fail(
                'agent_mismatch',
                f'{self.resource} agent lookup returned {actual!r}, expected {expected!r}',
            )

        logger.info('%s agent %s verified', self.persona, expected, extra={'slug': ctx.slug})
        return StepResult.advance()


SANDRA = AgentStep(
    resource='sandra',
    client_field='setup_agent',
    persona='Sandra',
    role='setup consultant',
)
KIRA = AgentStep(
    resource='kira',
    client_field='insights_agent',
    persona='Kira',
    role='insights analyst',
)

sandra_execute = SANDRA.execute
sandra_verify = SANDRA.verify
kira_execute = KIRA.execute
kira_verify = KIRA.verify
