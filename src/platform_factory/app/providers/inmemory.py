"""In-memory provider implementations for local development and tests.

They satisfy the provider protocols, keep every resource in dicts, and
record each call so tests can assert on exactly what was requested.
``pending_polls`` makes a resource report "not ready" for that many reads
before becoming ready, which exercises the verify/wait path.
"""

from __future__ import annotations

import itertools
from typing import Any, Mapping, Sequence

from .http import ProviderAPIError
from .registry import ProviderClients
from .supabase import READY_PROJECT_STATUS


class InMemoryResourceProvider:
    """Generic create/get/find/delete store keyed by resource id."""

    provider = 'inmemory'
    id_prefix = 'res'

    def __init__(
        self,
        *,
        provider: str | None = None,
        pending_polls: int = 0,
        create_error: Exception | None = None,
        delete_error: Exception | None = None,
    ) -> None:
        if provider:
            self.provider = provider
        self.pending_polls = pending_polls
        self.create_error = create_error
        self.delete_error = delete_error
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._pending: dict[str, int] = {}
        self._ids = itertools.count(1)

    # ── Test helpers ─────────────────────────────────────────────

    def call_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def remove_out_of_band(self, resource_id: str) -> None:
        """Simulate someone deleting the resource at the provider."""
        self.resources.pop(resource_id, None)

    def seed(self, name: str, **fields: Any) -> dict[str, Any]:
        """Pre-create a resource without recording a create call."""
        resource_id = self._next_id()
        resource = self._build(resource_id, {'name': name, **fields})
        self.resources[self._key(resource)] = resource
        return resource

    def _poll_ready(self, resource_id: str) -> bool:
        remaining = self._pending.get(resource_id, 0)
        if remaining > 0:
            self._pending[resource_id] = remaining - 1
            return False
        return True

    def _next_id(self) -> str:
        return f'{self.id_prefix}_{next(self._ids)}'

    def _build(self, resource_id: str, params: Mapping[str, Any]) -> dict[str, Any]:
        return {'id': resource_id, 'name': params['name']}

    def _key(self, resource: Mapping[str, Any]) -> str:
        return str(resource['id'])

    # ── Protocol surface ─────────────────────────────────────────

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]:
        self.calls.append(('create', params['name']))
        if self.create_error is not None:
            raise self.create_error
        resource = self._build(self._next_id(), params)
        key = self._key(resource)
        self.resources[key] = resource
        self._pending[key] = self.pending_polls
        return dict(resource)

    async def get(self, resource_id: str) -> dict[str, Any] | None:
        self.calls.append(('get', resource_id))
        resource = self.resources.get(resource_id)
        return dict(resource) if resource is not None else None

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        self.calls.append(('find_by_name', name))
        for resource in self.resources.values():
            if resource.get('name') == name:
                return dict(resource)
        return None

    async def delete(self, resource_id: str) -> bool:
        self.calls.append(('delete', resource_id))
        if self.delete_error is not None:
            raise self.delete_error
        return self.resources.pop(resource_id, None) is not None


class InMemoryStorageProvider(InMemoryResourceProvider):
    provider = 'supabase'
    id_prefix = 'ref'

    def _build(self, resource_id: str, params: Mapping[str, Any]) -> dict[str, Any]:
        return {
            'id': resource_id,
            'name': params['name'],
            'status': params.get('status', 'COMING_UP'),
        }

    def set_status(self, project_ref: str, status: str) -> None:
        self.resources[project_ref]['status'] = status

    async def get(self, resource_id: str) -> dict[str, Any] | None:
        resource = await super().get(resource_id)
        if resource is None:
            return None
        stored = self.resources[resource_id]
        if stored['status'] == 'COMING_UP' and self._poll_ready(resource_id):
            stored['status'] = READY_PROJECT_STATUS
        return dict(stored)

    async def get_api_keys(self, project_ref: str) -> dict[str, str]:
        self.calls.append(('get_api_keys', project_ref))
        resource = self.resources.get(project_ref)
        if resource is None or resource['status'] != READY_PROJECT_STATUS:
            return {}
        return {'anon': f'anon-{project_ref}', 'service_role': f'service-{project_ref}'}


class InMemoryRepositoryProvider(InMemoryResourceProvider):
    provider = 'github'
    id_prefix = 'repo'

    def __init__(self, *, organization: str = 'tenant-org', **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.organization = organization

    def full_name(self, name: str) -> str:
        return f'{self.organization}/{name}'

    def _build(self, resource_id: str, params: Mapping[str, Any]) -> dict[str, Any]:
        full_name = self.full_name(params['name'])
        return {
            'id': resource_id,
            'name': params['name'],
            'full_name': full_name,
            'html_url': f'https://github.com/{full_name}',
            'default_branch': 'main',
            'archived': bool(params.get('archived', False)),
        }

    def _key(self, resource: Mapping[str, Any]) -> str:
        return str(resource['full_name'])

    def archive(self, full_name: str) -> None:
        self.resources[full_name]['archived'] = True

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        self.calls.append(('find_by_name', name))
        resource = self.resources.get(self.full_name(name))
        return dict(resource) if resource is not None else None

    async def file_exists(self, full_name: str, path: str) -> bool:
        self.calls.append(('file_exists', f'{full_name}:{path}'))
        return full_name in self.resources and self._poll_ready(full_name)

    async def latest_commit(self, full_name: str) -> dict[str, Any] | None:
        self.calls.append(('latest_commit', full_name))
        if full_name not in self.resources:
            return None
        return {'sha': f'sha-{full_name.replace("/", "-")}'}


class InMemoryHostingProvider(InMemoryResourceProvider):
    provider = 'vercel'
    id_prefix = 'prj'

    def __init__(self, *, deployment_polls: int = 0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.deployment_polls = deployment_polls
        self.deployments: dict[str, list[dict[str, Any]]] = {}
        self.env: dict[str, dict[str, str]] = {}
        self._deployment_ids = itertools.count(1)
        self._deployment_pending: dict[str, int] = {}

    def _build(self, resource_id: str, params: Mapping[str, Any]) -> dict[str, Any]:
        self.env[resource_id] = {
            item['key']: item['value']
            for item in params.get('environment_variables') or ()
        }
        return {
            'id': resource_id,
            'name': params['name'],
            'link': {'type': 'github', 'repo': params.get('repo', '')},
        }

    async def get(self, resource_id: str) -> dict[str, Any] | None:
        self.calls.append(('get', resource_id))
        for resource in self.resources.values():
            if resource_id in (resource['id'], resource['name']):
                return dict(resource)
        return None

    def set_deployment_state(self, deployment_id: str, state: str) -> None:
        for deployments in self.deployments.values():
            for deployment in deployments:
                if deployment['uid'] == deployment_id:
                    deployment['readyState'] = state

    def _refresh(self, deployment: dict[str, Any]) -> dict[str, Any]:
        uid = deployment['uid']
        if deployment['readyState'] == 'BUILDING':
            remaining = self._deployment_pending.get(uid, 0)
            if remaining > 0:
                self._deployment_pending[uid] = remaining - 1
            else:
                deployment['readyState'] = 'READY'
        return dict(deployment)

    async def latest_deployment(self, project_id: str) -> dict[str, Any] | None:
        self.calls.append(('latest_deployment', project_id))
        deployments = self.deployments.get(project_id) or []
        return self._refresh(deployments[-1]) if deployments else None

    async def get_deployment(self, deployment_id: str) -> dict[str, Any] | None:
        self.calls.append(('get_deployment', deployment_id))
        for deployments in self.deployments.values():
            for deployment in deployments:
                if deployment['uid'] == deployment_id:
                    return self._refresh(deployment)
        return None

    async def upsert_env(
        self, project_id: str, variables: Sequence[Mapping[str, Any]],
    ) -> None:
        self.calls.append(('upsert_env', project_id))
        target = self.env.setdefault(project_id, {})
        for item in variables:
            target[item['key']] = item['value']

    async def create_deployment(
        self,
        name: str,
        *,
        project_id: str,
        repo: str | None = None,
        ref: str = 'main',
        redeploy_of: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(('create_deployment', project_id))
        uid = f'dpl_{next(self._deployment_ids)}'
        deployment = {'uid': uid, 'name': name, 'readyState': 'BUILDING'}
        self._deployment_pending[uid] = self.deployment_polls
        self.deployments.setdefault(project_id, []).append(deployment)
        return dict(deployment)

    async def delete(self, resource_id: str) -> bool:
        deleted = await super().delete(resource_id)
        self.deployments.pop(resource_id, None)
        return deleted


class InMemoryVoiceAgentProvider(InMemoryResourceProvider):
    provider = 'elevenlabs'
    id_prefix = 'agent'

    def _build(self, resource_id: str, params: Mapping[str, Any]) -> dict[str, Any]:
        return {
            'id': resource_id,
            'agent_id': resource_id,
            'name': params['name'],
            'webhook_url': params.get('webhook_url'),
        }


class InMemoryEndpointProber:
    """Answers ``default_status`` unless a URL has a scripted sequence."""

    def __init__(self, *, default_status: int | None = 200) -> None:
        self.default_status = default_status
        self.scripted: dict[str, list[int | None]] = {}
        self.calls: list[str] = []

    def script(self, url: str, statuses: Sequence[int | None]) -> None:
        self.scripted[url] = list(statuses)

    async def probe(self, url: str) -> int | None:
        self.calls.append(url)
        queue = self.scripted.get(url)
        if queue:
            return queue.pop(0)
        return self.default_status


def build_inmemory_provider_clients(**overrides: Any) -> ProviderClients:
    """ProviderClients wired entirely to in-memory fakes.

    Keyword overrides replace individual fields (``storage=...``).
    """
    clients: dict[str, Any] = {
        'storage': InMemoryStorageProvider(),
        'repository': InMemoryRepositoryProvider(),
        'hosting': InMemoryHostingProvider(),
        'setup_agent': InMemoryVoiceAgentProvider(provider='sandra'),
        'insights_agent': InMemoryVoiceAgentProvider(provider='kira'),
        'prober': InMemoryEndpointProber(),
    }
    clients.update(overrides)
    return ProviderClients(**clients)


def provider_error(provider: str, status_code: int, message: str = 'boom') -> ProviderAPIError:
    """Convenience for scripting provider failures in tests."""
    return ProviderAPIError(provider, status_code, message)
