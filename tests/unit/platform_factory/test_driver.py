"""Tests for the provisioning driver.

Validates:
  1. A tenant provisions end to end, one step per advance call
  2. States are visited strictly in pipeline order
  3. Waiting never rewrites metadata; only wait bookkeeping changes
  4. Transient provider errors wait, permanent ones fail with kind=provider
  5. Unexpected exceptions and dispatch gaps fail with kind=orchestrator
  6. A held lock short-circuits before any provider call
  7. Terminal runs are a no-op; unknown slugs raise RunNotFound
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from platform_factory.app.inmemory import InMemoryRunStore
from platform_factory.app.providers.http import ProviderAPIError
from platform_factory.app.providers.inmemory import (
    InMemoryStorageProvider,
    build_inmemory_provider_clients,
    provider_error,
)
from platform_factory.app.provisioning import driver as driver_module
from platform_factory.app.provisioning.dispatcher import StepBinding
from platform_factory.app.provisioning.driver import AdvanceStatus, ProvisioningDriver
from platform_factory.app.provisioning.errors import DispatchError, MalformedRun, RunNotFound
from platform_factory.app.provisioning.models import RunError, RunErrorKind, RunPatch, StepResult
from platform_factory.app.provisioning.states import (
    PIPELINE_SEQUENCE,
    ProvisionState,
    pipeline_index,
)

S = ProvisionState


def _driver(store, clients, clock, **kwargs) -> ProvisioningDriver:
    return ProvisioningDriver(
        run_store=store, clients=clients, clock=clock, rng=lambda: 0.5, **kwargs,
    )


class CorruptedRunStore(InMemoryRunStore):
    """Serves one slug as if its persisted state were unreadable."""

    def __init__(self, corrupted, raw_state, **kwargs):
        super().__init__(**kwargs)
        self._corrupted = corrupted
        self._raw_state = raw_state

    async def get(self, slug):
        if slug == self._corrupted:
            raise MalformedRun(slug, self._raw_state)
        return await super().get(slug)

    async def mark_failed(self, slug, error):
        self._corrupted = None
        return await super().mark_failed(slug, error)


# ── End to end ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_acme_provisions_to_complete(store, clients, driver, drive, tenant):
    await store.create('acme', S.INIT, tenant)

    outcomes = await drive(driver, 'acme')

    run = await store.get('acme')
    assert run.state is S.COMPLETE
    assert run.last_error is None
    assert len(outcomes) == 13
    assert [o.status for o in outcomes].count(AdvanceStatus.WAITING) == 1

    md = run.metadata
    assert md['platform_name'] == 'Acme Interviews'
    assert md['supabase_project_ref'] == 'ref_1'
    assert md['supabase_url'] == 'https://ref_1.supabase.co'
    assert md['supabase_anon_key'] == 'anon-ref_1'
    assert md['github_repo'] == 'tenant-org/cx-acme'
    assert md['github_commit_sha']
    assert md['vercel_project_id'] == 'prj_1'
    assert md['vercel_url'] == 'https://cx-acme.vercel.app'
    assert md['vercel_deployment_id'] == 'dpl_1'
    assert md['sandra_agent_id']
    assert md['kira_agent_id']
    assert md['webhook_url'] == 'https://cx-acme.vercel.app/api/webhooks/elevenlabs'
    assert md['finalize_deployment_id'] == 'dpl_2'
    assert md['finalized_at']

    env = clients.hosting.env['prj_1']
    assert env['NEXT_PUBLIC_SUPABASE_URL'] == 'https://ref_1.supabase.co'
    assert env['NEXT_PUBLIC_ELEVENLABS_AGENT_ID'] == md['sandra_agent_id']
    assert env['NEXT_PUBLIC_KIRA_AGENT_ID'] == md['kira_agent_id']
    assert env['ELEVENLABS_WEBHOOK_SECRET'] == md['webhook_secret']


@pytest.mark.asyncio
async def test_states_are_visited_in_pipeline_order(store, driver, drive, tenant):
    await store.create('acme', S.INIT, tenant)

    outcomes = await drive(driver, 'acme')

    visited = []
    for outcome in outcomes:
        if not visited or visited[-1] is not outcome.state:
            visited.append(outcome.state)
    # INIT enters SUPABASE_CREATING and executes in the same cycle.
    assert visited == list(PIPELINE_SEQUENCE[2:])
    indexes = [pipeline_index(o.state) for o in outcomes]
    assert indexes == sorted(indexes)


@pytest.mark.asyncio
async def test_each_resource_created_exactly_once(store, clients, driver, drive, tenant):
    await store.create('acme', S.INIT, tenant)

    await drive(driver, 'acme')

    for provider in clients:
        assert provider.call_count('create') == 1, provider.provider


@pytest.mark.asyncio
async def test_first_advance_enters_creating_and_executes(store, clients, driver, tenant, clock):
    await store.create('acme', S.INIT, tenant)

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.ADVANCED
    assert outcome.previous_state is S.INIT
    assert outcome.state is S.SUPABASE_READY
    assert outcome.step == 'supabase.execute'
    assert clients.storage.calls == [('find_by_name', 'cx-acme'), ('create', 'cx-acme')]
    run = await store.get('acme')
    assert run.state_entered_at == clock.now


# ── Waiting ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_wait_converges_without_rewriting_metadata(clock, tenant):
    store = InMemoryRunStore(clock=clock)
    clients = build_inmemory_provider_clients(storage=InMemoryStorageProvider(pending_polls=3))
    driver = _driver(store, clients, clock)
    await store.create('acme', S.INIT, tenant)

    await driver.advance('acme')
    assert store.metadata_writes['acme'] == 1
    metadata_before = dict((await store.get('acme')).metadata)

    for expected_waits in (1, 2, 3):
        outcome = await driver.advance('acme')
        assert outcome.status is AdvanceStatus.WAITING
        assert outcome.state is S.SUPABASE_READY
        run = await store.get('acme')
        assert run.wait_count == expected_waits
        assert dict(run.metadata) == metadata_before
        assert store.metadata_writes['acme'] == 1

    outcome = await driver.advance('acme')
    assert outcome.status is AdvanceStatus.ADVANCED
    assert outcome.state is S.GITHUB_CREATING
    run = await store.get('acme')
    assert run.wait_count == 0
    assert run.next_attempt_at is None
    assert store.metadata_writes['acme'] == 2


@pytest.mark.asyncio
async def test_wait_schedules_next_attempt_with_resource_backoff(store, driver, tenant, clock):
    await store.create('acme', S.INIT, tenant)
    for _ in range(5):
        await driver.advance('acme')
    assert (await store.get('acme')).state is S.VERCEL_READY

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.WAITING
    assert 'deployment triggered' in outcome.reason
    run = await store.get('acme')
    # vercel: base 10s, first wait, rng 0.5 -> 5 + 2.5
    assert run.next_attempt_at == clock.now + timedelta(seconds=7.5)


# ── Failure policy ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_permanent_provider_error_fails_run(clock, tenant):
    store = InMemoryRunStore(clock=clock)
    clients = build_inmemory_provider_clients(
        storage=InMemoryStorageProvider(create_error=provider_error('supabase', 403, 'forbidden')),
    )
    driver = _driver(store, clients, clock)
    await store.create('acme', S.INIT, tenant)

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.FAILED
    run = await store.get('acme')
    assert run.state is S.FAILED
    assert run.last_error.kind is RunErrorKind.PROVIDER
    assert run.last_error.code == 'supabase_api_error'
    assert run.last_error.state == 'SUPABASE_CREATING'


@pytest.mark.asyncio
async def test_transient_provider_error_waits(clock, tenant):
    store = InMemoryRunStore(clock=clock)
    storage = InMemoryStorageProvider(create_error=provider_error('supabase', 503, 'unavailable'))
    clients = build_inmemory_provider_clients(storage=storage)
    driver = _driver(store, clients, clock)
    await store.create('acme', S.INIT, tenant)

    outcome = await driver.advance('acme')
    assert outcome.status is AdvanceStatus.WAITING
    assert (await store.get('acme')).state is S.SUPABASE_CREATING

    storage.create_error = None
    outcome = await driver.advance('acme')
    assert outcome.state is S.SUPABASE_READY
    assert storage.call_count('create') == 2


@pytest.mark.asyncio
async def test_unexpected_exception_is_orchestrator_failure(clock, tenant):
    store = InMemoryRunStore(clock=clock)
    clients = build_inmemory_provider_clients(
        storage=InMemoryStorageProvider(create_error=RuntimeError('bug')),
    )
    driver = _driver(store, clients, clock)
    await store.create('acme', S.INIT, tenant)

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.FAILED
    assert outcome.error.kind is RunErrorKind.ORCHESTRATOR
    assert outcome.error.code == 'unhandled_exception'
    assert 'RuntimeError' in outcome.error.message


@pytest.mark.asyncio
async def test_provider_error_escaping_a_step_is_provider_failure(store, driver, tenant, monkeypatch):
    async def handler(ctx):
        raise ProviderAPIError('github', 422, 'name already exists on this account')

    monkeypatch.setattr(
        driver_module, 'resolve_step',
        lambda state, metadata=None: StepBinding('github.execute', 'github', handler, S.GITHUB_READY),
    )
    await store.create('acme', S.GITHUB_CREATING, tenant)

    outcome = await driver.advance('acme')

    assert outcome.error.kind is RunErrorKind.PROVIDER
    assert outcome.error.code == 'github_api_error'
    assert outcome.error.state == 'GITHUB_CREATING'


@pytest.mark.asyncio
async def test_dispatch_error_is_orchestrator_failure(store, driver, tenant, monkeypatch):
    def missing(state, metadata=None):
        raise DispatchError(state.value, 'no handler')

    monkeypatch.setattr(driver_module, 'resolve_step', missing)
    await store.create('acme', S.GITHUB_READY, tenant)

    outcome = await driver.advance('acme')

    run = await store.get('acme')
    assert run.state is S.FAILED
    assert run.last_error.kind is RunErrorKind.ORCHESTRATOR
    assert run.last_error.code == 'dispatch_error'
    assert outcome.status is AdvanceStatus.FAILED


@pytest.mark.asyncio
async def test_illegal_advance_target_is_orchestrator_failure(store, driver, tenant, monkeypatch):
    async def handler(ctx):
        return StepResult.advance({'github_repo': 'tenant-org/cx-acme'})

    monkeypatch.setattr(
        driver_module, 'resolve_step',
        lambda state, metadata=None: StepBinding('github.execute', 'github', handler, S.COMPLETE),
    )
    await store.create('acme', S.GITHUB_CREATING, tenant)

    outcome = await driver.advance('acme')

    run = await store.get('acme')
    assert run.state is S.FAILED
    assert run.last_error.code == 'invalid_transition'
    assert 'github_repo' not in run.metadata
    assert outcome.error.kind is RunErrorKind.ORCHESTRATOR


@pytest.mark.asyncio
async def test_resource_deleted_out_of_band_waits_then_fails(store, clients, driver, tenant, clock):
    await store.create('acme', S.INIT, tenant)
    for _ in range(3):
        await driver.advance('acme')
    run = await store.get('acme')
    assert run.state is S.GITHUB_READY
    clients.repository.remove_out_of_band(run.metadata['github_repo'])

    outcome = await driver.advance('acme')
    assert outcome.status is AdvanceStatus.WAITING

    clock.advance(minutes=11)
    outcome = await driver.advance('acme')
    assert outcome.status is AdvanceStatus.FAILED
    assert outcome.error.code == 'resource_missing'


@pytest.mark.asyncio
async def test_unknown_stored_state_fails_run_instead_of_raising(clients, run_lock, tenant, clock):
    store = CorruptedRunStore('acme', 'SUPABASE_PENDING', clock=clock)
    await store.create('acme', S.SUPABASE_READY, tenant)
    driver = _driver(store, clients, clock, run_lock=run_lock)

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.FAILED
    assert outcome.state is S.FAILED
    assert outcome.error.kind is RunErrorKind.ORCHESTRATOR
    assert outcome.error.code == 'malformed_state'
    assert outcome.error.state == 'SUPABASE_PENDING'
    run = await store.get('acme')
    assert run.state is S.FAILED
    assert run.last_error == outcome.error
    assert run.metadata == tenant
    assert all(not client.calls for client in clients)

    again = await driver.advance('acme')
    assert again.status is AdvanceStatus.NOOP


# ── Locking and terminal runs ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_locked_run_makes_no_provider_calls(store, clients, driver, run_lock, tenant, clock):
    await store.create('acme', S.INIT, tenant)
    assert await run_lock.acquire('acme', owner='other-worker', lease_seconds=60)

    outcome = await driver.advance('acme')

    assert outcome.status is AdvanceStatus.LOCKED
    assert outcome.state is S.INIT
    assert clients.storage.calls == []
    assert run_lock.holder('acme') == 'other-worker'

    clock.advance(seconds=61)
    outcome = await driver.advance('acme')
    assert outcome.status is AdvanceStatus.ADVANCED
    assert run_lock.holder('acme') is None


@pytest.mark.asyncio
async def test_lock_released_after_failure(clock, run_lock, tenant):
    store = InMemoryRunStore(clock=clock)
    clients = build_inmemory_provider_clients(
        storage=InMemoryStorageProvider(create_error=RuntimeError('bug')),
    )
    driver = _driver(store, clients, clock, run_lock=run_lock)
    await store.create('acme', S.INIT, tenant)

    await driver.advance('acme')

    assert run_lock.holder('acme') is None


@pytest.mark.asyncio
async def test_terminal_run_is_noop(store, clients, driver, tenant):
    await store.create('done', S.COMPLETE, tenant)

    outcome = await driver.advance('done')

    assert outcome.status is AdvanceStatus.NOOP
    assert outcome.state is S.COMPLETE
    assert all(not provider.calls for provider in clients)


@pytest.mark.asyncio
async def test_unknown_slug_raises(driver):
    with pytest.raises(RunNotFound):
        await driver.advance('nobody')


@pytest.mark.asyncio
@pytest.mark.parametrize('write', [
    lambda store: store.update('ghost', RunPatch(wait_count=1)),
    lambda store: store.reset('ghost', state=S.INIT, metadata={}),
    lambda store: store.mark_failed('ghost', RunError(RunErrorKind.OPERATOR, 'x', 'x')),
], ids=['update', 'reset', 'mark_failed'])
async def test_inmemory_writes_to_missing_run_raise_run_not_found(clock, write):
    with pytest.raises(RunNotFound):
        await write(InMemoryRunStore(clock=clock))


@pytest.mark.asyncio
async def test_outcome_to_dict(store, driver, tenant):
    await store.create('acme', S.INIT, tenant)

    payload = (await driver.advance('acme')).to_dict()

    assert payload == {
        'slug': 'acme',
        'state': 'SUPABASE_READY',
        'status': 'advanced',
        'step': 'supabase.execute',
        'previous_state': 'INIT',
    }
