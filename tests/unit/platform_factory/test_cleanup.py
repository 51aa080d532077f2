"""Tests for cleanup (reset to INIT) and platform teardown."""

from __future__ import annotations

import pytest

from platform_factory.app.providers.http import ProviderNotFoundError
from platform_factory.app.providers.inmemory import provider_error
from platform_factory.app.provisioning.cleanup import CLEANUP_ORDER, delete_resources
from platform_factory.app.provisioning.errors import RunLocked, RunNotFound
from platform_factory.app.provisioning.states import ProvisionState

S = ProvisionState


async def _provisioned(store, driver, drive, tenant, slug='acme'):
    await store.create(slug, S.INIT, tenant)
    await drive(driver, slug)
    return await store.get(slug)


def test_cleanup_order_is_reverse_pipeline_order():
    assert [owned.resource for owned in CLEANUP_ORDER] == [
        'kira', 'sandra', 'vercel', 'github', 'supabase',
    ]


@pytest.mark.asyncio
async def test_cleanup_deletes_everything_in_reverse_order(
    store, driver, drive, cleaner, clients, tenant,
):
    run = await _provisioned(store, driver, drive, tenant)

    report = await cleaner.cleanup('acme')

    assert report.ok
    assert [e.resource for e in report.entries] == [
        'kira', 'sandra', 'vercel', 'github', 'supabase',
    ]
    assert all(e.outcome == 'deleted' for e in report.entries)
    assert clients.repository.calls[-1] == ('delete', run.metadata['github_repo'])
    for provider in clients:
        assert provider.resources == {}, provider.provider


@pytest.mark.asyncio
async def test_cleanup_resets_to_init_keeping_tenant_metadata(
    store, driver, drive, cleaner, tenant,
):
    await _provisioned(store, driver, drive, tenant)

    report = await cleaner.cleanup('acme')

    run = await store.get('acme')
    assert report.state is S.INIT
    assert run.state is S.INIT
    assert dict(run.metadata) == tenant
    assert run.last_error is None
    assert run.wait_count == 0
    assert run.attempt == 1


@pytest.mark.asyncio
async def test_cleanup_is_best_effort(store, driver, drive, cleaner, clients, tenant):
    await _provisioned(store, driver, drive, tenant)
    clients.hosting.delete_error = provider_error('vercel', 500, 'upstream down')

    report = await cleaner.cleanup('acme')

    outcomes = {e.resource: e.outcome for e in report.entries}
    assert outcomes == {
        'kira': 'deleted',
        'sandra': 'deleted',
        'vercel': 'error',
        'github': 'deleted',
        'supabase': 'deleted',
    }
    assert not report.ok
    assert 'upstream down' in report.errors[0].error
    assert (await store.get('acme')).state is S.INIT


@pytest.mark.asyncio
async def test_already_deleted_resources_are_not_errors(
    store, driver, drive, cleaner, clients, tenant,
):
    run = await _provisioned(store, driver, drive, tenant)
    clients.storage.remove_out_of_band(run.metadata['supabase_project_ref'])
    clients.repository.delete_error = ProviderNotFoundError('github')

    report = await cleaner.cleanup('acme')

    outcomes = {e.resource: e.outcome for e in report.entries}
    assert outcomes['supabase'] == 'already_gone'
    assert outcomes['github'] == 'already_gone'
    assert report.ok


@pytest.mark.asyncio
async def test_cleanup_of_active_run_goes_through_failed(store, driver, cleaner, tenant):
    await store.create('acme', S.INIT, tenant)
    for _ in range(3):
        await driver.advance('acme')
    assert (await store.get('acme')).state is S.GITHUB_READY

    report = await cleaner.cleanup('acme')

    assert [e.resource for e in report.entries] == ['github', 'supabase']
    run = await store.get('acme')
    assert run.state is S.INIT
    assert dict(run.metadata) == tenant


@pytest.mark.asyncio
async def test_cleanup_sets_attempt_when_given(store, cleaner, tenant):
    await store.create('acme', S.INIT, tenant)

    report = await cleaner.cleanup('acme', attempt=4)

    assert report.entries == ()
    assert (await store.get('acme')).attempt == 4


@pytest.mark.asyncio
async def test_cleanup_refuses_locked_run(store, cleaner, clients, run_lock, tenant):
    await store.create('acme', S.FAILED, {**tenant, 'supabase_project_ref': 'ref_1'})
    await run_lock.acquire('acme', owner='advance-1', lease_seconds=60)

    with pytest.raises(RunLocked):
        await cleaner.cleanup('acme')

    assert clients.storage.calls == []
    assert (await store.get('acme')).state is S.FAILED


@pytest.mark.asyncio
async def test_cleanup_unknown_slug(cleaner):
    with pytest.raises(RunNotFound):
        await cleaner.cleanup('nobody')


@pytest.mark.asyncio
async def test_delete_platform_removes_record(store, driver, drive, cleaner, clients, tenant):
    await _provisioned(store, driver, drive, tenant)

    report = await cleaner.delete_platform('acme')

    assert report.record_deleted
    assert report.state is None
    assert len(report.entries) == 5
    assert await store.get('acme') is None
    assert report.to_dict()['resources'][0] == {
        'resource': 'kira',
        'resource_id': 'agent_1',
        'outcome': 'deleted',
    }


@pytest.mark.asyncio
async def test_delete_resources_skips_unrecorded_ids(clients):
    entries = await delete_resources({'github_repo': 'tenant-org/cx-gone'}, clients)

    assert len(entries) == 1
    assert entries[0].outcome == 'already_gone'
    assert clients.storage.calls == []
