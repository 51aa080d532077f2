"""Tests for the provisioning service rules: one active run per slug,
re-provisioning and operator retries."""

from __future__ import annotations

import pytest

from platform_factory.app.providers.inmemory import provider_error
from platform_factory.app.provisioning.errors import (
    ActiveRunConflict,
    RetryNotAllowed,
    RunNotFound,
)
from platform_factory.app.provisioning.naming import REDACTED, InvalidSlug
from platform_factory.app.provisioning.states import ProvisionState

S = ProvisionState


async def _start(service, **overrides):
    params = {
        'platform_name': 'Acme Interviews',
        'company_name': 'Acme Corp',
        'contact_email': 'ops@acme.test',
    }
    params.update(overrides)
    return await service.start_run(**params)


@pytest.mark.asyncio
async def test_start_run_derives_slug_from_platform_name(service, tenant):
    run = await _start(service)

    assert run.slug == 'acme-interviews'
    assert run.state is S.INIT
    assert dict(run.metadata) == tenant
    assert run.attempt == 1


@pytest.mark.asyncio
async def test_start_run_accepts_explicit_slug(service):
    run = await _start(service, slug='Acme')

    assert run.slug == 'acme'


@pytest.mark.asyncio
async def test_start_run_rejects_unsluggable_name(service):
    with pytest.raises(InvalidSlug):
        await _start(service, platform_name='!!!')


@pytest.mark.asyncio
async def test_second_start_on_active_slug_conflicts(service, driver):
    await _start(service, slug='acme')
    await driver.advance('acme')

    with pytest.raises(ActiveRunConflict) as exc_info:
        await _start(service, slug='acme')

    assert exc_info.value.state == 'SUPABASE_READY'


@pytest.mark.asyncio
async def test_reprovisioning_completed_slug_cleans_up_first(service, driver, drive, clients):
    await _start(service, slug='acme')
    await drive(driver, 'acme')

    run = await _start(service, slug='acme', company_name='Acme Holdings')

    assert run.state is S.INIT
    assert run.attempt == 2
    assert run.metadata['company_name'] == 'Acme Holdings'
    assert 'supabase_project_ref' not in run.metadata
    assert clients.storage.resources == {}

    outcomes = await drive(driver, 'acme')
    assert outcomes[-1].state is S.COMPLETE


@pytest.mark.asyncio
async def test_retry_requires_failed_run(service):
    await _start(service, slug='acme')

    with pytest.raises(RetryNotAllowed):
        await service.retry('acme')


@pytest.mark.asyncio
async def test_retry_failed_run_restarts_from_init(service, driver, drive, clients):
    await _start(service, slug='acme')
    clients.storage.create_error = provider_error('supabase', 402, 'billing limit')
    await driver.advance('acme')
    assert (await service.get_run('acme')).state is S.FAILED

    clients.storage.create_error = None
    run = await service.retry('acme')

    assert run.state is S.INIT
    assert run.attempt == 2
    assert run.last_error is None
    outcomes = await drive(driver, 'acme')
    assert outcomes[-1].state is S.COMPLETE


@pytest.mark.asyncio
async def test_status_redacts_secrets(service, driver, drive):
    await _start(service, slug='acme')
    await drive(driver, 'acme')

    status = await service.get_status('acme')

    assert status['state'] == 'COMPLETE'
    assert status['phase'] == 'complete'
    assert status['progress'] == {'step': 12, 'total': 12}
    assert status['error'] is None
    md = status['metadata']
    assert md['supabase_anon_key'] == REDACTED
    assert md['supabase_service_role_key'] == REDACTED
    assert md['webhook_secret'] == REDACTED
    assert md['github_repo'] == 'tenant-org/cx-acme'


@pytest.mark.asyncio
async def test_status_of_failed_run_carries_error(service, driver, clients):
    await _start(service, slug='acme')
    clients.storage.create_error = provider_error('supabase', 400)
    await driver.advance('acme')

    status = await service.get_status('acme')

    assert status['phase'] == 'failed'
    assert status['progress']['step'] is None
    assert status['error']['code'] == 'supabase_api_error'
    assert status['error']['kind'] == 'provider'


@pytest.mark.asyncio
async def test_unknown_slug(service):
    with pytest.raises(RunNotFound):
        await service.get_status('nobody')
    with pytest.raises(RunNotFound):
        await service.advance('nobody')
