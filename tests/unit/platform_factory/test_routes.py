"""Provisioning and cron route tests through the FastAPI app."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from platform_factory.app.main import create_app
from platform_factory.app.providers.inmemory import provider_error
from platform_factory.app.settings import FactorySettings

BODY = {
    'platform_name': 'Acme Interviews',
    'company_name': 'Acme Corp',
    'contact_email': 'ops@acme.test',
}
CRON_SECRET = 'cron-secret-for-tests'


@pytest.fixture
def app():
    return create_app(FactorySettings(cron_secret=CRON_SECRET))


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def deps(app):
    return app.state.deps


def _advance_until_terminal(client, slug, max_steps=40):
    for _ in range(max_steps):
        resp = client.post(f'/api/v1/provision/{slug}/advance')
        assert resp.status_code == 200
        if resp.json()['state'] in ('COMPLETE', 'FAILED'):
            return resp.json()
    raise AssertionError(f'{slug} never finished')


# ── Create ────────────────────────────────────────────────────────────


def test_create_returns_201_with_slug(client):
    resp = client.post('/api/v1/provision', json=BODY)

    assert resp.status_code == 201
    assert resp.json() == {'slug': 'acme-interviews', 'state': 'INIT'}


def test_create_with_explicit_slug(client):
    resp = client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})

    assert resp.json()['slug'] == 'acme'


def test_second_create_for_active_slug_conflicts(client):
    client.post('/api/v1/provision', json=BODY)

    resp = client.post('/api/v1/provision', json=BODY)

    assert resp.status_code == 409
    assert resp.json()['error'] == 'active_run_conflict'
    assert resp.json()['state'] == 'INIT'


def test_unsluggable_name_is_422(client):
    resp = client.post('/api/v1/provision', json={**BODY, 'platform_name': '???'})

    assert resp.status_code == 422
    assert resp.json()['error'] == 'invalid_slug'


@pytest.mark.parametrize('override', [
    {'platform_name': ''},
    {'contact_email': 'not-an-email'},
    {'slug': 'x' * 41},
])
def test_invalid_body_is_422(client, override):
    resp = client.post('/api/v1/provision', json={**BODY, **override})

    assert resp.status_code == 422


def test_missing_fields_is_422(client):
    resp = client.post('/api/v1/provision', json={'platform_name': 'Acme'})

    assert resp.status_code == 422


# ── Advance and status ────────────────────────────────────────────────


def test_advance_performs_one_step(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})

    resp = client.post('/api/v1/provision/acme/advance')

    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'advanced'
    assert body['previous_state'] == 'INIT'
    assert body['state'] == 'SUPABASE_READY'


def test_advance_to_complete_and_status_is_redacted(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})

    final = _advance_until_terminal(client, 'acme')
    status = client.get('/api/v1/provision/acme/status').json()

    assert final['state'] == 'COMPLETE'
    assert status['phase'] == 'complete'
    assert status['metadata']['supabase_service_role_key'] == '[REDACTED]'
    assert status['metadata']['webhook_secret'] == '[REDACTED]'
    assert status['metadata']['vercel_url'] == 'https://cx-acme.vercel.app'


def test_advance_completed_run_is_noop(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    _advance_until_terminal(client, 'acme')

    resp = client.post('/api/v1/provision/acme/advance')

    assert resp.json()['status'] == 'noop'


@pytest.mark.parametrize('method, path', [
    ('post', '/api/v1/provision/nobody/advance'),
    ('get', '/api/v1/provision/nobody/status'),
    ('post', '/api/v1/provision/nobody/retry'),
    ('post', '/api/v1/provision/nobody/cleanup'),
    ('delete', '/api/v1/provision/nobody'),
])
def test_unknown_slug_is_404(client, method, path):
    resp = getattr(client, method)(path)

    assert resp.status_code == 404
    assert resp.json()['error'] == 'run_not_found'


# ── Retry, cleanup, delete ────────────────────────────────────────────


def test_retry_requires_failed_run(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})

    resp = client.post('/api/v1/provision/acme/retry')

    assert resp.status_code == 409
    assert resp.json()['error'] == 'retry_not_allowed'


def test_retry_failed_run(client, deps):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    deps.provider_clients.storage.create_error = provider_error('supabase', 400, 'bad region')
    failed = client.post('/api/v1/provision/acme/advance').json()
    assert failed['state'] == 'FAILED'
    assert failed['error']['code'] == 'supabase_api_error'

    deps.provider_clients.storage.create_error = None
    resp = client.post('/api/v1/provision/acme/retry')

    assert resp.status_code == 200
    assert resp.json() == {'slug': 'acme', 'state': 'INIT', 'attempt': 2}


def test_cleanup_resets_to_init(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    _advance_until_terminal(client, 'acme')

    resp = client.post('/api/v1/provision/acme/cleanup')

    body = resp.json()
    assert resp.status_code == 200
    assert body['ok'] is True
    assert body['state'] == 'INIT'
    assert [r['resource'] for r in body['resources']] == [
        'kira', 'sandra', 'vercel', 'github', 'supabase',
    ]


def test_cleanup_of_locked_run_is_409(client, deps):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    asyncio.run(deps.run_lock.acquire('acme', owner='advance-elsewhere', lease_seconds=60))

    resp = client.post('/api/v1/provision/acme/cleanup')

    assert resp.status_code == 409
    assert resp.json()['error'] == 'run_locked'


def test_delete_removes_run(client):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    _advance_until_terminal(client, 'acme')

    resp = client.delete('/api/v1/provision/acme')

    assert resp.status_code == 200
    assert resp.json()['record_deleted'] is True
    assert client.get('/api/v1/provision/acme/status').status_code == 404


# ── Cron ──────────────────────────────────────────────────────────────


def test_cron_requires_secret(client):
    assert client.post('/api/v1/cron/provision').status_code == 401
    resp = client.post(
        '/api/v1/cron/provision', headers={'Authorization': 'Bearer wrong'},
    )
    assert resp.status_code == 401
    assert resp.json()['error'] == 'unauthorized'


@pytest.mark.parametrize('method', ['post', 'get'])
def test_cron_sweep_advances_active_runs(client, method):
    client.post('/api/v1/provision', json={**BODY, 'slug': 'acme'})
    client.post('/api/v1/provision', json={**BODY, 'slug': 'globex'})

    resp = getattr(client, method)(
        '/api/v1/cron/provision',
        headers={'Authorization': f'Bearer {CRON_SECRET}'},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body['processed'] == 2
    assert body['running'] == 2
    assert body['stale'] == []
    status = client.get('/api/v1/provision/acme/status').json()
    assert status['state'] == 'SUPABASE_READY'


def test_cron_without_configured_secret_is_open():
    client = TestClient(create_app(FactorySettings()))

    resp = client.post('/api/v1/cron/provision')

    assert resp.status_code == 200
    assert resp.json()['processed'] == 0


def test_cron_health(client):
    resp = client.get('/api/v1/cron/health')

    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'
