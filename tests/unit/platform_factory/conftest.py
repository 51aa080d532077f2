"""Shared fixtures for platform factory tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from platform_factory.app.inmemory import InMemoryRunLock, InMemoryRunStore
from platform_factory.app.providers.inmemory import build_inmemory_provider_clients
from platform_factory.app.provisioning.cleanup import RunCleaner
from platform_factory.app.provisioning.driver import AdvanceStatus, ProvisioningDriver
from platform_factory.app.provisioning.service import ProvisioningService
from platform_factory.app.provisioning.states import ProvisionState

TENANT = {
    'platform_name': 'Acme Interviews',
    'company_name': 'Acme Corp',
    'contact_email': 'ops@acme.test',
}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryRunStore:
    return InMemoryRunStore(clock=clock)


@pytest.fixture
def run_lock(clock) -> InMemoryRunLock:
    return InMemoryRunLock(clock=clock)


@pytest.fixture
def clients():
    return build_inmemory_provider_clients()


@pytest.fixture
def driver(store, clients, run_lock, clock) -> ProvisioningDriver:
    return ProvisioningDriver(
        run_store=store,
        clients=clients,
        run_lock=run_lock,
        clock=clock,
        rng=lambda: 0.5,
    )


@pytest.fixture
def cleaner(store, clients, run_lock, clock) -> RunCleaner:
    return RunCleaner(run_store=store, clients=clients, run_lock=run_lock, clock=clock)


@pytest.fixture
def service(store, driver, cleaner, clock) -> ProvisioningService:
    return ProvisioningService(run_store=store, driver=driver, cleaner=cleaner, clock=clock)


async def _drive(driver: ProvisioningDriver, slug: str, *, max_steps: int = 60) -> list:
    """Call advance until the run is terminal; return every outcome."""
    outcomes = []
    for _ in range(max_steps):
        outcome = await driver.advance(slug)
        outcomes.append(outcome)
        if outcome.state in (ProvisionState.COMPLETE, ProvisionState.FAILED):
            return outcomes
        assert outcome.status is not AdvanceStatus.NOOP
    raise AssertionError(f'{slug} did not reach a terminal state in {max_steps} steps')


@pytest.fixture
def drive():
    return _drive


@pytest.fixture
def tenant() -> dict[str, str]:
    return dict(TENANT)
