"""Stale provisioning-run detector.

Scans active runs for those that have been provisioning too long overall,
or sitting in one state too long, and reports them for alerting. Unlike
the driver it never transitions a run: a slow provider is not a failure,
and an operator decides whether to retry or clean up.

Usage::

    detector = StaleRunDetector(max_age_minutes=60, max_state_minutes=20)
    report = detector.sweep(active_runs, now=datetime.now(UTC))
    for entry in report.stale:
        await alert_sink.send(entry.run.slug, entry.message, entry.fields())
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from ..provisioning.models import ProvisioningRun, require_aware_datetime


class StaleReason(str, enum.Enum):
    RUN_AGE = 'run_age'
    STATE_AGE = 'state_age'


@dataclass(frozen=True, slots=True)
class StaleRunEntry:
    """A single stale run and why it was flagged."""

    run: ProvisioningRun
    reason: StaleReason
    elapsed_minutes: float
    threshold_minutes: int

    @property
    def message(self) -> str:
        if self.reason is StaleReason.RUN_AGE:
            return (
                f'Provisioning for {self.run.slug} has been running '
                f'{self.elapsed_minutes:.0f} min (limit {self.threshold_minutes} min)'
            )
        return (
            f'{self.run.slug} has been in {self.run.state.value} for '
            f'{self.elapsed_minutes:.0f} min (limit {self.threshold_minutes} min)'
        )

    def fields(self) -> dict[str, Any]:
        return {
            'state': self.run.state.value,
            'reason': self.reason.value,
            'elapsed_minutes': round(self.elapsed_minutes, 1),
            'threshold_minutes': self.threshold_minutes,
            'attempt': self.run.attempt,
            'wait_count': self.run.wait_count,
        }


@dataclass(frozen=True, slots=True)
class StaleSweepReport:
    """Result of a stale-run sweep.

    Attributes:
        stale: Runs over one of the thresholds.
        healthy: Active runs within both thresholds.
        skipped: Terminal runs, which are never evaluated.
        sweep_ts: Timestamp of the sweep.
    """

    stale: tuple[StaleRunEntry, ...]
    healthy: tuple[ProvisioningRun, ...]
    skipped: tuple[ProvisioningRun, ...]
    sweep_ts: datetime

    @property
    def stale_count(self) -> int:
        return len(self.stale)

    @property
    def total_scanned(self) -> int:
        return len(self.stale) + len(self.healthy) + len(self.skipped)

    @property
    def stale_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.stale:
            state = entry.run.state.value
            counts[state] = counts.get(state, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            'stale': [
                {'slug': entry.run.slug, **entry.fields()} for entry in self.stale
            ],
            'healthy': len(self.healthy),
            'skipped': len(self.skipped),
            'sweep_ts': self.sweep_ts.isoformat(),
        }


class StaleRunDetector:
    """Flags active runs whose total or per-state age is over a threshold.

    Args:
        max_age_minutes: Limit on time since the run was created.
        max_state_minutes: Limit on time spent in the current state.
    """

    def __init__(self, *, max_age_minutes: int = 60, max_state_minutes: int = 20) -> None:
        if max_age_minutes <= 0 or max_state_minutes <= 0:
            raise ValueError('stale thresholds must be positive')
        self._max_age = max_age_minutes
        self._max_state = max_state_minutes

    def sweep(self, runs: Sequence[ProvisioningRun], *, now: datetime) -> StaleSweepReport:
        require_aware_datetime(now)
        stale: list[StaleRunEntry] = []
        healthy: list[ProvisioningRun] = []
        skipped: list[ProvisioningRun] = []

        for run in runs:
            if not run.is_active:
                skipped.append(run)
                continue
            entry = self._check(run, now)
            if entry is None:
                healthy.append(run)
            else:
                stale.append(entry)

        return StaleSweepReport(
            stale=tuple(stale),
            healthy=tuple(healthy),
            skipped=tuple(skipped),
            sweep_ts=now,
        )

    def _check(self, run: ProvisioningRun, now: datetime) -> StaleRunEntry | None:
        # Whole-run age wins when both limits are exceeded.
        run_age = _minutes(now - run.created_at)
        if run_age > self._max_age:
            return StaleRunEntry(run, StaleReason.RUN_AGE, run_age, self._max_age)
        state_age = _minutes(now - run.state_entered_at)
        if state_age > self._max_state:
            return StaleRunEntry(run, StaleReason.STATE_AGE, state_age, self._max_state)
        return None


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60.0
