"""Supabase-backed provisioning run store.

Implements the RunStore protocol against the public.provision_runs table
(see migrations/001_provision_runs.sql). The slug is the primary key, so
a second ``create`` for the same tenant surfaces as SupabaseConflictError.

``update`` is read-merge-write: the caller holds the per-slug lock, so no
other writer can interleave between the read and the PATCH.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from ..provisioning.errors import MalformedRun, RunNotFound
from ..provisioning.models import (
    ProvisioningRun,
    RunError,
    RunPatch,
    apply_patch,
    utcnow,
)
from ..provisioning.states import TERMINAL_STATES, ProvisionState
from .postgrest import PostgrestClient

logger = logging.getLogger(__name__)

TABLE = "provision_runs"

_TERMINAL_VALUES: tuple[str, ...] = tuple(sorted(s.value for s in TERMINAL_STATES))
_KNOWN_VALUES: tuple[str, ...] = tuple(s.value for s in ProvisionState)


def _mutable_columns(row: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k not in ("slug", "created_at")}


class SupabaseRunStore:
    """Provisioning run persistence backed by Supabase PostgREST.

    Satisfies the ``RunStore`` protocol from ``protocols.py``.
    """

    def __init__(
        self,
        client: PostgrestClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._clock = clock

    async def get(self, slug: str) -> ProvisioningRun | None:
        rows = await self._client.select(TABLE, {"slug": slug}, limit=1)
        return ProvisioningRun.from_row(rows[0]) if rows else None

    async def create(
        self,
        slug: str,
        initial_state: ProvisionState,
        metadata: Mapping[str, Any],
    ) -> ProvisioningRun:
        now = self._clock()
        run = ProvisioningRun(
            slug=slug,
            state=initial_state,
            metadata=dict(metadata),
            state_entered_at=now,
            created_at=now,
            updated_at=now,
        )
        rows = await self._client.insert(TABLE, run.to_row())
        return ProvisioningRun.from_row(rows[0]) if rows else run

    async def _write(self, run: ProvisioningRun) -> ProvisioningRun:
        rows = await self._client.update(
            TABLE, {"slug": run.slug}, _mutable_columns(run.to_row()),
        )
        if not rows:
            raise RunNotFound(run.slug)
        return ProvisioningRun.from_row(rows[0])

    async def update(self, slug: str, patch: RunPatch) -> ProvisioningRun:
        current = await self.get(slug)
        if current is None:
            raise RunNotFound(slug)
        return await self._write(apply_patch(current, patch, now=self._clock()))

    async def reset(
        self,
        slug: str,
        *,
        state: ProvisionState,
        metadata: Mapping[str, Any],
        attempt: int | None = None,
        last_error: RunError | None = None,
    ) -> ProvisioningRun:
        current = await self.get(slug)
        if current is None:
            raise RunNotFound(slug)
        now = self._clock()
        return await self._write(current.with_changes(
            state=state,
            metadata=dict(metadata),
            last_error=last_error,
            attempt=attempt if attempt is not None else current.attempt,
            wait_count=0,
            next_attempt_at=None,
            state_entered_at=now,
            updated_at=now,
        ))

    async def mark_failed(self, slug: str, error: RunError) -> ProvisioningRun:
        now = self._clock().isoformat()
        rows = await self._client.update(TABLE, {"slug": slug}, {
            "state": ProvisionState.FAILED.value,
            "last_error": error.to_dict(),
            "next_attempt_at": None,
            "state_entered_at": now,
            "updated_at": now,
        })
        if not rows:
            raise RunNotFound(slug)
        return ProvisioningRun.from_row(rows[0])

    async def delete(self, slug: str) -> bool:
        rows = await self._client.delete(TABLE, {"slug": slug})
        return bool(rows)

    async def list_active(self) -> list[ProvisioningRun]:
        rows = await self._client.select(
            TABLE,
            {"state": ("not.in", _TERMINAL_VALUES)},
            order="created_at.asc",
        )
        runs: list[ProvisioningRun] = []
        for row in rows:
            try:
                runs.append(ProvisioningRun.from_row(row))
            except MalformedRun as exc:
                logger.warning(
                    "Skipping run %s with unknown state %r",
                    exc.slug,
                    exc.raw_state,
                    extra={"slug": exc.slug},
                )
        return runs

    async def list_malformed(self) -> list[MalformedRun]:
        rows = await self._client.select(
            TABLE,
            {"state": ("not.in", _KNOWN_VALUES)},
            columns="slug,state",
            order="created_at.asc",
        )
        return [MalformedRun(str(row["slug"]), row.get("state")) for row in rows]
