"""Supabase-backed per-slug lease lock.

One row per held lock in public.provision_run_locks, keyed by slug. A
lease past its ``expires_at`` is deleted before the insert, so a crashed
holder blocks the slug for at most one lease.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from ..provisioning.models import utcnow
from .errors import SupabaseConflictError
from .postgrest import PostgrestClient

logger = logging.getLogger(__name__)

TABLE = "provision_run_locks"


class SupabaseRunLock:
    """Satisfies the ``RunLock`` protocol from ``protocols.py``."""

    def __init__(
        self,
        client: PostgrestClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._clock = clock

    async def acquire(self, slug: str, *, owner: str, lease_seconds: int) -> bool:
        now = self._clock()
        await self._client.delete(
            TABLE, {"slug": slug, "expires_at": ("lt", now.isoformat())},
        )
        try:
            await self._client.insert(TABLE, {
                "slug": slug,
                "owner": owner,
                "acquired_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=lease_seconds)).isoformat(),
            })
        except SupabaseConflictError:
            logger.info("Lock for %s is held by another worker", slug, extra={"slug": slug})
            return False
        return True

    async def release(self, slug: str, *, owner: str) -> None:
        await self._client.delete(TABLE, {"slug": slug, "owner": owner})
