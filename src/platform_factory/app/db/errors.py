"""Run-store error hierarchy for PostgREST calls.

Kept free of httpx types so callers never hold a response object (or the
service-role key it was sent with).
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SupabaseError(Exception):
    """Base error for the factory's own Supabase (run store) requests."""

    status_code: int
    message: str
    code: str | None = None
    details: str | None = None

    def __str__(self) -> str:
        bits = [f"SupabaseError(status={self.status_code})", self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.details:
            bits.append(f"details={self.details}")
        return " ".join(bits)


class SupabaseAuthError(SupabaseError):
    """401/403: bad service-role key or row-level security rejection."""


class SupabaseNotFoundError(SupabaseError):
    """404: missing table or route (usually an unapplied migration)."""


class SupabaseConflictError(SupabaseError):
    """409: primary-key or unique violation."""


def error_class_for(status_code: int) -> type[SupabaseError]:
    if status_code in (401, 403):
        return SupabaseAuthError
    if status_code == 404:
        return SupabaseNotFoundError
    if status_code == 409:
        return SupabaseConflictError
    return SupabaseError
