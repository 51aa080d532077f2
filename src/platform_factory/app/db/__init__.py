"""Supabase persistence for provisioning runs and locks."""

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .postgrest import PostgrestClient
from .run_lock import SupabaseRunLock
from .run_store import SupabaseRunStore

__all__ = [
    "PostgrestClient",
    "SupabaseAuthError",
    "SupabaseConflictError",
    "SupabaseError",
    "SupabaseNotFoundError",
    "SupabaseRunLock",
    "SupabaseRunStore",
]
