"""Slug derivation, deterministic resource names, and metadata redaction."""

from __future__ import annotations

import re
from typing import Any, Mapping

SLUG_MAX_LENGTH = 40
RESOURCE_NAME_PREFIX = 'cx'
REDACTED = '[REDACTED]'

# Tenant-identifying keys that survive cleanup.
PRESERVED_METADATA_KEYS = frozenset({
    'platform_name',
    'company_name',
    'contact_email',
})

_SENSITIVE_KEY_FRAGMENTS = ('key', 'secret', 'password', 'token')
_NON_ALNUM = re.compile(r'[^a-z0-9]+')
_VALID_SLUG = re.compile(r'^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$')


class InvalidSlug(ValueError):
    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f'cannot derive a tenant slug from {value!r}')


def slugify(value: str) -> str:
    """Lowercase, collapse non-alphanumerics to ``-``, trim, cap at 40 chars."""
    slug = _NON_ALNUM.sub('-', value.strip().lower()).strip('-')
    slug = slug[:SLUG_MAX_LENGTH].rstrip('-')
    if not slug:
        raise InvalidSlug(value)
    return slug


def is_valid_slug(value: str) -> bool:
    return len(value) <= SLUG_MAX_LENGTH and bool(_VALID_SLUG.match(value))


def resource_name(slug: str, suffix: str | None = None) -> str:
    """Deterministic provider-side name owned by ``slug``.

    ``resource_name('acme')`` is ``cx-acme``; agents carry a suffix,
    ``resource_name('acme', 'kira')`` is ``cx-acme-kira``.
    """
    name = f'{RESOURCE_NAME_PREFIX}-{slug}'
    return f'{name}-{suffix}' if suffix else name


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy safe to show outside the service."""
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if is_sensitive_key(key):
            redacted[key] = REDACTED
        elif isinstance(value, Mapping):
            redacted[key] = redact_metadata(value)
        else:
            redacted[key] = value
    return redacted


def preserved_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in metadata.items()
        if key in PRESERVED_METADATA_KEYS
    }
