"""Error types raised by the driver, cleanup and service layers."""

from __future__ import annotations


class RunNotFound(LookupError):
    """Raised when no provisioning run exists for a slug."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f'no provisioning run for {slug!r}')


class RunLocked(Exception):
    """Raised when another invocation currently holds the run's lock."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f'provisioning run {slug!r} is locked by another invocation')


class ActiveRunConflict(Exception):
    """Raised when a slug already has an active (non-terminal) run."""

    def __init__(self, slug: str, state: str) -> None:
        self.slug = slug
        self.state = state
        super().__init__(
            f'slug {slug!r} already has an active provisioning run in {state}'
        )


class RetryNotAllowed(Exception):
    """Raised when an operator retry targets a run that has not failed."""

    def __init__(self, slug: str, state: str) -> None:
        self.slug = slug
        self.state = state
        super().__init__(f'run {slug!r} is {state}; only FAILED runs can be retried')


class DispatchError(RuntimeError):
    """A state has no step handler. Always a programming error."""

    def __init__(self, state: str, detail: str = '') -> None:
        self.state = state
        super().__init__(f'no step handler for state {state}' + (f': {detail}' if detail else ''))


class MalformedRun(ValueError):
    """A persisted run row whose state is not a known provisioning state."""

    def __init__(self, slug: str, raw_state: object) -> None:
        self.slug = slug
        self.raw_state = raw_state
        super().__init__(f'run {slug!r} has unknown provisioning state {raw_state!r}')
