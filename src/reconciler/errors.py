"""Error taxonomy for the reconciler.

Load-time errors (CycleError, UnresolvedReferenceError) are raised before any
lock is taken or provider is called. LockContention is recoverable by
retrying later. Provider errors are classified by the adapter as transient
(retried with backoff) or permanent (fails the resource and blocks its
dependents).
"""

from typing import Optional


class ReconcilerError(Exception):
    """Base class for reconciler errors."""


class LoadError(ReconcilerError):
    """Declarations cannot be turned into a dependency graph."""


class CycleError(LoadError):
    """Declared dependencies form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnresolvedReferenceError(LoadError):
    """A declaration references a resource or attribute that does not exist."""

    def __init__(self, resource_id: str, target: str, reason: str = 'undeclared resource'):
        self.resource_id = resource_id
        self.target = target
        super().__init__(
            f"Resource '{resource_id}' references '{target}' ({reason})"
        )


class StateError(ReconcilerError):
    """State snapshot is unreadable or incompatible."""


class LockContention(ReconcilerError):
    """State lock is held by another plan/apply cycle."""

    def __init__(self, holder=None, path=None):
        self.holder = holder
        self.path = path
        if holder is not None:
            detail = (f"held by {holder.who} (pid {holder.pid}) for "
                      f"'{holder.operation}' since {holder.created_display}, lock id {holder.id}")
        else:
            detail = 'held by another process'
        where = f" {path}" if path else ''
        super().__init__(f"State lock{where} is {detail}")


class ProviderError(ReconcilerError):
    """Provider call failed."""

    transient = False
    attempts = 0

    def __init__(self, message: str, resource_id: Optional[str] = None):
        self.message = message
        self.resource_id = resource_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.resource_id:
            return f"{self.resource_id}: {self.message}"
        return self.message


class TransientProviderError(ProviderError):
    """Failure likely to succeed on retry (rate limit, timeout)."""

    transient = True


class PermanentProviderError(ProviderError):
    """Failure that will not resolve through retry (invalid configuration)."""
