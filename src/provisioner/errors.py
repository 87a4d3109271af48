"""Error taxonomy for graph building, planning and execution.

Every error carries the logical name of the offending resource (when there
is one) and the kind of operation that was being attempted, so that partial
result reports can point at the exact node that failed.

Declaration-time errors (CycleError, UnknownReferenceError, ...) abort
planning before any provider call is made. Provider errors are per node:
transient ones are retried, fatal ones block only the failed node's
dependents.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.operation = operation

    def __str__(self) -> str:
        context = []
        if self.resource:
            context.append(f"resource={self.resource}")
        if self.operation:
            context.append(f"operation={self.operation}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


# =============================================================================
# Declaration-time errors
# =============================================================================


class DeclarationError(ProvisioningError):
    """Raised when a declaration set cannot be turned into a graph."""

    pass


class CycleError(DeclarationError):
    """Raised when declarations form a dependency cycle."""

    def __init__(self, cycle: list[str], operation: str = "declare") -> None:
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            resource=cycle[0] if cycle else None,
            operation=operation,
        )
        self.cycle = cycle


class UnknownReferenceError(DeclarationError):
    """Raised when a reference names a resource or attribute that is not declared."""

    pass


class DuplicateResourceError(DeclarationError):
    """Raised when two declarations share a logical name."""

    pass


class UnknownKindError(DeclarationError):
    """Raised when no provider schema exists for a declared kind."""

    pass


class ProtectedResourceError(DeclarationError):
    """Raised when a plan would delete or replace a protected resource."""

    pass


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(ProvisioningError):
    """Raised by a provider when an operation does not succeed."""

    pass


class TransientProviderError(ProviderError):
    """Retryable provider failure (throttling, timeouts, 5xx)."""

    pass


class FatalProviderError(ProviderError):
    """Non-retryable provider failure (invalid configuration, 4xx)."""

    pass


class UnresolvedReferenceError(ProvisioningError):
    """Raised at apply time when a referenced output is still missing."""

    pass


# =============================================================================
# State errors
# =============================================================================


class StateError(ProvisioningError):
    """Base class for state storage errors."""

    pass


class StateLoadError(StateError):
    """Raised when a persisted snapshot cannot be read."""

    pass


class StateConflictError(StateError):
    """Raised when the persisted snapshot differs from the one a plan was built on."""

    pass
