"""Error taxonomy for lifecycle requests and provisioning operations.

Errors raised here fall into two groups:
1. Request errors (validation, conflict, not found) that are surfaced to the
   caller before or instead of any external mutation
2. Provisioning errors (external failure, timeout, requires replace) that are
   raised while driving a sub-resource and recorded on the deployment

Races on existing/missing resources never appear here - they are absorbed by
the idempotency classifier and treated as success.
"""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for all control plane errors."""

    pass


class SpecValidationError(ControlPlaneError):
    """Raised when a desired configuration is malformed or inconsistent.

    Always raised before any external call is issued.
    """

    pass


class ConflictError(ControlPlaneError):
    """Raised on a stale version write or an illegal lifecycle transition."""

    pass


class DeploymentNotFoundError(ControlPlaneError):
    """Raised when a deployment id does not resolve to a stored record."""

    pass


class ExternalFailure(ControlPlaneError):
    """Raised when a provisioning API fails in a way that is not a benign race.

    Carries enough context to record the failing sub-resource on the
    deployment.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        kind: str = "",
        key: str = "",
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.kind = kind
        self.key = key
        self.code = code


class OperationTimeoutError(ControlPlaneError):
    """Raised when an operation exhausts its polling budget.

    Distinct from ExternalFailure: the operation may still complete remotely,
    it was simply not observed to do so within the attempt budget.
    """

    def __init__(self, message: str, *, operation: str = "", key: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.key = key
        self.attempts = attempts


class RequiresReplaceError(ControlPlaneError):
    """Raised by an update when an immutable field changed."""

    def __init__(self, key: str, fields: list[str]) -> None:
        super().__init__(f"Immutable fields changed for {key}: {', '.join(fields)}")
        self.key = key
        self.fields = fields
