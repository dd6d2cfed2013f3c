"""Exceptions raised by the store platform.

Each class carries the HTTP status the API layer maps it to. Errors raised
inside a detached workflow never reach a caller; they are recorded on the
store instead.
"""

__all__ = [
    "StorePlatformError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "QuotaExceededError",
    "ConcurrencyLimitError",
    "ExternalToolError",
    "ClusterUnavailableError",
    "ProvisioningTimeoutError",
]


class StorePlatformError(Exception):
    """Generic base exception used for this service."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StorePlatformError):
    """Raised for a bad store name or an unsupported engine."""

    status_code = 400


class NotFoundError(StorePlatformError):
    """Raised when a store does not exist (or was already deleted)."""

    status_code = 404


class ConflictError(StorePlatformError):
    """Raised for a duplicate name or a delete against a deleting store."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """Raised when a status change is not an edge of the lifecycle table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class QuotaExceededError(StorePlatformError):
    """Raised when the per-owner or global store quota is reached."""

    status_code = 429


class ConcurrencyLimitError(StorePlatformError):
    """Raised when no admission slot is free for a new provisioning workflow."""

    status_code = 429


class ExternalToolError(StorePlatformError):
    """Raised when helm or the cluster API reports a failure."""

    status_code = 502


class ClusterUnavailableError(ExternalToolError):
    """Raised when the control plane cannot be reached.

    Distinct from an empty result: callers can tell "resource absent" from
    "cannot tell".
    """

    status_code = 503


class ProvisioningTimeoutError(StorePlatformError):
    """Raised inside the provisioning workflow when readiness never arrives."""

    status_code = 504
