from __future__ import annotations


class ProvisioningError(RuntimeError):
    """Base class for every failure surfaced by a provisioning workflow."""

    def __init__(self, reason: str, *, step: str = "") -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(normalized_reason)
        self.reason = normalized_reason
        self.step = step


class ValidationError(ProvisioningError):
    """Raised when a request body is malformed or incomplete."""


class ConflictError(ProvisioningError):
    """Raised when a claim with the target or staging name already exists."""


class ObjectStoreError(ProvisioningError):
    """Raised when listing the source bucket/prefix fails."""


class ResourceError(ProvisioningError):
    """Raised when a call against the cluster resource manager fails."""

    def __init__(self, reason: str, *, operation: str = "", status: int | None = None, step: str = "") -> None:
        super().__init__(reason, step=step)
        self.operation = operation
        self.status = status


class ResourceNotFoundError(ResourceError):
    pass


class ResourceConflictError(ResourceError):
    pass


class BoundTimeoutError(ProvisioningError):
    """Raised when a claim does not reach Bound within its schedule."""


class JobFailureError(ProvisioningError):
    pass


class JobTimeoutError(ProvisioningError):
    pass


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
