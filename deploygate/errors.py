"""
Error taxonomy shared by every adapter.

Each exception carries a ``kind`` string so callers can branch on the
category without importing every subclass.
"""

from typing import Optional


class DMSError(Exception):
    """Base class for all adapter errors."""

    kind = "internal"


class NotFoundError(DMSError):
    """The backend has no matching resource."""

    kind = "not-found"


class DeploymentNotFoundError(NotFoundError):
    """No deployment with the requested ID."""

    def __init__(self, deployment_id: str):
        super().__init__(f"deployment not found: {deployment_id}")
        self.deployment_id = deployment_id


class PackageNotFoundError(NotFoundError):
    """No package with the requested ID."""

    def __init__(self, package_id: str):
        super().__init__(f"deployment package not found: {package_id}")
        self.package_id = package_id


class ResourceNotFoundError(NotFoundError):
    """The cluster answered 404 for a custom resource."""


class ValidationError(DMSError):
    """Malformed input detected before any backend call."""

    kind = "validation"


class InvalidNameError(ValidationError):
    """Resource name does not match the platform naming grammar."""


class InvalidPathError(ValidationError):
    """Source path is absolute or escapes its subtree."""


class UnsupportedOperationError(DMSError):
    """The operation has no meaningful translation on this backend."""

    kind = "unsupported"


class RevisionNotFoundError(DMSError):
    """Requested rollback revision is outside the recorded history."""

    kind = "revision-not-found"

    def __init__(self, deployment_id: str, revision: int):
        super().__init__(
            f"revision {revision} not found in history of deployment {deployment_id}"
        )
        self.deployment_id = deployment_id
        self.revision = revision


class BackendError(DMSError):
    """The backend call itself failed. The cause is chained with ``raise ... from``."""

    kind = "backend"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        prefix = " ".join(p for p in (operation, resource_id) if p)
        super().__init__(f"{prefix}: {message}" if prefix else message)
        self.operation = operation
        self.resource_id = resource_id


class OperationCancelledError(DMSError):
    """The caller's cancellation signal fired."""

    kind = "cancelled"

    def __init__(self, operation: str = "operation"):
        super().__init__(f"{operation} cancelled")
        self.operation = operation
