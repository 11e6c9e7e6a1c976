"""Backend clients consumed by the adapters."""

from .helm import HelmClient, HelmCommandError, HelmRelease, HelmRevision, ReleaseNotFoundError
from .kubernetes import ResourceClient, ResourceKind, load_api_client

__all__ = [
    "HelmClient",
    "HelmCommandError",
    "HelmRelease",
    "HelmRevision",
    "ReleaseNotFoundError",
    "ResourceClient",
    "ResourceKind",
    "load_api_client",
]
