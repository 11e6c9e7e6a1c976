"""Backend adapters implementing the canonical deployment operations."""

from .argocd import ArgoCDAdapter
from .argocd_rest import ArgoCDRestAdapter
from .base import CancelSignal, DMSAdapter, check_cancelled, operation
from .crossplane import CrossplaneAdapter
from .flux import FluxAdapter
from .helm import HelmAdapter

__all__ = [
    "ArgoCDAdapter",
    "ArgoCDRestAdapter",
    "CancelSignal",
    "CrossplaneAdapter",
    "DMSAdapter",
    "FluxAdapter",
    "HelmAdapter",
    "check_cancelled",
    "operation",
]
