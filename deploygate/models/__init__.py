"""Canonical data model."""

from .adapter import AdapterInfo, Capability, Filter
from .deployments import (
    Deployment,
    DeploymentCondition,
    DeploymentHistory,
    DeploymentRequest,
    DeploymentRevision,
    DeploymentStatus,
    DeploymentStatusDetail,
    DeploymentUpdate,
    LogOptions,
)
from .packages import DeploymentPackage, DeploymentPackageUpload

__all__ = [
    "AdapterInfo",
    "Capability",
    "Deployment",
    "DeploymentCondition",
    "DeploymentHistory",
    "DeploymentPackage",
    "DeploymentPackageUpload",
    "DeploymentRequest",
    "DeploymentRevision",
    "DeploymentStatus",
    "DeploymentStatusDetail",
    "DeploymentUpdate",
    "Filter",
    "LogOptions",
]
