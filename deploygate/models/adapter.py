"""Adapter-level Pydantic models: capabilities, filters, registry metadata."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .deployments import DeploymentStatus


class Capability(str, Enum):
    """Operations a backend declares support for."""

    PACKAGE_MANAGEMENT = "package-management"
    DEPLOYMENT_LIFECYCLE = "deployment-lifecycle"
    ROLLBACK = "rollback"
    SCALING = "scaling"
    GITOPS = "gitops"
    HEALTH_CHECKS = "health-checks"
    METRICS = "metrics"


class Filter(BaseModel):
    """Query parameters for list operations. A limit of 0 means unbounded."""

    namespace: str = Field(default="", description="Namespace to match")
    status: Optional[DeploymentStatus] = Field(default=None, description="Status to match")
    labels: dict[str, str] = Field(default_factory=dict, description="Label equality selector")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific filter fields",
    )
    limit: int = Field(default=0, ge=0, description="Maximum results, 0 for all")
    offset: int = Field(default=0, ge=0, description="Results to skip")


class AdapterInfo(BaseModel):
    """Registry metadata for one adapter."""

    name: str = Field(description="Adapter name")
    version: str = Field(description="Backend version the adapter targets")
    capabilities: list[Capability] = Field(default_factory=list, description="Declared capabilities")
    enabled: bool = Field(default=True, description="Whether the adapter is selectable")
    default: bool = Field(default=False, description="Whether this is the default adapter")
    healthy: bool = Field(default=False, description="Result of the last health check")
    health_error: Optional[str] = Field(default=None, description="Last health check error")
    registered_at: datetime = Field(description="Registration timestamp")
    last_health_check: Optional[datetime] = Field(default=None, description="Last health check time")
    config: dict[str, Any] = Field(default_factory=dict, description="Registration config snapshot")
