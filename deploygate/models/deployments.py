"""Deployment-related Pydantic models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DeploymentStatus(str, Enum):
    """Canonical deployment status enumeration."""

    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLING_BACK = "rolling-back"
    DELETING = "deleting"


class Deployment(BaseModel):
    """A running instance of a workload under management."""

    id: str = Field(description="Backend-scoped deployment ID, derived from the resource name")
    name: str = Field(description="Display name")
    package_id: str = Field(default="", description="Reference to the deployed package")
    namespace: str = Field(default="", description="Target namespace")
    status: DeploymentStatus = Field(description="Canonical status")
    version: int = Field(default=0, ge=0, description="Revision counter")
    description: str = Field(default="", description="Free-text description")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(default=None, description="Last update timestamp")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific fields",
    )


class DeploymentRequest(BaseModel):
    """Payload for creating a deployment."""

    name: str = Field(description="Deployment name")
    namespace: str = Field(default="", description="Target namespace")
    package_id: str = Field(default="", description="Package or chart reference")
    description: str = Field(default="", description="Free-text description")
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Configuration overrides",
    )
    labels: dict[str, str] = Field(default_factory=dict, description="Labels to apply")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific required and optional fields",
    )


class DeploymentUpdate(BaseModel):
    """Payload for mutating a deployment."""

    description: str = Field(default="", description="Free-text description")
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Configuration overrides",
    )
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific fields",
    )


class DeploymentCondition(BaseModel):
    """A single observed condition of a deployment."""

    type: str = Field(description="Condition type")
    status: str = Field(description="True, False or Unknown")
    reason: str = Field(default="", description="Machine-readable reason")
    message: str = Field(default="", description="Human-readable message")
    last_transition_time: Optional[datetime] = Field(
        default=None,
        description="When the condition last changed",
    )


class DeploymentStatusDetail(BaseModel):
    """Detailed status of a deployment."""

    deployment_id: str = Field(description="Deployment ID")
    status: DeploymentStatus = Field(description="Canonical status")
    message: str = Field(default="", description="Human-readable status message")
    progress: int = Field(default=0, ge=0, le=100, description="Coarse progress estimate")
    conditions: list[DeploymentCondition] = Field(
        default_factory=list,
        description="Observed conditions",
    )
    updated_at: Optional[datetime] = Field(default=None, description="Last update timestamp")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific fields",
    )


class DeploymentRevision(BaseModel):
    """One past state of a deployment."""

    revision: int = Field(ge=0, description="Revision number, equal to its index in the history")
    version: str = Field(default="", description="Version label (chart version, Git revision)")
    deployed_at: Optional[datetime] = Field(default=None, description="Deployment timestamp")
    status: DeploymentStatus = Field(description="Canonical status of this revision")
    description: str = Field(default="", description="Free-text description")


class DeploymentHistory(BaseModel):
    """Ordered revision list, oldest first."""

    deployment_id: str = Field(description="Deployment ID")
    revisions: list[DeploymentRevision] = Field(
        default_factory=list,
        description="Revisions, oldest first",
    )


class LogOptions(BaseModel):
    """Options for log retrieval."""

    container: Optional[str] = Field(default=None, description="Container name")
    tail_lines: Optional[int] = Field(default=None, ge=0, description="Number of lines from the end")
    since: Optional[datetime] = Field(default=None, description="Only return logs after this time")
    follow: bool = Field(default=False, description="Stream logs (unsupported by all adapters)")
