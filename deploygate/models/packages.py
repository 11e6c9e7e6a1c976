"""Deployment package Pydantic models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class DeploymentPackage(BaseModel):
    """A deployable artifact reference."""

    id: str = Field(description="Deterministic package ID")
    name: str = Field(description="Package name")
    version: str = Field(default="", description="Package version or source revision")
    package_type: str = Field(description="Package type tag, e.g. git-repo or helm-chart")
    description: str = Field(default="", description="Free-text description")
    uploaded_at: Optional[datetime] = Field(default=None, description="Upload or creation timestamp")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific fields",
    )


class DeploymentPackageUpload(BaseModel):
    """Payload for registering or uploading a package."""

    name: str = Field(description="Package name")
    version: str = Field(default="", description="Package version")
    description: str = Field(default="", description="Free-text description")
    content: Optional[bytes] = Field(default=None, description="Packaged artifact bytes")
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific fields",
    )
