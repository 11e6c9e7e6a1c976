"""
Crossplane adapter.

Packages are cluster-scoped Compositions; deployments are cluster-scoped
Configuration packages. Crossplane rolls revisions forward through package
references, so scaling and rollback are not offered here.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from ..clients.kubernetes import ResourceClient, ResourceKind
from ..config import CrossplaneSettings, KubernetesSettings
from ..errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    ResourceNotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from ..models import (
    Capability,
    Deployment,
    DeploymentCondition,
    DeploymentHistory,
    DeploymentPackage,
    DeploymentPackageUpload,
    DeploymentRequest,
    DeploymentRevision,
    DeploymentStatusDetail,
    DeploymentUpdate,
    Filter,
    LogOptions,
)
from ..unstructured import nested_list, nested_str, parse_timestamp, set_nested
from .base import CancelSignal, ClientFactory, DMSAdapter, operation
from .common import (
    DESCRIPTION_ANNOTATION,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    build_label_selector,
    ext_str,
    require_ext,
    require_non_negative,
    validate_name,
)
from .status import crossplane_progress, crossplane_status, parse_conditions

logger = logging.getLogger(__name__)

COMPOSITIONS = ResourceKind("apiextensions.crossplane.io", "v1", "compositions", namespaced=False)
CONFIGURATIONS = ResourceKind("pkg.crossplane.io", "v1", "configurations", namespaced=False)
PROVIDERS = ResourceKind("pkg.crossplane.io", "v1", "providers", namespaced=False)

PACKAGE_TYPE = "crossplane-composition"

_TRAILING_INT = re.compile(r"(\d+)$")


def current_revision(configuration: dict) -> int:
    """Trailing integer of ``status.currentRevision``, or 1 when there is none."""
    match = _TRAILING_INT.search(nested_str(configuration, "status", "currentRevision"))
    return int(match.group(1)) if match else 1


def configuration_conditions(configuration: dict) -> list[DeploymentCondition]:
    conditions = parse_conditions(nested_list(configuration, "status", "conditions"))
    if conditions:
        return conditions
    return [
        DeploymentCondition(
            type="Ready",
            status="Unknown",
            reason="Unknown",
            message="No conditions available",
        )
    ]


class CrossplaneAdapter(DMSAdapter[ResourceClient]):
    """Deployments as Crossplane Configuration packages."""

    name = "crossplane"
    version = "1.14"

    def __init__(
        self,
        settings: Optional[CrossplaneSettings] = None,
        kubernetes: Optional[KubernetesSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(client_factory)
        self.settings = settings or CrossplaneSettings()
        self.kubernetes = kubernetes or KubernetesSettings()

    async def _default_client(self) -> ResourceClient:
        return await asyncio.to_thread(ResourceClient.from_settings, self.kubernetes)

    def capabilities(self) -> list[Capability]:
        return [
            Capability.PACKAGE_MANAGEMENT,
            Capability.DEPLOYMENT_LIFECYCLE,
            Capability.HEALTH_CHECKS,
            Capability.GITOPS,
        ]

    async def _get_configuration(self, api: ResourceClient, deployment_id: str) -> dict:
        try:
            return await api.get(CONFIGURATIONS, deployment_id)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e

    # Packages

    @operation("list_packages")
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]:
        api = await self._ensure_client(cancel)
        compositions = await api.list(COMPOSITIONS)
        return self._page([self._to_package(c) for c in compositions], filter)

    @operation("get_package")
    async def get_package(
        self, package_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        api = await self._ensure_client(cancel)
        try:
            composition = await api.get(COMPOSITIONS, package_id)
        except ResourceNotFoundError as e:
            raise PackageNotFoundError(package_id) from e
        return self._to_package(composition)

    @operation("upload_package")
    async def upload_package(
        self, upload: DeploymentPackageUpload, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        """Return a reference to an existing Composition named by ``crossplane.compositionRef``."""
        self._require(upload, "package")
        composition_ref = require_ext(upload.extensions, "crossplane.compositionRef")
        return DeploymentPackage(
            id=composition_ref,
            name=upload.name,
            version=upload.version,
            package_type=PACKAGE_TYPE,
            description=upload.description,
            uploaded_at=datetime.now(timezone.utc),
            extensions={"crossplane.compositionRef": composition_ref},
        )

    @operation("delete_package")
    async def delete_package(self, package_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        raise UnsupportedOperationError(
            "crossplane adapter does not support package deletion: "
            "composition deletion must be done through GitOps"
        )

    # Deployments

    @operation("list_deployments")
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]:
        api = await self._ensure_client(cancel)
        selector = build_label_selector(filter.labels) if filter else None
        configurations = await api.list(CONFIGURATIONS, label_selector=selector)
        deployments = [self._to_deployment(c) for c in configurations]
        deployments = [d for d in deployments if self._matches(d, filter)]
        return self._page(deployments, filter)

    @operation("get_deployment")
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        api = await self._ensure_client(cancel)
        return self._to_deployment(await self._get_configuration(api, deployment_id))

    @operation("create_deployment")
    async def create_deployment(
        self, request: DeploymentRequest, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        self._require(request, "deployment request")
        validate_name(request.name)
        package_ref = ext_str(request.extensions, "crossplane.package", request.package_id)
        if not package_ref:
            raise ValidationError("package reference is required (package_id or crossplane.package extension)")

        labels = {**request.labels, MANAGED_BY_LABEL: MANAGED_BY, "app.kubernetes.io/name": request.name}
        metadata: dict[str, Any] = {"name": request.name, "labels": labels}
        if request.description:
            metadata["annotations"] = {DESCRIPTION_ANNOTATION: request.description}
        body = {
            "apiVersion": CONFIGURATIONS.api_version,
            "kind": "Configuration",
            "metadata": metadata,
            "spec": {
                "package": package_ref,
                "revisionActivationPolicy": ext_str(
                    request.extensions,
                    "crossplane.revisionActivationPolicy",
                    self.settings.revision_activation_policy,
                ),
            },
        }

        api = await self._ensure_client(cancel)
        created = await api.create(CONFIGURATIONS, body)
        logger.info("Created Crossplane Configuration %s from %s", request.name, package_ref)
        return self._to_deployment(created)

    @operation("update_deployment")
    async def update_deployment(
        self,
        deployment_id: str,
        update: DeploymentUpdate,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> Deployment:
        self._require(update, "deployment update")
        api = await self._ensure_client(cancel)
        configuration = await self._get_configuration(api, deployment_id)

        package_ref = ext_str(update.extensions, "crossplane.package")
        if package_ref:
            set_nested(configuration, package_ref, "spec", "package")
        policy = ext_str(update.extensions, "crossplane.revisionActivationPolicy")
        if policy:
            set_nested(configuration, policy, "spec", "revisionActivationPolicy")
        if update.description:
            set_nested(configuration, update.description, "metadata", "annotations", DESCRIPTION_ANNOTATION)

        try:
            updated = await api.update(CONFIGURATIONS, deployment_id, configuration)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e
        logger.info("Updated Crossplane Configuration %s", deployment_id)
        return self._to_deployment(updated)

    @operation("delete_deployment")
    async def delete_deployment(self, deployment_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        try:
            await api.delete(CONFIGURATIONS, deployment_id)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e
        logger.info("Deleted Crossplane Configuration %s", deployment_id)

    @operation("scale_deployment")
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("replicas", replicas)
        raise UnsupportedOperationError(
            "crossplane adapter does not support scaling: scaling must be done through composition updates"
        )

    @operation("rollback_deployment")
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("revision", revision)
        raise UnsupportedOperationError(
            "crossplane adapter does not support rollback: rollback must be done through package version changes"
        )

    @operation("get_deployment_status")
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail:
        api = await self._ensure_client(cancel)
        configuration = await self._get_configuration(api, deployment_id)
        deployment = self._to_deployment(configuration)
        return DeploymentStatusDetail(
            deployment_id=deployment.id,
            status=deployment.status,
            message=deployment.description,
            progress=crossplane_progress(deployment.status),
            conditions=configuration_conditions(configuration),
            updated_at=deployment.updated_at,
            extensions=deployment.extensions,
        )

    @operation("get_deployment_history")
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory:
        """Crossplane keeps revisions as package revisions; only the current one is reported."""
        api = await self._ensure_client(cancel)
        configuration = await self._get_configuration(api, deployment_id)
        deployment = self._to_deployment(configuration)
        return DeploymentHistory(
            deployment_id=deployment_id,
            revisions=[
                DeploymentRevision(
                    revision=0,
                    version=nested_str(configuration, "status", "currentRevision")
                    or str(deployment.version),
                    deployed_at=deployment.updated_at,
                    status=deployment.status,
                    description=deployment.description,
                )
            ],
        )

    @operation("get_deployment_logs")
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes:
        api = await self._ensure_client(cancel)
        deployment = self._to_deployment(await self._get_configuration(api, deployment_id))
        info = {
            "deploymentId": deployment.id,
            "name": deployment.name,
            "status": deployment.status.value,
            "version": deployment.version,
            "updatedAt": deployment.updated_at.isoformat() if deployment.updated_at else None,
            "extensions": deployment.extensions,
        }
        return json.dumps(info, indent=2, default=str).encode()

    @operation("health")
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        try:
            await api.list(PROVIDERS, limit=1)
        except ResourceNotFoundError as e:
            raise BackendError("Crossplane provider resource is not installed", "health", self.name) from e

    # Mapping

    def _to_package(self, composition: dict) -> DeploymentPackage:
        name = nested_str(composition, "metadata", "name")
        composite_kind = nested_str(composition, "spec", "compositeTypeRef", "kind")
        return DeploymentPackage(
            id=name,
            name=name,
            version=nested_str(composition, "metadata", "resourceVersion"),
            package_type=PACKAGE_TYPE,
            description=f"Crossplane Composition for {composite_kind}",
            uploaded_at=parse_timestamp(nested_str(composition, "metadata", "creationTimestamp")),
            extensions={
                "crossplane.compositeTypeRef.kind": composite_kind,
                "crossplane.compositeTypeRef.apiVersion": nested_str(
                    composition, "spec", "compositeTypeRef", "apiVersion"
                ),
            },
        )

    def _to_deployment(self, configuration: dict) -> Deployment:
        name = nested_str(configuration, "metadata", "name")
        package_ref = nested_str(configuration, "spec", "package")
        conditions = nested_list(configuration, "status", "conditions")
        created_at = parse_timestamp(nested_str(configuration, "metadata", "creationTimestamp"))
        transitions = [
            t for t in (parse_timestamp(nested_str(c, "lastTransitionTime")) for c in conditions) if t
        ]
        return Deployment(
            id=name,
            name=name,
            package_id=package_ref,
            namespace=nested_str(configuration, "metadata", "namespace"),
            status=crossplane_status(conditions),
            version=current_revision(configuration),
            description=nested_str(configuration, "metadata", "annotations", DESCRIPTION_ANNOTATION)
            or f"Crossplane Configuration: {package_ref}",
            created_at=created_at,
            updated_at=max(transitions) if transitions else created_at,
            extensions={
                "crossplane.package": package_ref,
                "crossplane.revisionActivationPolicy": nested_str(
                    configuration, "spec", "revisionActivationPolicy"
                ),
                "crossplane.currentRevision": nested_str(configuration, "status", "currentRevision"),
                "crossplane.conditions": conditions,
            },
        )
