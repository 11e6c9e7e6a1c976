"""
ArgoCD adapter over Application custom resources.

Deployments are ``argoproj.io/v1alpha1`` Applications in the configured
namespace. ArgoCD has no package registry, so packages are synthesized from
the distinct sources referenced by live Applications. Rollback writes a
recorded revision back as the target and requests a hard refresh; the
controller reconciles asynchronously.

Extensions read on create: ``argocd.repoURL`` (required), ``argocd.path``,
``argocd.targetRevision``, ``argocd.chart``, ``argocd.project``.
Extensions read on update: ``argocd.targetRevision``, ``argocd.path``.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import yaml

from ..clients.kubernetes import ResourceClient, ResourceKind
from ..config import ArgoCDSettings, KubernetesSettings
from ..errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    ResourceNotFoundError,
    RevisionNotFoundError,
    UnsupportedOperationError,
)
from ..models import (
    Capability,
    Deployment,
    DeploymentHistory,
    DeploymentPackage,
    DeploymentPackageUpload,
    DeploymentRequest,
    DeploymentRevision,
    DeploymentStatus,
    DeploymentStatusDetail,
    DeploymentUpdate,
    Filter,
    LogOptions,
)
from ..unstructured import nested_list, nested_map, nested_str, parse_timestamp, set_nested
from .base import CancelSignal, ClientFactory, DMSAdapter, operation
from .common import (
    DESCRIPTION_ANNOTATION,
    build_label_selector,
    derive_package_id,
    ext_str,
    require_ext,
    require_non_negative,
    validate_name,
    validate_path,
)
from .status import argocd_conditions, argocd_progress, argocd_status

logger = logging.getLogger(__name__)

APPLICATIONS = ResourceKind("argoproj.io", "v1alpha1", "applications")
REFRESH_ANNOTATION = "argocd.argoproj.io/refresh"


def _source_package(source: dict[str, Any]) -> tuple[str, str]:
    """Return (package type, package ID) for an Application source."""
    repo_url = nested_str(source, "repoURL")
    chart = nested_str(source, "chart")
    if chart:
        return "helm-chart", derive_package_id("helm-chart", repo_url, chart)
    return "git-repo", derive_package_id("git-repo", repo_url, nested_str(source, "path"))


def _helm_values(app: dict) -> dict[str, Any]:
    raw = nested_str(app, "spec", "source", "helm", "values")
    if not raw:
        return {}
    try:
        values = yaml.safe_load(raw)
    except yaml.YAMLError:
        return {}
    return values if isinstance(values, dict) else {}


def application_status(deployment_id: str, app: dict) -> DeploymentStatusDetail:
    """Status detail for an Application as returned by the cluster or the REST API."""
    health = nested_str(app, "status", "health", "status")
    health_message = nested_str(app, "status", "health", "message")
    sync = nested_str(app, "status", "sync", "status")
    return DeploymentStatusDetail(
        deployment_id=deployment_id,
        status=argocd_status(health, sync),
        message=health_message or f"Health: {health or 'Unknown'}, Sync: {sync or 'Unknown'}",
        progress=argocd_progress(health, sync),
        conditions=argocd_conditions(health, health_message, sync),
        updated_at=parse_timestamp(nested_str(app, "status", "reconciledAt")),
        extensions={
            "argocd.syncStatus": sync,
            "argocd.healthStatus": health,
            "argocd.syncRevision": nested_str(app, "status", "sync", "revision"),
            "argocd.resources": len(nested_list(app, "status", "resources")),
        },
    )


def application_history(deployment_id: str, app: dict) -> DeploymentHistory:
    """One revision per ``status.history`` entry, or a single synthetic entry."""
    current = argocd_status(
        nested_str(app, "status", "health", "status"),
        nested_str(app, "status", "sync", "status"),
    )

    entries = nested_list(app, "status", "history")
    revisions = []
    for index, entry in enumerate(entries):
        label = nested_str(entry, "revision") or nested_str(entry, "source", "targetRevision")
        revisions.append(
            DeploymentRevision(
                revision=index,
                version=label,
                deployed_at=parse_timestamp(nested_str(entry, "deployedAt")),
                status=current if index == len(entries) - 1 else DeploymentStatus.DEPLOYED,
                description=f"Synced to {label}" if label else "Synced",
            )
        )
    if not revisions:
        revisions.append(
            DeploymentRevision(
                revision=0,
                version=nested_str(app, "spec", "source", "targetRevision", default="HEAD"),
                deployed_at=parse_timestamp(nested_str(app, "metadata", "creationTimestamp")),
                status=current,
                description="Current state, no sync recorded yet",
            )
        )
    return DeploymentHistory(deployment_id=deployment_id, revisions=revisions)


def history_target(deployment_id: str, app: dict, revision: int) -> str:
    """Resolve a history index to the source revision to roll back to."""
    history = nested_list(app, "status", "history")
    if revision >= len(history):
        raise RevisionNotFoundError(deployment_id, revision)
    entry = history[revision]
    target = nested_str(entry, "revision") or nested_str(entry, "source", "targetRevision")
    if not target:
        raise BackendError(f"history entry {revision} has no revision", "rollback", deployment_id)
    return target


class ArgoCDAdapter(DMSAdapter[ResourceClient]):
    """Deployments as ArgoCD Applications."""

    name = "argocd"
    version = "v2.9"

    def __init__(
        self,
        settings: Optional[ArgoCDSettings] = None,
        kubernetes: Optional[KubernetesSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(client_factory)
        self.settings = settings or ArgoCDSettings()
        self.kubernetes = kubernetes or KubernetesSettings()

    async def _default_client(self) -> ResourceClient:
        return await asyncio.to_thread(ResourceClient.from_settings, self.kubernetes)

    def capabilities(self) -> list[Capability]:
        return [
            Capability.DEPLOYMENT_LIFECYCLE,
            Capability.ROLLBACK,
            Capability.SCALING,
            Capability.GITOPS,
            Capability.HEALTH_CHECKS,
            Capability.PACKAGE_MANAGEMENT,
        ]

    async def _get_app(self, api: ResourceClient, deployment_id: str) -> dict:
        try:
            return await api.get(APPLICATIONS, deployment_id, self.settings.namespace)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e

    async def _replace_app(self, api: ResourceClient, deployment_id: str, app: dict) -> dict:
        try:
            return await api.update(APPLICATIONS, deployment_id, app, self.settings.namespace)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e

    # Packages

    @operation("list_packages")
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]:
        api = await self._ensure_client(cancel)
        apps = await api.list(APPLICATIONS, self.settings.namespace)

        packages: dict[str, DeploymentPackage] = {}
        for app in apps:
            source = nested_map(app, "spec", "source")
            repo_url = nested_str(source, "repoURL")
            if not repo_url:
                continue
            package_type, package_id = _source_package(source)
            if package_id in packages:
                continue
            path = nested_str(source, "path")
            chart = nested_str(source, "chart")
            packages[package_id] = DeploymentPackage(
                id=package_id,
                name=chart or path or repo_url,
                version=nested_str(source, "targetRevision", default="HEAD"),
                package_type=package_type,
                description=f"Git repository: {repo_url}" if not chart else f"Helm chart {chart} from {repo_url}",
                uploaded_at=parse_timestamp(nested_str(app, "metadata", "creationTimestamp")),
                extensions={
                    "argocd.repoURL": repo_url,
                    "argocd.path": path,
                    "argocd.chart": chart,
                    "argocd.targetRevision": nested_str(source, "targetRevision"),
                },
            )
        return self._page(list(packages.values()), filter)

    @operation("get_package")
    async def get_package(
        self, package_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        for package in await self.list_packages(cancel=cancel):
            if package.id == package_id:
                return package
        raise PackageNotFoundError(package_id)

    @operation("upload_package")
    async def upload_package(
        self, upload: DeploymentPackageUpload, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        """Register a Git source reference. Nothing is written to the cluster."""
        self._require(upload, "package")
        repo_url = require_ext(upload.extensions, "argocd.repoURL")
        path = ext_str(upload.extensions, "argocd.path")
        validate_path(path)
        return DeploymentPackage(
            id=derive_package_id("git-repo", repo_url, path),
            name=upload.name,
            version=upload.version or "HEAD",
            package_type="git-repo",
            description=upload.description,
            uploaded_at=datetime.now(timezone.utc),
            extensions={
                "argocd.repoURL": repo_url,
                "argocd.path": path,
                "argocd.targetRevision": upload.version or "HEAD",
            },
        )

    @operation("delete_package")
    async def delete_package(self, package_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        raise UnsupportedOperationError(
            "argocd adapter does not support package deletion; manage Git repositories externally"
        )

    # Deployments

    @operation("list_deployments")
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]:
        api = await self._ensure_client(cancel)
        apps = await api.list(
            APPLICATIONS,
            self.settings.namespace,
            label_selector=build_label_selector(filter.labels) if filter else None,
        )
        deployments = [self._to_deployment(app) for app in apps]
        deployments = [d for d in deployments if self._matches(d, filter)]
        return self._page(deployments, filter)

    @operation("get_deployment")
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        api = await self._ensure_client(cancel)
        return self._to_deployment(await self._get_app(api, deployment_id))

    @operation("create_deployment")
    async def create_deployment(
        self, request: DeploymentRequest, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        self._require(request, "deployment request")
        validate_name(request.name)
        repo_url = require_ext(request.extensions, "argocd.repoURL")
        path = ext_str(request.extensions, "argocd.path")
        validate_path(path)

        source: dict[str, Any] = {
            "repoURL": repo_url,
            "targetRevision": ext_str(request.extensions, "argocd.targetRevision", "HEAD"),
        }
        if path:
            source["path"] = path
        chart = ext_str(request.extensions, "argocd.chart")
        if chart:
            source["chart"] = chart
        if request.values:
            source["helm"] = {"values": json.dumps(request.values, sort_keys=True)}

        spec: dict[str, Any] = {
            "project": ext_str(request.extensions, "argocd.project", self.settings.default_project),
            "source": source,
            "destination": {
                "server": self.settings.destination_server,
                "namespace": request.namespace or "default",
            },
        }
        if self.settings.auto_sync:
            spec["syncPolicy"] = {
                "automated": {"prune": self.settings.prune, "selfHeal": self.settings.self_heal},
            }

        metadata: dict[str, Any] = {"name": request.name, "namespace": self.settings.namespace}
        if request.labels:
            metadata["labels"] = dict(request.labels)
        if request.description:
            metadata["annotations"] = {DESCRIPTION_ANNOTATION: request.description}

        body = {
            "apiVersion": APPLICATIONS.api_version,
            "kind": "Application",
            "metadata": metadata,
            "spec": spec,
        }

        api = await self._ensure_client(cancel)
        created = await api.create(APPLICATIONS, body, self.settings.namespace)
        logger.info("Created ArgoCD application %s from %s", request.name, repo_url)
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
        path = ext_str(update.extensions, "argocd.path")
        validate_path(path)

        api = await self._ensure_client(cancel)
        app = await self._get_app(api, deployment_id)

        target_revision = ext_str(update.extensions, "argocd.targetRevision")
        if target_revision:
            set_nested(app, target_revision, "spec", "source", "targetRevision")
        if path:
            set_nested(app, path, "spec", "source", "path")
        if update.values:
            self._merge_values(app, update.values)
        if update.description:
            set_nested(app, update.description, "metadata", "annotations", DESCRIPTION_ANNOTATION)

        updated = await self._replace_app(api, deployment_id, app)
        logger.info("Updated ArgoCD application %s", deployment_id)
        return self._to_deployment(updated)

    @operation("delete_deployment")
    async def delete_deployment(self, deployment_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        try:
            await api.delete(
                APPLICATIONS, deployment_id, self.settings.namespace, propagation_policy="Foreground"
            )
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e
        logger.info("Deleted ArgoCD application %s", deployment_id)

    @operation("scale_deployment")
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        """Write ``replicaCount`` into the Application's Helm values."""
        require_non_negative("replicas", replicas)
        api = await self._ensure_client(cancel)
        app = await self._get_app(api, deployment_id)
        self._merge_values(app, {"replicaCount": replicas})
        await self._replace_app(api, deployment_id, app)
        logger.info("Scaled ArgoCD application %s to %d replicas", deployment_id, replicas)

    @operation("rollback_deployment")
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("revision", revision)
        api = await self._ensure_client(cancel)
        app = await self._get_app(api, deployment_id)

        target = history_target(deployment_id, app, revision)

        set_nested(app, target, "spec", "source", "targetRevision")
        set_nested(app, "hard", "metadata", "annotations", REFRESH_ANNOTATION)
        await self._replace_app(api, deployment_id, app)
        logger.info("Rolled back ArgoCD application %s to revision %d (%s)", deployment_id, revision, target)

    @operation("get_deployment_status")
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail:
        api = await self._ensure_client(cancel)
        return application_status(deployment_id, await self._get_app(api, deployment_id))

    @operation("get_deployment_history")
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory:
        api = await self._ensure_client(cancel)
        return application_history(deployment_id, await self._get_app(api, deployment_id))

    @operation("get_deployment_logs")
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes:
        """ArgoCD exposes no log stream; return the Application status as JSON."""
        api = await self._ensure_client(cancel)
        app = await self._get_app(api, deployment_id)
        snapshot = {
            "application": deployment_id,
            "namespace": self.settings.namespace,
            "status": app.get("status") or {},
        }
        return json.dumps(snapshot, indent=2, default=str).encode()

    @operation("health")
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        try:
            await api.list(APPLICATIONS, self.settings.namespace, limit=1)
        except ResourceNotFoundError as e:
            raise BackendError("Application resource is not installed", "health", self.name) from e

    # Mapping

    def _merge_values(self, app: dict, values: dict[str, Any]) -> None:
        merged = {**_helm_values(app), **values}
        set_nested(app, json.dumps(merged, sort_keys=True), "spec", "source", "helm", "values")

    def _to_deployment(self, app: dict) -> Deployment:
        name = nested_str(app, "metadata", "name")
        source = nested_map(app, "spec", "source")
        health = nested_str(app, "status", "health", "status")
        sync = nested_str(app, "status", "sync", "status")
        created_at = parse_timestamp(nested_str(app, "metadata", "creationTimestamp"))

        return Deployment(
            id=name,
            name=name,
            package_id=_source_package(source)[1] if nested_str(source, "repoURL") else "",
            namespace=nested_str(app, "spec", "destination", "namespace"),
            status=argocd_status(health, sync),
            version=len(nested_list(app, "status", "history")),
            description=nested_str(app, "metadata", "annotations", DESCRIPTION_ANNOTATION),
            created_at=created_at,
            updated_at=parse_timestamp(nested_str(app, "status", "reconciledAt")) or created_at,
            extensions={
                "argocd.appName": name,
                "argocd.project": nested_str(app, "spec", "project"),
                "argocd.repoURL": nested_str(source, "repoURL"),
                "argocd.targetRevision": nested_str(source, "targetRevision"),
                "argocd.path": nested_str(source, "path"),
                "argocd.chart": nested_str(source, "chart"),
                "argocd.syncStatus": sync,
                "argocd.healthStatus": health,
                "argocd.syncRevision": nested_str(app, "status", "sync", "revision"),
            },
        )
