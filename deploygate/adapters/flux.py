"""
Flux adapter over HelmRelease and Kustomization resources.

A deployment is either a ``HelmRelease`` or a ``Kustomization`` in the Flux
namespace; lookups by ID try HelmRelease first. Packages are the
GitRepository and HelmRepository source objects. Status comes from the
``Ready`` condition. Rollback records the desired chart version and
requests reconciliation through ``reconcile.fluxcd.io/requestedAt``; the
controllers converge asynchronously.

Extensions read on create:
    flux.type          ``helmrelease`` (default) or ``kustomization``
    flux.sourceRef     source object name (required)
    flux.sourceKind    defaults to HelmRepository / GitRepository
    flux.chart         chart name (required for HelmRelease)
    flux.chartVersion  chart version constraint
    flux.path          Kustomization path, defaults to ``./``
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..clients.kubernetes import ResourceClient, ResourceKind
from ..config import FluxSettings, KubernetesSettings
from ..errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    ResourceNotFoundError,
    RevisionNotFoundError,
    UnsupportedOperationError,
    ValidationError,
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
from ..unstructured import (
    nested_list,
    nested_map,
    nested_str,
    parse_timestamp,
    set_nested,
)
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
from .status import flux_progress, flux_status, parse_conditions

logger = logging.getLogger(__name__)

HELM_RELEASES = ResourceKind("helm.toolkit.fluxcd.io", "v2", "helmreleases")
KUSTOMIZATIONS = ResourceKind("kustomize.toolkit.fluxcd.io", "v1", "kustomizations")
GIT_REPOSITORIES = ResourceKind("source.toolkit.fluxcd.io", "v1", "gitrepositories")
HELM_REPOSITORIES = ResourceKind("source.toolkit.fluxcd.io", "v1", "helmrepositories")

RECONCILE_ANNOTATION = "reconcile.fluxcd.io/requestedAt"
TARGET_REVISION_ANNOTATION = "deploygate.io/target-revision"

TYPE_HELM_RELEASE = "helmrelease"
TYPE_KUSTOMIZATION = "kustomization"


def _updated_at(obj: dict) -> Optional[datetime]:
    """Transition time of the last condition, falling back to creation time."""
    conditions = nested_list(obj, "status", "conditions")
    if conditions:
        last = parse_timestamp(nested_str(conditions[-1], "lastTransitionTime"))
        if last:
            return last
    return parse_timestamp(nested_str(obj, "metadata", "creationTimestamp"))


def _request_reconcile(obj: dict) -> None:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    set_nested(obj, now, "metadata", "annotations", RECONCILE_ANNOTATION)


class FluxAdapter(DMSAdapter[ResourceClient]):
    """Deployments as Flux HelmReleases and Kustomizations."""

    name = "flux"
    version = "v2.0"

    def __init__(
        self,
        settings: Optional[FluxSettings] = None,
        kubernetes: Optional[KubernetesSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(client_factory)
        self.settings = settings or FluxSettings()
        self.kubernetes = kubernetes or KubernetesSettings()

    @property
    def source_namespace(self) -> str:
        return self.settings.source_namespace or self.settings.namespace

    async def _default_client(self) -> ResourceClient:
        return await asyncio.to_thread(ResourceClient.from_settings, self.kubernetes)

    def capabilities(self) -> list[Capability]:
        return [
            Capability.DEPLOYMENT_LIFECYCLE,
            Capability.GITOPS,
            Capability.ROLLBACK,
            Capability.HEALTH_CHECKS,
            Capability.METRICS,
            Capability.PACKAGE_MANAGEMENT,
        ]

    async def _find(self, api: ResourceClient, deployment_id: str) -> tuple[ResourceKind, dict]:
        """Return the HelmRelease or Kustomization named ``deployment_id``."""
        for kind in (HELM_RELEASES, KUSTOMIZATIONS):
            try:
                return kind, await api.get(kind, deployment_id, self.settings.namespace)
            except ResourceNotFoundError:
                continue
        raise DeploymentNotFoundError(deployment_id)

    async def _replace(self, api: ResourceClient, kind: ResourceKind, deployment_id: str, obj: dict) -> dict:
        try:
            return await api.update(kind, deployment_id, obj, self.settings.namespace)
        except ResourceNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e

    # Packages

    @operation("list_packages")
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]:
        api = await self._ensure_client(cancel)
        git_repos = await api.list(GIT_REPOSITORIES, self.source_namespace)
        helm_repos = await api.list(HELM_REPOSITORIES, self.source_namespace)

        packages = [self._git_package(repo) for repo in git_repos]
        packages.extend(self._helm_package(repo) for repo in helm_repos)
        return self._page(packages, filter)

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
        """Return a package reference for a source URL. Source objects are managed in Git."""
        self._require(upload, "package")
        url = require_ext(upload.extensions, "flux.url")
        repo_type = ext_str(upload.extensions, "flux.type", "git")
        if repo_type not in ("git", "helm"):
            raise ValidationError(f"unsupported flux.type {repo_type!r}, expected git or helm")
        return DeploymentPackage(
            id=derive_package_id(f"flux-{repo_type}", url),
            name=upload.name,
            version=upload.version,
            package_type=f"flux-{repo_type}",
            description=upload.description,
            uploaded_at=datetime.now(timezone.utc),
            extensions={"flux.url": url, "flux.type": repo_type, "flux.branch": upload.version},
        )

    @operation("delete_package")
    async def delete_package(self, package_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        raise UnsupportedOperationError(
            "flux adapter does not support package deletion; manage source resources directly"
        )

    # Deployments

    @operation("list_deployments")
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]:
        api = await self._ensure_client(cancel)
        selector = build_label_selector(filter.labels) if filter else None
        releases = await api.list(HELM_RELEASES, self.settings.namespace, label_selector=selector)
        kustomizations = await api.list(KUSTOMIZATIONS, self.settings.namespace, label_selector=selector)

        deployments = [self._helm_release_deployment(hr) for hr in releases]
        deployments.extend(self._kustomization_deployment(ks) for ks in kustomizations)
        deployments = [d for d in deployments if self._matches(d, filter)]
        return self._page(deployments, filter)

    @operation("get_deployment")
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)
        return self._to_deployment(kind, obj)

    @operation("create_deployment")
    async def create_deployment(
        self, request: DeploymentRequest, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        self._require(request, "deployment request")
        validate_name(request.name)
        flux_type = ext_str(request.extensions, "flux.type", TYPE_HELM_RELEASE)
        if flux_type == TYPE_HELM_RELEASE:
            kind, body = HELM_RELEASES, self._helm_release_body(request)
        elif flux_type == TYPE_KUSTOMIZATION:
            kind, body = KUSTOMIZATIONS, self._kustomization_body(request)
        else:
            raise ValidationError(
                f"unsupported flux.type {flux_type!r}, expected {TYPE_HELM_RELEASE} or {TYPE_KUSTOMIZATION}"
            )

        api = await self._ensure_client(cancel)
        created = await api.create(kind, body, self.settings.namespace)
        logger.info("Created Flux %s %s", body["kind"], request.name)
        return self._to_deployment(kind, created)

    def _metadata(self, request: DeploymentRequest) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": request.name, "namespace": self.settings.namespace}
        if request.labels:
            metadata["labels"] = dict(request.labels)
        if request.description:
            metadata["annotations"] = {DESCRIPTION_ANNOTATION: request.description}
        return metadata

    def _helm_release_body(self, request: DeploymentRequest) -> dict:
        chart = require_ext(request.extensions, "flux.chart")
        source_ref = require_ext(request.extensions, "flux.sourceRef")
        chart_spec: dict[str, Any] = {
            "chart": chart,
            "sourceRef": {
                "kind": ext_str(request.extensions, "flux.sourceKind", "HelmRepository"),
                "name": source_ref,
                "namespace": self.source_namespace,
            },
        }
        chart_version = ext_str(request.extensions, "flux.chartVersion")
        if chart_version:
            chart_spec["version"] = chart_version

        spec: dict[str, Any] = {
            "interval": self.settings.interval,
            "chart": {"spec": chart_spec},
            "targetNamespace": request.namespace or self.settings.target_namespace,
            "suspend": self.settings.suspend,
        }
        if request.values:
            # Round-trip through JSON so the body only holds plain JSON types
            spec["values"] = json.loads(json.dumps(request.values, default=str))
        return {
            "apiVersion": HELM_RELEASES.api_version,
            "kind": "HelmRelease",
            "metadata": self._metadata(request),
            "spec": spec,
        }

    def _kustomization_body(self, request: DeploymentRequest) -> dict:
        source_ref = require_ext(request.extensions, "flux.sourceRef")
        path = ext_str(request.extensions, "flux.path")
        validate_path(path)
        return {
            "apiVersion": KUSTOMIZATIONS.api_version,
            "kind": "Kustomization",
            "metadata": self._metadata(request),
            "spec": {
                "interval": self.settings.interval,
                "path": path or "./",
                "sourceRef": {
                    "kind": ext_str(request.extensions, "flux.sourceKind", "GitRepository"),
                    "name": source_ref,
                    "namespace": self.source_namespace,
                },
                "targetNamespace": request.namespace or self.settings.target_namespace,
                "prune": self.settings.prune,
                "force": self.settings.force,
                "suspend": self.settings.suspend,
            },
        }

    @operation("update_deployment")
    async def update_deployment(
        self,
        deployment_id: str,
        update: DeploymentUpdate,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> Deployment:
        self._require(update, "deployment update")
        path = ext_str(update.extensions, "flux.path")
        validate_path(path)

        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)

        if kind is HELM_RELEASES:
            chart_version = ext_str(update.extensions, "flux.chartVersion")
            if chart_version:
                set_nested(obj, chart_version, "spec", "chart", "spec", "version")
            if update.values:
                merged = {**nested_map(obj, "spec", "values"), **json.loads(json.dumps(update.values, default=str))}
                set_nested(obj, merged, "spec", "values")
        else:
            if path:
                set_nested(obj, path, "spec", "path")
            target_revision = ext_str(update.extensions, "flux.targetRevision")
            if target_revision:
                set_nested(obj, target_revision, "metadata", "annotations", TARGET_REVISION_ANNOTATION)
        if update.description:
            set_nested(obj, update.description, "metadata", "annotations", DESCRIPTION_ANNOTATION)

        updated = await self._replace(api, kind, deployment_id, obj)
        logger.info("Updated Flux %s %s", kind.plural, deployment_id)
        return self._to_deployment(kind, updated)

    @operation("delete_deployment")
    async def delete_deployment(self, deployment_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        for kind in (HELM_RELEASES, KUSTOMIZATIONS):
            try:
                await api.delete(kind, deployment_id, self.settings.namespace, propagation_policy="Foreground")
            except ResourceNotFoundError:
                continue
            logger.info("Deleted Flux %s %s", kind.plural, deployment_id)
            return
        raise DeploymentNotFoundError(deployment_id)

    @operation("scale_deployment")
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        """Write ``replicaCount`` into HelmRelease values. Kustomizations cannot be scaled."""
        require_non_negative("replicas", replicas)
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)
        if kind is not HELM_RELEASES:
            raise UnsupportedOperationError(
                "scaling a Kustomization must be done by changing replicas in its Git source"
            )
        set_nested(obj, {**nested_map(obj, "spec", "values"), "replicaCount": replicas}, "spec", "values")
        await self._replace(api, kind, deployment_id, obj)
        logger.info("Scaled Flux HelmRelease %s to %d replicas", deployment_id, replicas)

    @operation("rollback_deployment")
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        """Pin the chart version of a recorded revision and request reconciliation."""
        require_non_negative("revision", revision)
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)

        if kind is HELM_RELEASES:
            history = self._helm_release_history(deployment_id, obj).revisions
            if revision >= len(history):
                raise RevisionNotFoundError(deployment_id, revision)
            if history[revision].version:
                set_nested(obj, history[revision].version, "spec", "chart", "spec", "version")
        elif revision != 0:
            raise RevisionNotFoundError(deployment_id, revision)

        _request_reconcile(obj)
        await self._replace(api, kind, deployment_id, obj)
        logger.info("Requested rollback of Flux %s %s to revision %d", kind.plural, deployment_id, revision)

    @operation("get_deployment_status")
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail:
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)

        conditions = nested_list(obj, "status", "conditions")
        status, message = flux_status(conditions)
        extensions: dict[str, Any] = {
            "flux.type": TYPE_HELM_RELEASE if kind is HELM_RELEASES else TYPE_KUSTOMIZATION,
            "flux.observedGeneration": nested_map(obj, "status").get("observedGeneration"),
        }
        if kind is HELM_RELEASES:
            extensions["flux.lastAttemptedRevision"] = nested_str(obj, "status", "lastAttemptedRevision")
        else:
            extensions["flux.lastAppliedRevision"] = nested_str(obj, "status", "lastAppliedRevision")

        return DeploymentStatusDetail(
            deployment_id=deployment_id,
            status=status,
            message=message,
            progress=flux_progress(status),
            conditions=parse_conditions(conditions),
            updated_at=_updated_at(obj),
            extensions=extensions,
        )

    @operation("get_deployment_history")
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory:
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)
        if kind is HELM_RELEASES:
            return self._helm_release_history(deployment_id, obj)
        return self._kustomization_history(deployment_id, obj)

    @operation("get_deployment_logs")
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes:
        """Flux exposes no log stream; return the resource status as JSON."""
        api = await self._ensure_client(cancel)
        kind, obj = await self._find(api, deployment_id)
        snapshot = {
            "name": deployment_id,
            "kind": obj.get("kind") or kind.plural,
            "namespace": self.settings.namespace,
            "status": obj.get("status") or {},
        }
        return json.dumps(snapshot, indent=2, default=str).encode()

    @operation("health")
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        api = await self._ensure_client(cancel)
        try:
            await api.list(HELM_RELEASES, self.settings.namespace, limit=1)
        except ResourceNotFoundError as e:
            raise BackendError("HelmRelease resource is not installed", "health", self.name) from e

    # Mapping

    def _to_deployment(self, kind: ResourceKind, obj: dict) -> Deployment:
        if kind is HELM_RELEASES:
            return self._helm_release_deployment(obj)
        return self._kustomization_deployment(obj)

    def _helm_release_deployment(self, hr: dict) -> Deployment:
        name = nested_str(hr, "metadata", "name")
        chart = nested_str(hr, "spec", "chart", "spec", "chart")
        source_ref = nested_str(hr, "spec", "chart", "spec", "sourceRef", "name")
        target_namespace = nested_str(hr, "spec", "targetNamespace")
        status, message = flux_status(nested_list(hr, "status", "conditions"))

        return Deployment(
            id=name,
            name=name,
            package_id=derive_package_id("helm", source_ref, chart),
            namespace=target_namespace,
            status=status,
            version=len(nested_list(hr, "status", "history")) or 1,
            description=nested_str(hr, "metadata", "annotations", DESCRIPTION_ANNOTATION)
            or f"Flux HelmRelease: {name} (chart: {chart})",
            created_at=parse_timestamp(nested_str(hr, "metadata", "creationTimestamp")),
            updated_at=_updated_at(hr),
            extensions={
                "flux.type": TYPE_HELM_RELEASE,
                "flux.namespace": nested_str(hr, "metadata", "namespace"),
                "flux.chart": chart,
                "flux.chartVersion": nested_str(hr, "spec", "chart", "spec", "version"),
                "flux.sourceRef": source_ref,
                "flux.targetNamespace": target_namespace,
                "flux.message": message,
            },
        )

    def _kustomization_deployment(self, ks: dict) -> Deployment:
        name = nested_str(ks, "metadata", "name")
        path = nested_str(ks, "spec", "path")
        source_ref = nested_str(ks, "spec", "sourceRef", "name")
        target_namespace = nested_str(ks, "spec", "targetNamespace")
        status, message = flux_status(nested_list(ks, "status", "conditions"))

        return Deployment(
            id=name,
            name=name,
            package_id=derive_package_id("git", source_ref, path),
            namespace=target_namespace,
            status=status,
            version=1,
            description=nested_str(ks, "metadata", "annotations", DESCRIPTION_ANNOTATION)
            or f"Flux Kustomization: {name} (path: {path})",
            created_at=parse_timestamp(nested_str(ks, "metadata", "creationTimestamp")),
            updated_at=_updated_at(ks),
            extensions={
                "flux.type": TYPE_KUSTOMIZATION,
                "flux.namespace": nested_str(ks, "metadata", "namespace"),
                "flux.path": path,
                "flux.sourceRef": source_ref,
                "flux.targetNamespace": target_namespace,
                "flux.lastAppliedRevision": nested_str(ks, "status", "lastAppliedRevision"),
                "flux.message": message,
            },
        )

    def _git_package(self, repo: dict) -> DeploymentPackage:
        url = nested_str(repo, "spec", "url")
        ref = nested_map(repo, "spec", "ref")
        version = (
            nested_str(ref, "tag")
            or nested_str(ref, "semver")
            or nested_str(ref, "commit")
            or nested_str(ref, "branch")
        )
        return DeploymentPackage(
            id=derive_package_id("flux-git", url),
            name=nested_str(repo, "metadata", "name"),
            version=version,
            package_type="flux-git",
            description=f"Flux GitRepository: {url}",
            uploaded_at=parse_timestamp(nested_str(repo, "metadata", "creationTimestamp")),
            extensions={
                "flux.url": url,
                "flux.branch": nested_str(ref, "branch"),
                "flux.tag": nested_str(ref, "tag"),
                "flux.artifactRevision": nested_str(repo, "status", "artifact", "revision"),
            },
        )

    def _helm_package(self, repo: dict) -> DeploymentPackage:
        url = nested_str(repo, "spec", "url")
        return DeploymentPackage(
            id=derive_package_id("flux-helm", url),
            name=nested_str(repo, "metadata", "name"),
            version="latest",
            package_type="flux-helm",
            description=f"Flux HelmRepository: {url}",
            uploaded_at=parse_timestamp(nested_str(repo, "metadata", "creationTimestamp")),
            extensions={
                "flux.url": url,
                "flux.repoType": nested_str(repo, "spec", "type", default="default"),
            },
        )

    def _helm_release_history(self, deployment_id: str, hr: dict) -> DeploymentHistory:
        # helm-controller records snapshots newest first
        snapshots = list(reversed(nested_list(hr, "status", "history")))
        revisions = []
        for index, snapshot in enumerate(snapshots):
            chart_version = nested_str(snapshot, "chartVersion")
            revisions.append(
                DeploymentRevision(
                    revision=index,
                    version=chart_version,
                    deployed_at=parse_timestamp(nested_str(snapshot, "lastDeployed"))
                    or parse_timestamp(nested_str(snapshot, "firstDeployed")),
                    status=DeploymentStatus.FAILED
                    if nested_str(snapshot, "status") == "failed"
                    else DeploymentStatus.DEPLOYED,
                    description=f"Chart version {chart_version} (digest: {nested_str(snapshot, 'digest')})",
                )
            )
        return DeploymentHistory(deployment_id=deployment_id, revisions=revisions)

    def _kustomization_history(self, deployment_id: str, ks: dict) -> DeploymentHistory:
        revision = nested_str(ks, "status", "lastAppliedRevision")
        status, _ = flux_status(nested_list(ks, "status", "conditions"))
        return DeploymentHistory(
            deployment_id=deployment_id,
            revisions=[
                DeploymentRevision(
                    revision=0,
                    version=revision,
                    deployed_at=_updated_at(ks),
                    status=status,
                    description=f"Applied revision: {revision}" if revision else "No revision applied yet",
                )
            ],
        )
