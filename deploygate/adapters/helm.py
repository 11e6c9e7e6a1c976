"""
Helm adapter.

Releases are driven through the helm CLI; packages are read from the
configured chart repository's ``index.yaml``. Release IDs are release
names, looked up in the configured namespace first and then across all
namespaces. Release labels carry the request labels and the chart
reference the release was installed from. Pod logs are read through the
core Kubernetes API.
"""

import asyncio
import base64
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ..clients.helm import HelmClient, HelmRelease, ReleaseNotFoundError, parse_helm_time
from ..clients.kubernetes import load_api_client
from ..config import HelmSettings, KubernetesSettings
from ..errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    RevisionNotFoundError,
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
from .base import CancelSignal, ClientFactory, DMSAdapter, operation
from .common import build_label_selector, ext_str, require_non_negative, validate_name
from .status import helm_progress, helm_status

logger = logging.getLogger(__name__)

PACKAGE_TYPE = "helm-chart"
INSTANCE_LABEL = "app.kubernetes.io/instance"

CHART_LABEL_PREFIX = "deploygate.io/chart."
CHART_LABEL_CHUNKS = 4
LABEL_VALUE_MAX = 63
# Set by helm's storage driver on every release record
STORAGE_LABELS = frozenset({"name", "owner", "status", "version", "createdAt", "modifiedAt"})


def chart_labels(chart: str) -> dict[str, str]:
    """Encode the chart reference a release was installed from as release labels.

    Label values only allow ``[-A-Za-z0-9_.]`` and 63 characters, so the
    reference is stored as lower-case base32 over a fixed set of numbered
    keys. Every key is always written, which lets an upgrade's label merge
    replace an older reference completely.
    """
    encoded = base64.b32encode(chart.encode()).decode().rstrip("=").lower()
    if len(encoded) > CHART_LABEL_CHUNKS * LABEL_VALUE_MAX:
        raise ValidationError(f"chart reference too long to record: {chart}")
    return {
        f"{CHART_LABEL_PREFIX}{i}": encoded[i * LABEL_VALUE_MAX:(i + 1) * LABEL_VALUE_MAX]
        for i in range(CHART_LABEL_CHUNKS)
    }


def chart_from_labels(labels: dict[str, str]) -> Optional[str]:
    """Decode ``chart_labels``; None when the release carries no usable record."""
    encoded = "".join(labels.get(f"{CHART_LABEL_PREFIX}{i}", "") for i in range(CHART_LABEL_CHUNKS))
    if not encoded:
        return None
    encoded = encoded.upper()
    try:
        return base64.b32decode(encoded + "=" * (-len(encoded) % 8)).decode()
    except ValueError:
        logger.warning("Ignoring malformed chart reference labels: %s", encoded)
        return None


@dataclass
class HelmBackend:
    """Handles the Helm adapter needs: the CLI, the core API and an HTTP client."""

    helm: HelmClient
    core: client.CoreV1Api
    http: httpx.AsyncClient

    async def release_labels(self, release: HelmRelease) -> dict[str, str]:
        """Custom labels of a release, read from helm's storage secret for its revision.

        ``helm status`` does not print release labels. Releases kept by a
        storage driver other than secrets have none.
        """
        try:
            secrets = await asyncio.to_thread(
                self.core.list_namespaced_secret,
                release.namespace,
                label_selector=f"owner=helm,name={release.name},version={release.revision}",
            )
        except ApiException as e:
            logger.error("Failed to read release record for %s: %s", release.name, e.reason)
            raise BackendError(f"{e.status} {e.reason}", "labels", release.name) from e
        labels: dict[str, str] = {}
        for secret in secrets.items:
            labels.update(secret.metadata.labels or {})
        return {k: v for k, v in labels.items() if k not in STORAGE_LABELS}

    async def close(self) -> None:
        await self.http.aclose()
        self.core.api_client.close()


def _index_time(value: Any) -> Optional[datetime]:
    # PyYAML already resolves most RFC 3339 timestamps
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_helm_time(value)


def chart_package(chart_name: str, entry: dict[str, Any], repository: str) -> DeploymentPackage:
    """Build a package from one ``index.yaml`` chart version entry."""
    version = str(entry.get("version", ""))
    return DeploymentPackage(
        id=f"{chart_name}-{version}",
        name=chart_name,
        version=version,
        package_type=PACKAGE_TYPE,
        description=str(entry.get("description", "")),
        uploaded_at=_index_time(entry.get("created")),
        extensions={
            "helm.chartName": chart_name,
            "helm.chartVersion": version,
            "helm.appVersion": str(entry.get("appVersion", "")),
            "helm.repository": repository,
            "helm.apiVersion": str(entry.get("apiVersion", "")),
            "helm.deprecated": bool(entry.get("deprecated", False)),
            "helm.urls": list(entry.get("urls") or []),
            "helm.digest": str(entry.get("digest", "")),
        },
    )


def _matches_chart(package: DeploymentPackage, filter: Optional[Filter]) -> bool:
    if filter is None:
        return True
    chart_name = ext_str(filter.extensions, "helm.chartName")
    chart_version = ext_str(filter.extensions, "helm.chartVersion")
    if chart_name and package.name != chart_name:
        return False
    if chart_version and package.version != chart_version:
        return False
    return True


def release_deployment(release: HelmRelease) -> Deployment:
    return Deployment(
        id=release.name,
        name=release.name,
        package_id=f"{release.chart}-{release.chart_version}",
        namespace=release.namespace,
        status=helm_status(release.status),
        version=release.revision,
        description=release.description,
        created_at=release.first_deployed,
        updated_at=release.last_deployed,
        extensions={
            "helm.releaseName": release.name,
            "helm.revision": release.revision,
            "helm.chart": release.chart,
            "helm.chartVersion": release.chart_version,
            "helm.appVersion": release.app_version,
            "helm.namespace": release.namespace,
        },
    )


def release_conditions(release: HelmRelease) -> list[DeploymentCondition]:
    if release.status == "deployed":
        return [
            DeploymentCondition(
                type="Deployed",
                status="True",
                reason="DeploymentSuccessful",
                message="Release deployed successfully",
                last_transition_time=release.last_deployed,
            )
        ]
    return [
        DeploymentCondition(
            type="Deployed",
            status="False",
            reason="DeploymentInProgress",
            message=f"Release status: {release.status}",
            last_transition_time=release.last_deployed,
        )
    ]


class HelmAdapter(DMSAdapter[HelmBackend]):
    """Deployments as Helm releases."""

    name = "helm"
    version = "3.14"

    def __init__(
        self,
        settings: Optional[HelmSettings] = None,
        kubernetes: Optional[KubernetesSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(client_factory)
        self.settings = settings or HelmSettings()
        self.kubernetes = kubernetes or KubernetesSettings()

    async def _default_client(self) -> HelmBackend:
        helm = HelmClient(
            binary=self.settings.binary,
            kubeconfig=self.kubernetes.kubeconfig_path,
            kube_context=self.kubernetes.context,
            timeout=self.settings.timeout,
            debug=self.settings.debug,
            username=self.settings.repository_username,
            password=self.settings.repository_password,
        )
        logger.info("Using %s", await helm.version())
        api_client = await asyncio.to_thread(load_api_client, self.kubernetes)
        auth = None
        if self.settings.repository_username:
            auth = (self.settings.repository_username, self.settings.repository_password)
        http = httpx.AsyncClient(auth=auth, timeout=30.0, follow_redirects=True)
        return HelmBackend(helm=helm, core=client.CoreV1Api(api_client), http=http)

    def capabilities(self) -> list[Capability]:
        return [
            Capability.PACKAGE_MANAGEMENT,
            Capability.DEPLOYMENT_LIFECYCLE,
            Capability.ROLLBACK,
            Capability.SCALING,
            Capability.HEALTH_CHECKS,
            Capability.METRICS,
        ]

    @property
    def repository(self) -> Optional[str]:
        return self.settings.repository_url or None

    async def _locate(self, backend: HelmBackend, deployment_id: str) -> HelmRelease:
        """Find a release by name, preferring the configured namespace."""
        try:
            return await backend.helm.get_release(deployment_id, self.settings.namespace)
        except ReleaseNotFoundError:
            pass
        for release in await backend.helm.list_releases():
            if release.name == deployment_id:
                return await backend.helm.get_release(deployment_id, release.namespace)
        raise DeploymentNotFoundError(deployment_id)

    async def _index_entries(self, backend: HelmBackend) -> dict[str, list[dict[str, Any]]]:
        if not self.repository:
            raise BackendError("repository URL not configured", "index", self.name)
        if self.repository.startswith("oci://"):
            raise UnsupportedOperationError("OCI registries do not publish a chart index")
        url = f"{self.repository.rstrip('/')}/index.yaml"
        try:
            response = await backend.http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to download repository index %s: %s", url, e)
            raise BackendError(str(e), "index", url) from e
        try:
            index = yaml.safe_load(response.text) or {}
        except yaml.YAMLError as e:
            raise BackendError(f"malformed repository index: {e}", "index", url) from e
        return index.get("entries") or {}

    # Packages

    @operation("list_packages")
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]:
        """Latest version of every chart in the repository."""
        backend = await self._ensure_client(cancel)
        entries = await self._index_entries(backend)
        packages = []
        for chart_name in sorted(entries):
            versions = entries[chart_name] or []
            if not versions:
                continue
            package = chart_package(chart_name, versions[0], self.repository)
            if _matches_chart(package, filter):
                packages.append(package)
        return self._page(packages, filter)

    @operation("get_package")
    async def get_package(
        self, package_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        """Look up ``{chart}-{version}`` across every version in the index."""
        backend = await self._ensure_client(cancel)
        entries = await self._index_entries(backend)
        for chart_name, versions in entries.items():
            for entry in versions or []:
                if f"{chart_name}-{entry.get('version', '')}" == package_id:
                    return chart_package(chart_name, entry, self.repository)
        raise PackageNotFoundError(package_id)

    @operation("upload_package")
    async def upload_package(
        self, upload: DeploymentPackageUpload, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage:
        """Push a packaged chart archive to an OCI registry."""
        self._require(upload, "package")
        validate_name(upload.name)
        if not upload.version:
            raise ValidationError("package version is required")
        self._require(upload.content, "package content")
        if not self.repository or not self.repository.startswith("oci://"):
            raise UnsupportedOperationError(
                "helm adapter only supports package upload to oci:// repositories"
            )

        backend = await self._ensure_client(cancel)
        with tempfile.TemporaryDirectory(prefix="deploygate-chart-") as tmp:
            path = os.path.join(tmp, f"{upload.name}-{upload.version}.tgz")
            with open(path, "wb") as f:
                f.write(upload.content)
            await backend.helm.push(path, self.repository)
        logger.info("Pushed chart %s-%s to %s", upload.name, upload.version, self.repository)

        return DeploymentPackage(
            id=f"{upload.name}-{upload.version}",
            name=upload.name,
            version=upload.version,
            package_type=PACKAGE_TYPE,
            description=upload.description,
            uploaded_at=datetime.now(timezone.utc),
            extensions={
                "helm.chartName": upload.name,
                "helm.chartVersion": upload.version,
                "helm.repository": self.repository,
            },
        )

    @operation("delete_package")
    async def delete_package(self, package_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        raise UnsupportedOperationError(
            "helm adapter does not support package deletion; chart repositories are managed externally"
        )

    # Deployments

    @operation("list_deployments")
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]:
        """List releases. Label filters are passed to helm as a release label selector."""
        backend = await self._ensure_client(cancel)
        namespace = filter.namespace if filter else None
        selector = build_label_selector(filter.labels if filter else None)
        releases = await backend.helm.list_releases(namespace or None, selector=selector or None)
        deployments = [release_deployment(r) for r in releases]
        deployments = [d for d in deployments if self._matches(d, filter)]
        return self._page(deployments, filter)

    @operation("get_deployment")
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        backend = await self._ensure_client(cancel)
        return release_deployment(await self._locate(backend, deployment_id))

    @operation("create_deployment")
    async def create_deployment(
        self, request: DeploymentRequest, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        self._require(request, "deployment request")
        validate_name(request.name)
        if not request.package_id:
            raise ValidationError("package_id is required")

        backend = await self._ensure_client(cancel)
        chart, version = await self._resolve_chart(backend, request)
        release = await backend.helm.install(
            request.name,
            chart,
            request.namespace or self.settings.namespace,
            values=request.values,
            version=version,
            repo=self._repo_for(chart),
            description=request.description or None,
            labels={**request.labels, **chart_labels(chart)},
        )
        logger.info("Installed Helm release %s (%s %s)", request.name, chart, version or "latest")
        return release_deployment(release)

    async def _resolve_chart(
        self, backend: HelmBackend, request: DeploymentRequest
    ) -> tuple[str, Optional[str]]:
        """Map a package ID from the index to (chart, version); anything else is a chart reference."""
        version = ext_str(request.extensions, "helm.chartVersion") or None
        if version or not self.repository or self.repository.startswith("oci://"):
            return request.package_id, version
        for chart_name, versions in (await self._index_entries(backend)).items():
            for entry in versions or []:
                if f"{chart_name}-{entry.get('version', '')}" == request.package_id:
                    return chart_name, str(entry.get("version"))
        return request.package_id, None

    def _repo_for(self, chart: str) -> Optional[str]:
        """The configured repository for bare chart names; OCI, alias and path references carry their own."""
        if "/" in chart:
            return None
        return self.repository

    async def _chart_reference(self, backend: HelmBackend, release: HelmRelease) -> str:
        """The chart argument the release was installed from, falling back to its chart name."""
        return chart_from_labels(await backend.release_labels(release)) or release.chart

    @operation("update_deployment")
    async def update_deployment(
        self,
        deployment_id: str,
        update: DeploymentUpdate,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> Deployment:
        """Upgrade a release, merging new values over the current user-supplied ones."""
        self._require(update, "deployment update")
        backend = await self._ensure_client(cancel)
        current = await self._locate(backend, deployment_id)

        values = await backend.helm.get_values(deployment_id, current.namespace)
        values.update(update.values)
        chart = ext_str(update.extensions, "helm.chart") or await self._chart_reference(backend, current)
        try:
            release = await backend.helm.upgrade(
                deployment_id,
                chart,
                current.namespace,
                values=values,
                version=ext_str(update.extensions, "helm.chartVersion", current.chart_version) or None,
                repo=self._repo_for(chart),
                max_history=self.settings.max_history,
                description=update.description or None,
                labels=chart_labels(chart),
            )
        except ReleaseNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e
        logger.info("Upgraded Helm release %s to revision %d", deployment_id, release.revision)
        return release_deployment(release)

    @operation("delete_deployment")
    async def delete_deployment(self, deployment_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        backend = await self._ensure_client(cancel)
        current = await self._locate(backend, deployment_id)
        try:
            await backend.helm.uninstall(deployment_id, current.namespace)
        except ReleaseNotFoundError as e:
            raise DeploymentNotFoundError(deployment_id) from e
        logger.info("Uninstalled Helm release %s", deployment_id)

    @operation("scale_deployment")
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("replicas", replicas)
        backend = await self._ensure_client(cancel)
        current = await self._locate(backend, deployment_id)
        chart = await self._chart_reference(backend, current)
        await backend.helm.upgrade(
            deployment_id,
            chart,
            current.namespace,
            values={"replicaCount": replicas},
            version=current.chart_version or None,
            repo=self._repo_for(chart),
            reuse_values=True,
            max_history=self.settings.max_history,
            labels=chart_labels(chart),
        )
        logger.info("Scaled Helm release %s to %d replicas", deployment_id, replicas)

    @operation("rollback_deployment")
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("revision", revision)
        backend = await self._ensure_client(cancel)
        current = await self._locate(backend, deployment_id)
        history = await backend.helm.history(deployment_id, current.namespace, self.settings.max_history)
        if revision >= len(history):
            raise RevisionNotFoundError(deployment_id, revision)

        target = history[revision].revision
        await backend.helm.rollback(deployment_id, current.namespace, target)
        logger.info("Rolled back Helm release %s to helm revision %d", deployment_id, target)

    @operation("get_deployment_status")
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail:
        backend = await self._ensure_client(cancel)
        release = await self._locate(backend, deployment_id)
        return DeploymentStatusDetail(
            deployment_id=release.name,
            status=helm_status(release.status),
            message=release.description,
            progress=helm_progress(release.status),
            conditions=release_conditions(release),
            updated_at=release.last_deployed,
            extensions={
                "helm.status": release.status,
                "helm.revision": release.revision,
                "helm.namespace": release.namespace,
            },
        )

    @operation("get_deployment_history")
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory:
        backend = await self._ensure_client(cancel)
        current = await self._locate(backend, deployment_id)
        entries = await backend.helm.history(deployment_id, current.namespace, self.settings.max_history)
        revisions = [
            DeploymentRevision(
                revision=index,
                version=entry.chart_version,
                deployed_at=entry.updated,
                status=helm_status(entry.status),
                description=entry.description,
            )
            for index, entry in enumerate(entries)
        ]
        return DeploymentHistory(deployment_id=deployment_id, revisions=revisions)

    @operation("get_deployment_logs")
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes:
        """Concatenate the logs of every pod labelled with the release name."""
        if options is not None and options.follow:
            raise UnsupportedOperationError("log streaming is not supported")
        backend = await self._ensure_client(cancel)
        release = await self._locate(backend, deployment_id)

        try:
            pods = await asyncio.to_thread(
                backend.core.list_namespaced_pod,
                release.namespace,
                label_selector=f"{INSTANCE_LABEL}={deployment_id}",
            )
        except ApiException as e:
            logger.error("Failed to list pods for release %s: %s", deployment_id, e.reason)
            raise BackendError(f"{e.status} {e.reason}", "logs", deployment_id) from e

        if not pods.items:
            return f"No pods found for release {deployment_id} in namespace {release.namespace}".encode()

        sections = []
        for pod in pods.items:
            text = await self._pod_log(backend, release.namespace, pod.metadata.name, options)
            sections.append(f"===== Pod: {pod.metadata.name} =====\n\n{text}")
        return "\n\n".join(sections).encode()

    async def _pod_log(
        self, backend: HelmBackend, namespace: str, pod: str, options: Optional[LogOptions]
    ) -> str:
        kwargs: dict[str, Any] = {}
        if options is not None:
            if options.container:
                kwargs["container"] = options.container
            if options.tail_lines:
                kwargs["tail_lines"] = options.tail_lines
            if options.since:
                since = options.since if options.since.tzinfo else options.since.replace(tzinfo=timezone.utc)
                kwargs["since_seconds"] = max(1, int((datetime.now(timezone.utc) - since).total_seconds()))
        try:
            return await asyncio.to_thread(backend.core.read_namespaced_pod_log, pod, namespace, **kwargs)
        except ApiException as e:
            # One unreadable pod should not hide the others
            logger.warning("Failed to read logs for pod %s/%s: %s", namespace, pod, e.reason)
            return f"Error retrieving logs: {e.status} {e.reason}\n"

    @operation("health")
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        backend = await self._ensure_client(cancel)
        await backend.helm.list_releases(self.settings.namespace, max_results=1)
