"""
ArgoCD adapter over the ArgoCD REST API.

Superseded by ``ArgoCDAdapter``, which talks to Application resources
directly. Kept for hosts where only the ArgoCD API server is reachable.
Status and history mapping are shared with the resource-based adapter.

Create reads ``argocd.repoURL`` (required), ``argocd.path`` and
``argocd.targetRevision``; values are sent as Helm parameters. Update
accepts the same path and revision extensions. Packages are keyed by
repository and path, as in the resource-based adapter.
"""

import logging
from typing import Any, Optional

import httpx

from ..config import ArgoCDSettings
from ..errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    UnsupportedOperationError,
)
from ..models import (
    Capability,
    Deployment,
    DeploymentHistory,
    DeploymentPackage,
    DeploymentPackageUpload,
    DeploymentRequest,
    DeploymentStatusDetail,
    DeploymentUpdate,
    Filter,
    LogOptions,
)
from ..unstructured import nested_list, nested_map, nested_str, parse_timestamp, set_nested
from .argocd import application_history, application_status, history_target
from .base import CancelSignal, ClientFactory, DMSAdapter, operation
from .common import (
    DESCRIPTION_ANNOTATION,
    derive_package_id,
    ext_str,
    matches_labels,
    require_ext,
    require_non_negative,
    validate_name,
    validate_path,
)
from .status import argocd_status

logger = logging.getLogger(__name__)

APPLICATIONS_PATH = "/api/v1/applications"


def helm_parameters(values: dict[str, Any]) -> list[dict[str, str]]:
    """Flatten values into ArgoCD Helm ``{name, value}`` parameters."""
    return [{"name": key, "value": str(values[key])} for key in sorted(values)]


class ArgoCDRestAdapter(DMSAdapter[httpx.AsyncClient]):
    """Deployments as ArgoCD Applications, via the API server."""

    name = "argocd-rest"
    version = "2.10.0"

    def __init__(
        self,
        settings: Optional[ArgoCDSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__(client_factory)
        self.settings = settings or ArgoCDSettings()

    async def _default_client(self) -> httpx.AsyncClient:
        if not self.settings.server_url:
            raise BackendError("ARGOCD_SERVER_URL is not configured", "initialize", self.name)
        headers = {"Content-Type": "application/json"}
        if self.settings.auth_token:
            headers["Authorization"] = f"Bearer {self.settings.auth_token}"
        return httpx.AsyncClient(
            base_url=self.settings.server_url.rstrip("/"),
            headers=headers,
            timeout=self.settings.request_timeout,
            verify=not self.settings.insecure,
        )

    def capabilities(self) -> list[Capability]:
        return [
            Capability.PACKAGE_MANAGEMENT,
            Capability.DEPLOYMENT_LIFECYCLE,
            Capability.ROLLBACK,
            Capability.GITOPS,
            Capability.HEALTH_CHECKS,
        ]

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        operation_name: str,
        deployment_id: Optional[str] = None,
        body: Optional[dict] = None,
    ) -> dict:
        try:
            response = await client.request(method, path, json=body)
        except httpx.HTTPError as e:
            logger.error("ArgoCD API %s %s failed: %s", method, path, e)
            raise BackendError(f"request failed: {e}", operation_name, deployment_id) from e

        if response.status_code == 404 and deployment_id:
            raise DeploymentNotFoundError(deployment_id)
        if response.is_error:
            logger.error("ArgoCD API %s %s returned %s", method, path, response.status_code)
            raise BackendError(
                f"argocd api error: {response.status_code} - {response.text}",
                operation_name,
                deployment_id,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"failed to decode response: {e}", operation_name, deployment_id) from e

    async def _list_apps(self, client: httpx.AsyncClient) -> list[dict]:
        data = await self._request(client, "GET", APPLICATIONS_PATH, "list")
        return nested_list(data, "items")

    async def _get_app(self, client: httpx.AsyncClient, deployment_id: str) -> dict:
        return await self._request(client, "GET", f"{APPLICATIONS_PATH}/{deployment_id}", "get", deployment_id)

    async def _put_app(self, client: httpx.AsyncClient, deployment_id: str, app: dict) -> dict:
        return await self._request(
            client, "PUT", f"{APPLICATIONS_PATH}/{deployment_id}", "update", deployment_id, app
        )

    # Packages

    @operation("list_packages")
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]:
        client = await self._ensure_client(cancel)
        packages: dict[str, DeploymentPackage] = {}
        for app in await self._list_apps(client):
            repo_url = nested_str(app, "spec", "source", "repoURL")
            if not repo_url:
                continue
            target = nested_str(app, "spec", "source", "targetRevision")
            path = nested_str(app, "spec", "source", "path")
            key = derive_package_id("git-repo", repo_url, path)
            if key in packages:
                continue
            packages[key] = DeploymentPackage(
                id=key,
                name=path or repo_url,
                version=target,
                package_type="git-repo",
                description=f"Git repository: {repo_url}",
                uploaded_at=parse_timestamp(nested_str(app, "metadata", "creationTimestamp")),
                extensions={
                    "argocd.repoURL": repo_url,
                    "argocd.targetRevision": target,
                    "argocd.path": path,
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
        raise UnsupportedOperationError(
            "argocd REST adapter does not support direct package uploads; use Git repositories"
        )

    @operation("delete_package")
    async def delete_package(self, package_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        raise UnsupportedOperationError(
            "argocd REST adapter does not support package deletion; manage Git repositories externally"
        )

    # Deployments

    @operation("list_deployments")
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]:
        client = await self._ensure_client(cancel)
        deployments = []
        for app in await self._list_apps(client):
            # The API has no label selector parameter; filter client-side
            if filter and not matches_labels(nested_map(app, "metadata", "labels"), filter.labels):
                continue
            deployment = self._to_deployment(app)
            if self._matches(deployment, filter):
                deployments.append(deployment)
        return self._page(deployments, filter)

    @operation("get_deployment")
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment:
        client = await self._ensure_client(cancel)
        return self._to_deployment(await self._get_app(client, deployment_id))

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
        if request.values:
            source["helm"] = {"parameters": helm_parameters(request.values)}

        app: dict[str, Any] = {
            "metadata": {
                "name": request.name,
                "namespace": self.settings.namespace,
                "labels": dict(request.labels),
            },
            "spec": {
                "project": self.settings.default_project,
                "source": source,
                "destination": {
                    "server": self.settings.destination_server,
                    "namespace": request.namespace or "default",
                },
            },
        }
        if request.description:
            app["metadata"]["annotations"] = {DESCRIPTION_ANNOTATION: request.description}
        if self.settings.auto_sync:
            app["spec"]["syncPolicy"] = {
                "automated": {"prune": self.settings.prune, "selfHeal": self.settings.self_heal},
            }

        client = await self._ensure_client(cancel)
        created = await self._request(client, "POST", APPLICATIONS_PATH, "create", body=app)
        logger.info("Created ArgoCD application %s via API", request.name)
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

        client = await self._ensure_client(cancel)
        app = await self._get_app(client, deployment_id)

        target_revision = ext_str(update.extensions, "argocd.targetRevision")
        if target_revision:
            set_nested(app, target_revision, "spec", "source", "targetRevision")
        if path:
            set_nested(app, path, "spec", "source", "path")
        if update.values:
            set_nested(app, helm_parameters(update.values), "spec", "source", "helm", "parameters")
        if update.description:
            set_nested(app, update.description, "metadata", "annotations", DESCRIPTION_ANNOTATION)

        updated = await self._put_app(client, deployment_id, app)
        logger.info("Updated ArgoCD application %s via API", deployment_id)
        return self._to_deployment(updated)

    @operation("delete_deployment")
    async def delete_deployment(self, deployment_id: str, *, cancel: Optional[CancelSignal] = None) -> None:
        client = await self._ensure_client(cancel)
        await self._request(client, "DELETE", f"{APPLICATIONS_PATH}/{deployment_id}", "delete", deployment_id)
        logger.info("Deleted ArgoCD application %s via API", deployment_id)

    @operation("scale_deployment")
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("replicas", replicas)
        raise UnsupportedOperationError(
            "argocd REST adapter does not support scaling; set replicaCount through update values"
        )

    @operation("rollback_deployment")
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        require_non_negative("revision", revision)
        client = await self._ensure_client(cancel)
        app = await self._get_app(client, deployment_id)
        target = history_target(deployment_id, app, revision)
        set_nested(app, target, "spec", "source", "targetRevision")
        await self._put_app(client, deployment_id, app)
        logger.info("Rolled back ArgoCD application %s to revision %d via API", deployment_id, revision)

    @operation("get_deployment_status")
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail:
        client = await self._ensure_client(cancel)
        return application_status(deployment_id, await self._get_app(client, deployment_id))

    @operation("get_deployment_history")
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory:
        client = await self._ensure_client(cancel)
        return application_history(deployment_id, await self._get_app(client, deployment_id))

    @operation("get_deployment_logs")
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes:
        raise UnsupportedOperationError(
            "argocd REST adapter does not support log retrieval; read pod logs from the cluster"
        )

    @operation("health")
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        client = await self._ensure_client(cancel)
        await self._request(client, "GET", "/api/version", "health")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _to_deployment(self, app: dict) -> Deployment:
        name = nested_str(app, "metadata", "name")
        source = nested_map(app, "spec", "source")
        health = nested_str(app, "status", "health", "status")
        sync = nested_str(app, "status", "sync", "status")
        created_at = parse_timestamp(nested_str(app, "metadata", "creationTimestamp"))
        return Deployment(
            id=name,
            name=name,
            package_id=(
                derive_package_id("git-repo", nested_str(source, "repoURL"), nested_str(source, "path"))
                if nested_str(source, "repoURL")
                else ""
            ),
            description=nested_str(app, "metadata", "annotations", DESCRIPTION_ANNOTATION),
            namespace=nested_str(app, "spec", "destination", "namespace"),
            status=argocd_status(health, sync),
            version=len(nested_list(app, "status", "history")),
            created_at=created_at,
            updated_at=parse_timestamp(nested_str(app, "status", "reconciledAt")) or created_at,
            extensions={
                "argocd.appName": name,
                "argocd.project": nested_str(app, "spec", "project"),
                "argocd.repoURL": nested_str(source, "repoURL"),
                "argocd.targetRevision": nested_str(source, "targetRevision"),
                "argocd.path": nested_str(source, "path"),
                "argocd.syncStatus": sync,
                "argocd.healthStatus": health,
            },
        )
