"""
Kubernetes cluster access.

Provides kubeconfig discovery and a thin client for custom resources whose
schema is not statically known. Resources are exchanged as plain nested
dicts; see ``deploygate.unstructured`` for the path accessors.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from ..config import KubernetesSettings
from ..errors import BackendError, ResourceNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    """Group/version/plural coordinate of a custom resource."""

    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return f"{self.plural}.{self.group}/{self.version}"


def load_api_client(settings: KubernetesSettings) -> client.ApiClient:
    """Build an API client with robust auto-detection and diagnostics.

    Tries, in order: the explicit kubeconfig, auto-discovered kubeconfigs
    (preferred contexts first), in-cluster config, and the default kubeconfig.
    Each candidate is checked with a version call before it is accepted.
    """
    errors: list[str] = []

    def try_load(desc: str, loader: Callable[[], client.ApiClient]) -> Optional[client.ApiClient]:
        try:
            api_client = loader()
            # Version call confirms connectivity
            client.VersionApi(api_client).get_code()
            logger.info("Kubernetes client initialized via %s", desc)
            return api_client
        except Exception as e:  # noqa: BLE001
            msg = f"{desc}: {e}"
            logger.debug("Kube init attempt failed: %s", msg, exc_info=True)
            errors.append(msg)
            return None

    def in_cluster() -> client.ApiClient:
        configuration = client.Configuration()
        config.load_incluster_config(client_configuration=configuration)
        return client.ApiClient(configuration)

    # 1) Explicit kubeconfig path + context
    if settings.kubeconfig_path:
        api_client = try_load(
            f"kubeconfig={settings.kubeconfig_path}, context={settings.context or 'default'}",
            lambda: config.new_client_from_config(
                config_file=settings.kubeconfig_path,
                context=settings.context,
            ),
        )
        if api_client:
            return api_client

    # 2) Auto-discovery paths/contexts
    if settings.auto_discover:
        env_kubeconfig = os.getenv("KUBECONFIG", "")
        candidates = []
        if env_kubeconfig:
            candidates.extend(env_kubeconfig.split(os.pathsep))
        candidates.extend(settings.extra_kubeconfig_paths or [])
        candidates.append(os.path.expanduser("~/.kube/config"))

        unique_candidates = list(dict.fromkeys(p for p in candidates if p))

        for kubeconfig_path in unique_candidates:
            if not os.path.exists(kubeconfig_path):
                continue
            if settings.context_preference:
                try:
                    contexts, _ = config.list_kube_config_contexts(config_file=kubeconfig_path)
                except Exception:  # noqa: BLE001
                    contexts = []
                names = [c["name"] for c in contexts or []]
                for ctx in settings.context_preference:
                    if ctx not in names:
                        continue
                    api_client = try_load(
                        f"kubeconfig={kubeconfig_path}, context={ctx}",
                        lambda c=ctx, p=kubeconfig_path: config.new_client_from_config(
                            config_file=p, context=c
                        ),
                    )
                    if api_client:
                        return api_client
            api_client = try_load(
                f"kubeconfig={kubeconfig_path}",
                lambda p=kubeconfig_path: config.new_client_from_config(config_file=p),
            )
            if api_client:
                return api_client

    # 3) In-cluster config
    api_client = try_load("in-cluster", in_cluster)
    if api_client:
        return api_client

    # 4) Default kubeconfig with default context
    api_client = try_load("default kubeconfig", config.new_client_from_config)
    if api_client:
        return api_client

    last_error = "; ".join(errors) if errors else "Unknown initialization error"
    logger.error("Failed to initialize Kubernetes client. Attempts: %s", last_error)
    raise BackendError(f"Kubernetes client initialization failed: {last_error}", "connect")


class ResourceClient:
    """get/list/create/update/delete against custom resource coordinates."""

    def __init__(self, api: client.CustomObjectsApi):
        self.api = api

    @classmethod
    def from_settings(cls, settings: KubernetesSettings) -> "ResourceClient":
        return cls(client.CustomObjectsApi(load_api_client(settings)))

    async def _call(self, operation: str, resource_id: str, func: Callable, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise ResourceNotFoundError(f"{resource_id} not found") from e
            logger.error("Kubernetes %s failed for %s: %s", operation, resource_id, e.reason)
            raise BackendError(f"{e.status} {e.reason}", operation, resource_id) from e
        except (HTTPError, OSError) as e:
            logger.error("Kubernetes %s failed for %s: %s", operation, resource_id, e)
            raise BackendError(str(e), operation, resource_id) from e

    async def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> dict:
        resource_id = f"{kind.plural}/{name}"
        if kind.namespaced:
            return await self._call(
                "get", resource_id, self.api.get_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, name=name,
            )
        return await self._call(
            "get", resource_id, self.api.get_cluster_custom_object,
            group=kind.group, version=kind.version, plural=kind.plural, name=name,
        )

    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """List resources. A namespaced kind with no namespace lists across all namespaces."""
        kwargs: dict[str, Any] = {"group": kind.group, "version": kind.version, "plural": kind.plural}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if limit:
            kwargs["limit"] = limit

        if kind.namespaced and namespace:
            result = await self._call(
                "list", kind.plural, self.api.list_namespaced_custom_object,
                namespace=namespace, **kwargs,
            )
        else:
            result = await self._call(
                "list", kind.plural, self.api.list_cluster_custom_object, **kwargs,
            )
        return list(result.get("items") or [])

    async def create(self, kind: ResourceKind, body: dict, namespace: Optional[str] = None) -> dict:
        resource_id = f"{kind.plural}/{body.get('metadata', {}).get('name', '')}"
        if kind.namespaced:
            return await self._call(
                "create", resource_id, self.api.create_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, body=body,
            )
        return await self._call(
            "create", resource_id, self.api.create_cluster_custom_object,
            group=kind.group, version=kind.version, plural=kind.plural, body=body,
        )

    async def update(
        self, kind: ResourceKind, name: str, body: dict, namespace: Optional[str] = None
    ) -> dict:
        """Replace a resource. ``body`` must carry the resourceVersion it was read with."""
        resource_id = f"{kind.plural}/{name}"
        if kind.namespaced:
            return await self._call(
                "update", resource_id, self.api.replace_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, name=name, body=body,
            )
        return await self._call(
            "update", resource_id, self.api.replace_cluster_custom_object,
            group=kind.group, version=kind.version, plural=kind.plural, name=name, body=body,
        )

    async def delete(
        self,
        kind: ResourceKind,
        name: str,
        namespace: Optional[str] = None,
        propagation_policy: Optional[str] = None,
    ) -> None:
        resource_id = f"{kind.plural}/{name}"
        body = client.V1DeleteOptions(propagation_policy=propagation_policy) if propagation_policy else None
        if kind.namespaced:
            await self._call(
                "delete", resource_id, self.api.delete_namespaced_custom_object,
                group=kind.group, version=kind.version, namespace=namespace,
                plural=kind.plural, name=name, body=body,
            )
            return
        await self._call(
            "delete", resource_id, self.api.delete_cluster_custom_object,
            group=kind.group, version=kind.version, plural=kind.plural, name=name, body=body,
        )

    def close(self) -> None:
        self.api.api_client.close()
