"""Pytest configuration and fixtures for deploygate tests."""

import asyncio
import copy
from typing import Any, Optional

import pytest

from deploygate.clients.helm import HelmRelease, HelmRevision, ReleaseNotFoundError
from deploygate.clients.kubernetes import ResourceKind
from deploygate.errors import BackendError, ResourceNotFoundError


class FakeResourceClient:
    """In-memory stand-in for ResourceClient keyed by (plural, namespace, name)."""

    def __init__(self):
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str, Optional[str]]] = []
        self.closed = False

    @staticmethod
    def _key(kind: ResourceKind, name: str, namespace: Optional[str]) -> tuple[str, str, str]:
        return kind.plural, namespace if kind.namespaced else "", name

    def add(self, kind: ResourceKind, obj: dict, namespace: Optional[str] = None) -> dict:
        name = obj["metadata"]["name"]
        ns = namespace or obj["metadata"].get("namespace", "")
        self.objects[self._key(kind, name, ns)] = copy.deepcopy(obj)
        return obj

    def stored(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> dict:
        return self.objects[self._key(kind, name, namespace)]

    def mutations(self) -> list[tuple[str, str]]:
        # Defined before the list method, which shadows the builtin in this class body
        return [call for call in self.calls if call[0] in ("create", "update", "delete")]

    async def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> dict:
        self.calls.append(("get", kind.plural))
        try:
            return copy.deepcopy(self.objects[self._key(kind, name, namespace)])
        except KeyError:
            raise ResourceNotFoundError(f"{kind.plural}/{name} not found") from None

    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        self.calls.append(("list", kind.plural))
        wanted = dict(pair.split("=", 1) for pair in label_selector.split(",")) if label_selector else {}
        items = []
        for (plural, ns, _), obj in self.objects.items():
            if plural != kind.plural:
                continue
            if kind.namespaced and namespace and ns != namespace:
                continue
            labels = obj.get("metadata", {}).get("labels") or {}
            if any(labels.get(k) != v for k, v in wanted.items()):
                continue
            items.append(copy.deepcopy(obj))
        return items[:limit] if limit else items

    async def create(self, kind: ResourceKind, body: dict, namespace: Optional[str] = None) -> dict:
        self.calls.append(("create", kind.plural))
        key = self._key(kind, body["metadata"]["name"], namespace)
        if key in self.objects:
            raise BackendError("409 Conflict", "create", f"{kind.plural}/{key[2]}")
        stored = copy.deepcopy(body)
        stored["metadata"].setdefault("creationTimestamp", "2024-05-01T10:00:00Z")
        self.objects[key] = stored
        return copy.deepcopy(stored)

    async def update(
        self, kind: ResourceKind, name: str, body: dict, namespace: Optional[str] = None
    ) -> dict:
        self.calls.append(("update", kind.plural))
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ResourceNotFoundError(f"{kind.plural}/{name} not found")
        self.objects[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    async def delete(
        self,
        kind: ResourceKind,
        name: str,
        namespace: Optional[str] = None,
        propagation_policy: Optional[str] = None,
    ) -> None:
        self.calls.append(("delete", kind.plural))
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ResourceNotFoundError(f"{kind.plural}/{name} not found")
        del self.objects[key]
        self.deleted.append((kind.plural, name, propagation_policy))

    def close(self) -> None:
        self.closed = True


class FakeHelmClient:
    """In-memory stand-in for HelmClient."""

    def __init__(self):
        self.releases: dict[tuple[str, str], HelmRelease] = {}
        self.histories: dict[tuple[str, str], list[HelmRevision]] = {}
        self.values: dict[tuple[str, str], dict[str, Any]] = {}
        self.labels: dict[tuple[str, str], dict[str, str]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def add_release(
        self,
        release: HelmRelease,
        history: Optional[list[HelmRevision]] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        key = (release.namespace, release.name)
        self.releases[key] = release
        self.histories[key] = history or []
        self.values[key] = dict(release.config)
        self.labels[key] = dict(labels or {})

    async def version(self) -> str:
        return "v3.14.0+gabcdef"

    async def list_releases(
        self, namespace: Optional[str] = None, max_results: Optional[int] = None, selector: Optional[str] = None
    ):
        self.calls.append(("list", {"namespace": namespace, "max_results": max_results, "selector": selector}))
        wanted = dict(pair.split("=", 1) for pair in selector.split(",")) if selector else {}
        releases = [
            r for key, r in sorted(self.releases.items())
            if (not namespace or key[0] == namespace)
            and all(self.labels[key].get(k) == v for k, v in wanted.items())
        ]
        return releases[:max_results] if max_results else releases

    async def get_release(self, name: str, namespace: str) -> HelmRelease:
        try:
            return self.releases[(namespace, name)]
        except KeyError:
            raise ReleaseNotFoundError("helm status", "Error: release: not found") from None

    async def history(self, name: str, namespace: str, max_revisions: int = 10):
        return self.histories.get((namespace, name), [])[-max_revisions:]

    async def get_values(self, name: str, namespace: str) -> dict[str, Any]:
        return dict(self.values.get((namespace, name), {}))

    async def install(self, name, chart, namespace, values=None, version=None, repo=None, description=None,
                      labels=None):
        self.calls.append(
            ("install", {"name": name, "chart": chart, "namespace": namespace, "values": values,
                         "version": version, "repo": repo, "description": description, "labels": labels})
        )
        release = HelmRelease(
            name=name, namespace=namespace, revision=1, status="deployed",
            chart=chart.rsplit("/", 1)[-1], chart_version=version or "1.0.0",
            description="Install complete", config=values or {},
        )
        self.add_release(release, labels=labels)
        return release

    async def upgrade(self, name, chart, namespace, values=None, version=None, repo=None,
                      reuse_values=False, max_history=None, description=None, labels=None):
        self.calls.append(
            ("upgrade", {"name": name, "chart": chart, "namespace": namespace, "values": values,
                         "version": version, "repo": repo, "reuse_values": reuse_values,
                         "max_history": max_history, "description": description, "labels": labels})
        )
        current = await self.get_release(name, namespace)
        release = HelmRelease(
            name=name, namespace=namespace, revision=current.revision + 1, status="deployed",
            chart=current.chart, chart_version=version or current.chart_version,
            description="Upgrade complete", config=values or {},
        )
        self.releases[(namespace, name)] = release
        self.labels[(namespace, name)].update(labels or {})
        return release

    async def uninstall(self, name: str, namespace: str) -> None:
        self.calls.append(("uninstall", {"name": name, "namespace": namespace}))
        await self.get_release(name, namespace)
        del self.releases[(namespace, name)]

    async def rollback(self, name: str, namespace: str, revision: int) -> None:
        self.calls.append(("rollback", {"name": name, "namespace": namespace, "revision": revision}))

    async def push(self, chart_path: str, remote: str) -> str:
        with open(chart_path, "rb") as f:
            self.calls.append(("push", {"remote": remote, "content": f.read()}))
        return "Pushed"

    def called(self, action: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == action]


class CountingFactory:
    """Client factory recording how many times it ran."""

    def __init__(self, result: Any = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_resources():
    """In-memory cluster resource client."""
    return FakeResourceClient()


@pytest.fixture
def fake_helm():
    """In-memory helm client."""
    return FakeHelmClient()


@pytest.fixture
def counting_factory():
    """The CountingFactory class, for tests that build their own."""
    return CountingFactory
