"""Tests for the Helm release adapter."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from deploygate.adapters.helm import HelmAdapter, HelmBackend, chart_from_labels, chart_labels, chart_package
from deploygate.clients.helm import HelmRelease, HelmRevision
from deploygate.config import HelmSettings
from deploygate.errors import (
    BackendError,
    DeploymentNotFoundError,
    PackageNotFoundError,
    RevisionNotFoundError,
    UnsupportedOperationError,
    ValidationError,
)
from deploygate.models import (
    DeploymentPackageUpload,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentUpdate,
    Filter,
    LogOptions,
)

REPO = "https://charts.example.com"

INDEX = """
apiVersion: v1
entries:
  nginx:
    - name: nginx
      version: 15.4.0
      appVersion: 1.25.3
      description: NGINX web server
      created: "2024-04-01T10:00:00.123456789Z"
      digest: abc
      urls: [nginx-15.4.0.tgz]
    - name: nginx
      version: 15.3.0
      appVersion: 1.25.2
      description: NGINX web server
  redis:
    - name: redis
      version: 18.1.0
      appVersion: 7.2.3
      description: Redis
"""


def release(name, namespace="default", revision=1, status="deployed", chart="nginx", chart_version="15.4.0", config=None):
    return HelmRelease(
        name=name,
        namespace=namespace,
        revision=revision,
        status=status,
        chart=chart,
        chart_version=chart_version,
        description="Install complete",
        config=config or {},
    )


def revision(number, status, chart_version):
    return HelmRevision(
        revision=number,
        status=status,
        chart=f"nginx-{chart_version}",
        app_version="1.25",
        description=f"Revision {number}",
        updated=None,
    )


def pod(name):
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def release_record(labels):
    """A helm storage secret as returned by the core API."""
    return SimpleNamespace(metadata=SimpleNamespace(labels={"owner": "helm", "name": "web", "status": "deployed", **labels}))


def index_transport(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/index.yaml":
        return httpx.Response(200, text=INDEX)
    return httpx.Response(404)


@pytest.fixture
def core():
    core = MagicMock(spec=client.CoreV1Api)
    core.api_client = MagicMock()
    return core


@pytest.fixture
def backend(fake_helm, core):
    http = httpx.AsyncClient(transport=httpx.MockTransport(index_transport))
    return HelmBackend(helm=fake_helm, core=core, http=http)


@pytest.fixture
def adapter(backend):
    return HelmAdapter(settings=HelmSettings(repository_url=REPO), client_factory=lambda: backend)


class TestHelmPackages:
    """Test cases for repository index packages."""

    @pytest.mark.asyncio
    async def test_list_latest_versions(self, adapter):
        """Test one package per chart, at its newest version."""
        packages = await adapter.list_packages()

        assert [p.id for p in packages] == ["nginx-15.4.0", "redis-18.1.0"]
        assert packages[0].extensions["helm.appVersion"] == "1.25.3"
        assert packages[0].uploaded_at is not None

    @pytest.mark.asyncio
    async def test_filter_by_chart(self, adapter):
        """Test chart name filtering through extensions."""
        packages = await adapter.list_packages(Filter(extensions={"helm.chartName": "redis"}))

        assert [p.name for p in packages] == ["redis"]

    @pytest.mark.asyncio
    async def test_get_older_version(self, adapter):
        """Test lookup covers every version in the index."""
        package = await adapter.get_package("nginx-15.3.0")

        assert package.version == "15.3.0"
        with pytest.raises(PackageNotFoundError):
            await adapter.get_package("nginx-1.0.0")

    @pytest.mark.asyncio
    async def test_no_repository(self, backend):
        """Test packages need a configured repository."""
        adapter = HelmAdapter(settings=HelmSettings(), client_factory=lambda: backend)
        with pytest.raises(BackendError, match="repository URL not configured"):
            await adapter.list_packages()

    @pytest.mark.asyncio
    async def test_upload_requires_oci(self, adapter):
        """Test upload is only offered for OCI registries."""
        upload = DeploymentPackageUpload(name="web", version="1.0.0", content=b"chart")
        with pytest.raises(UnsupportedOperationError):
            await adapter.upload_package(upload)

    @pytest.mark.asyncio
    async def test_upload_pushes_archive(self, backend, fake_helm):
        """Test the archive bytes are pushed to the registry."""
        adapter = HelmAdapter(
            settings=HelmSettings(repository_url="oci://registry.example.com/charts"),
            client_factory=lambda: backend,
        )

        package = await adapter.upload_package(
            DeploymentPackageUpload(name="web", version="1.0.0", content=b"chart-bytes")
        )

        (push,) = fake_helm.called("push")
        assert push == {"remote": "oci://registry.example.com/charts", "content": b"chart-bytes"}
        assert package.id == "web-1.0.0"

    @pytest.mark.asyncio
    async def test_upload_validation(self, adapter, fake_helm):
        """Test version and content are required before any push."""
        with pytest.raises(ValidationError, match="version is required"):
            await adapter.upload_package(DeploymentPackageUpload(name="web", content=b"x"))
        with pytest.raises(ValidationError, match="content cannot be None"):
            await adapter.upload_package(DeploymentPackageUpload(name="web", version="1.0.0"))
        assert fake_helm.called("push") == []

    def test_chart_package_extensions(self):
        """Test index entries map onto package fields."""
        package = chart_package("nginx", {"version": "1.0.0", "deprecated": True}, REPO)
        assert package.id == "nginx-1.0.0"
        assert package.extensions["helm.deprecated"] is True


class TestHelmReleases:
    """Test cases for release lifecycle."""

    @pytest.mark.asyncio
    async def test_create_resolves_index_package(self, adapter, fake_helm):
        """Test an index package ID becomes chart and version arguments."""
        request = DeploymentRequest(
            name="web", namespace="shop", package_id="nginx-15.3.0", values={"replicaCount": 2}, description="shop"
        )

        deployment = await adapter.create_deployment(request)

        (install,) = fake_helm.called("install")
        assert install["chart"] == "nginx"
        assert install["version"] == "15.3.0"
        assert install["repo"] == REPO
        assert install["namespace"] == "shop"
        assert install["description"] == "shop"
        assert deployment.status == DeploymentStatus.DEPLOYED
        assert deployment.version == 1

    @pytest.mark.asyncio
    async def test_create_oci_chart(self, adapter, fake_helm):
        """Test OCI chart references install without a repository."""
        await adapter.create_deployment(
            DeploymentRequest(name="web", package_id="oci://registry.example.com/charts/web",
                              extensions={"helm.chartVersion": "2.0.0"})
        )

        (install,) = fake_helm.called("install")
        assert install["repo"] is None
        assert install["version"] == "2.0.0"

    @pytest.mark.asyncio
    async def test_create_requires_package(self, adapter, fake_helm):
        """Test package_id is required."""
        with pytest.raises(ValidationError, match="package_id is required"):
            await adapter.create_deployment(DeploymentRequest(name="web"))
        assert fake_helm.calls == []

    @pytest.mark.asyncio
    async def test_locate_across_namespaces(self, adapter, fake_helm):
        """Test releases outside the default namespace are found."""
        fake_helm.add_release(release("web", namespace="shop"))

        deployment = await adapter.get_deployment("web")

        assert deployment.namespace == "shop"
        assert deployment.package_id == "nginx-15.4.0"

    @pytest.mark.asyncio
    async def test_get_missing(self, adapter):
        """Test unknown releases are DeploymentNotFound."""
        with pytest.raises(DeploymentNotFoundError):
            await adapter.get_deployment("ghost")

    @pytest.mark.asyncio
    async def test_list_by_namespace_and_status(self, adapter, fake_helm):
        """Test namespace scoping and status filtering."""
        fake_helm.add_release(release("a", namespace="shop"))
        fake_helm.add_release(release("b", namespace="shop", status="failed"))
        fake_helm.add_release(release("c", namespace="ops"))

        shop = await adapter.list_deployments(Filter(namespace="shop"))
        failed = await adapter.list_deployments(Filter(status=DeploymentStatus.FAILED))

        assert [d.id for d in shop] == ["a", "b"]
        assert [d.id for d in failed] == ["b"]
        assert fake_helm.calls[0] == ("list", {"namespace": "shop", "max_results": None, "selector": None})

    @pytest.mark.asyncio
    async def test_update_merges_values(self, adapter, fake_helm):
        """Test update layers new values over the current ones."""
        fake_helm.add_release(release("web", config={"replicaCount": 1, "service": {"type": "ClusterIP"}}))

        deployment = await adapter.update_deployment(
            "web", DeploymentUpdate(values={"replicaCount": 3}, description="scale out")
        )

        (upgrade,) = fake_helm.called("upgrade")
        assert upgrade["values"] == {"replicaCount": 3, "service": {"type": "ClusterIP"}}
        assert upgrade["version"] == "15.4.0"
        assert upgrade["max_history"] == 10
        assert upgrade["description"] == "scale out"
        assert deployment.version == 2

    @pytest.mark.asyncio
    async def test_delete(self, adapter, fake_helm):
        """Test delete uninstalls the release."""
        fake_helm.add_release(release("web"))

        await adapter.delete_deployment("web")

        assert fake_helm.called("uninstall") == [{"name": "web", "namespace": "default"}]
        with pytest.raises(DeploymentNotFoundError):
            await adapter.delete_deployment("web")

    @pytest.mark.asyncio
    async def test_scale_reuses_values(self, adapter, fake_helm):
        """Test scale upgrades with only replicaCount and reused values."""
        fake_helm.add_release(release("web"))

        await adapter.scale_deployment("web", 5)

        (upgrade,) = fake_helm.called("upgrade")
        assert upgrade["values"] == {"replicaCount": 5}
        assert upgrade["reuse_values"] is True

    @pytest.mark.asyncio
    async def test_scale_negative(self, adapter, fake_helm):
        """Test negative replicas are rejected before I/O."""
        with pytest.raises(ValidationError):
            await adapter.scale_deployment("web", -1)
        assert fake_helm.calls == []


class TestHelmHistory:
    """Test cases for history and rollback."""

    HISTORY = [revision(3, "superseded", "15.2.0"), revision(4, "superseded", "15.3.0"), revision(5, "deployed", "15.4.0")]

    @pytest.mark.asyncio
    async def test_history_indexes(self, adapter, fake_helm):
        """Test revisions are re-numbered by index."""
        fake_helm.add_release(release("web", revision=5), history=self.HISTORY)

        history = await adapter.get_deployment_history("web")

        assert [r.revision for r in history.revisions] == [0, 1, 2]
        assert [r.version for r in history.revisions] == ["15.2.0", "15.3.0", "15.4.0"]
        assert history.revisions[0].status == DeploymentStatus.FAILED
        assert history.revisions[2].status == DeploymentStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_rollback_maps_index_to_helm_revision(self, adapter, fake_helm):
        """Test the index resolves to the recorded helm revision number."""
        fake_helm.add_release(release("web", revision=5), history=self.HISTORY)

        await adapter.rollback_deployment("web", 1)

        assert fake_helm.called("rollback") == [{"name": "web", "namespace": "default", "revision": 4}]

    @pytest.mark.asyncio
    async def test_rollback_out_of_range(self, adapter, fake_helm):
        """Test an index past the history fails without rolling back."""
        fake_helm.add_release(release("web", revision=5), history=self.HISTORY)

        with pytest.raises(RevisionNotFoundError):
            await adapter.rollback_deployment("web", 3)
        assert fake_helm.called("rollback") == []

    @pytest.mark.asyncio
    async def test_status(self, adapter, fake_helm):
        """Test status detail for a pending upgrade."""
        fake_helm.add_release(release("web", status="pending-upgrade"))

        detail = await adapter.get_deployment_status("web")

        assert detail.status == DeploymentStatus.DEPLOYING
        assert detail.conditions[0].status == "False"
        assert detail.conditions[0].message == "Release status: pending-upgrade"


class TestHelmLogs:
    """Test cases for pod log collection."""

    @pytest.mark.asyncio
    async def test_sections_per_pod(self, adapter, fake_helm, core):
        """Test each pod gets a headed section and options are passed through."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_pod.return_value = SimpleNamespace(items=[pod("web-0"), pod("web-1")])
        core.read_namespaced_pod_log.side_effect = ["line a\n", "line b\n"]

        logs = await adapter.get_deployment_logs("web", LogOptions(container="app", tail_lines=50))

        text = logs.decode()
        assert text == "===== Pod: web-0 =====\n\nline a\n\n\n===== Pod: web-1 =====\n\nline b\n"
        core.list_namespaced_pod.assert_called_once_with(
            "default", label_selector="app.kubernetes.io/instance=web"
        )
        core.read_namespaced_pod_log.assert_any_call("web-0", "default", container="app", tail_lines=50)

    @pytest.mark.asyncio
    async def test_pod_error_is_inlined(self, adapter, fake_helm, core):
        """Test one unreadable pod does not fail the call."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_pod.return_value = SimpleNamespace(items=[pod("web-0"), pod("web-1")])
        core.read_namespaced_pod_log.side_effect = [ApiException(status=500, reason="Internal"), "ok\n"]

        text = (await adapter.get_deployment_logs("web")).decode()

        assert "Error retrieving logs: 500 Internal" in text
        assert "ok" in text

    @pytest.mark.asyncio
    async def test_no_pods(self, adapter, fake_helm, core):
        """Test a release without pods says so."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_pod.return_value = SimpleNamespace(items=[])

        text = (await adapter.get_deployment_logs("web")).decode()

        assert text == "No pods found for release web in namespace default"

    @pytest.mark.asyncio
    async def test_follow_unsupported(self, adapter):
        """Test streaming is rejected."""
        with pytest.raises(UnsupportedOperationError):
            await adapter.get_deployment_logs("web", LogOptions(follow=True))

    @pytest.mark.asyncio
    async def test_list_pods_failure(self, adapter, fake_helm, core):
        """Test a failed pod listing is a backend error."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(BackendError, match="403 Forbidden"):
            await adapter.get_deployment_logs("web")


class TestHelmHealthAndClose:
    """Test cases for health and shutdown."""

    @pytest.mark.asyncio
    async def test_health_lists_one(self, adapter, fake_helm):
        """Test health lists at most one release."""
        await adapter.health()

        assert fake_helm.calls == [("list", {"namespace": "default", "max_results": 1, "selector": None})]

    @pytest.mark.asyncio
    async def test_close(self, adapter, backend, core):
        """Test close releases the HTTP client and the API client."""
        await adapter.health()

        await adapter.close()

        assert backend.http.is_closed
        core.api_client.close.assert_called_once()


class TestHelmReleaseLabels:
    """Test cases for release labels and the recorded chart reference."""

    @pytest.mark.asyncio
    async def test_list_filters_by_labels(self, adapter, fake_helm):
        """Test label filters become a helm release selector."""
        fake_helm.add_release(release("web"), labels={"team": "shop"})
        fake_helm.add_release(release("db"), labels={"team": "data"})

        shop = await adapter.list_deployments(Filter(labels={"team": "shop"}))
        nobody = await adapter.list_deployments(Filter(labels={"team": "nobody"}))

        assert [d.id for d in shop] == ["web"]
        assert nobody == []
        assert fake_helm.calls[0] == ("list", {"namespace": None, "max_results": None, "selector": "team=shop"})

    @pytest.mark.asyncio
    async def test_create_applies_labels(self, adapter, fake_helm):
        """Test request labels and the chart reference are set on install."""
        await adapter.create_deployment(
            DeploymentRequest(name="web", package_id="nginx-15.4.0", labels={"team": "shop"})
        )

        (install,) = fake_helm.called("install")
        assert install["labels"]["team"] == "shop"
        assert chart_from_labels(install["labels"]) == "nginx"

    @pytest.mark.asyncio
    async def test_scale_reuses_installed_chart_reference(self, backend, fake_helm, core):
        """Test an OCI release is upgraded from its original reference without a repository."""
        adapter = HelmAdapter(settings=HelmSettings(), client_factory=lambda: backend)
        await adapter.create_deployment(
            DeploymentRequest(name="web", package_id="oci://registry.example.com/charts/web")
        )
        (install,) = fake_helm.called("install")
        core.list_namespaced_secret.return_value = SimpleNamespace(items=[release_record(install["labels"])])

        await adapter.scale_deployment("web", 3)

        (upgrade,) = fake_helm.called("upgrade")
        assert upgrade["chart"] == "oci://registry.example.com/charts/web"
        assert upgrade["repo"] is None
        assert upgrade["values"] == {"replicaCount": 3}
        core.list_namespaced_secret.assert_called_once_with(
            "default", label_selector="owner=helm,name=web,version=1"
        )

    @pytest.mark.asyncio
    async def test_update_chart_override_is_recorded(self, adapter, fake_helm, core):
        """Test a chart override is used and recorded for later upgrades."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_secret.return_value = SimpleNamespace(items=[])

        await adapter.update_deployment(
            "web", DeploymentUpdate(extensions={"helm.chart": "oci://registry.example.com/charts/web2"})
        )

        (upgrade,) = fake_helm.called("upgrade")
        assert upgrade["chart"] == "oci://registry.example.com/charts/web2"
        assert upgrade["repo"] is None
        assert chart_from_labels(fake_helm.labels[("default", "web")]) == "oci://registry.example.com/charts/web2"

    @pytest.mark.asyncio
    async def test_release_record_unreadable(self, adapter, fake_helm, core):
        """Test a forbidden release record read is a backend error and nothing is upgraded."""
        fake_helm.add_release(release("web"))
        core.list_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(BackendError, match="403 Forbidden"):
            await adapter.scale_deployment("web", 2)
        assert fake_helm.called("upgrade") == []

    def test_chart_labels_are_valid_label_values(self):
        """Test long references span several label values of at most 63 characters."""
        reference = "oci://registry.example.com/platform/team-charts/very-long-chart-name"

        labels = chart_labels(reference)

        assert len(labels) == 4
        assert all(len(value) <= 63 for value in labels.values())
        assert labels["deploygate.io/chart.1"] != ""
        assert chart_from_labels(labels) == reference

    def test_chart_reference_limits(self):
        """Test oversized references are rejected and unrecorded releases decode to None."""
        with pytest.raises(ValidationError, match="too long"):
            chart_labels("oci://" + "x" * 200)
        assert chart_from_labels({"team": "shop"}) is None
