"""Tests for the ArgoCD Application adapter."""

import json

import pytest

from deploygate.adapters.argocd import APPLICATIONS, REFRESH_ANNOTATION, ArgoCDAdapter
from deploygate.adapters.common import DESCRIPTION_ANNOTATION, derive_package_id
from deploygate.config import ArgoCDSettings
from deploygate.errors import (
    BackendError,
    DeploymentNotFoundError,
    InvalidPathError,
    PackageNotFoundError,
    ResourceNotFoundError,
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
)

REPO = "https://git.example.com/platform/apps.git"


def make_app(name, health="Healthy", sync="Synced", labels=None, history=None, path="apps/web", namespace="web"):
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": name,
            "namespace": "argocd",
            "labels": labels or {},
            "creationTimestamp": "2024-04-01T08:00:00Z",
        },
        "spec": {
            "project": "default",
            "source": {"repoURL": REPO, "path": path, "targetRevision": "main"},
            "destination": {"server": "https://kubernetes.default.svc", "namespace": namespace},
        },
        "status": {
            "health": {"status": health, "message": ""},
            "sync": {"status": sync, "revision": "f00dcafe"},
            "history": history or [],
            "reconciledAt": "2024-04-02T09:30:00Z",
        },
    }


@pytest.fixture
def adapter(fake_resources):
    return ArgoCDAdapter(settings=ArgoCDSettings(), client_factory=lambda: fake_resources)


class TestArgoCDDeployments:
    """Test cases for Application lifecycle translation."""

    @pytest.mark.asyncio
    async def test_create_builds_application(self, adapter, fake_resources):
        """Test create writes a complete Application."""
        request = DeploymentRequest(
            name="web",
            namespace="shop",
            description="storefront",
            values={"replicaCount": 2, "image": {"tag": "1.2.3"}},
            labels={"team": "shop"},
            extensions={"argocd.repoURL": REPO, "argocd.path": "apps/web", "argocd.targetRevision": "v1.2.3"},
        )

        deployment = await adapter.create_deployment(request)

        body = fake_resources.stored(APPLICATIONS, "web", "argocd")
        assert body["metadata"]["labels"] == {"team": "shop"}
        assert body["metadata"]["annotations"][DESCRIPTION_ANNOTATION] == "storefront"
        assert body["spec"]["source"]["targetRevision"] == "v1.2.3"
        assert body["spec"]["destination"]["namespace"] == "shop"
        assert json.loads(body["spec"]["source"]["helm"]["values"]) == {"replicaCount": 2, "image": {"tag": "1.2.3"}}
        assert "syncPolicy" not in body["spec"]
        assert deployment.id == "web"
        assert deployment.namespace == "shop"
        assert deployment.package_id == derive_package_id("git-repo", REPO, "apps/web")

    @pytest.mark.asyncio
    async def test_create_auto_sync_policy(self, fake_resources):
        """Test sync policy follows settings."""
        settings = ArgoCDSettings(auto_sync=True, prune=True, self_heal=True)
        adapter = ArgoCDAdapter(settings=settings, client_factory=lambda: fake_resources)

        await adapter.create_deployment(DeploymentRequest(name="web", extensions={"argocd.repoURL": REPO}))

        body = fake_resources.stored(APPLICATIONS, "web", "argocd")
        assert body["spec"]["syncPolicy"] == {"automated": {"prune": True, "selfHeal": True}}

    @pytest.mark.asyncio
    async def test_create_requires_repo_url(self, adapter, fake_resources):
        """Test the repository extension is mandatory."""
        with pytest.raises(ValidationError, match="argocd.repoURL extension is required"):
            await adapter.create_deployment(DeploymentRequest(name="web"))
        assert fake_resources.mutations() == []

    @pytest.mark.asyncio
    async def test_create_rejects_traversal_path(self, adapter, fake_resources):
        """Test path traversal is rejected before any write."""
        request = DeploymentRequest(name="web", extensions={"argocd.repoURL": REPO, "argocd.path": "../secrets"})
        with pytest.raises(InvalidPathError):
            await adapter.create_deployment(request)
        assert fake_resources.mutations() == []

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, adapter, fake_resources):
        """Test label selection, status filtering and pagination."""
        for i in range(5):
            fake_resources.add(APPLICATIONS, make_app(f"app-{i}", labels={"team": "shop"}))
        fake_resources.add(APPLICATIONS, make_app("other", labels={"team": "ops"}))
        fake_resources.add(APPLICATIONS, make_app("broken", health="Degraded", labels={"team": "shop"}))

        page = await adapter.list_deployments(Filter(labels={"team": "shop"}, status=DeploymentStatus.DEPLOYED, limit=2, offset=1))
        everything = await adapter.list_deployments(Filter(labels={"team": "shop"}))

        assert [d.id for d in page] == ["app-1", "app-2"]
        assert len(everything) == 6
        assert "other" not in {d.id for d in everything}

    @pytest.mark.asyncio
    async def test_get_missing(self, adapter):
        """Test a missing Application is DeploymentNotFound."""
        with pytest.raises(DeploymentNotFoundError, match="deployment not found: ghost"):
            await adapter.get_deployment("ghost")

    @pytest.mark.asyncio
    async def test_get_maps_fields(self, adapter, fake_resources):
        """Test Application fields land in the canonical deployment."""
        fake_resources.add(APPLICATIONS, make_app("web", history=[{"id": 0, "revision": "a1"}, {"id": 1, "revision": "b2"}]))

        deployment = await adapter.get_deployment("web")

        assert deployment.status == DeploymentStatus.DEPLOYED
        assert deployment.version == 2
        assert deployment.extensions["argocd.syncStatus"] == "Synced"
        assert deployment.extensions["argocd.syncRevision"] == "f00dcafe"
        assert deployment.updated_at.isoformat() == "2024-04-02T09:30:00+00:00"

    @pytest.mark.asyncio
    async def test_update_merges_values_and_description(self, adapter, fake_resources):
        """Test update changes target revision, values and description."""
        app = make_app("web")
        app["spec"]["source"]["helm"] = {"values": "replicaCount: 1\nimage:\n  tag: old\n"}
        fake_resources.add(APPLICATIONS, app)

        await adapter.update_deployment(
            "web",
            DeploymentUpdate(
                description="new",
                values={"image": {"tag": "new"}},
                extensions={"argocd.targetRevision": "v2"},
            ),
        )

        body = fake_resources.stored(APPLICATIONS, "web", "argocd")
        assert body["spec"]["source"]["targetRevision"] == "v2"
        assert json.loads(body["spec"]["source"]["helm"]["values"]) == {"replicaCount": 1, "image": {"tag": "new"}}
        assert body["metadata"]["annotations"][DESCRIPTION_ANNOTATION] == "new"

    @pytest.mark.asyncio
    async def test_update_none(self, adapter):
        """Test a None update is a validation error."""
        with pytest.raises(ValidationError, match="deployment update cannot be None"):
            await adapter.update_deployment("web", None)

    @pytest.mark.asyncio
    async def test_delete(self, adapter, fake_resources):
        """Test delete uses foreground propagation."""
        fake_resources.add(APPLICATIONS, make_app("web"))

        await adapter.delete_deployment("web")

        assert fake_resources.deleted == [("applications", "web", "Foreground")]
        with pytest.raises(DeploymentNotFoundError):
            await adapter.delete_deployment("web")

    @pytest.mark.asyncio
    async def test_scale_writes_replica_count(self, adapter, fake_resources):
        """Test scaling goes through Helm values."""
        fake_resources.add(APPLICATIONS, make_app("web"))

        await adapter.scale_deployment("web", 4)

        body = fake_resources.stored(APPLICATIONS, "web", "argocd")
        assert json.loads(body["spec"]["source"]["helm"]["values"]) == {"replicaCount": 4}

    @pytest.mark.asyncio
    async def test_scale_negative(self, adapter, fake_resources):
        """Test negative replicas fail before any backend call."""
        fake_resources.add(APPLICATIONS, make_app("web"))
        with pytest.raises(ValidationError):
            await adapter.scale_deployment("web", -1)
        assert fake_resources.calls == []


class TestArgoCDRollbackAndHistory:
    """Test cases for history and rollback."""

    HISTORY = [
        {"id": 0, "revision": "1111", "deployedAt": "2024-03-01T00:00:00Z"},
        {"id": 1, "revision": "2222", "deployedAt": "2024-03-02T00:00:00Z"},
        {"id": 2, "revision": "3333", "deployedAt": "2024-03-03T00:00:00Z"},
    ]

    @pytest.mark.asyncio
    async def test_history_oldest_first(self, adapter, fake_resources):
        """Test revisions are indexed oldest first."""
        fake_resources.add(APPLICATIONS, make_app("web", health="Degraded", history=self.HISTORY))

        history = await adapter.get_deployment_history("web")

        assert [r.revision for r in history.revisions] == [0, 1, 2]
        assert [r.version for r in history.revisions] == ["1111", "2222", "3333"]
        assert history.revisions[0].status == DeploymentStatus.DEPLOYED
        assert history.revisions[-1].status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_history_synthetic_entry(self, adapter, fake_resources):
        """Test an Application without history gets one entry."""
        fake_resources.add(APPLICATIONS, make_app("web"))

        history = await adapter.get_deployment_history("web")

        assert len(history.revisions) == 1
        assert history.revisions[0].version == "main"

    @pytest.mark.asyncio
    async def test_rollback_writes_target_and_refresh(self, adapter, fake_resources):
        """Test rollback pins the recorded revision and requests a hard refresh."""
        fake_resources.add(APPLICATIONS, make_app("web", history=self.HISTORY))

        await adapter.rollback_deployment("web", 1)

        body = fake_resources.stored(APPLICATIONS, "web", "argocd")
        assert body["spec"]["source"]["targetRevision"] == "2222"
        assert body["metadata"]["annotations"][REFRESH_ANNOTATION] == "hard"

    @pytest.mark.asyncio
    async def test_rollback_out_of_range(self, adapter, fake_resources):
        """Test revision >= len(history) is RevisionNotFound with no mutation."""
        fake_resources.add(APPLICATIONS, make_app("web", history=self.HISTORY))

        with pytest.raises(RevisionNotFoundError, match="revision 3 not found"):
            await adapter.rollback_deployment("web", 3)
        assert fake_resources.mutations() == []

    @pytest.mark.asyncio
    async def test_rollback_negative(self, adapter):
        """Test negative revisions are rejected."""
        with pytest.raises(ValidationError):
            await adapter.rollback_deployment("web", -1)

    @pytest.mark.asyncio
    async def test_status_detail(self, adapter, fake_resources):
        """Test status detail combines health and sync."""
        fake_resources.add(APPLICATIONS, make_app("web", health="Progressing", sync="OutOfSync"))

        detail = await adapter.get_deployment_status("web")

        assert detail.status == DeploymentStatus.DEPLOYING
        assert detail.progress == 50
        assert {c.type for c in detail.conditions} == {"Synced", "Healthy"}


class TestArgoCDPackages:
    """Test cases for synthesized packages."""

    @pytest.mark.asyncio
    async def test_packages_deduplicated(self, adapter, fake_resources):
        """Test Applications sharing a source give one package."""
        fake_resources.add(APPLICATIONS, make_app("a", path="apps/web"))
        fake_resources.add(APPLICATIONS, make_app("b", path="apps/web"))
        fake_resources.add(APPLICATIONS, make_app("c", path="apps/api"))

        packages = await adapter.list_packages()

        assert len(packages) == 2
        assert {p.id for p in packages} == {
            derive_package_id("git-repo", REPO, "apps/web"),
            derive_package_id("git-repo", REPO, "apps/api"),
        }

    @pytest.mark.asyncio
    async def test_get_package(self, adapter, fake_resources):
        """Test packages are found by derived ID."""
        fake_resources.add(APPLICATIONS, make_app("a", path="apps/web"))
        package_id = derive_package_id("git-repo", REPO, "apps/web")

        package = await adapter.get_package(package_id)

        assert package.extensions["argocd.repoURL"] == REPO
        with pytest.raises(PackageNotFoundError):
            await adapter.get_package("git-repo-unknown")

    @pytest.mark.asyncio
    async def test_upload_reference(self, adapter, fake_resources):
        """Test upload returns a reference without touching the cluster."""
        upload = DeploymentPackageUpload(
            name="web", version="v1", extensions={"argocd.repoURL": REPO, "argocd.path": "apps/web"}
        )

        package = await adapter.upload_package(upload)

        assert package.id == derive_package_id("git-repo", REPO, "apps/web")
        assert package.version == "v1"
        assert fake_resources.calls == []

    @pytest.mark.asyncio
    async def test_delete_package_unsupported(self, adapter):
        """Test package deletion is unsupported."""
        with pytest.raises(UnsupportedOperationError):
            await adapter.delete_package("anything")


class TestArgoCDMisc:
    """Test cases for logs and health."""

    @pytest.mark.asyncio
    async def test_logs_snapshot(self, adapter, fake_resources):
        """Test logs return the Application status as JSON."""
        fake_resources.add(APPLICATIONS, make_app("web"))

        data = json.loads(await adapter.get_deployment_logs("web"))

        assert data["application"] == "web"
        assert data["status"]["health"]["status"] == "Healthy"

    @pytest.mark.asyncio
    async def test_health(self, adapter, fake_resources):
        """Test health lists Applications with a limit."""
        await adapter.health()
        assert ("list", "applications") in fake_resources.calls

    @pytest.mark.asyncio
    async def test_health_missing_crd(self, fake_resources):
        """Test a missing resource type is a backend error."""

        async def missing(*args, **kwargs):
            raise ResourceNotFoundError("applications not found")

        fake_resources.list = missing
        adapter = ArgoCDAdapter(client_factory=lambda: fake_resources)

        with pytest.raises(BackendError, match="not installed"):
            await adapter.health()
