"""Unit tests for the provider factory and the fake cloud."""

import pytest

from provisioner.errors import ProviderTimeoutError, ResourceNotFoundError
from provisioner.providers import FakeCloudProvider, ProviderFactory


class TestProviderFactory:
    """Test provider registration."""

    def test_fake_registered(self):
        """The fake cloud is available by name."""
        assert "fake" in ProviderFactory.available_providers()
        assert isinstance(ProviderFactory.create("fake", latency_seconds=0), FakeCloudProvider)

    def test_unknown_provider(self):
        """Unknown provider names are rejected."""
        with pytest.raises(ValueError, match="Unknown provider type"):
            ProviderFactory.create("nope")


class TestFakeCloudProvider:
    """Test the simulated provider API."""

    @pytest.fixture
    def cloud(self):
        return FakeCloudProvider()

    def test_type_specific_outputs(self, cloud):
        """Registries get a URL, clusters an endpoint, roles an ARN."""
        registry = cloud.create("container_registry", {"name": "platform/app"}, "container_registry.app")
        cluster = cloud.create("kubernetes_cluster", {"name": "platform"}, "kubernetes_cluster.main")
        role = cloud.create("iam_role", {"name": "node-role"}, "iam_role.node")

        assert registry.provider_id.startswith("repo-")
        assert registry.outputs["repository_url"].endswith("/platform/app")
        assert cluster.outputs["endpoint"].startswith(f"https://{cluster.provider_id}.")
        assert cluster.outputs["status"] == "ACTIVE"
        assert role.outputs["arn"] == "arn:fake:iam::123456789012:role/node-role"

    def test_crud(self, cloud):
        """Resources can be read, updated and deleted."""
        created = cloud.create("network", {"cidr": "10.0.0.0/16"}, "network.main")

        updated = cloud.update("network", created.provider_id, {"cidr": "10.1.0.0/16"}, "network.main")
        read = cloud.read("network", created.provider_id)

        assert updated.outputs["arn"] == created.outputs["arn"]
        assert read.outputs["cidr"] == "10.1.0.0/16"
        assert cloud.read("subnet", created.provider_id) is None

        cloud.delete("network", created.provider_id, "network.main")
        assert cloud.read("network", created.provider_id) is None
        with pytest.raises(ResourceNotFoundError):
            cloud.delete("network", created.provider_id, "network.main")

    def test_inventory_persisted(self, tmp_path):
        """A persistent fake cloud reloads its inventory."""
        path = tmp_path / "cloud.json"
        created = FakeCloudProvider(inventory_path=str(path)).create("network", {}, "network.main")

        reloaded = FakeCloudProvider(inventory_path=str(path))

        assert reloaded.read("network", created.provider_id) is not None

    def test_latency_beyond_timeout(self):
        """Calls slower than their timeout raise ProviderTimeoutError."""
        cloud = FakeCloudProvider(latency_seconds=0.2)

        with pytest.raises(ProviderTimeoutError):
            cloud.create("network", {}, "network.main", timeout=0.05)

        assert cloud.calls_for("network.main")[0]["status"] == "failed"

    def test_unknown_failure_mode(self, cloud):
        """Only known failure modes can be injected."""
        with pytest.raises(ValueError):
            cloud.inject_failure("network.main", mode="explode")

    def test_injected_failures_cleared(self, cloud):
        """Cleared failures no longer apply."""
        cloud.inject_failure("network.main", mode="error")
        cloud.clear_failures()

        assert cloud.create("network", {}, "network.main").provider_id.startswith("vpc-")
