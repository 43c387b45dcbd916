"""Unit tests for the file-backed State Store."""

import json
import threading

import pytest

from provisioner.errors import StateCorruptionError
from provisioner.models import StateRecord, format_address, parse_address
from provisioner.state import StateStore


def record(address="network.main", resource_type="network", name="main", key=None, **kwargs):
    return StateRecord(
        address=address,
        resource_type=resource_type,
        name=name,
        key=key,
        provider_id=kwargs.pop("provider_id", "vpc-123"),
        **kwargs,
    )


class TestStateStore:
    """Test get/put/delete and persistence."""

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "state" / "state.json"

    def test_missing_file_is_empty_store(self, path):
        """A store without a document starts empty and writes nothing."""
        store = StateStore(str(path))

        assert len(store) == 0
        assert store.get("network.main") is None
        assert not path.exists()

    def test_put_get_delete(self, path):
        """Records round-trip through put, get and delete."""
        store = StateStore(str(path))

        store.put(record(attributes={"cidr": "10.0.0.0/16"}))

        assert "network.main" in store
        assert store.get("network.main").attributes == {"cidr": "10.0.0.0/16"}
        assert store.delete("network.main") is True
        assert store.get("network.main") is None
        assert store.delete("network.main") is False

    def test_persisted_across_instances(self, path):
        """A new store reads what an earlier one wrote."""
        first = StateStore(str(path))
        first.put(record())
        first.put(record('subnet.private["a"]', "subnet", "private", key="a", provider_id="subnet-1"))
        first.put(record("subnet.public[0]", "subnet", "public", key=0, provider_id="subnet-2"))

        second = StateStore(str(path))

        assert second.addresses() == ["network.main", 'subnet.private["a"]', "subnet.public[0]"]
        assert second.get("subnet.public[0]").key == 0
        assert second.get('subnet.private["a"]').key == "a"
        assert second.serial == 3

    @pytest.mark.parametrize("key", ["zürich", "a\\b", 'q"x', "a]b"])
    def test_escaped_keys_reload(self, path, key):
        """for_each keys needing escapes survive a reload."""
        address = format_address("subnet", "private", key)
        assert parse_address(address) == ("subnet", "private", key)

        StateStore(str(path)).put(record(address, "subnet", "private", key=key))

        assert StateStore(str(path)).get(address).key == key

    def test_get_returns_copy(self, path):
        """Mutating a returned record does not change the store."""
        store = StateStore(str(path))
        store.put(record(attributes={"cidr": "10.0.0.0/16"}))

        store.get("network.main").attributes["cidr"] = "changed"

        assert store.get("network.main").attributes == {"cidr": "10.0.0.0/16"}

    def test_document_layout(self, path):
        """The document carries version, serial and records keyed by address."""
        store = StateStore(str(path))
        store.put(record())

        document = json.loads(path.read_text())

        assert document["version"] == StateStore.VERSION
        assert document["serial"] == 1
        assert document["resources"]["network.main"]["provider_id"] == "vpc-123"

    def test_no_temporary_files_left(self, path):
        """Atomic writes leave only the state document behind."""
        store = StateStore(str(path))
        for i in range(5):
            store.put(record(f"thing.t{i}", "thing", f"t{i}"))
        store.delete("thing.t0")

        assert [p.name for p in path.parent.iterdir()] == ["state.json"]

    def test_concurrent_writers(self, path):
        """Concurrent puts to distinct addresses are all persisted."""
        store = StateStore(str(path))

        def writer(worker):
            for i in range(10):
                store.put(record(f"thing.w{worker}_{i}", "thing", f"w{worker}_{i}"))

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        reloaded = StateStore(str(path))
        assert len(reloaded) == 80
        assert reloaded.serial == 80


class TestStateCorruption:
    """Test detection of unreadable or inconsistent documents."""

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "state.json"

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            json.dumps({"version": 99, "serial": 0, "resources": {}}),
            json.dumps({"version": 1, "serial": 0, "resources": []}),
            json.dumps({"version": 1, "serial": 0, "resources": {
                "network.main": {"address": "network.main"},
            }}),
            json.dumps({"version": 1, "serial": 0, "resources": {
                "network.other": {
                    "address": "network.main", "resource_type": "network",
                    "name": "main", "provider_id": "vpc-1",
                },
            }}),
            json.dumps({"version": 1, "serial": 0, "resources": {
                "subnet.s[0]": {
                    "address": "subnet.s[0]", "resource_type": "subnet",
                    "name": "s", "key": "0", "provider_id": "subnet-1",
                },
            }}),
        ],
        ids=[
            "invalid-json",
            "not-an-object",
            "unsupported-version",
            "resources-not-mapping",
            "record-missing-fields",
            "key-mismatch",
            "index-kind-mismatch",
        ],
    )
    def test_corrupt_documents_rejected(self, path, content):
        """Opening a corrupt document raises StateCorruptionError."""
        path.write_text(content)

        with pytest.raises(StateCorruptionError):
            StateStore(str(path))
