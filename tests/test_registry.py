# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for proxynode/registry.py."""

import json
import threading
from pathlib import Path

import pytest

from proxynode.errors import RegistryError
from proxynode.registry import InstanceRegistry
from proxynode.types import InstanceRecord


class TestInstanceRegistry:
    """Tests for InstanceRegistry."""

    def test_first_access_creates_empty_file(self, tmp_path: Path) -> None:
        """A missing file (and directory) is created holding []."""
        path = tmp_path / "nested" / "instances.json"
        registry = InstanceRegistry(path)

        assert registry.get_all() == []
        assert json.loads(path.read_text()) == []

    def test_add_and_get(self, registry: InstanceRegistry) -> None:
        assert registry.add(InstanceRecord(1, 20001)) is True
        assert registry.get(1) == InstanceRecord(1, 20001, 0, 0)
        assert registry.get(2) is None

    def test_add_duplicate_keeps_existing(
        self, registry: InstanceRegistry
    ) -> None:
        """Adding an existing id is a no-op returning False."""
        registry.add(InstanceRecord(1, 20001, 50, 60))
        assert registry.add(InstanceRecord(1, 29999)) is False
        assert registry.get(1) == InstanceRecord(1, 20001, 50, 60)

    def test_order_preserved(self, registry: InstanceRegistry) -> None:
        for instance_id in (3, 1, 2):
            registry.add(InstanceRecord(instance_id, 20000 + instance_id))
        assert [r.id for r in registry.get_all()] == [3, 1, 2]

    def test_remove(self, registry: InstanceRegistry) -> None:
        registry.add(InstanceRecord(1, 20001))
        registry.add(InstanceRecord(2, 20002))

        assert registry.remove(1) is True
        assert registry.remove(1) is False
        assert [r.id for r in registry.get_all()] == [2]

    def test_update(self, registry: InstanceRegistry) -> None:
        registry.add(InstanceRecord(1, 20001))
        assert registry.update(InstanceRecord(1, 20001, 100, 200)) is True
        assert registry.get(1) == InstanceRecord(1, 20001, 100, 200)

    def test_update_missing_writes_nothing(
        self, registry: InstanceRegistry
    ) -> None:
        """Updating a removed instance does not resurrect it."""
        registry.add(InstanceRecord(1, 20001))
        registry.remove(1)

        assert registry.update(InstanceRecord(1, 20001, 5, 5)) is False
        assert registry.get_all() == []

    def test_on_disk_format(self, registry: InstanceRegistry) -> None:
        """The file holds the camelCase JSON array."""
        registry.add(InstanceRecord(7, 20007, 11, 22))
        assert json.loads(registry.path.read_text()) == [
            {
                "id": 7,
                "inboundPort": 20007,
                "lastTotalRx": 11,
                "lastTotalTx": 22,
            }
        ]

    def test_missing_counters_default_to_zero(self, tmp_path: Path) -> None:
        """Older files without counter fields still load."""
        path = tmp_path / "instances.json"
        path.write_text('[{"id": 1, "inboundPort": 20001}]')
        assert InstanceRegistry(path).get(1) == InstanceRecord(1, 20001)

    def test_no_temp_files_left(self, registry: InstanceRegistry) -> None:
        registry.add(InstanceRecord(1, 20001))
        registry.update(InstanceRecord(1, 20001, 1, 1))
        assert [p.name for p in registry.path.parent.iterdir()] == [
            "instances.json"
        ]

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            '{"id": 1}',
            "[1, 2]",
            '[{"id": "1", "inboundPort": 20001}]',
            '[{"id": 1}]',
            '[{"id": 1, "inboundPort": 2, "lastTotalRx": true}]',
        ],
    )
    def test_corrupt_file_raises(self, tmp_path: Path, content: str) -> None:
        """Unreadable content is a RegistryError, never an empty registry."""
        path = tmp_path / "instances.json"
        path.write_text(content)
        registry = InstanceRegistry(path)

        with pytest.raises(RegistryError):
            registry.get_all()
        with pytest.raises(RegistryError):
            registry.add(InstanceRecord(9, 20009))
        assert path.read_text() == content

    def test_unwritable_directory(self, tmp_path: Path) -> None:
        """Write failures surface as RegistryError."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        registry = InstanceRegistry(blocker / "instances.json")

        with pytest.raises(RegistryError, match="Cannot write"):
            registry.get_all()

    def test_instances_share_lock(self, tmp_path: Path) -> None:
        """Registries on the same file share one lock."""
        path = tmp_path / "instances.json"
        first = InstanceRegistry(path)
        second = InstanceRegistry(tmp_path / "." / "instances.json")
        assert first._lock is second._lock

    def test_concurrent_mutations_not_lost(self, tmp_path: Path) -> None:
        """Adds and updates from many threads all land."""
        path = tmp_path / "instances.json"
        seed = InstanceRegistry(path)
        for instance_id in range(10):
            seed.add(InstanceRecord(instance_id, 20000 + instance_id))

        def worker(instance_id: int) -> None:
            registry = InstanceRegistry(path)
            registry.add(InstanceRecord(100 + instance_id, 30000))
            registry.update(
                InstanceRecord(instance_id, 20000 + instance_id, 1, 2)
            )

        threads = [
            threading.Thread(target=worker, args=(i,)) for i in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        records = {r.id: r for r in seed.get_all()}
        assert len(records) == 20
        for instance_id in range(10):
            assert records[instance_id].last_total_rx == 1
            assert records[instance_id].last_total_tx == 2
