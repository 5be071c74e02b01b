"""
Tests for the key-value backends and the state stores built on them.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestLocalKeyValueStores:
    """In-memory and file backends share the same document semantics."""

    @pytest.fixture(params=["memory", "file"])
    def store_and_clock(self, request, tmp_path):
        from stores import FileKeyValueStore, InMemoryKeyValueStore

        clock = FakeClock()
        if request.param == "memory":
            return InMemoryKeyValueStore(clock=clock), clock
        return FileKeyValueStore(tmp_path / "kv.json", clock=clock), clock

    def test_ttl_and_nx(self, store_and_clock):
        store, clock = store_and_clock

        assert asyncio.run(store.set("lock", "a", ttl=60, nx=True)) is True
        assert asyncio.run(store.set("lock", "b", ttl=60, nx=True)) is False
        assert asyncio.run(store.get("lock")) == "a"

        clock.now += 60
        assert asyncio.run(store.get("lock")) is None
        assert asyncio.run(store.set("lock", "b", nx=True)) is True

    def test_list_operations(self, store_and_clock):
        store, _ = store_and_clock

        for n in range(4):
            asyncio.run(store.lpush("jobs", {"n": n}))

        assert asyncio.run(store.lrange("jobs", 0, 1)) == [{"n": 3}, {"n": 2}]
        assert asyncio.run(store.rpop("jobs")) == {"n": 0}
        asyncio.run(store.ltrim("jobs", 0, 0))
        assert asyncio.run(store.lrange("jobs", 0, -1)) == [{"n": 3}]
        assert asyncio.run(store.delete("jobs")) is True
        assert asyncio.run(store.rpop("jobs")) is None

    def test_file_store_persists_between_instances(self, tmp_path):
        from stores import FileKeyValueStore

        path = tmp_path / "state" / "kv.json"
        asyncio.run(FileKeyValueStore(path).set("bc:project-changes", {"scopes": {}}))

        assert asyncio.run(FileKeyValueStore(path).get("bc:project-changes")) == {"scopes": {}}
        assert not path.with_suffix(".json.tmp").exists()

    def test_unreadable_file_is_treated_as_empty(self, tmp_path):
        from stores import FileKeyValueStore

        path = tmp_path / "kv.json"
        path.write_text("{not json")

        store = FileKeyValueStore(path)
        assert asyncio.run(store.get("anything")) is None
        asyncio.run(store.set("k", 1))
        assert json.loads(path.read_text())["values"]["k"]["value"] == 1


class TestRedisKeyValueStore:
    """JSON encoding over a redis.asyncio client."""

    def test_values_are_json_encoded(self):
        from stores import RedisKeyValueStore

        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.get = AsyncMock(return_value='{"lastSeq": 4}')
        client.lrange = AsyncMock(return_value=['{"a": 1}', "plain"])
        store = RedisKeyValueStore("redis://localhost:6379/0", client=client)

        assert asyncio.run(store.set("k", {"lastSeq": 4}, ttl=30, nx=True)) is True
        client.set.assert_awaited_once_with("k", '{"lastSeq": 4}', ex=30, nx=True)
        assert asyncio.run(store.get("k")) == {"lastSeq": 4}
        assert asyncio.run(store.lrange("k", 0, -1)) == [{"a": 1}, "plain"]

    def test_nx_conflict_is_false(self):
        from stores import RedisKeyValueStore

        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        store = RedisKeyValueStore("redis://localhost:6379/0", client=client)

        assert asyncio.run(store.set("k", "v", nx=True)) is False


class TestFallbackKeyValueStore:
    """Degrading from the shared cache to local storage."""

    def test_primary_failure_falls_back(self):
        from stores import FallbackKeyValueStore, InMemoryKeyValueStore

        primary = MagicMock()
        primary.get = AsyncMock(side_effect=ConnectionError("redis down"))
        primary.set = AsyncMock(side_effect=ConnectionError("redis down"))
        secondary = InMemoryKeyValueStore()
        store = FallbackKeyValueStore(primary, secondary)

        assert asyncio.run(store.set("k", "v")) is True
        assert asyncio.run(store.get("k")) == "v"
        assert asyncio.run(secondary.get("k")) == "v"

    def test_read_only_primary_is_not_written(self):
        from stores import FallbackKeyValueStore, InMemoryKeyValueStore

        primary = MagicMock()
        primary.set = AsyncMock()
        primary.get = AsyncMock(return_value="from-redis")
        store = FallbackKeyValueStore(primary, InMemoryKeyValueStore(), read_only=True)

        asyncio.run(store.set("k", "local"))

        primary.set.assert_not_awaited()
        assert asyncio.run(store.get("k")) == "from-redis"

    def test_both_failing_returns_defaults(self):
        from stores import FallbackKeyValueStore

        broken = MagicMock()
        for name in ("get", "set", "lrange", "delete"):
            setattr(broken, name, AsyncMock(side_effect=OSError("disk full")))
        store = FallbackKeyValueStore(None, broken)

        assert asyncio.run(store.get("k")) is None
        assert asyncio.run(store.set("k", "v")) is None
        assert asyncio.run(store.lrange("k", 0, -1)) == []
        assert asyncio.run(store.delete("k")) is False

    def test_create_kv_store(self, tmp_path):
        from core.config import KVConfig
        from stores import FileKeyValueStore, RedisKeyValueStore, create_kv_store

        local = create_kv_store(KVConfig(data_dir=tmp_path))
        assert local.primary is None
        assert isinstance(local.secondary, FileKeyValueStore)
        assert local.secondary.path == tmp_path / "kv.json"

        shared = create_kv_store(KVConfig(url="redis://cache:6379/0", read_only=True, data_dir=tmp_path))
        assert isinstance(shared.primary, RedisKeyValueStore)
        assert shared.read_only is True


class TestCursorStores:
    """Change-feed sequence cursors and delta links."""

    def test_change_cursor_scopes(self, kv):
        from stores import BcChangeCursorStore

        cursors = BcChangeCursorStore(kv)
        asyncio.run(cursors.save("premium", 42))
        asyncio.run(cursors.save("planner", 7.0))

        assert asyncio.run(cursors.get("premium")) == 42
        assert asyncio.run(cursors.get("planner")) == 7
        assert asyncio.run(cursors.get("other")) is None
        stored = asyncio.run(kv.get("bc:project-changes"))
        assert stored["scopes"]["premium"]["lastSeq"] == 42

    def test_invalid_sequence_is_not_saved(self, kv):
        from stores import BcChangeCursorStore

        cursors = BcChangeCursorStore(kv)
        for value in (None, "12", True, float("nan")):
            asyncio.run(cursors.save("premium", value))

        assert asyncio.run(kv.get("bc:project-changes")) is None

    def test_legacy_document_shapes(self, kv):
        from stores import BcChangeCursorStore

        asyncio.run(kv.set("bc:project-changes", {"premium": "15", "planner": {"lastSeq": 3}, "bad": "x"}))
        cursors = BcChangeCursorStore(kv)

        assert asyncio.run(cursors.get("premium")) == 15
        assert asyncio.run(cursors.get("planner")) == 3
        assert asyncio.run(cursors.get("bad")) is None

    def test_delta_links(self, kv):
        from stores import DeltaLinkStore

        deltas = DeltaLinkStore(kv)
        asyncio.run(deltas.save("msdyn_projecttasks", "https://org/delta?$deltatoken=1"))
        asyncio.run(deltas.save("msdyn_projecttasks", None))

        assert asyncio.run(deltas.get("msdyn_projecttasks")) == "https://org/delta?$deltatoken=1"
        asyncio.run(deltas.clear("msdyn_projecttasks"))
        assert asyncio.run(deltas.get("msdyn_projecttasks")) is None


class TestProjectSyncStore:
    """Operator project enable/disable settings."""

    def test_upsert_replaces_case_insensitively(self, kv):
        from stores import ProjectSyncStore

        settings = ProjectSyncStore(kv)
        asyncio.run(settings.upsert("PR00042", True, note="on hold"))
        asyncio.run(settings.upsert("pr00042 ", False))
        asyncio.run(settings.upsert("PR00007", True))

        listed = asyncio.run(settings.list())
        assert [(s.projectNo, s.disabled) for s in listed] == [("PR00007", True), ("pr00042", False)]
        assert asyncio.run(settings.disabled_projects()) == {"pr00007"}

    def test_empty_project_no_rejected(self, kv):
        from stores import ProjectSyncStore

        with pytest.raises(ValueError):
            asyncio.run(ProjectSyncStore(kv).upsert("  ", True))

    def test_legacy_key_is_read(self, kv):
        from stores import ProjectSyncStore

        asyncio.run(kv.set("planner:project-sync", [{"projectNo": "PR1", "disabled": True}, {"disabled": True}]))

        assert asyncio.run(ProjectSyncStore(kv).disabled_projects()) == {"pr1"}


class TestWriteMarkers:
    """Echo suppression markers."""

    def test_markers_expire(self):
        from stores import InMemoryKeyValueStore, bc_write_markers, premium_write_markers

        clock = FakeClock()
        kv = InMemoryKeyValueStore(clock=clock)
        bc_writes = bc_write_markers(kv)

        assert asyncio.run(bc_writes.mark(["task-1", "", None])) == 1
        assert asyncio.run(bc_writes.was_marked("task-1")) is True
        assert asyncio.run(premium_write_markers(kv).was_marked("task-1")) is False

        clock.now += 120
        assert asyncio.run(bc_writes.was_marked("task-1")) is False

    def test_zero_ttl_disables_marking(self, kv):
        from stores import bc_write_markers

        markers = bc_write_markers(kv, ttl_seconds=0)

        assert asyncio.run(markers.mark(["task-1"])) == 0
        assert asyncio.run(markers.was_marked("task-1")) is False
