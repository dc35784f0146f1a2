"""
Storage Adapter Tests
=====================

INVARIANTS TESTED:
1. Remote versions start at 1 and grow by exactly 1 per applied update
2. Conditioned updates fail with VERSION_CONFLICT on a stale version
3. An already-applied idempotency key is a no-op
4. Every call on an unreachable store raises ConnectivityError
5. Reads hand out copies; callers cannot mutate stored state
6. SQLite local store survives a reopen
"""

import pytest

from chainspark.contracts.base import ErrorCode
from chainspark.contracts.errors import ConflictError, ConnectivityError, NotFoundError, ValidationError
from chainspark.storage import (
    InMemoryLocalStore, InMemoryRemoteStore, RemoteConnection, SQLiteLocalStore,
    StorageConfig, create_local_store
)


COLL = "sparks"


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


class TestRemoteVersioning:

    def test_create_then_update(self, remote):
        doc_id = remote.create(COLL, {"title": "a"}, doc_id="d1", idempotency_key="op_1")
        assert doc_id == "d1"
        doc = remote.get(COLL, "d1")
        assert doc["version"] == 1
        assert doc["applied_ops"] == ["op_1"]

        result = remote.update(COLL, "d1", {"title": "b"}, expected_version=1, idempotency_key="op_2")
        assert result.success and result.applied
        assert result.version == 2
        assert remote.get(COLL, "d1")["title"] == "b"

    def test_stale_version_conflicts(self, remote):
        remote.create(COLL, {"n": 0}, doc_id="d1")
        remote.update(COLL, "d1", {"n": 1}, expected_version=1)
        result = remote.update(COLL, "d1", {"n": 2}, expected_version=1)
        assert not result.success
        assert result.error.code is ErrorCode.VERSION_CONFLICT
        assert result.version == 2
        assert remote.get(COLL, "d1")["n"] == 1

    def test_idempotency_key_is_applied_once(self, remote):
        remote.create(COLL, {"n": 0}, doc_id="d1")
        first = remote.update(COLL, "d1", {"n": 1}, expected_version=1, idempotency_key="op_x")
        replay = remote.update(COLL, "d1", {"n": 99}, expected_version=1, idempotency_key="op_x")
        assert first.applied
        assert replay.success and not replay.applied
        assert remote.get(COLL, "d1")["n"] == 1
        assert remote.get(COLL, "d1")["version"] == 2

    def test_create_collision(self, remote):
        remote.create(COLL, {}, doc_id="d1", idempotency_key="op_1")
        # the same create replayed is fine
        assert remote.create(COLL, {}, doc_id="d1", idempotency_key="op_1") == "d1"
        with pytest.raises(ConflictError):
            remote.create(COLL, {}, doc_id="d1", idempotency_key="op_2")

    def test_update_missing_document(self, remote):
        with pytest.raises(NotFoundError):
            remote.update(COLL, "nope", {}, expected_version=1)

    def test_reads_are_copies(self, remote):
        remote.create(COLL, {"tags": ["a"]}, doc_id="d1")
        remote.get(COLL, "d1")["tags"].append("b")
        assert remote.get(COLL, "d1")["tags"] == ["a"]

    def test_store_fields_cannot_be_patched(self, remote):
        remote.create(COLL, {}, doc_id="d1")
        remote.update(COLL, "d1", {"version": 50, "applied_ops": ["forged"]}, expected_version=1)
        doc = remote.get(COLL, "d1")
        assert doc["version"] == 2
        assert doc["applied_ops"] == []


class TestRemoteConnectivity:

    def test_unreachable_raises(self, remote):
        remote.set_connected(False)
        with pytest.raises(ConnectivityError):
            remote.get(COLL, "d1")
        with pytest.raises(ConnectivityError):
            remote.create(COLL, {})
        with pytest.raises(ConnectivityError):
            remote.list_documents(COLL)

    def test_connectivity_listeners(self, remote):
        seen = []
        unsubscribe = remote.subscribe_connectivity(seen.append)
        remote.set_connected(False)
        remote.set_connected(False)
        remote.set_connected(True)
        unsubscribe()
        remote.set_connected(False)
        assert seen == [False, True]

    def test_connection_has_own_reachability(self, remote):
        link_a = RemoteConnection(remote)
        link_b = RemoteConnection(remote)
        link_a.set_connected(False)
        with pytest.raises(ConnectivityError):
            link_a.get(COLL, "d1")
        assert link_b.get(COLL, "d1") is None

    def test_offline_connection_misses_pushes(self, remote):
        link = RemoteConnection(remote)
        received = []
        link.subscribe(COLL, received.append)
        remote.create(COLL, {}, doc_id="d1")
        link.set_connected(False)
        remote.create(COLL, {}, doc_id="d2")
        assert [d["id"] for d in received] == ["d1"]


class TestChangeFeed:

    def test_subscribers_get_every_write(self, remote):
        received = []
        unsubscribe = remote.subscribe(COLL, received.append)
        remote.create(COLL, {}, doc_id="d1")
        remote.update(COLL, "d1", {"n": 1}, expected_version=1)
        unsubscribe()
        remote.update(COLL, "d1", {"n": 2}, expected_version=2)
        assert [d["version"] for d in received] == [1, 2]

    def test_broken_subscriber_does_not_block_others(self, remote):
        received = []

        def broken(doc):
            raise RuntimeError("boom")

        remote.subscribe(COLL, broken)
        remote.subscribe(COLL, received.append)
        remote.create(COLL, {}, doc_id="d1")
        assert len(received) == 1

    def test_buffered_delivery_and_redelivery(self):
        remote = InMemoryRemoteStore(auto_deliver=False)
        received = []
        remote.subscribe(COLL, received.append)
        remote.create(COLL, {}, doc_id="d1")
        assert received == []
        assert remote.deliver_pending() == 1
        remote.redeliver(COLL, "d1")
        assert [d["id"] for d in received] == ["d1"]
        assert remote.deliver_pending() == 1
        assert len(received) == 2


class TestLocalStores:

    @pytest.fixture(params=["memory", "sqlite"])
    def local(self, request, tmp_path):
        if request.param == "sqlite":
            return SQLiteLocalStore(tmp_path / "local.db")
        return InMemoryLocalStore()

    def test_crud(self, local):
        assert local.get("missing") is None
        assert local.get("missing", default=3) == 3
        local.set("doc:a", {"v": 1})
        assert local.get("doc:a") == {"v": 1}
        local.delete("doc:a")
        assert local.get("doc:a") is None

    def test_prefix_keys(self, local):
        local.set("sync:a", 1)
        local.set("sync:b", 2)
        local.set("doc:a", 3)
        local.set("syncXc", 4)
        assert local.keys("sync:") == ["sync:a", "sync:b"]

    def test_prefix_with_like_wildcards(self, local):
        local.set("a_b:1", 1)
        local.set("axb:1", 2)
        assert local.keys("a_b:") == ["a_b:1"]

    def test_values_are_copies(self, local):
        value = {"items": [1]}
        local.set("k", value)
        value["items"].append(2)
        assert local.get("k") == {"items": [1]}

    def test_sqlite_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "local.db"
        SQLiteLocalStore(path).set("sync:a", {"pending_ops": []})
        assert SQLiteLocalStore(path).get("sync:a") == {"pending_ops": []}


class TestStorageConfig:

    def test_sqlite_requires_path(self):
        with pytest.raises(ValidationError):
            StorageConfig(local_backend="sqlite")

    def test_unknown_backend(self):
        with pytest.raises(ValidationError) as exc:
            StorageConfig(local_backend="redis")
        assert exc.value.code is ErrorCode.INVALID_CONFIGURATION

    def test_factory(self, tmp_path):
        assert isinstance(create_local_store(StorageConfig()), InMemoryLocalStore)
        store = create_local_store(StorageConfig(local_backend="sqlite", local_path=str(tmp_path / "x.db")))
        assert isinstance(store, SQLiteLocalStore)
