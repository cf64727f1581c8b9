import json
import pytest

from app.client.local_store import (
    SYNC_DIRTY,
    SYNC_VERSION,
    TABLES,
    JsonFileLocalStore,
    MemoryLocalStore,
    WorkspaceRepository,
)

from sync_fakes import snapshot, table, task


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryLocalStore()
    return JsonFileLocalStore(str(tmp_path / "workspace.json"))


class TestLocalStore:
    def test_get_set_remove(self, store):
        assert store.get("missing") is None
        assert store.get("missing", 5) == 5
        store.set("slot", {"a": 1})
        assert store.get("slot") == {"a": 1}
        assert store.has("slot")
        store.remove("slot")
        assert not store.has("slot")

    def test_values_are_copied(self, store):
        value = {"tasks": [1]}
        store.set("slot", value)
        value["tasks"].append(2)
        store.get("slot")["tasks"].append(3)
        assert store.get("slot") == {"tasks": [1]}

    def test_update_writes_and_removes_together(self, store):
        store.set("old", 1)
        store.update({"a": 1, "b": 2}, remove=["old"])
        assert (store.get("a"), store.get("b"), store.get("old")) == (1, 2, None)


class TestJsonFileLocalStore:
    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "workspace.json")
        JsonFileLocalStore(path).update({TABLES: [{"id": "t1"}], SYNC_VERSION: 4})

        reopened = JsonFileLocalStore(path)
        assert reopened.get(TABLES) == [{"id": "t1"}]
        assert reopened.get(SYNC_VERSION) == 4
        with open(path) as f:
            assert json.load(f)[SYNC_VERSION] == 4

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileLocalStore(str(tmp_path / "workspace.json"))
        store.set("a", 1)
        store.set("b", 2)
        assert [p.name for p in tmp_path.iterdir()] == ["workspace.json"]

    def test_rejects_non_object(self, tmp_path):
        path = tmp_path / "workspace.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            JsonFileLocalStore(str(path))


class TestWorkspaceRepository:
    def test_no_snapshot_until_tables_written(self, store):
        repository = WorkspaceRepository(store)
        assert repository.load_snapshot() is None
        assert repository.version == 0
        assert repository.dirty is False

    def test_snapshot_roundtrip_fills_defaults(self, store):
        repository = WorkspaceRepository(store)
        repository.save_snapshot({"tables": [table("t1", [task("a", "x")])]})
        loaded = repository.load_snapshot()
        assert loaded["tables"][0]["id"] == "t1"
        assert loaded["settings"] == {}
        assert loaded["notebooks"] == {"workspace": "", "tasks": {}}
        assert loaded["archivedTables"] == []

    def test_commit_is_one_update(self, store):
        repository = WorkspaceRepository(store)
        repository.save_snapshot(snapshot([]))
        repository.commit({TABLES: [{"id": "t2"}]}, version=7, dirty=False)
        assert store.get(TABLES) == [{"id": "t2"}]
        assert store.get(SYNC_VERSION) == 7
        assert store.get(SYNC_DIRTY) is False

    def test_commit_leaves_dirty_alone_when_none(self, store):
        repository = WorkspaceRepository(store)
        repository.dirty = True
        repository.commit({}, version=2)
        assert repository.dirty is True
        assert repository.version == 2

    def test_client_id_is_stable(self, store):
        repository = WorkspaceRepository(store)
        client_id = repository.client_id()
        assert WorkspaceRepository(store).client_id() == client_id

    def test_sharing_key_pair(self, store):
        repository = WorkspaceRepository(store)
        assert repository.sharing_key_pair() is None
        repository.save_sharing_key_pair("priv", "pub")
        assert repository.sharing_key_pair() == {"private_key": "priv", "public_key": "pub"}
