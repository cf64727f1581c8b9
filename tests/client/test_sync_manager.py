import asyncio
import pytest

from app.client.encryption import EncryptionKeyManager, decrypt_workspace, encrypt_workspace
from app.client.errors import (
    AuthenticationError,
    DecryptionFailure,
    EmptyDataRejected,
    EncryptionKeyMissing,
    NetworkOrServerError,
    SyncInProgress,
    UserIsEditing,
    VersionConflictError,
)
from app.client.local_store import MemoryLocalStore, WorkspaceRepository
from app.client.sync_manager import ConflictResolution, SyncConfig, SyncManager, SyncOutcome

from sync_fakes import KEY, FakeWorkspaceApi, clone, snapshot, table, task


def no_conflict_expected(conflict):
    raise AssertionError(f"resolver should not be called, got remote version {conflict.remote_version}")


def make_manager(api, resolve_conflict=no_conflict_expected, confirm=None, editing=None, key=KEY, config=None):
    repository = WorkspaceRepository(MemoryLocalStore())
    manager = SyncManager(
        api,
        repository,
        EncryptionKeyManager(key),
        resolve_conflict=resolve_conflict,
        confirm_empty_overwrite=confirm,
        is_user_editing=editing,
        config=config,
    )
    return manager, repository


def seed_local(repository, data, version=0, dirty=True):
    repository.save_snapshot(data)
    repository.commit({}, version=version, dirty=dirty)


def server_snapshot(api, key=KEY):
    return decrypt_workspace(api.data, key)


LOCAL = snapshot([table("t1", [task("a", "Write report"), task("b", "Email Bob")])])
REMOTE = snapshot([table("t1", [task("a", "Write report"), task("c", "Call Alice")])])


class TestPushAndPull:
    def test_first_push(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert api.saves == [1]
        assert api.last_client_id == repository.client_id()
        assert server_snapshot(api)["tables"] == LOCAL["tables"]
        assert repository.version == 1
        assert repository.dirty is False

    def test_clean_and_current_is_up_to_date(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(LOCAL, KEY), version=2)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=2, dirty=False)

        assert asyncio.run(manager.sync()) == SyncOutcome.UP_TO_DATE
        assert api.saves == []

    def test_remote_newer_and_clean_pulls(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=3)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=False)

        assert asyncio.run(manager.sync()) == SyncOutcome.PULLED
        assert repository.tables == REMOTE["tables"]
        assert repository.version == 3
        assert api.saves == []
        assert manager.get_last_sync_info().direction == "downloaded"

    def test_fresh_device_pulls(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=5)
        manager, repository = make_manager(api)

        assert asyncio.run(manager.sync()) == SyncOutcome.PULLED
        assert repository.load_snapshot()["tables"] == REMOTE["tables"]
        assert repository.version == 5

    def test_nothing_to_sync_without_local_or_remote_data(self):
        api = FakeWorkspaceApi()
        manager, _ = make_manager(api)
        assert asyncio.run(manager.sync()) == SyncOutcome.NOTHING_TO_SYNC

    def test_pull_keeps_shared_tables_and_device_settings(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2)
        manager, repository = make_manager(api)
        shared = table("shared-9", [task("s", "Shared task")], _shared={"shareId": 9})
        local = snapshot(LOCAL["tables"] + [shared], settings={"theme": "dark", "visibleSpaceIds": ["home"]})
        seed_local(repository, local, version=1, dirty=False)

        asyncio.run(manager.sync())
        assert repository.tables == REMOTE["tables"] + [shared]
        assert repository.settings == {"theme": "light", "visibleSpaceIds": ["home"]}

    def test_pull_never_wipes_task_groups_with_empty_list(self):
        remote = snapshot(REMOTE["tables"], taskGroups=[])
        api = FakeWorkspaceApi(data=encrypt_workspace(remote, KEY), version=2)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=False)

        asyncio.run(manager.sync())
        assert repository.task_groups == LOCAL["taskGroups"]

    def test_shared_tables_are_not_pushed(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        shared = table("shared-9", [task("s", "Shared task")], _shared={"shareId": 9})
        seed_local(repository, snapshot(LOCAL["tables"] + [shared]))

        asyncio.run(manager.sync())
        assert [t["id"] for t in server_snapshot(api)["tables"]] == ["t1"]

    def test_explicit_pull(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=4)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=4, dirty=True)

        assert asyncio.run(manager.pull()) == SyncOutcome.PULLED
        assert repository.tables == REMOTE["tables"]
        assert repository.dirty is False


class TestConflictDetection:
    def test_missing_remote_body_pushes_local(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=True)

        async def moved_on():
            return {"version": 2, "updatedAt": None, "lastClientId": "other-device"}

        async def no_body():
            return None

        api.get_workspace_version = moved_on
        api.get_workspace = no_body

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert api.saves == [1]
        assert repository.dirty is False

    def test_layout_only_difference_is_not_a_conflict(self):
        moved = clone(LOCAL)
        moved["tables"][0]["position"] = {"x": 500, "y": 700}
        moved["tables"][0]["tasks"].reverse()
        api = FakeWorkspaceApi(data=encrypt_workspace(moved, KEY), version=2, last_client_id="other-device")
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.PULLED
        assert repository.version == 2
        assert repository.dirty is False
        assert api.saves == []

    def test_same_client_is_a_linear_update(self):
        manager, repository = make_manager(FakeWorkspaceApi())
        api = manager.api
        api.data = encrypt_workspace(REMOTE, KEY)
        api.version = 3
        api.last_client_id = repository.client_id()
        seed_local(repository, LOCAL, version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert api.saves == [4]

    def test_blank_remote_titles_push_local(self):
        blank = clone(LOCAL)
        blank["tables"][0]["tasks"][1]["title"] = ""
        api = FakeWorkspaceApi(data=encrypt_workspace(blank, KEY), version=2, last_client_id="other-device")
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert api.saves == [3]
        assert server_snapshot(api)["tables"][0]["tasks"][1]["title"] == "Email Bob"

    def test_real_conflict_resolved_with_local(self):
        seen = []

        def resolver(conflict):
            seen.append(conflict)
            return ConflictResolution("local")

        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2, last_client_id="other-device")
        manager, repository = make_manager(api, resolve_conflict=resolver)
        seed_local(repository, LOCAL, version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.RESOLVED_LOCAL
        assert seen[0].remote["tables"] == REMOTE["tables"]
        assert seen[0].local_version == 1
        assert seen[0].remote_version == 2
        assert server_snapshot(api)["tables"] == LOCAL["tables"]
        assert repository.version == 3

    def test_real_conflict_resolved_with_remote(self):
        async def resolver(conflict):
            return ConflictResolution("remote")

        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2, last_client_id="other-device")
        manager, repository = make_manager(api, resolve_conflict=resolver)
        seed_local(repository, LOCAL, version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.RESOLVED_REMOTE
        assert repository.tables == REMOTE["tables"]
        assert repository.version == 2
        assert api.saves == []

    def test_real_conflict_resolved_with_merge(self):
        merged_tables = [table("t1", [task("a", "Write report"), task("b", "Email Bob"), task("c", "Call Alice")])]
        shared = table("shared-9", [task("s", "Shared task")], _shared={"shareId": 9})

        def resolver(conflict):
            return ConflictResolution("merge", merged_tables=merged_tables)

        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2, last_client_id="other-device")
        manager, repository = make_manager(api, resolve_conflict=resolver)
        seed_local(repository, snapshot(LOCAL["tables"] + [shared]), version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.RESOLVED_MERGE
        assert server_snapshot(api)["tables"] == merged_tables
        assert api.version == 3
        assert repository.tables == merged_tables + [shared]
        assert repository.version == 3
        assert repository.dirty is False


class TestGuards:
    def test_empty_local_never_silently_overwrites_server(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2)
        manager, repository = make_manager(api, confirm=None)
        seed_local(repository, snapshot([table("t1", [task("a", "   ")])]), version=2, dirty=True)

        with pytest.raises(EmptyDataRejected) as exc_info:
            asyncio.run(manager.sync())
        assert exc_info.value.remote_version == 2
        assert api.saves == []
        assert server_snapshot(api)["tables"] == REMOTE["tables"]

    def test_declined_empty_overwrite(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2)
        manager, repository = make_manager(api, confirm=lambda: False)
        seed_local(repository, snapshot([]), version=2, dirty=True)

        with pytest.raises(EmptyDataRejected):
            asyncio.run(manager.sync())
        assert api.saves == []

    def test_confirmed_empty_overwrite(self):
        async def confirm():
            return True

        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2)
        manager, repository = make_manager(api, confirm=confirm)
        seed_local(repository, snapshot([]), version=1, dirty=True)

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert api.saves == [3]
        assert server_snapshot(api)["tables"] == []

    def test_user_editing_postpones_sync(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, editing=lambda: True)
        seed_local(repository, LOCAL)

        with pytest.raises(UserIsEditing):
            asyncio.run(manager.sync())
        assert api.calls == 0

    def test_missing_key(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, key=None)
        seed_local(repository, LOCAL)

        with pytest.raises(EncryptionKeyMissing):
            asyncio.run(manager.sync())


class TestDecryptionFailure:
    def setup_method(self):
        self.api = FakeWorkspaceApi(
            data=encrypt_workspace(REMOTE, "some other key"), version=2, last_client_id="other-device"
        )
        self.manager, self.repository = make_manager(self.api)
        seed_local(self.repository, LOCAL, version=1, dirty=True)

    def test_failure_is_sticky(self):
        with pytest.raises(DecryptionFailure) as exc_info:
            asyncio.run(self.manager.sync())
        assert exc_info.value.ciphertext == self.api.data
        assert self.manager.get_decryption_failure().has_failure is True

        calls = self.api.calls
        with pytest.raises(DecryptionFailure):
            asyncio.run(self.manager.sync())
        assert self.api.calls == calls
        assert self.api.saves == []

    def test_force_overwrite_replaces_server_copy(self):
        with pytest.raises(DecryptionFailure):
            asyncio.run(self.manager.sync())

        assert asyncio.run(self.manager.force_overwrite()) == SyncOutcome.PUSHED
        assert self.api.saves == [3]
        assert server_snapshot(self.api)["tables"] == LOCAL["tables"]
        assert self.manager.get_decryption_failure().has_failure is False

    def test_retry_with_matching_key(self):
        with pytest.raises(DecryptionFailure):
            asyncio.run(self.manager.sync())

        self.manager.set_custom_encryption_key("some other key")
        self.manager.resolve_conflict = lambda conflict: ConflictResolution("remote")
        assert asyncio.run(self.manager.retry_sync()) == SyncOutcome.RESOLVED_REMOTE
        assert self.repository.tables == REMOTE["tables"]


class TestRacesAndConcurrency:
    def test_lost_race_keeps_dirty(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)

        def concurrent_writer():
            api.version += 1

        api.before_save = concurrent_writer
        with pytest.raises(VersionConflictError) as exc_info:
            asyncio.run(manager.sync())
        assert exc_info.value.current_version == 1
        assert repository.dirty is True
        assert repository.version == 0

    def test_edit_during_sync_keeps_dirty(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)
        api.before_save = manager.mark_local_modified

        assert asyncio.run(manager.sync()) == SyncOutcome.PUSHED
        assert repository.version == 1
        assert repository.dirty is True

    def test_concurrent_sync_is_skipped(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)
        original = api.get_workspace_version

        async def scenario():
            gate = asyncio.Event()

            async def slow_version():
                await gate.wait()
                return await original()

            api.get_workspace_version = slow_version
            first = asyncio.create_task(manager.sync())
            await asyncio.sleep(0)
            assert manager.syncing is True
            assert await manager.sync() == SyncOutcome.SKIPPED
            with pytest.raises(SyncInProgress):
                await manager.pull()
            with pytest.raises(SyncInProgress):
                await manager.force_push()
            gate.set()
            return await first

        assert asyncio.run(scenario()) == SyncOutcome.PUSHED
        assert api.saves == [1]

    def test_force_push_uses_local_version(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=4)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=4, dirty=False)

        assert asyncio.run(manager.force_push()) == SyncOutcome.PUSHED
        assert api.saves == [5]
        assert repository.version == 5

    def test_force_push_conflicts_when_behind(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=4)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=2, dirty=True)

        with pytest.raises(VersionConflictError):
            asyncio.run(manager.force_push())
        assert repository.version == 2


class TestSchedulingAndEvents:
    def test_events(self):
        api = FakeWorkspaceApi(data=encrypt_workspace(REMOTE, KEY), version=2)
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL, version=1, dirty=False)
        events = []
        unsubscribe = manager.subscribe(lambda event, payload: events.append((event, payload)))

        asyncio.run(manager.sync())
        names = [name for name, _ in events]
        assert names == ["sync_start", "state_update", "sync_complete"]
        assert events[1][1]["snapshot"]["tables"] == REMOTE["tables"]
        assert events[2][1]["outcome"] == SyncOutcome.PULLED

        unsubscribe()
        asyncio.run(manager.sync())
        assert len(events) == 3

    def test_sync_error_event(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)
        api.before_save = lambda: setattr(api, "version", 7)
        events = []
        manager.subscribe(lambda event, payload: events.append(event))

        with pytest.raises(VersionConflictError):
            asyncio.run(manager.sync())
        assert events == ["sync_start", "sync_error"]

    def test_authentication_error_stops_auto_sync(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)

        async def rejected():
            raise AuthenticationError()

        api.get_workspace_version = rejected

        async def scenario():
            manager.start_auto_sync()
            assert manager.auto_sync_active is True
            with pytest.raises(AuthenticationError):
                await manager.sync()
            return manager.auto_sync_active

        assert asyncio.run(scenario()) is False

    def test_local_edit_triggers_debounced_sync(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, config=SyncConfig(debounce_delay=0.01, auto_sync_interval=3600))
        seed_local(repository, LOCAL, dirty=False)

        async def scenario():
            manager.start_auto_sync()
            manager.mark_local_modified()
            manager.mark_local_modified()
            await asyncio.sleep(0.2)
            manager.stop_auto_sync()

        asyncio.run(scenario())
        assert api.saves == [1]
        assert repository.dirty is False

    def test_edit_without_auto_sync_only_marks_dirty(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, config=SyncConfig(debounce_delay=0.01))
        seed_local(repository, LOCAL, dirty=False)

        async def scenario():
            manager.mark_local_modified()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert repository.dirty is True
        assert api.saves == []

    def test_auto_sync_tick(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, config=SyncConfig(auto_sync_interval=0.01))
        seed_local(repository, LOCAL)

        async def scenario():
            manager.start_auto_sync()
            await asyncio.sleep(0.1)
            manager.stop_auto_sync()

        asyncio.run(scenario())
        assert api.saves == [1]

    def test_becoming_visible_syncs_and_speeds_up_polling(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, config=SyncConfig(auto_sync_interval=3600, visible_interval=1800))
        seed_local(repository, LOCAL)

        async def scenario():
            manager.start_auto_sync()
            manager.set_visibility(False)
            assert manager._auto_sync.interval == manager.config.hidden_interval
            manager.set_visibility(True)
            await asyncio.sleep(0.1)
            interval = manager._auto_sync.interval
            manager.stop_auto_sync()
            return interval

        assert asyncio.run(scenario()) == 1800
        assert api.saves == [1]

    def test_failed_focus_sync_is_logged_not_raised(self, caplog):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api, config=SyncConfig(auto_sync_interval=3600))
        seed_local(repository, LOCAL)

        async def offline():
            raise NetworkOrServerError("offline")

        api.get_workspace_version = offline

        async def scenario():
            manager.start_auto_sync()
            manager.set_visibility(True)
            await asyncio.sleep(0.05)
            manager.stop_auto_sync()
            return manager._focus_task

        focus_task = asyncio.run(scenario())
        assert focus_task.done()
        assert focus_task.exception() is None
        assert "Focus sync failed: offline" in caplog.text
        assert repository.dirty is True

    def test_shutdown_flushes_and_forgets_key(self):
        api = FakeWorkspaceApi()
        manager, repository = make_manager(api)
        seed_local(repository, LOCAL)

        asyncio.run(manager.shutdown())
        assert api.saves == [1]
        assert manager.key_manager.has_key() is False

    def test_status(self):
        manager, repository = make_manager(FakeWorkspaceApi())
        seed_local(repository, LOCAL, version=3)
        status = manager.get_status()
        assert status == {"syncing": False, "version": 3, "has_key": True, "dirty": True, "auto_sync": False}
