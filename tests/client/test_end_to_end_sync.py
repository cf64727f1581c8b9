"""
Client sync engine against the real API, in-process through httpx.ASGITransport.
"""

import asyncio
import httpx
import pytest

from app.main import app
from app.client.api_client import WorkspaceApiClient
from app.client.encryption import EncryptionKeyManager
from app.client.errors import AuthenticationError, VersionConflictError
from app.client.local_store import MemoryLocalStore, WorkspaceRepository
from app.client.shared_tables import SharedTableSync
from app.client.sync_manager import ConflictResolution, SyncManager, SyncOutcome

from sync_fakes import KEY, table, task


def api_for(user):
    return WorkspaceApiClient(
        "http://testserver",
        token=user["access_token"],
        transport=httpx.ASGITransport(app=app),
    )


def device(api, resolve_conflict=None):
    repository = WorkspaceRepository(MemoryLocalStore())
    manager = SyncManager(
        api,
        repository,
        EncryptionKeyManager(KEY),
        resolve_conflict=resolve_conflict or (lambda conflict: ConflictResolution("local")),
        confirm_empty_overwrite=None,
        is_user_editing=None,
    )
    return manager, repository


def edit(manager, repository, tables):
    repository.save_snapshot({"tables": tables})
    manager.mark_local_modified()


@pytest.fixture
def server(client):
    """Installs the database override; the TestClient itself is unused."""
    return app


def test_simple_push_then_pull_on_second_device(server, test_user):
    async def scenario():
        async with api_for(test_user) as api:
            laptop, laptop_repo = device(api)
            phone, phone_repo = device(api)

            edit(laptop, laptop_repo, [table("t1", [task("a", "Write report")])])
            assert await laptop.sync() == SyncOutcome.PUSHED
            assert await phone.sync() == SyncOutcome.PULLED
            assert phone_repo.tables == laptop_repo.tables
            assert phone_repo.version == 1

            version = await api.get_workspace_version()
            assert version["version"] == 1
            assert version["lastClientId"] == laptop.client_id

    asyncio.run(scenario())


def test_stale_device_gets_conflict_and_merges(server, test_user):
    merged_tables = [table("t1", [task("a", "Write report"), task("b", "From laptop"), task("c", "From phone")])]

    async def scenario():
        async with api_for(test_user) as api:
            laptop, laptop_repo = device(api)
            phone, phone_repo = device(
                api, resolve_conflict=lambda conflict: ConflictResolution("merge", merged_tables=merged_tables)
            )

            edit(laptop, laptop_repo, [table("t1", [task("a", "Write report")])])
            await laptop.sync()
            await phone.sync()

            edit(laptop, laptop_repo, [table("t1", [task("a", "Write report"), task("b", "From laptop")])])
            assert await laptop.sync() == SyncOutcome.PUSHED

            edit(phone, phone_repo, [table("t1", [task("a", "Write report"), task("c", "From phone")])])
            assert await phone.sync() == SyncOutcome.RESOLVED_MERGE
            assert phone_repo.version == 3

            assert await laptop.sync() == SyncOutcome.PULLED
            assert laptop_repo.tables == merged_tables
            assert laptop_repo.version == 3

    asyncio.run(scenario())


def test_stale_write_is_rejected_by_server(server, test_user, encrypted_blob):
    async def scenario():
        async with api_for(test_user) as api:
            await api.save_workspace(encrypted_blob, 1)
            await api.save_workspace(encrypted_blob, 2)
            with pytest.raises(VersionConflictError) as exc_info:
                await api.save_workspace(encrypted_blob, 2)
            return exc_info.value.current_version

    assert asyncio.run(scenario()) == 2


def test_bad_token_is_an_authentication_error(server, test_user):
    async def scenario():
        async with WorkspaceApiClient(
            "http://testserver", token="not-a-jwt", transport=httpx.ASGITransport(app=app)
        ) as api:
            await api.get_workspace_version()

    with pytest.raises(AuthenticationError):
        asyncio.run(scenario())


def test_login(server, test_user):
    async def scenario():
        async with WorkspaceApiClient("http://testserver", transport=httpx.ASGITransport(app=app)) as api:
            token = await api.login(test_user["user"].email, test_user["password"])
            assert token
            return await api.get_workspace()

    assert asyncio.run(scenario())["version"] == 0


def test_recipient_edit_then_owner_resolve(server, premium_user, premium_user2):
    owner_table = table("t1", [task("a", "Plan sprint"), task("b", "Review PRs")])

    async def scenario():
        async with api_for(premium_user) as owner_api, api_for(premium_user2) as recipient_api:
            owner = SharedTableSync(owner_api, WorkspaceRepository(MemoryLocalStore()), EncryptionKeyManager(KEY))
            recipient = SharedTableSync(
                recipient_api, WorkspaceRepository(MemoryLocalStore()), EncryptionKeyManager("recipient key")
            )

            await recipient.ensure_sharing_keys()
            created = await owner.share_table(owner_table, premium_user2["user"].email, permission="edit")
            assert created["added"] is True

            [incoming] = await recipient.incoming_tables()
            assert incoming["tasks"] == owner_table["tasks"]
            share_id = incoming["_shared"]["shareId"]

            edited = dict(incoming, tasks=incoming["tasks"] + [task("r", "Recipient task")])
            pushed = await recipient.push_recipient_table(share_id, edited, known_version=incoming["_shared"]["version"])
            assert pushed.version == 2

            [pending] = await owner.fetch_pending_pushes("t1")
            assert pending.user_email == premium_user2["user"].email

            resolved = await owner.resolve_pending_pushes(owner_table, [pending])
            assert resolved.version == 3
            assert [t["id"] for t in resolved.table["tasks"]] == ["a", "b", "r"]
            assert await owner.fetch_pending_pushes("t1") == []

            update = await recipient.fetch_incoming_update(share_id, known_version=2)
            assert [t["id"] for t in update["table"]["tasks"]] == ["a", "b", "r"]

    asyncio.run(scenario())
