"""
Sync Manager

Client-side state machine that keeps the local workspace and the server's
encrypted copy in step. The server only offers a versioned compare-and-swap
blob store; everything else (conflict detection, normalization, resolution)
happens here.

A SyncManager is owned by the application's session. It is single-threaded and
cooperative: every network and crypto call is awaited, and `_syncing` is checked
synchronously on entry, so no two sync operations interleave.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from .api_client import WorkspaceApiClient
from .encryption import DecryptionError, EncryptionKeyManager, decrypt_workspace, encrypt_workspace
from .errors import (
    AuthenticationError,
    DecryptionFailure,
    EmptyDataRejected,
    EncryptionKeyMissing,
    SyncError,
    SyncInProgress,
    UserIsEditing,
)
from .local_store import (
    ARCHIVED_TABLES,
    DIARIES,
    NOTEBOOKS,
    SETTINGS,
    TABLES,
    TASK_GROUPS,
    WorkspaceRepository,
)
from .normalize import (
    CLIENT_ONLY_SETTINGS_KEYS,
    deep_equal,
    is_only_empty_remote_vs_nonempty_local,
    is_snapshot_empty,
    merge_shared_tables,
    normalize_snapshot,
    tables_for_sync,
)
from .timers import DebounceTimer, IntervalTimer

logger = logging.getLogger(__name__)

DECRYPTION_FAILURE_REASON = "Wrong encryption key - cannot decrypt server data"


class SyncOutcome(Enum):
    SKIPPED = "skipped"
    NOTHING_TO_SYNC = "nothing_to_sync"
    UP_TO_DATE = "up_to_date"
    PUSHED = "pushed"
    PULLED = "pulled"
    RESOLVED_LOCAL = "resolved_local"
    RESOLVED_REMOTE = "resolved_remote"
    RESOLVED_MERGE = "resolved_merge"


UPLOADED = {SyncOutcome.PUSHED, SyncOutcome.RESOLVED_LOCAL, SyncOutcome.RESOLVED_MERGE}
DOWNLOADED = {SyncOutcome.PULLED, SyncOutcome.RESOLVED_REMOTE}


@dataclass
class SyncConfig:
    debounce_delay: float = 3.0
    auto_sync_interval: float = 60.0
    visible_interval: float = 10.0
    hidden_interval: float = 60.0


@dataclass
class ConflictData:
    """Both sides of a real conflict, as handed to the resolver."""
    local: Dict[str, Any]
    remote: Dict[str, Any]
    local_version: int
    remote_version: int


@dataclass
class ConflictResolution:
    resolution: Literal["local", "remote", "merge"]
    merged_tables: Optional[List[Dict[str, Any]]] = None


@dataclass
class DecryptionFailureInfo:
    has_failure: bool
    reason: Optional[str] = None


@dataclass
class LastSyncInfo:
    time: Optional[datetime] = None
    direction: Optional[Literal["uploaded", "downloaded"]] = None


ConflictResolver = Callable[[ConflictData], Union[ConflictResolution, Awaitable[ConflictResolution]]]
EmptyOverwriteConfirmer = Callable[[], Union[bool, Awaitable[bool]]]
EditingPredicate = Callable[[], bool]
Listener = Callable[[str, Dict[str, Any]], None]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class SyncManager:
    """
    Orchestrates debounced and periodic sync of one user's workspace.

    Args:
        api: HTTP client for the workspace endpoints
        repository: Local persistence of the snapshot, version and dirty flag
        key_manager: Holds the session's encryption passphrase
        resolve_conflict: Asked to pick local, remote or a merge on a real conflict
        confirm_empty_overwrite: Asked before an empty workspace replaces server
            data; None means such a push always fails
        is_user_editing: While it returns True, syncs are postponed
        config: Timer settings
    """

    def __init__(
        self,
        api: WorkspaceApiClient,
        repository: WorkspaceRepository,
        key_manager: EncryptionKeyManager,
        *,
        resolve_conflict: ConflictResolver,
        confirm_empty_overwrite: Optional[EmptyOverwriteConfirmer],
        is_user_editing: Optional[EditingPredicate],
        config: Optional[SyncConfig] = None
    ):
        self.api = api
        self.repository = repository
        self.key_manager = key_manager
        self.resolve_conflict = resolve_conflict
        self.confirm_empty_overwrite = confirm_empty_overwrite
        self.is_user_editing = is_user_editing
        self.config = config or SyncConfig()

        self.client_id = repository.client_id()

        self._syncing = False
        self._edit_generation = 0
        self._decryption_failure_reason: Optional[str] = None
        self._decryption_failure_ciphertext: Optional[str] = None
        self._force_overwrite = False
        self._last_sync = LastSyncInfo()
        self._listeners: List[Listener] = []
        self._focus_task: Optional[asyncio.Task] = None

        self._debounce = DebounceTimer(self.config.debounce_delay, self._debounced_sync, name="sync-debounce")
        self._auto_sync = IntervalTimer(self.config.auto_sync_interval, self._auto_sync_tick, name="auto-sync")

    # --- State-update channel ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register for sync_start, sync_complete, sync_error and state_update events.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Sync listener failed on %s", event)

    # --- Scheduling ---

    @property
    def syncing(self) -> bool:
        return self._syncing

    def mark_local_modified(self) -> None:
        """Record a local edit and (re)arm the debounced sync."""
        self._edit_generation += 1
        self.repository.dirty = True
        if not self._auto_sync.running:
            logger.debug("Sync not scheduled, auto-sync is not active")
            return
        self._debounce.schedule()

    def start_auto_sync(self, interval: Optional[float] = None) -> None:
        if interval is not None:
            self._auto_sync.set_interval(interval)
        self._auto_sync.start()
        logger.info("Auto-sync started (every %ss)", self._auto_sync.interval)

    def stop_auto_sync(self) -> None:
        self._auto_sync.stop()
        self._debounce.cancel()
        logger.info("Auto-sync stopped")

    @property
    def auto_sync_active(self) -> bool:
        return self._auto_sync.running

    def set_visibility(self, visible: bool) -> None:
        """
        Poll faster while the app is in front, slower in the background, and
        sync right away when it comes back into view.
        """
        interval = self.config.visible_interval if visible else self.config.hidden_interval
        if not self._auto_sync.running:
            return
        self._auto_sync.set_interval(interval)
        if visible and not self._syncing:
            self._focus_task = asyncio.get_running_loop().create_task(self._focus_sync(), name="focus-sync")

    def _editing(self) -> bool:
        return bool(self.is_user_editing and self.is_user_editing())

    async def _auto_sync_tick(self) -> None:
        if self._editing():
            logger.debug("User is editing, skipping auto-sync tick")
            return
        await self.sync()

    async def _focus_sync(self) -> None:
        # Nothing awaits this task, so failures end here
        try:
            await self._auto_sync_tick()
        except Exception as e:
            logger.warning("Focus sync failed: %s", e)

    async def _debounced_sync(self) -> None:
        if self._editing():
            self._debounce.schedule()
            return
        await self.sync()

    # --- Key and failure surface ---

    def set_encryption_key(self, key: str) -> None:
        self.key_manager.set_key(key)
        self._clear_decryption_failure()

    def set_custom_encryption_key(self, key: str) -> None:
        self.key_manager.set_custom_key(key)
        self._clear_decryption_failure()

    def clear_encryption_key(self) -> None:
        self.key_manager.clear()
        self._clear_decryption_failure()

    def _require_key(self) -> str:
        key = self.key_manager.key
        if not key:
            raise EncryptionKeyMissing()
        return key

    def _set_decryption_failure(self, reason: str, ciphertext: Optional[str]) -> None:
        self._decryption_failure_reason = reason
        self._decryption_failure_ciphertext = ciphertext
        logger.error("Decryption failure set: %s", reason)

    def _clear_decryption_failure(self) -> None:
        self._decryption_failure_reason = None
        self._decryption_failure_ciphertext = None
        self._force_overwrite = False

    def get_decryption_failure(self) -> DecryptionFailureInfo:
        return DecryptionFailureInfo(
            has_failure=self._decryption_failure_reason is not None,
            reason=self._decryption_failure_reason,
        )

    def enable_force_overwrite(self) -> None:
        """User accepted that the server copy will be replaced by the local one."""
        self._clear_decryption_failure()
        self._force_overwrite = True
        logger.warning("Force overwrite mode enabled")

    async def retry_sync(self) -> SyncOutcome:
        """Retry after the user supplied a (hopefully) matching key."""
        self._clear_decryption_failure()
        return await self.sync()

    async def force_overwrite(self) -> SyncOutcome:
        self.enable_force_overwrite()
        return await self.sync()

    def get_status(self) -> Dict[str, Any]:
        return {
            "syncing": self._syncing,
            "version": self.repository.version,
            "has_key": self.key_manager.has_key(),
            "dirty": self.repository.dirty,
            "auto_sync": self._auto_sync.running,
        }

    def get_last_sync_info(self) -> LastSyncInfo:
        return LastSyncInfo(time=self._last_sync.time, direction=self._last_sync.direction)

    # --- Public operations ---

    async def sync(self) -> SyncOutcome:
        """
        Reconcile local and server state.

        Returns SyncOutcome.SKIPPED when another sync is in flight.

        Raises:
            DecryptionFailure: outstanding or new failure to decrypt server data
            UserIsEditing: the editing predicate is true
            EncryptionKeyMissing: no session key
            EmptyDataRejected: empty local data would overwrite the server
            VersionConflictError: lost a write race; dirty flag is kept
            NetworkOrServerError: transport or server failure
        """
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return SyncOutcome.SKIPPED
        if self._decryption_failure_reason and not self._force_overwrite:
            raise DecryptionFailure(self._decryption_failure_reason, self._decryption_failure_ciphertext)
        if self._editing():
            raise UserIsEditing()
        key = self._require_key()

        self._syncing = True
        self._debounce.cancel()
        self._emit("sync_start")
        try:
            outcome = await self._sync(key)
        except AuthenticationError as e:
            logger.error("Stopping auto-sync due to authentication failure: %s", e)
            self.stop_auto_sync()
            self._emit("sync_error", error=e)
            raise
        except Exception as e:
            logger.error("Sync failed: %s", e)
            self._emit("sync_error", error=e)
            raise
        finally:
            self._syncing = False

        self._record(outcome)
        self._emit("sync_complete", outcome=outcome)
        return outcome

    async def pull(self) -> SyncOutcome:
        """Fetch, decrypt and apply the server copy, replacing local state."""
        if self._syncing:
            raise SyncInProgress()
        key = self._require_key()

        self._syncing = True
        try:
            outcome = await self._pull(key, self._edit_generation)
        finally:
            self._syncing = False
        self._record(outcome)
        return outcome

    async def force_push(self) -> SyncOutcome:
        """
        Push local state as version local+1 without any conflict detection.
        Only for use after the user confirmed losing server-side changes.
        """
        if self._syncing:
            raise SyncInProgress()
        key = self._require_key()
        local = self.repository.load_snapshot()
        if local is None:
            raise SyncError("No local data to push")

        self._syncing = True
        try:
            await self._push(local, key, self.repository.version + 1, self._edit_generation)
        finally:
            self._syncing = False
        logger.info("Force push completed")
        self._record(SyncOutcome.PUSHED)
        return SyncOutcome.PUSHED

    async def shutdown(self) -> None:
        """Logout: stop timers, try to flush pending edits, drop the key."""
        self.stop_auto_sync()
        if self._focus_task is not None and not self._focus_task.done():
            self._focus_task.cancel()
        if self.repository.dirty and self.key_manager.has_key():
            try:
                await self.sync()
            except SyncError as e:
                logger.warning("Final sync before logout failed: %s", e)
        self.clear_encryption_key()

    # --- Protocol ---

    async def _sync(self, key: str) -> SyncOutcome:
        generation = self._edit_generation
        local = self.repository.load_snapshot()

        remote_info = await self.api.get_workspace_version()
        remote_version = int(remote_info.get("version") or 0)
        remote_client_id = remote_info.get("lastClientId")
        local_version = self.repository.version
        dirty = self.repository.dirty
        logger.info(
            "Sync: remote version %d, local version %d, dirty=%s, last client=%s",
            remote_version, local_version, dirty, remote_client_id
        )

        if local is None:
            if remote_version > local_version:
                return await self._pull(key, generation)
            return SyncOutcome.NOTHING_TO_SYNC

        if remote_version > 0 and (dirty or self._force_overwrite) and is_snapshot_empty(local):
            await self._confirm_empty_overwrite(remote_version)
            await self._push(local, key, remote_version + 1, generation)
            self._force_overwrite = False
            return SyncOutcome.PUSHED

        if self._force_overwrite:
            logger.warning("Force overwrite: replacing server version %d", remote_version)
            await self._push(local, key, remote_version + 1, generation)
            self._force_overwrite = False
            return SyncOutcome.PUSHED

        if remote_version <= local_version:
            if not dirty:
                return SyncOutcome.UP_TO_DATE
            await self._push(local, key, remote_version + 1, generation)
            return SyncOutcome.PUSHED

        if not dirty:
            return await self._pull(key, generation)

        if remote_client_id is not None and remote_client_id == self.client_id:
            logger.info("Remote is newer but was written by this client, pushing as a linear update")
            await self._push(local, key, remote_version + 1, generation)
            return SyncOutcome.PUSHED

        return await self._reconcile(local, key, generation)

    async def _reconcile(self, local: Dict[str, Any], key: str, generation: int) -> SyncOutcome:
        """Remote moved on and local has unsynced edits: find out whether they really differ."""
        remote = await self.api.get_workspace()
        if not remote or not remote.get("data"):
            await self._push(local, key, int((remote or {}).get("version") or 0) + 1, generation)
            return SyncOutcome.PUSHED

        remote_version = int(remote["version"])
        remote_snapshot = await self._decrypt(remote["data"], key)

        normalized_local = normalize_snapshot(local)
        normalized_remote = normalize_snapshot(remote_snapshot)
        if deep_equal(normalized_local, normalized_remote):
            logger.info("Local and remote differ only in layout, taking remote")
            self._apply_remote(remote_snapshot, remote_version, generation)
            return SyncOutcome.PULLED

        if is_only_empty_remote_vs_nonempty_local(normalized_local, normalized_remote):
            logger.info("Only blank remote task titles differ, pushing local")
            await self._push(local, key, remote_version + 1, generation)
            return SyncOutcome.PUSHED

        logger.warning("Real conflict: remote version %d vs local version %d", remote_version, self.repository.version)
        resolution = await _maybe_await(self.resolve_conflict(ConflictData(
            local=local,
            remote=remote_snapshot,
            local_version=self.repository.version,
            remote_version=remote_version,
        )))

        if resolution.resolution == "local":
            await self._push(local, key, remote_version + 1, generation)
            return SyncOutcome.RESOLVED_LOCAL

        if resolution.resolution == "remote":
            self._apply_remote(remote_snapshot, remote_version, generation)
            return SyncOutcome.RESOLVED_REMOTE

        if resolution.resolution == "merge":
            if resolution.merged_tables is None:
                raise SyncError("Merge resolution requires merged tables")
            merged = dict(local, tables=tables_for_sync(resolution.merged_tables))
            local_tables = merge_shared_tables(merged["tables"], local.get("tables"))
            await self._push(merged, key, remote_version + 1, generation, values={TABLES: local_tables})
            self._emit("state_update", snapshot=self.repository.load_snapshot())
            return SyncOutcome.RESOLVED_MERGE

        raise SyncError(f"Unknown conflict resolution: {resolution.resolution!r}")

    async def _confirm_empty_overwrite(self, remote_version: int) -> None:
        if self.confirm_empty_overwrite is None:
            raise EmptyDataRejected(
                "Cannot sync empty data: this would overwrite existing server data. "
                "Add tasks or pull from server first.",
                remote_version,
            )
        confirmed = await _maybe_await(self.confirm_empty_overwrite())
        if not confirmed:
            raise EmptyDataRejected(
                "Sync cancelled: you chose not to overwrite server data with an empty workspace.",
                remote_version,
            )
        logger.warning("User confirmed replacing server version %d with an empty workspace", remote_version)

    async def _decrypt(self, ciphertext: str, key: str) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(decrypt_workspace, ciphertext, key)
        except DecryptionError as e:
            self._set_decryption_failure(DECRYPTION_FAILURE_REASON, ciphertext)
            raise DecryptionFailure(DECRYPTION_FAILURE_REASON, ciphertext) from e

    async def _push(
        self,
        snapshot: Dict[str, Any],
        key: str,
        target_version: int,
        generation: int,
        values: Optional[Dict[str, Any]] = None
    ) -> None:
        """Encrypt and write at `target_version`; persist the version only after the server accepted it."""
        payload = dict(snapshot, tables=tables_for_sync(snapshot.get("tables")))
        encrypted = await asyncio.to_thread(encrypt_workspace, payload, key)
        await self.api.save_workspace(encrypted, target_version, self.client_id)
        self._commit(values or {}, target_version, generation)
        logger.info("Pushed workspace as version %d", target_version)

    async def _pull(self, key: str, generation: int) -> SyncOutcome:
        remote = await self.api.get_workspace()
        if not remote or not remote.get("data"):
            logger.info("No remote data to pull")
            return SyncOutcome.UP_TO_DATE
        snapshot = await self._decrypt(remote["data"], key)
        self._apply_remote(snapshot, int(remote["version"]), generation)
        return SyncOutcome.PULLED

    def _apply_remote(self, remote: Dict[str, Any], version: int, generation: int) -> None:
        """Write a decrypted server snapshot into the local store together with its version."""
        current_settings = self.repository.settings
        settings = dict(remote.get("settings") or {})
        for k in CLIENT_ONLY_SETTINGS_KEYS:
            if current_settings.get(k) is not None:
                settings[k] = current_settings[k]

        values: Dict[str, Any] = {
            TABLES: merge_shared_tables(remote.get("tables"), self.repository.tables),
            SETTINGS: settings,
        }
        remove = []
        if "taskGroups" in remote:
            if remote.get("taskGroups"):
                values[TASK_GROUPS] = remote["taskGroups"]
            elif not self.repository.task_groups:
                remove.append(TASK_GROUPS)
            else:
                logger.warning("Server has empty task groups, keeping local ones")
        for snapshot_key, slot in (("notebooks", NOTEBOOKS), ("diaries", DIARIES), ("archivedTables", ARCHIVED_TABLES)):
            if remote.get(snapshot_key) is not None:
                values[slot] = remote[snapshot_key]

        self._commit(values, version, generation, remove=remove)
        logger.info("Applied remote workspace version %d", version)
        self._emit("state_update", snapshot=self.repository.load_snapshot())

    def _commit(self, values: Dict[str, Any], version: int, generation: int, remove=()) -> None:
        # Edits made while the sync was in flight keep the dirty flag set
        clean = generation == self._edit_generation
        self.repository.commit(values, version=version, dirty=False if clean else None, remove=remove)

    def _record(self, outcome: SyncOutcome) -> None:
        if outcome in (SyncOutcome.SKIPPED, SyncOutcome.NOTHING_TO_SYNC):
            return
        self._last_sync.time = datetime.utcnow()
        if outcome in UPLOADED:
            self._last_sync.direction = "uploaded"
        elif outcome in DOWNLOADED:
            self._last_sync.direction = "downloaded"
