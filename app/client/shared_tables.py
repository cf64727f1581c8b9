"""
Shared Tables

Client side of table sharing. A shared table is encrypted with its own random
key (DEK). The owner keeps the DEK wrapped under their passphrase; every
recipient gets it wrapped through an X25519 agreement with the owner.

Owner and edit-recipients write through one versioned slot on the server. A
lost race is retried exactly once after merging with the latest server copy;
who wins a task-id collision depends on which side started the operation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .api_client import WorkspaceApiClient
from .encryption import (
    DecryptionError,
    EncryptionKeyManager,
    decrypt_table_with_dek,
    encrypt_table_with_dek,
    generate_key_pair,
    generate_table_dek,
    unwrap_dek_for_owner,
    unwrap_dek_from_owner,
    wrap_dek_for_owner,
    wrap_dek_for_recipient,
)
from .errors import EncryptionKeyMissing, SharedTablePushError, SyncError, VersionConflictError
from .local_store import WorkspaceRepository
from .normalize import SHARED_MARKER

logger = logging.getLogger(__name__)

TABLE_METADATA_FIELDS = ("title", "date", "startTime")


def _tasks(table: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return list((table or {}).get("tasks") or [])


def _metadata_from(base: Dict[str, Any], preferred: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(base)
    for field in TABLE_METADATA_FIELDS:
        if preferred and preferred.get(field) is not None:
            merged[field] = preferred[field]
    return merged


def _overlay_tasks(base: List[Dict[str, Any]], winner: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """`base` order, `winner` tasks replacing same-id ones, winner-only tasks appended."""
    by_id = {t.get("id"): t for t in winner}
    merged = [by_id.get(t.get("id"), t) for t in base]
    seen = {t.get("id") for t in merged}
    merged.extend(t for t in winner if t.get("id") not in seen)
    return merged


def strip_shared_marker(table: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in table.items() if k != SHARED_MARKER}


def merge_share_into_owner(share: Dict[str, Any], owner_local: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Owner pull: recipient edits in the share win on task-id collision, tasks only
    the owner has are kept, the owner's title, date and start time win.
    """
    tasks = _tasks(share)
    share_ids = {t.get("id") for t in tasks}
    tasks.extend(t for t in _tasks(owner_local) if t.get("id") not in share_ids)
    return _metadata_from(dict(share, tasks=tasks), owner_local)


def merge_owner_into_latest(latest: Dict[str, Any], owner_local: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Owner push retry: the owner's tasks and metadata win over the server copy."""
    merged = dict(latest, tasks=_overlay_tasks(_tasks(latest), _tasks(owner_local)))
    return _metadata_from(merged, owner_local)


def merge_recipient_into_latest(latest: Dict[str, Any], recipient_local: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Recipient push retry: the recipient's edits win over the server copy."""
    merged = dict(latest, tasks=_overlay_tasks(_tasks(latest), _tasks(recipient_local)))
    return _metadata_from(merged, strip_shared_marker(recipient_local or {}))


@dataclass
class PushResult:
    share_id: int
    version: int
    table: Dict[str, Any]
    retried: bool = False


@dataclass
class PendingPush:
    user_id: str
    user_email: str
    table: Dict[str, Any]
    # Share version the push list was read at
    share_version: Optional[int] = None


class SharedTableSync:
    """
    Share, push and pull individual tables for the logged-in user.

    The owner's DEK is unwrapped with the session passphrase; recipient DEKs
    with the sharing private key kept in the local store.
    """

    def __init__(self, api: WorkspaceApiClient, repository: WorkspaceRepository, key_manager: EncryptionKeyManager):
        self.api = api
        self.repository = repository
        self.key_manager = key_manager

    def _passphrase(self) -> str:
        key = self.key_manager.key
        if not key:
            raise EncryptionKeyMissing()
        return key

    async def ensure_sharing_keys(self) -> Dict[str, str]:
        """Create and publish a sharing key pair the first time sharing is used."""
        pair = self.repository.sharing_key_pair()
        if pair is not None:
            return pair
        public_key, private_key = generate_key_pair()
        await self.api.upload_sharing_public_key(public_key)
        self.repository.save_sharing_key_pair(private_key, public_key)
        logger.info("Generated and uploaded sharing key pair")
        return {"private_key": private_key, "public_key": public_key}

    async def _owned_share(self, source_table_id: str) -> Optional[Dict[str, Any]]:
        for share in await self.api.get_owned_shares():
            if str(share.get("sourceTableId")) == str(source_table_id):
                return share
        return None

    async def _incoming_share(self, share_id: int) -> Optional[Dict[str, Any]]:
        for share in await self.api.get_incoming_shares():
            if share.get("id") == share_id:
                return share
        return None

    async def _owner_dek(self, share: Dict[str, Any]) -> bytes:
        return await asyncio.to_thread(unwrap_dek_for_owner, share["wrappedDekForOwner"], self._passphrase())

    def _recipient_dek(self, share: Dict[str, Any]) -> bytes:
        pair = self.repository.sharing_key_pair()
        if pair is None:
            raise SyncError("Sharing key not found on this device", context={"share_id": share.get("id")})
        if not share.get("ownerPublicKey"):
            raise SyncError("Owner has no sharing key", context={"share_id": share.get("id")})
        return unwrap_dek_from_owner(share["encryptedDek"], share["ownerPublicKey"], pair["private_key"])

    # --- Owner ---

    async def share_table(self, table: Dict[str, Any], recipient_email: str, permission: str = "view") -> Dict[str, Any]:
        """
        Share `table` with one more user. An already shared table keeps its DEK,
        so existing recipients are not affected.
        """
        keys = await self.ensure_sharing_keys()
        recipient = await self.api.get_public_key_by_email(recipient_email)
        recipient_public_key = recipient.get("publicKey")
        if not recipient_public_key:
            raise SyncError(
                "Recipient has not set up sharing yet",
                context={"recipient_email": recipient_email},
            )

        existing = await self._owned_share(table["id"])
        wrapped_for_owner = None
        if existing and existing.get("wrappedDekForOwner"):
            dek = await self._owner_dek(existing)
        else:
            dek = generate_table_dek()
            wrapped_for_owner = await asyncio.to_thread(wrap_dek_for_owner, dek, self._passphrase())

        result = await self.api.create_share(
            table_id=str(table["id"]),
            recipient_email=recipient_email,
            permission=permission,
            encrypted_table_data=encrypt_table_with_dek(strip_shared_marker(table), dek),
            encrypted_dek=wrap_dek_for_recipient(dek, recipient_public_key, keys["private_key"]),
            wrapped_dek_for_owner=wrapped_for_owner,
        )
        logger.info("Shared table %s with %s (%s)", table["id"], recipient_email, permission)
        return result

    async def push_owner_table(self, table: Dict[str, Any]) -> Optional[PushResult]:
        """
        Write the owner's copy into its share.

        Returns:
            PushResult, or None when the table is not shared

        Raises:
            SharedTablePushError: lost the race again after one merge-and-retry
        """
        share = await self._owned_share(table["id"])
        if share is None or not share.get("wrappedDekForOwner"):
            return None
        dek = await self._owner_dek(share)
        to_push = strip_shared_marker(table)

        try:
            body = await self.api.update_share_data(
                share["id"], encrypt_table_with_dek(to_push, dek), int(share["version"]) + 1
            )
            return PushResult(share_id=share["id"], version=body["version"], table=to_push)
        except VersionConflictError as e:
            logger.info("Owner push for share %s lost the race at version %d, merging", share["id"], e.current_version)
            latest_share = await self._owned_share(table["id"])
            if latest_share is None:
                raise SharedTablePushError(share["id"], "Share disappeared during push") from e
            latest = decrypt_table_with_dek(latest_share["encryptedTableData"], dek)
            merged = merge_owner_into_latest(strip_shared_marker(latest), to_push)
            try:
                body = await self.api.update_share_data(
                    share["id"], encrypt_table_with_dek(merged, dek), e.current_version + 1
                )
            except VersionConflictError as retry_error:
                raise SharedTablePushError(share["id"], "Owner push failed after retry") from retry_error
            return PushResult(share_id=share["id"], version=body["version"], table=merged, retried=True)

    async def sync_owned_tables(self, local_tables: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Pull recipient edits of every owned share into the owner's tables.

        Local placement (position, size, spaceId) survives; a share whose source
        table is gone locally comes back as a new table.

        Returns:
            Tuple of (tables, changed)
        """
        shares = await self.api.get_owned_shares()
        merged = list(local_tables)
        changed = False

        for share in shares:
            if not share.get("wrappedDekForOwner") or not share.get("encryptedTableData"):
                continue
            source_id = str(share["sourceTableId"])
            try:
                dek = await self._owner_dek(share)
                shared = strip_shared_marker(decrypt_table_with_dek(share["encryptedTableData"], dek))
            except DecryptionError as e:
                logger.warning("Skipping share %s, cannot decrypt: %s", share.get("id"), e)
                continue

            index = next((i for i, t in enumerate(merged) if str(t.get("id")) == source_id), None)
            if index is None:
                shared["id"] = source_id
                shared["position"] = {"x": 20 + len(merged) * 100, "y": 20 + len(merged) * 50}
                merged.append(shared)
            else:
                existing = merged[index]
                table = merge_share_into_owner(shared, existing)
                table["id"] = source_id
                for field in ("position", "size", "spaceId"):
                    if field in existing:
                        table[field] = existing[field]
                    else:
                        table.pop(field, None)
                merged[index] = table
            changed = True

        return merged, changed

    async def fetch_pending_pushes(self, source_table_id: str) -> Optional[List[PendingPush]]:
        """
        Recipient pushes the owner has not resolved yet, latest per user.

        Returns:
            None when the table is not shared
        """
        share = await self._owned_share(source_table_id)
        if share is None or not share.get("wrappedDekForOwner"):
            return None
        pushes = await self.api.get_share_pushes(share["id"])
        if not pushes:
            return []

        dek = await self._owner_dek(share)
        by_user: Dict[str, PendingPush] = {}
        for push in pushes:
            try:
                table = decrypt_table_with_dek(push["encryptedTableData"], dek)
            except DecryptionError as e:
                logger.warning("Skipping push %s, cannot decrypt: %s", push.get("id"), e)
                continue
            user_id = str(push["userId"])
            by_user[user_id] = PendingPush(
                user_id=user_id,
                user_email=push.get("userEmail") or f"User {user_id}",
                table=strip_shared_marker(table),
                share_version=int(share["version"]),
            )
        return list(by_user.values())

    async def resolve_pending_pushes(
        self,
        table: Dict[str, Any],
        accepted: List[PendingPush],
        known_version: Optional[int] = None
    ) -> Optional[PushResult]:
        """
        Fold the accepted pushes into the owner's table, oldest first, and write
        the result as the new share state. This also clears the pending list.

        The write targets the version the pending list was read at, so a push
        that landed since then conflicts and gets merged in instead of lost.
        Pass `known_version` when no push was accepted.
        """
        share = await self._owned_share(table["id"])
        if share is None or not share.get("wrappedDekForOwner"):
            return None
        known_versions = [p.share_version for p in accepted if p.share_version is not None]
        if known_version is not None:
            base_version = known_version
        elif known_versions:
            base_version = min(known_versions)
        else:
            base_version = int(share["version"])
        dek = await self._owner_dek(share)

        resolved = strip_shared_marker(table)
        for push in accepted:
            resolved = merge_share_into_owner(push.table, resolved)
        resolved["id"] = table["id"]

        try:
            body = await self.api.resolve_share(
                share["id"], encrypt_table_with_dek(resolved, dek), base_version + 1
            )
            return PushResult(share_id=share["id"], version=body["version"], table=resolved)
        except VersionConflictError as e:
            latest_share = await self._owned_share(table["id"])
            if latest_share is None:
                raise SharedTablePushError(share["id"], "Share disappeared during resolve") from e
            latest = decrypt_table_with_dek(latest_share["encryptedTableData"], dek)
            merged = merge_owner_into_latest(strip_shared_marker(latest), resolved)
            try:
                body = await self.api.resolve_share(
                    share["id"], encrypt_table_with_dek(merged, dek), e.current_version + 1
                )
            except VersionConflictError as retry_error:
                raise SharedTablePushError(share["id"], "Resolve failed after retry") from retry_error
            return PushResult(share_id=share["id"], version=body["version"], table=merged, retried=True)

    # --- Recipient ---

    @staticmethod
    def _shared_meta(share: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "shareId": share["id"],
            "canEdit": share.get("permission") == "edit",
            "ownerEmail": share.get("ownerEmail"),
            "version": share.get("version", 0),
        }

    async def incoming_tables(self) -> List[Dict[str, Any]]:
        """Every table shared with this user, decrypted and tagged with the shared marker."""
        tables = []
        for share in await self.api.get_incoming_shares():
            try:
                table = decrypt_table_with_dek(share["encryptedTableData"], self._recipient_dek(share))
            except (DecryptionError, SyncError) as e:
                logger.warning("Skipping incoming share %s: %s", share.get("id"), e)
                continue
            table = strip_shared_marker(table)
            table["id"] = f"shared-{share['id']}"
            table[SHARED_MARKER] = self._shared_meta(share)
            tables.append(table)
        return tables

    async def fetch_incoming_update(self, share_id: int, known_version: int = 0) -> Optional[Dict[str, Any]]:
        """
        The share's current table when it is newer than `known_version`.

        Returns:
            {"table": ..., "version": ...} or None when nothing newer exists
        """
        share = await self._incoming_share(share_id)
        if share is None or not share.get("encryptedTableData"):
            return None
        if int(share.get("version") or 0) <= known_version:
            return None
        table = decrypt_table_with_dek(share["encryptedTableData"], self._recipient_dek(share))
        return {"table": strip_shared_marker(table), "version": int(share["version"])}

    async def push_recipient_table(self, share_id: int, table: Dict[str, Any], known_version: int) -> PushResult:
        """
        Write a recipient's edits into the share they were given edit access to.

        Raises:
            SharedTablePushError: view-only share, or lost the race again after one merge-and-retry
        """
        share = await self._incoming_share(share_id)
        if share is None:
            raise SharedTablePushError(share_id, "Share not found")
        if share.get("permission") != "edit":
            raise SharedTablePushError(share_id, "No edit permission")

        dek = self._recipient_dek(share)
        to_push = strip_shared_marker(table)
        # The local copy carries a recipient-side id
        to_push["id"] = share.get("sourceTableId", to_push.get("id"))
        try:
            body = await self.api.update_share_data(share_id, encrypt_table_with_dek(to_push, dek), known_version + 1)
            return PushResult(share_id=share_id, version=body["version"], table=to_push)
        except VersionConflictError as e:
            logger.info("Recipient push for share %s lost the race at version %d, merging", share_id, e.current_version)
            latest = await self.fetch_incoming_update(share_id)
            if latest is None:
                raise SharedTablePushError(share_id, "Share disappeared during push") from e
            merged = merge_recipient_into_latest(latest["table"], to_push)
            try:
                body = await self.api.update_share_data(
                    share_id, encrypt_table_with_dek(merged, dek), e.current_version + 1
                )
            except VersionConflictError as retry_error:
                raise SharedTablePushError(share_id, "Recipient push failed after retry") from retry_error
            return PushResult(share_id=share_id, version=body["version"], table=merged, retried=True)
