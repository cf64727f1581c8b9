"""
Share Service

Server side of table sharing. The owner and every edit-recipient contend on one
version counter per shared table; every accepted write is also appended to the
push log so the owner can fold recipient edits back into the source table.

Authorization is always derived from the stored row (owner_id, recipient
permission, live entitlement), never from what the caller claims to be.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple, Dict, Any
from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload
import logging
import uuid

from ..models.models import SharedTable, SharedTableRecipient, SharedTablePush, User
from .auth_service import get_user_by_email
from .entitlement_service import EntitlementService
from .errors import (
    InvalidShareRequest,
    RecipientNotFound,
    ShareForbidden,
    ShareNotFound,
    ShareVersionConflict,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


class ShareService:
    """Service for shared-table storage, authorization and versioned writes"""

    @staticmethod
    def get_owned_share(db: Session, share_id: int, user_id: uuid.UUID) -> SharedTable:
        """
        Load a share and require the caller to own it.

        Raises:
            ShareNotFound: no such share
            ShareForbidden: caller is not the owner
        """
        share = db.get(SharedTable, share_id)
        if share is None:
            raise ShareNotFound("Not found")
        if share.owner_id != user_id:
            raise ShareForbidden("Forbidden")
        return share

    @staticmethod
    def create_or_extend_share(
        db: Session,
        owner_id: uuid.UUID,
        table_id: str,
        recipient_email: str,
        permission: str,
        encrypted_table_data: str,
        encrypted_dek: str,
        wrapped_dek_for_owner: Optional[str] = None
    ) -> Tuple[SharedTable, bool]:
        """
        Share a table with one more user.

        If the owner already shares `table_id`, the recipient is added to that
        share. Re-sharing with an existing recipient replaces their wrapped key
        and permission instead of failing.

        Args:
            db: Database session
            owner_id: Owner UUID
            table_id: Owner's local table id
            recipient_email: Recipient email (case-insensitive)
            permission: 'view' or 'edit'
            encrypted_table_data: Table encrypted with the table key
            encrypted_dek: Table key wrapped for the recipient
            wrapped_dek_for_owner: Table key wrapped for the owner

        Returns:
            Tuple of (SharedTable, added) where added is False when an existing
            recipient row was updated

        Raises:
            RecipientNotFound: no user with that email
            InvalidShareRequest: owner tried to share with themselves
        """
        recipient = get_user_by_email(db, recipient_email)
        if recipient is None:
            raise RecipientNotFound("User not found")
        if recipient.id == owner_id:
            raise InvalidShareRequest("Cannot share with yourself")

        share = db.query(SharedTable).filter(
            SharedTable.owner_id == owner_id,
            SharedTable.source_table_id == table_id
        ).first()

        if share is None:
            share = SharedTable(
                owner_id=owner_id,
                source_table_id=table_id,
                encrypted_table_data=encrypted_table_data,
                version=1,
                wrapped_dek_for_owner=wrapped_dek_for_owner
            )
            db.add(share)
            db.flush()
            logger.info("Created shared table %s for owner %s (source %s)", share.id, owner_id, table_id)
        elif share.wrapped_dek_for_owner is None and wrapped_dek_for_owner:
            share.wrapped_dek_for_owner = wrapped_dek_for_owner

        existing = db.query(SharedTableRecipient).filter(
            SharedTableRecipient.shared_table_id == share.id,
            SharedTableRecipient.user_id == recipient.id
        ).first()

        if existing is not None:
            existing.encrypted_dek = encrypted_dek
            existing.permission = permission
            added = False
        else:
            db.add(SharedTableRecipient(
                shared_table_id=share.id,
                user_id=recipient.id,
                encrypted_dek=encrypted_dek,
                permission=permission
            ))
            added = True

        db.commit()
        db.refresh(share)
        return share, added

    @staticmethod
    def list_incoming(db: Session, user_id: uuid.UUID) -> List[Dict[str, Any]]:
        """Shares where the caller is a recipient, newest first."""
        rows = db.query(SharedTableRecipient, SharedTable, User).join(
            SharedTable, SharedTable.id == SharedTableRecipient.shared_table_id
        ).join(
            User, User.id == SharedTable.owner_id
        ).filter(
            SharedTableRecipient.user_id == user_id
        ).order_by(SharedTable.updated_at.desc()).all()

        return [
            {
                "id": share.id,
                "owner_id": share.owner_id,
                "owner_email": owner.email,
                "owner_public_key": owner.sharing_public_key,
                "source_table_id": share.source_table_id,
                "encrypted_table_data": share.encrypted_table_data,
                "encrypted_dek": recipient.encrypted_dek,
                "permission": recipient.permission,
                "version": share.version,
                "updated_at": share.updated_at,
            }
            for recipient, share, owner in rows
        ]

    @staticmethod
    def list_owned(db: Session, owner_id: uuid.UUID) -> List[Dict[str, Any]]:
        """Owner's shares with everything needed to pull them back into the source table."""
        shares = db.query(SharedTable).options(
            joinedload(SharedTable.last_pushed_by)
        ).filter(
            SharedTable.owner_id == owner_id
        ).order_by(SharedTable.updated_at.desc()).all()

        return [
            {
                "id": share.id,
                "source_table_id": share.source_table_id,
                "encrypted_table_data": share.encrypted_table_data,
                "version": share.version,
                "wrapped_dek_for_owner": share.wrapped_dek_for_owner,
                "last_pushed_by_user_id": share.last_pushed_by_user_id,
                "last_pushed_by_email": share.last_pushed_by.email if share.last_pushed_by else None,
                "last_resolved_at": share.last_resolved_at,
                "updated_at": share.updated_at,
            }
            for share in shares
        ]

    @staticmethod
    def list_outgoing(db: Session, owner_id: uuid.UUID) -> List[Dict[str, Any]]:
        shares = db.query(SharedTable).options(
            joinedload(SharedTable.recipients).joinedload(SharedTableRecipient.user)
        ).filter(
            SharedTable.owner_id == owner_id
        ).order_by(SharedTable.updated_at.desc()).all()

        return [
            {
                "id": share.id,
                "source_table_id": share.source_table_id,
                "version": share.version,
                "created_at": share.created_at,
                "recipients": [
                    {
                        "user_id": r.user_id,
                        "email": r.user.email,
                        "permission": r.permission,
                        "always_accept_from": r.always_accept_from,
                    }
                    for r in share.recipients
                ],
            }
            for share in shares
        ]

    @staticmethod
    def update_share(
        db: Session,
        share_id: int,
        owner_id: uuid.UUID,
        recipient_id: Optional[uuid.UUID] = None,
        permission: Optional[str] = None,
        revoke_user_id: Optional[uuid.UUID] = None,
        always_accept_from: Optional[bool] = None
    ) -> str:
        """
        Apply exactly one owner action to a share: revoke a recipient, change a
        recipient's permission, or toggle auto-accept for a recipient.

        Returns:
            Name of the action performed

        Raises:
            InvalidShareRequest: zero or several actions, or missing recipient_id
            ShareNotFound: no such share or recipient
            ShareForbidden: caller is not the owner
        """
        actions = [a for a, v in (
            ("revoke", revoke_user_id),
            ("permission", permission),
            ("always_accept_from", always_accept_from),
        ) if v is not None]
        if len(actions) != 1:
            raise InvalidShareRequest("Specify exactly one of permission, revokeUserId or alwaysAcceptFrom")
        action = actions[0]

        share = ShareService.get_owned_share(db, share_id, owner_id)

        if action == "revoke":
            deleted = db.query(SharedTableRecipient).filter(
                SharedTableRecipient.shared_table_id == share.id,
                SharedTableRecipient.user_id == revoke_user_id
            ).delete(synchronize_session=False)
            db.commit()
            logger.info("Revoked user %s from share %s (%d rows)", revoke_user_id, share.id, deleted)
            return action

        if recipient_id is None:
            raise InvalidShareRequest(f"recipientId required for {action} update")

        recipient = db.query(SharedTableRecipient).filter(
            SharedTableRecipient.shared_table_id == share.id,
            SharedTableRecipient.user_id == recipient_id
        ).first()
        if recipient is None:
            raise ShareNotFound("Recipient not found")

        if action == "permission":
            recipient.permission = permission
        else:
            recipient.always_accept_from = always_accept_from
        db.commit()
        return action

    @staticmethod
    def delete_share(db: Session, share_id: int, owner_id: uuid.UUID) -> None:
        """Remove the whole share; recipients and push log go with it."""
        share = ShareService.get_owned_share(db, share_id, owner_id)
        db.delete(share)
        db.commit()
        logger.info("Deleted shared table %s", share_id)

    @staticmethod
    def pending_pushes(db: Session, share_id: int, owner_id: uuid.UUID) -> List[Dict[str, Any]]:
        """
        Pushes by non-owners made after the share was last resolved, oldest first.
        """
        share = ShareService.get_owned_share(db, share_id, owner_id)
        resolved_at = share.last_resolved_at or EPOCH

        rows = db.query(SharedTablePush, User.email).join(
            User, User.id == SharedTablePush.user_id
        ).filter(
            SharedTablePush.shared_table_id == share.id,
            SharedTablePush.pushed_at > resolved_at,
            SharedTablePush.user_id != share.owner_id
        ).order_by(SharedTablePush.pushed_at.asc(), SharedTablePush.id.asc()).all()

        return [
            {
                "id": push.id,
                "user_id": push.user_id,
                "user_email": email,
                "encrypted_table_data": push.encrypted_table_data,
                "version": push.version,
                "pushed_at": push.pushed_at,
            }
            for push, email in rows
        ]

    @staticmethod
    def _lock(db: Session, share_id: int) -> SharedTable:
        share = db.query(SharedTable).filter(
            SharedTable.id == share_id
        ).with_for_update().populate_existing().first()
        if share is None:
            raise ShareNotFound("Not found")
        return share

    @staticmethod
    def _compare_and_swap(
        db: Session,
        locked: SharedTable,
        user_id: uuid.UUID,
        encrypted_table_data: str,
        version: int,
        mark_resolved: bool
    ) -> int:
        now = datetime.utcnow()
        values = {
            "encrypted_table_data": encrypted_table_data,
            "version": version,
            "updated_at": now,
            "last_pushed_by_user_id": user_id,
        }
        if mark_resolved:
            values["last_resolved_at"] = now
            values["last_resolved_by_user_id"] = user_id

        result = db.execute(
            update(SharedTable)
            .where(SharedTable.id == locked.id, SharedTable.version == locked.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ShareVersionConflict(locked.version)
        return version

    @staticmethod
    def can_write(db: Session, share: SharedTable, user_id: uuid.UUID) -> bool:
        """
        Owner (premium, grace allowed) or edit-recipient with a live active
        premium subscription.
        """
        if share.owner_id == user_id:
            return EntitlementService.has_premium(db, user_id)

        recipient = db.query(SharedTableRecipient).filter(
            SharedTableRecipient.shared_table_id == share.id,
            SharedTableRecipient.user_id == user_id
        ).first()
        if recipient is None or recipient.permission != 'edit':
            return False
        return EntitlementService.has_premium(db, user_id, allow_grace=False)

    @staticmethod
    def write(
        db: Session,
        share_id: int,
        user_id: uuid.UUID,
        encrypted_table_data: str,
        version: int
    ) -> Tuple[int, bool]:
        """
        Versioned write by the owner or an edit-recipient.

        The row is locked with SELECT ... FOR UPDATE; `version` must be exactly
        the locked version + 1. The write is appended to the push log and the
        table blob is replaced in the same transaction. Owner writes also move
        the resolution cursor.

        Returns:
            Tuple of (new version, whether the writer is the owner)

        Raises:
            ShareNotFound: no such share
            ShareForbidden: caller may not write
            ShareVersionConflict: stale version; nothing was written
        """
        share = db.get(SharedTable, share_id)
        if share is None:
            raise ShareNotFound("Not found")
        if not ShareService.can_write(db, share, user_id):
            raise ShareForbidden("No edit permission")
        is_owner = share.owner_id == user_id

        locked = ShareService._lock(db, share_id)
        if version != locked.version + 1:
            logger.warning(
                "Share %s version conflict: proposed %d, stored %d", share_id, version, locked.version
            )
            raise ShareVersionConflict(locked.version)

        db.add(SharedTablePush(
            shared_table_id=locked.id,
            user_id=user_id,
            encrypted_table_data=encrypted_table_data,
            version=version
        ))
        db.flush()
        ShareService._compare_and_swap(db, locked, user_id, encrypted_table_data, version, mark_resolved=is_owner)
        db.commit()
        logger.info("Share %s written by %s at version %d", share_id, user_id, version)
        return version, is_owner

    @staticmethod
    def resolve(
        db: Session,
        share_id: int,
        owner_id: uuid.UUID,
        encrypted_table_data: str,
        version: int
    ) -> int:
        """
        Owner commits a merged result and moves the pending-push cursor.

        Raises:
            ShareNotFound, ShareForbidden, ShareVersionConflict
        """
        ShareService.get_owned_share(db, share_id, owner_id)
        locked = ShareService._lock(db, share_id)
        if version != locked.version + 1:
            raise ShareVersionConflict(locked.version)

        ShareService._compare_and_swap(db, locked, owner_id, encrypted_table_data, version, mark_resolved=True)
        db.commit()
        logger.info("Share %s resolved by owner at version %d", share_id, version)
        return version
