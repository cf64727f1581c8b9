"""
Workspace Service

Versioned storage of one encrypted workspace blob per user. Writes are a single
conditional UPDATE so two writers can never both win against the same version.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging
import uuid

from ..config import MIN_ENCRYPTED_PAYLOAD_LENGTH
from ..models.models import Workspace
from .errors import InvalidPayload, WorkspaceVersionConflict

logger = logging.getLogger(__name__)


class WorkspaceService:
    """Compare-and-swap store for encrypted workspaces"""

    @staticmethod
    def current_version(db: Session, user_id: uuid.UUID) -> int:
        version = db.query(Workspace.version).filter(Workspace.user_id == user_id).scalar()
        return version or 0

    @staticmethod
    def get_version(db: Session, user_id: uuid.UUID) -> Tuple[int, Optional[datetime], Optional[str]]:
        """
        Read the stored version without transferring the payload.

        Returns:
            Tuple of (version, updated_at, last_client_id); (0, None, None) when
            the user never pushed.
        """
        row = db.query(
            Workspace.version, Workspace.updated_at, Workspace.last_client_id
        ).filter(Workspace.user_id == user_id).first()
        if row is None:
            return 0, None, None
        return row.version, row.updated_at, row.last_client_id

    @staticmethod
    def get(db: Session, user_id: uuid.UUID) -> Optional[Workspace]:
        return db.query(Workspace).filter(Workspace.user_id == user_id).first()

    @staticmethod
    def save(
        db: Session,
        user_id: uuid.UUID,
        encrypted_data: str,
        expected_version: int,
        client_id: Optional[str] = None
    ) -> int:
        """
        Store a new encrypted workspace if and only if `expected_version` is the
        stored version + 1.

        Args:
            db: Database session
            user_id: User UUID
            encrypted_data: Opaque base64 payload
            expected_version: Proposed new version
            client_id: Optional id of the writing client

        Returns:
            The new stored version (== expected_version)

        Raises:
            InvalidPayload: payload is too short to be an encrypted workspace
            WorkspaceVersionConflict: stored version is not expected_version - 1;
                nothing was written
        """
        if not encrypted_data or len(encrypted_data) < MIN_ENCRYPTED_PAYLOAD_LENGTH:
            raise InvalidPayload(
                f"Encrypted data too short ({len(encrypted_data or '')} < {MIN_ENCRYPTED_PAYLOAD_LENGTH} chars)"
            )

        now = datetime.utcnow()
        result = db.execute(
            update(Workspace)
            .where(
                Workspace.user_id == user_id,
                Workspace.version == expected_version - 1
            )
            .values(
                encrypted_data=encrypted_data,
                version=expected_version,
                updated_at=now,
                last_client_id=client_id
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            db.commit()
            logger.info("Workspace saved for user %s at version %d", user_id, expected_version)
            return expected_version

        if expected_version == 1 and WorkspaceService.get(db, user_id) is None:
            db.add(Workspace(
                user_id=user_id,
                encrypted_data=encrypted_data,
                version=1,
                updated_at=now,
                last_client_id=client_id
            ))
            try:
                db.commit()
            except IntegrityError:
                # Another first write inserted the row concurrently
                db.rollback()
                raise WorkspaceVersionConflict(WorkspaceService.current_version(db, user_id))
            logger.info("Workspace created for user %s", user_id)
            return 1

        current = WorkspaceService.current_version(db, user_id)
        logger.warning(
            "Workspace version conflict for user %s: proposed %d, stored %d",
            user_id, expected_version, current
        )
        raise WorkspaceVersionConflict(current)
