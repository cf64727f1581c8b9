"""
Shared Table API Endpoints

Share a single table with other users. Contents and keys are opaque to the
server; writes are versioned per shared table and logged for the owner.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from app.api.auth import get_current_user
from ..schemas.user import UserResponse
from ..schemas.shares import (
    ShareCreate,
    ShareCreateResponse,
    IncomingShareList,
    OwnedShareList,
    OutgoingShareList,
    ShareUpdate,
    ShareWrite,
    ShareWriteResponse,
    SharePushList
)
from ..services.share_service import ShareService
from ..services.entitlement_service import EntitlementService
from ..services.errors import (
    InvalidShareRequest,
    RecipientNotFound,
    ShareForbidden,
    ShareNotFound,
    ShareVersionConflict,
    ServiceError
)
from .metrics import share_writes, share_version_conflicts, share_resolves

router = APIRouter(prefix="/shares", tags=["shares"])


async def require_premium(
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> UserResponse:
    """Table sharing is a premium feature; re-checked on every request."""
    if not EntitlementService.has_premium(db, current_user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Table sharing requires active premium subscription"
        )
    return current_user


def to_http_error(e: ServiceError) -> HTTPException:
    if isinstance(e, ShareVersionConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Version conflict", "currentVersion": e.current_version}
        )
    if isinstance(e, (ShareNotFound, RecipientNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, ShareForbidden):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)
    if isinstance(e, InvalidShareRequest):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)


@router.post("", response_model=ShareCreateResponse, status_code=status.HTTP_200_OK)
async def create_share(
    body: ShareCreate,
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """
    Share a table with a user, or add/update a recipient of an existing share.

    Raises:
        400: Sharing with yourself
        403: Caller lacks premium
        404: Recipient email unknown
    """
    try:
        share, added = ShareService.create_or_extend_share(
            db=db,
            owner_id=current_user.id,
            table_id=body.table_id,
            recipient_email=body.recipient_email,
            permission=body.permission,
            encrypted_table_data=body.encrypted_table_data,
            encrypted_dek=body.encrypted_dek,
            wrapped_dek_for_owner=body.wrapped_dek_for_owner
        )
        return ShareCreateResponse(shared_table_id=share.id, added=added)
    except ServiceError as e:
        db.rollback()
        raise to_http_error(e)
    except Exception as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create share: {str(e)}"
        )


@router.get("/incoming", response_model=IncomingShareList, status_code=status.HTTP_200_OK)
async def list_incoming_shares(
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Tables shared with the caller"""
    return IncomingShareList(shares=ShareService.list_incoming(db, current_user.id))


@router.get("/owned", response_model=OwnedShareList, status_code=status.HTTP_200_OK)
async def list_owned_shares(
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """Caller's shared tables with the owner-wrapped key, for pulling edits back"""
    return OwnedShareList(shares=ShareService.list_owned(db, current_user.id))


@router.get("/outgoing", response_model=OutgoingShareList, status_code=status.HTTP_200_OK)
async def list_outgoing_shares(
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """Caller's shared tables with their recipients"""
    return OutgoingShareList(shares=ShareService.list_outgoing(db, current_user.id))


@router.patch("/{share_id}", status_code=status.HTTP_200_OK)
async def update_share(
    share_id: int,
    body: ShareUpdate,
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """Change a permission, revoke a recipient, or toggle auto-accept (one per call)"""
    try:
        action = ShareService.update_share(
            db=db,
            share_id=share_id,
            owner_id=current_user.id,
            recipient_id=body.recipient_id,
            permission=body.permission,
            revoke_user_id=body.revoke_user_id,
            always_accept_from=body.always_accept_from
        )
        return {"success": True, "action": action}
    except ServiceError as e:
        db.rollback()
        raise to_http_error(e)


@router.delete("/{share_id}", status_code=status.HTTP_200_OK)
async def delete_share(
    share_id: int,
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """Revoke the share for every recipient"""
    try:
        ShareService.delete_share(db, share_id, current_user.id)
        return {"success": True}
    except ServiceError as e:
        db.rollback()
        raise to_http_error(e)


@router.get("/{share_id}/pushes", response_model=SharePushList, status_code=status.HTTP_200_OK)
async def list_pending_pushes(
    share_id: int,
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """Recipient pushes the owner has not resolved yet, oldest first"""
    try:
        return SharePushList(pushes=ShareService.pending_pushes(db, share_id, current_user.id))
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/{share_id}/resolve", response_model=ShareWriteResponse, status_code=status.HTTP_200_OK)
async def resolve_share(
    share_id: int,
    body: ShareWrite,
    current_user: UserResponse = Depends(require_premium),
    db: Session = Depends(get_db)
):
    """
    Owner commits a merged table and marks pending pushes as resolved.

    Raises:
        403: Caller is not the owner
        404: Unknown share
        409: Stale version; detail carries currentVersion
    """
    try:
        version = ShareService.resolve(
            db=db,
            share_id=share_id,
            owner_id=current_user.id,
            encrypted_table_data=body.encrypted_table_data,
            version=body.version
        )
        share_resolves.inc()
        return ShareWriteResponse(version=version)
    except ShareVersionConflict as e:
        share_version_conflicts.labels(operation='resolve').inc()
        db.rollback()
        raise to_http_error(e)
    except ServiceError as e:
        db.rollback()
        raise to_http_error(e)


@router.put("/{share_id}", response_model=ShareWriteResponse, status_code=status.HTTP_200_OK)
async def write_share(
    share_id: int,
    body: ShareWrite,
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Versioned write by the owner or an edit-recipient.

    Recipient write access needs a live, active premium subscription; it is
    checked here on every call.

    Raises:
        403: Caller may not write
        404: Unknown share
        409: Stale version; detail carries currentVersion
    """
    try:
        version, is_owner = ShareService.write(
            db=db,
            share_id=share_id,
            user_id=current_user.id,
            encrypted_table_data=body.encrypted_table_data,
            version=body.version
        )
        share_writes.labels(role="owner" if is_owner else "recipient").inc()
        return ShareWriteResponse(version=version)
    except ShareVersionConflict as e:
        share_version_conflicts.labels(operation='write').inc()
        db.rollback()
        raise to_http_error(e)
    except ServiceError as e:
        db.rollback()
        raise to_http_error(e)
    except Exception as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to write shared table: {str(e)}"
        )
