"""
Workspace API Endpoints

Versioned storage of the user's end-to-end encrypted workspace.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from app.api.auth import get_current_user
from ..schemas.user import UserResponse
from ..schemas.workspace import (
    WorkspaceVersionResponse,
    WorkspaceResponse,
    WorkspaceSave,
    WorkspaceSaveResponse
)
from ..services.workspace_service import WorkspaceService
from ..services.errors import InvalidPayload, WorkspaceVersionConflict
from .metrics import workspace_saves, workspace_version_conflicts, workspace_payload_bytes

router = APIRouter(prefix="/workspace", tags=["workspace"])


@router.get("/version", response_model=WorkspaceVersionResponse, status_code=status.HTTP_200_OK)
async def get_workspace_version(
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Current version of the caller's workspace, without the payload.

    Clients poll this to decide between push, pull and conflict handling.
    """
    version, updated_at, last_client_id = WorkspaceService.get_version(db, current_user.id)
    return WorkspaceVersionResponse(version=version, updated_at=updated_at, last_client_id=last_client_id)


@router.get("", response_model=WorkspaceResponse, status_code=status.HTTP_200_OK)
async def get_workspace(
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Encrypted workspace blob, or `{data: null, version: 0}` when none stored"""
    workspace = WorkspaceService.get(db, current_user.id)
    if workspace is None:
        return WorkspaceResponse(data=None, version=0)
    return WorkspaceResponse(
        data=workspace.encrypted_data,
        version=workspace.version,
        updated_at=workspace.updated_at,
        last_client_id=workspace.last_client_id
    )


@router.post("", response_model=WorkspaceSaveResponse, status_code=status.HTTP_200_OK)
async def save_workspace(
    body: WorkspaceSave,
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Compare-and-swap write of the encrypted workspace.

    Args:
        body: data + expectedVersion (stored version + 1) + optional clientId
        current_user: Authenticated user
        db: Database session

    Returns:
        WorkspaceSaveResponse: the new version

    Raises:
        400: Payload too short to be an encrypted workspace
        409: Stored version moved on; detail carries currentVersion
    """
    try:
        version = WorkspaceService.save(
            db=db,
            user_id=current_user.id,
            encrypted_data=body.data,
            expected_version=body.expected_version,
            client_id=body.client_id
        )
        workspace_saves.inc()
        workspace_payload_bytes.observe(len(body.data))
        return WorkspaceSaveResponse(version=version)

    except InvalidPayload as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except WorkspaceVersionConflict as e:
        workspace_version_conflicts.inc()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "Version conflict",
                "currentVersion": e.current_version
            }
        )
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to save workspace: {str(e)}"
        )
