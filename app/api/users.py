from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.models import User
from app.schemas.user import UserResponse, UserUpdate, SharingPublicKeyUpdate, PublicKeyLookup
from app.api.auth import get_current_user, to_user_response
from app.services.auth_service import update_user, get_user_by_email, set_sharing_public_key

router = APIRouter(prefix="/users", tags=["users"])

@router.get("/me", response_model=UserResponse, status_code=status.HTTP_200_OK)
async def get_current_user_profile(
    current_user: UserResponse = Depends(get_current_user)
):
    """Get current user's profile"""
    return current_user

@router.put("/me", response_model=UserResponse, status_code=status.HTTP_200_OK)
async def update_current_user(
    user_update: UserUpdate,
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update current user's profile"""
    user = db.query(User).filter(User.id == current_user.id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    update_data = user_update.model_dump(exclude_unset=True)
    return to_user_response(db, update_user(db, user, update_data))

@router.post("/sharing-public-key", status_code=status.HTTP_200_OK)
async def upload_sharing_public_key(
    body: SharingPublicKeyUpdate,
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Store the caller's X25519 public key so owners can wrap table keys for them.
    The private half never leaves the client.
    """
    user = db.query(User).filter(User.id == current_user.id).first()
    set_sharing_public_key(db, user, body.public_key)
    return {"success": True}

@router.get("/public-key-by-email", response_model=PublicKeyLookup, status_code=status.HTTP_200_OK)
async def get_public_key_by_email(
    email: str = Query(..., min_length=3, description="Email of the prospective recipient"),
    current_user: UserResponse = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Look up a user's sharing public key before sharing a table with them"""
    user = get_user_by_email(db, email)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return PublicKeyLookup(user_id=user.id, public_key=user.sharing_public_key)
