from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from jose import JWTError
import logging

from ..database import get_db
from ..models.models import User
from ..services.auth_service import (
    authenticate_user, create_user, get_user, get_user_by_email,
    issue_access_token, decode_access_token
)
from ..services.entitlement_service import EntitlementService
from ..schemas.user import UserCreate, UserResponse, Token
from .metrics import auth_failed_logins, auth_jwt_errors

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/token")


def to_user_response(db: Session, user: User) -> UserResponse:
    """Profile view; premium is evaluated live, never read from the token."""
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        created_at=user.created_at,
        updated_at=user.updated_at,
        has_sharing_key=bool(user.sharing_public_key),
        is_premium=EntitlementService.has_premium(db, user.id)
    )


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Session = Depends(get_db)
) -> UserResponse:
    """
    Resolve the bearer token to a user.

    Every workspace and share route depends on this; a 401 here is what makes
    sync clients stop their auto-sync loop.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        token_data = decode_access_token(token)
    except (JWTError, ValueError) as e:
        logger.debug("Rejected bearer token: %s", e)
        auth_jwt_errors.inc()
        raise credentials_exception

    user = get_user(db, token_data.user_id)
    if user is None:
        logger.info("Token subject %s no longer exists", token_data.user_id)
        raise credentials_exception

    return to_user_response(db, user)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate, db: Session = Depends(get_db)):
    """Create an account. The workspace row appears with the first sync."""
    if get_user_by_email(db, email=user.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )
    created = create_user(db=db, user_create=user)
    logger.info("Registered user %s", created.id)
    return to_user_response(db, created)


@router.post("/token", response_model=Token, status_code=status.HTTP_200_OK)
async def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db: Session = Depends(get_db)
):
    """OAuth2 password flow; `username` is the account email."""
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        auth_failed_logins.inc()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Token(access_token=issue_access_token(user))
