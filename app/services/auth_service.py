from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func
from sqlalchemy.orm import Session
from uuid import UUID

from ..config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from ..models.models import User
from ..schemas.user import UserCreate, TokenData

__all__ = [
    "SECRET_KEY", "ALGORITHM", "ACCESS_TOKEN_EXPIRE_MINUTES",
    "verify_password", "get_password_hash", "create_access_token",
    "issue_access_token", "decode_access_token",
    "create_user", "authenticate_user", "get_user", "get_user_by_email",
    "update_user", "set_sharing_public_key",
]

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    """Generate password hash."""
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY environment variable not set")
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def issue_access_token(user: User) -> str:
    """Bearer token for a signed-in user; `sub` carries the user id."""
    return create_access_token(
        data={"sub": str(user.id), "email": user.email},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )

def decode_access_token(token: str) -> TokenData:
    """Validate a bearer token. Raises JWTError when it is unusable."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    user_id = payload.get("sub")
    if user_id is None:
        raise JWTError("Token has no subject")
    return TokenData(user_id=user_id, email=payload.get("email"))

def create_user(db: Session, user_create: UserCreate) -> User:
    """Create a new user."""
    db_user = User(
        email=user_create.email.lower(),
        hashed_password=get_password_hash(user_create.password),
        display_name=user_create.display_name
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate a user by email and password."""
    user = get_user_by_email(db, email)
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user

def get_user(db: Session, user_id: str) -> Optional[User]:
    """Get user by ID."""
    try:
        uuid_obj = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
    except ValueError:
        return None
    return db.query(User).filter(User.id == uuid_obj).first()

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get user by email, ignoring case."""
    return db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()

def update_user(db: Session, user: User, update_data: dict) -> User:
    """Update user data."""
    for key, value in update_data.items():
        if key == "password" and value:
            value = get_password_hash(value)
            key = "hashed_password"
        if hasattr(user, key):
            setattr(user, key, value)

    db.commit()
    db.refresh(user)
    return user

def set_sharing_public_key(db: Session, user: User, public_key: str) -> User:
    """Store the user's X25519 sharing public key."""
    user.sharing_public_key = public_key
    db.commit()
    db.refresh(user)
    return user
