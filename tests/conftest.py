import os

# Must be set before the app (and its config) is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test_secret_key_for_testing_only")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from typing import Generator, Dict
from datetime import datetime, timedelta
from faker import Faker
import warnings

from app.main import app
from app.database import get_db, engine, Base
from app.models.models import User, Subscription
from app.services.auth_service import issue_access_token, get_password_hash
from app.client import encryption as client_encryption

DATABASE_URL = os.environ["DATABASE_URL"]

# Warn about using a real database
if not DATABASE_URL.startswith("sqlite") and "test" not in DATABASE_URL:
    warnings.warn(
        "\n"
        "WARNING: Using a non-test database for testing!\n"
        "    All tables will be dropped and recreated.\n"
        "    Make sure this is what you want.\n",
        RuntimeWarning
    )

fake = Faker()

# A realistic-looking ciphertext; the server only checks the length
ENCRYPTED_BLOB = "U2FsdGVkX1" + "A" * 120


def reset_db():
    """Drop all tables and recreate them"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    reset_db()
    yield


@pytest.fixture(autouse=True)
def fast_key_derivation(monkeypatch):
    """PBKDF2 at full strength makes the client tests needlessly slow"""
    monkeypatch.setattr(client_encryption, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def db() -> Generator:
    """
    Session inside an outer transaction that is rolled back after the test.

    Service code commits and rolls back freely; those only touch a SAVEPOINT.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        if transaction.is_active:
            transaction.rollback()
        connection.close()


@pytest.fixture
def client(db) -> TestClient:
    """Get test client with database dependency override"""
    def override_get_db_for_test():
        yield db

    app.dependency_overrides[get_db] = override_get_db_for_test
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, password: str, premium: bool = False) -> Dict:
    db_user = User(
        email=fake.unique.email(),
        display_name=fake.name(),
        hashed_password=get_password_hash(password),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow()
    )
    db.add(db_user)
    db.flush()
    if premium:
        db.add(Subscription(
            user_id=db_user.id,
            plan='premium',
            status='active',
            started_at=datetime.utcnow() - timedelta(days=10),
            expires_at=datetime.utcnow() + timedelta(days=20)
        ))
    db.commit()
    db.refresh(db_user)

    access_token = issue_access_token(db_user)

    return {
        "user": db_user,
        "access_token": access_token,
        "token_type": "bearer",
        "password": password,
        "headers": {"Authorization": f"Bearer {access_token}"}
    }


@pytest.fixture
def test_user(db) -> Dict:
    """Create a test user and return user data with tokens"""
    return make_user(db, "testpassword123")


@pytest.fixture
def test_user2(db) -> Dict:
    """Create a second test user for testing user isolation"""
    return make_user(db, "testpassword456")


@pytest.fixture
def premium_user(db) -> Dict:
    return make_user(db, "premiumpassword1", premium=True)


@pytest.fixture
def premium_user2(db) -> Dict:
    return make_user(db, "premiumpassword2", premium=True)


@pytest.fixture
def encrypted_blob() -> str:
    return ENCRYPTED_BLOB
