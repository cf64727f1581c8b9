import pytest
from datetime import datetime
from sqlalchemy.orm import Session
import uuid

from app.models.models import User, Workspace
from app.services.workspace_service import WorkspaceService
from app.services.errors import InvalidPayload, WorkspaceVersionConflict

BLOB = "c2FsdC1pdi1jaXBoZXJ0ZXh0" + "x" * 100


@pytest.fixture
def sample_user(db: Session):
    """Create a sample user for testing"""
    user = User(
        id=uuid.uuid4(),
        email=f"test_{uuid.uuid4().hex[:8]}@example.com",
        hashed_password="hashed_password",
        display_name="Test User",
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow()
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


class TestGetVersion:
    def test_no_workspace(self, db, sample_user):
        assert WorkspaceService.get_version(db, sample_user.id) == (0, None, None)
        assert WorkspaceService.get(db, sample_user.id) is None

    def test_after_save(self, db, sample_user):
        WorkspaceService.save(db, sample_user.id, BLOB, 1, client_id="client-1")
        version, updated_at, last_client_id = WorkspaceService.get_version(db, sample_user.id)
        assert version == 1
        assert updated_at is not None
        assert last_client_id == "client-1"


class TestSave:
    def test_first_save_inserts(self, db, sample_user):
        assert WorkspaceService.save(db, sample_user.id, BLOB, 1) == 1
        workspace = WorkspaceService.get(db, sample_user.id)
        assert workspace.encrypted_data == BLOB
        assert workspace.version == 1

    def test_sequential_saves(self, db, sample_user):
        for expected in range(1, 5):
            assert WorkspaceService.save(db, sample_user.id, BLOB + str(expected), expected) == expected
        assert WorkspaceService.current_version(db, sample_user.id) == 4

    def test_stale_save_leaves_row_untouched(self, db, sample_user):
        WorkspaceService.save(db, sample_user.id, BLOB, 1, client_id="a")
        WorkspaceService.save(db, sample_user.id, BLOB + "v2", 2, client_id="a")

        with pytest.raises(WorkspaceVersionConflict) as exc_info:
            WorkspaceService.save(db, sample_user.id, BLOB + "lost", 2, client_id="b")
        assert exc_info.value.current_version == 2

        db.expire_all()
        workspace = db.query(Workspace).filter(Workspace.user_id == sample_user.id).one()
        assert workspace.encrypted_data == BLOB + "v2"
        assert workspace.last_client_id == "a"

    def test_only_one_of_two_racing_writers_wins(self, db, sample_user):
        WorkspaceService.save(db, sample_user.id, BLOB, 1)

        # Both writers read version 1 and propose version 2
        assert WorkspaceService.save(db, sample_user.id, BLOB + "first", 2) == 2
        with pytest.raises(WorkspaceVersionConflict):
            WorkspaceService.save(db, sample_user.id, BLOB + "second", 2)

    def test_repeated_first_save_conflicts(self, db, sample_user):
        WorkspaceService.save(db, sample_user.id, BLOB, 1)
        with pytest.raises(WorkspaceVersionConflict) as exc_info:
            WorkspaceService.save(db, sample_user.id, BLOB, 1)
        assert exc_info.value.current_version == 1

    def test_version_gap_on_empty_store_conflicts(self, db, sample_user):
        with pytest.raises(WorkspaceVersionConflict) as exc_info:
            WorkspaceService.save(db, sample_user.id, BLOB, 5)
        assert exc_info.value.current_version == 0

    @pytest.mark.parametrize("payload", ["", "short", "x" * 99])
    def test_short_payload(self, db, sample_user, payload):
        with pytest.raises(InvalidPayload):
            WorkspaceService.save(db, sample_user.id, payload, 1)
        assert WorkspaceService.current_version(db, sample_user.id) == 0
