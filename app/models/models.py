from __future__ import annotations

from sqlalchemy import String, DateTime, Integer, ForeignKey, UniqueConstraint, Boolean, CheckConstraint, Enum, Text, Index, Uuid
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from datetime import datetime
import uuid

Base = declarative_base()

class User(Base):
    __tablename__ = 'users'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String)
    display_name: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # X25519 public key (base64) used by owners to wrap table keys for this user
    sharing_public_key: Mapped[str | None] = mapped_column(Text)

    # Relationships with cascade delete
    subscriptions: Mapped[list[Subscription]] = relationship('Subscription', back_populates='user', cascade='all, delete-orphan')
    workspace: Mapped[Workspace | None] = relationship('Workspace', back_populates='user', cascade='all, delete-orphan', uselist=False)
    owned_shares: Mapped[list[SharedTable]] = relationship(
        'SharedTable',
        back_populates='owner',
        cascade='all, delete-orphan',
        foreign_keys='SharedTable.owner_id'
    )

class Subscription(Base):
    __tablename__ = 'subscriptions'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id', ondelete='CASCADE'))
    plan: Mapped[str] = mapped_column(
        Enum('free', 'premium', name='subscription_plan_enum'),
        default='free'
    )
    status: Mapped[str] = mapped_column(
        Enum('active', 'cancelled', 'expired', name='subscription_status_enum'),
        default='active'
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)

    user: Mapped[User] = relationship('User', back_populates='subscriptions')

    __table_args__ = (
        Index('ix_subscriptions_user_started', 'user_id', 'started_at'),
    )

class Workspace(Base):
    """One encrypted workspace blob per user, guarded by an integer version."""
    __tablename__ = 'workspaces'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), unique=True)

    # Opaque to the server (base64 of salt + iv + AES-GCM ciphertext)
    encrypted_data: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_client_id: Mapped[str | None] = mapped_column(String)

    user: Mapped[User] = relationship('User', back_populates='workspace')

    __table_args__ = (
        CheckConstraint('version >= 0', name='ck_workspaces_version_non_negative'),
    )

class SharedTable(Base):
    __tablename__ = 'shared_tables'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id', ondelete='CASCADE'))
    source_table_id: Mapped[str] = mapped_column(String)

    encrypted_table_data: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    wrapped_dek_for_owner: Mapped[str | None] = mapped_column(Text)

    # Resolution cursor for the owner's pending-push queries
    last_pushed_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id', ondelete='SET NULL'))
    last_resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_resolved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id', ondelete='SET NULL'))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner: Mapped[User] = relationship('User', back_populates='owned_shares', foreign_keys=[owner_id])
    last_pushed_by: Mapped[User | None] = relationship('User', foreign_keys=[last_pushed_by_user_id])
    recipients: Mapped[list[SharedTableRecipient]] = relationship(
        'SharedTableRecipient', back_populates='shared_table', cascade='all, delete-orphan'
    )
    pushes: Mapped[list[SharedTablePush]] = relationship(
        'SharedTablePush', back_populates='shared_table', cascade='all, delete-orphan'
    )

    __table_args__ = (
        UniqueConstraint('owner_id', 'source_table_id', name='uq_shared_tables_owner_source'),
    )

class SharedTableRecipient(Base):
    __tablename__ = 'shared_table_recipients'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shared_table_id: Mapped[int] = mapped_column(Integer, ForeignKey('shared_tables.id', ondelete='CASCADE'))
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id', ondelete='CASCADE'))

    # Table key wrapped for this recipient only
    encrypted_dek: Mapped[str] = mapped_column(Text)
    permission: Mapped[str] = mapped_column(
        Enum('view', 'edit', name='share_permission_enum'),
        default='view'
    )
    always_accept_from: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    shared_table: Mapped[SharedTable] = relationship('SharedTable', back_populates='recipients')
    user: Mapped[User] = relationship('User')

    __table_args__ = (
        UniqueConstraint('shared_table_id', 'user_id', name='uq_shared_table_recipient'),
        Index('ix_shared_table_recipients_user', 'user_id'),
    )

class SharedTablePush(Base):
    """Append-only log of writes into a shared table."""
    __tablename__ = 'shared_table_pushes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shared_table_id: Mapped[int] = mapped_column(Integer, ForeignKey('shared_tables.id', ondelete='CASCADE'))
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id', ondelete='CASCADE'))
    encrypted_table_data: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer)
    pushed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    shared_table: Mapped[SharedTable] = relationship('SharedTable', back_populates='pushes')
    user: Mapped[User] = relationship('User')

    __table_args__ = (
        Index('ix_shared_table_pushes_table_pushed', 'shared_table_id', 'pushed_at'),
    )
