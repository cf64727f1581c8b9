"""
Shared Table Schemas

Wire models for sharing a single table with other users. Table contents and
table keys travel wrapped; the server never sees a plaintext key.
"""

from __future__ import annotations

from pydantic import Field, ConfigDict, EmailStr
from typing import List, Optional, Literal
from datetime import datetime
import uuid

from .workspace import CamelModel

Permission = Literal["view", "edit"]


class ShareCreate(CamelModel):
    """Create a share or add/update one recipient of an existing share"""
    table_id: str = Field(..., min_length=1, description="Id of the owner's local table")
    recipient_email: EmailStr = Field(..., description="Email of the user to share with")
    permission: Permission = Field("view", description="Recipient access level")
    encrypted_table_data: str = Field(..., description="Table JSON encrypted with the table key")
    encrypted_dek: str = Field(..., description="Table key wrapped for the recipient")
    wrapped_dek_for_owner: Optional[str] = Field(None, description="Table key wrapped for the owner (first share only)")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "tableId": "table-1700000000000",
            "recipientEmail": "friend@example.com",
            "permission": "edit",
            "encryptedTableData": "9pQm...base64...",
            "encryptedDek": "Xk2s...base64...",
            "wrappedDekForOwner": "b3Nl...base64..."
        }
    })


class ShareCreateResponse(CamelModel):
    success: bool = True
    shared_table_id: int
    added: bool = Field(..., description="False when an existing recipient was updated instead")


class IncomingShare(CamelModel):
    """A table someone else shared with the caller"""
    id: int
    owner_id: uuid.UUID
    owner_email: str
    owner_public_key: Optional[str] = None
    source_table_id: str
    encrypted_table_data: str
    encrypted_dek: str
    permission: Permission
    version: int
    updated_at: Optional[datetime] = None


class OwnedShare(CamelModel):
    """A table the caller owns, with the data needed to pull it back"""
    id: int
    source_table_id: str
    encrypted_table_data: str
    version: int
    wrapped_dek_for_owner: Optional[str] = None
    last_pushed_by_user_id: Optional[uuid.UUID] = None
    last_pushed_by_email: Optional[str] = None
    last_resolved_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ShareRecipientInfo(CamelModel):
    user_id: uuid.UUID
    email: str
    permission: Permission
    always_accept_from: bool = False


class OutgoingShare(CamelModel):
    """A table the caller shares, with its recipient list"""
    id: int
    source_table_id: str
    version: int
    created_at: Optional[datetime] = None
    recipients: List[ShareRecipientInfo] = Field(default_factory=list)


class IncomingShareList(CamelModel):
    shares: List[IncomingShare]


class OwnedShareList(CamelModel):
    shares: List[OwnedShare]


class OutgoingShareList(CamelModel):
    shares: List[OutgoingShare]


class ShareUpdate(CamelModel):
    """
    Exactly one action per request:
    - permission change: recipientId + permission
    - revoke: revokeUserId
    - auto-accept toggle: recipientId + alwaysAcceptFrom
    """
    recipient_id: Optional[uuid.UUID] = None
    permission: Optional[Permission] = None
    revoke_user_id: Optional[uuid.UUID] = None
    always_accept_from: Optional[bool] = None


class ShareWrite(CamelModel):
    """Versioned write into a shared table"""
    encrypted_table_data: str = Field(..., description="Table JSON encrypted with the table key")
    version: int = Field(..., ge=1, description="Proposed new version (current version + 1)")


class ShareWriteResponse(CamelModel):
    success: bool = True
    version: int


class SharePush(CamelModel):
    """One row of the push log"""
    id: int
    user_id: uuid.UUID
    user_email: Optional[str] = None
    encrypted_table_data: str
    version: int
    pushed_at: datetime


class SharePushList(CamelModel):
    pushes: List[SharePush]
