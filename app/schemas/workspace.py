"""
Workspace Schemas

Pydantic models for the versioned, end-to-end encrypted workspace blob.
The server treats `data` as opaque; only its length is validated.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime


class CamelModel(BaseModel):
    """Base for wire models that use camelCase JSON keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkspaceVersionResponse(CamelModel):
    """Cheap version probe, no payload transfer"""
    version: int = Field(..., description="Current stored version (0 when nothing was pushed yet)")
    updated_at: Optional[datetime] = Field(None, description="When the blob was last written")
    last_client_id: Optional[str] = Field(None, description="Client that wrote the current version")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "version": 4,
            "updatedAt": "2025-11-09T10:30:00Z",
            "lastClientId": "c6d1f2c8-3b1e-4f6b-9f57-1d1f1a6f0a11"
        }
    })


class WorkspaceResponse(CamelModel):
    """Encrypted workspace blob and its version"""
    data: Optional[str] = Field(None, description="Base64 encrypted workspace, null when none stored")
    version: int = Field(0, description="Current stored version")
    updated_at: Optional[datetime] = None
    last_client_id: Optional[str] = None


class WorkspaceSave(CamelModel):
    """Compare-and-swap write of the encrypted workspace"""
    data: str = Field(..., description="Base64 encrypted workspace")
    expected_version: int = Field(..., ge=1, description="Proposed new version (current stored version + 1)")
    client_id: Optional[str] = Field(None, description="Stable id of the writing client")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "data": "q83vEjRWeJA...base64...",
            "expectedVersion": 5,
            "clientId": "c6d1f2c8-3b1e-4f6b-9f57-1d1f1a6f0a11"
        }
    })


class WorkspaceSaveResponse(CamelModel):
    success: bool = True
    version: int
