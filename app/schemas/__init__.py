from .workspace import (
    CamelModel,
    WorkspaceVersionResponse,
    WorkspaceResponse,
    WorkspaceSave,
    WorkspaceSaveResponse
)
from .shares import (
    ShareCreate,
    ShareCreateResponse,
    IncomingShare,
    OwnedShare,
    OutgoingShare,
    ShareRecipientInfo,
    ShareUpdate,
    ShareWrite,
    ShareWriteResponse,
    SharePush,
    SharePushList
)

__all__ = [
    'CamelModel',
    'WorkspaceVersionResponse',
    'WorkspaceResponse',
    'WorkspaceSave',
    'WorkspaceSaveResponse',
    'ShareCreate',
    'ShareCreateResponse',
    'IncomingShare',
    'OwnedShare',
    'OutgoingShare',
    'ShareRecipientInfo',
    'ShareUpdate',
    'ShareWrite',
    'ShareWriteResponse',
    'SharePush',
    'SharePushList',
]
