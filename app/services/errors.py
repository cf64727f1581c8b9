"""
Service-layer exceptions.

Routers translate these into HTTP responses; services never raise HTTPException.
"""


class ServiceError(Exception):
    """Base class for domain errors raised by services"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPayload(ServiceError):
    pass


class VersionConflict(ServiceError):
    """A compare-and-swap write lost; carries the authoritative version"""

    def __init__(self, current_version: int, message: str = "Version conflict"):
        super().__init__(message)
        self.current_version = current_version


class WorkspaceVersionConflict(VersionConflict):
    pass


class ShareVersionConflict(VersionConflict):
    pass


class ShareNotFound(ServiceError):
    pass


class ShareForbidden(ServiceError):
    pass


class RecipientNotFound(ServiceError):
    pass


class InvalidShareRequest(ServiceError):
    pass
