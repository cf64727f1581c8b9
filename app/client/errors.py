"""
errors.py - Exceptions raised by the client sync engine.

All exceptions inherit from SyncError so callers can catch one type.
Each subclass is a distinct failure mode with its own recovery path.
"""

from typing import Any


class SyncError(Exception):
    """Base exception for all client sync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class SyncInProgress(SyncError):
    """Another sync holds the mutex. Soft: try again later."""

    def __init__(self) -> None:
        super().__init__("Sync already in progress")


class UserIsEditing(SyncError):
    """The user is typing; syncing now could clobber the edit."""

    def __init__(self) -> None:
        super().__init__("User is editing, sync postponed")


class EncryptionKeyMissing(SyncError):
    def __init__(self) -> None:
        super().__init__("Encryption key not set. Please login again.")


class DecryptionFailure(SyncError):
    """
    Server data could not be decrypted with the session key.

    Sticky: blocks every later sync until the user supplies the right key and
    retries, or explicitly accepts losing the server copy.
    """

    def __init__(self, reason: str, ciphertext: str | None = None) -> None:
        super().__init__(
            f"Cannot decrypt server data: {reason}. Enter your custom encryption key or force overwrite.",
            context={"reason": reason},
        )
        self.reason = reason
        self.ciphertext = ciphertext


class EmptyDataRejected(SyncError):
    """Local workspace is empty and pushing it would wipe non-empty server data."""

    def __init__(self, message: str, remote_version: int) -> None:
        super().__init__(message, context={"remote_version": remote_version})
        self.remote_version = remote_version


class NetworkOrServerError(SyncError):
    """Transport failure or unexpected server response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        context = {}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context)
        self.status_code = status_code


class AuthenticationError(NetworkOrServerError):
    """Session expired or token rejected. Auto-sync stops on this."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, status_code=401)


class VersionConflictError(NetworkOrServerError):
    """A versioned write lost the race; carries the server's current version."""

    def __init__(self, current_version: int, message: str = "Version conflict") -> None:
        super().__init__(message, status_code=409)
        self.context["current_version"] = current_version
        self.current_version = current_version


class SharedTablePushError(SyncError):
    """A shared-table push failed even after one merge-and-retry."""

    def __init__(self, share_id: int, message: str) -> None:
        super().__init__(message, context={"share_id": share_id})
        self.share_id = share_id
