"""
HTTP client for the workspace and sharing endpoints.

Every server or transport failure is mapped onto the sync error taxonomy so
callers never handle raw httpx exceptions.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import logging

import httpx

from .errors import AuthenticationError, NetworkOrServerError, VersionConflictError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class WorkspaceApiClient:
    """Async client for /api/workspace, /api/shares and the sharing-key endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport, timeout=timeout)

    async def __aenter__(self) -> "WorkspaceApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @staticmethod
    def _error_detail(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict) and "detail" in body:
            return body["detail"]
        return body

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise NetworkOrServerError(f"Network error: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError("Authentication failed. Session expired?")

        if response.status_code == 409:
            detail = self._error_detail(response)
            if isinstance(detail, dict) and "currentVersion" in detail:
                raise VersionConflictError(int(detail["currentVersion"]), detail.get("error", "Version conflict"))
            raise NetworkOrServerError(f"Conflict: {detail}", status_code=409)

        if response.status_code >= 400:
            detail = self._error_detail(response)
            raise NetworkOrServerError(
                f"{method} {path} failed with {response.status_code}: {detail}",
                status_code=response.status_code
            )

        if not response.content:
            return None
        return response.json()

    # --- Auth ---

    async def login(self, email: str, password: str) -> str:
        body = await self._request("POST", "/api/auth/token", data={"username": email, "password": password})
        self.token = body["access_token"]
        return self.token

    # --- Workspace ---

    async def get_workspace_version(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/workspace/version")

    async def get_workspace(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/workspace")

    async def save_workspace(self, data: str, expected_version: int, client_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"data": data, "expectedVersion": expected_version}
        if client_id:
            payload["clientId"] = client_id
        return await self._request("POST", "/api/workspace", json=payload)

    # --- Shares ---

    async def create_share(
        self,
        table_id: str,
        recipient_email: str,
        permission: str,
        encrypted_table_data: str,
        encrypted_dek: str,
        wrapped_dek_for_owner: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {
            "tableId": table_id,
            "recipientEmail": recipient_email,
            "permission": permission,
            "encryptedTableData": encrypted_table_data,
            "encryptedDek": encrypted_dek,
        }
        if wrapped_dek_for_owner:
            payload["wrappedDekForOwner"] = wrapped_dek_for_owner
        return await self._request("POST", "/api/shares", json=payload)

    async def get_incoming_shares(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/api/shares/incoming")
        return body["shares"]

    async def get_owned_shares(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/api/shares/owned")
        return body["shares"]

    async def get_outgoing_shares(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/api/shares/outgoing")
        return body["shares"]

    async def update_share(self, share_id: int, **changes: Any) -> Dict[str, Any]:
        """PATCH one action: recipientId+permission, revokeUserId, or recipientId+alwaysAcceptFrom."""
        payload = {k: (str(v) if k in ("recipientId", "revokeUserId") else v) for k, v in changes.items()}
        return await self._request("PATCH", f"/api/shares/{share_id}", json=payload)

    async def delete_share(self, share_id: int) -> Dict[str, Any]:
        return await self._request("DELETE", f"/api/shares/{share_id}")

    async def get_share_pushes(self, share_id: int) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"/api/shares/{share_id}/pushes")
        return body["pushes"]

    async def resolve_share(self, share_id: int, encrypted_table_data: str, version: int) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/shares/{share_id}/resolve",
            json={"encryptedTableData": encrypted_table_data, "version": version}
        )

    async def update_share_data(self, share_id: int, encrypted_table_data: str, version: int) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/api/shares/{share_id}",
            json={"encryptedTableData": encrypted_table_data, "version": version}
        )

    # --- Sharing keys ---

    async def upload_sharing_public_key(self, public_key: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/users/sharing-public-key", json={"publicKey": public_key})

    async def get_public_key_by_email(self, email: str) -> Dict[str, Any]:
        return await self._request("GET", "/api/users/public-key-by-email", params={"email": email})
