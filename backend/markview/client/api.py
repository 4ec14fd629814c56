"""Sync REST client.

Stateless request layer over httpx. Every method returns a typed model or
raises ``SyncApiError`` with a kind derived from the HTTP status, so callers
never have to inspect messages.
"""

import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from pydantic import ValidationError

from markview.client.errors import SyncApiError, SyncConflictError, SyncErrorKind, kind_for_status
from markview.config import settings
from markview.models.sync import (
    ConflictResponse,
    DocumentDeleteResponse,
    DocumentListResponse,
    DocumentResponse,
    DocumentUpsert,
    FolderDeleteResponse,
    FolderListResponse,
    FolderResponse,
    FolderUpsert,
    SessionStateResponse,
    SessionStateUpdate,
    SettingsDeleteResponse,
    SettingsResponse,
    SettingsUpdate,
    SyncDocument,
    SyncFolder,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/sync"


def parse_retry_after(value: str | None) -> float | None:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return response.reason_phrase


class SyncApiClient:
    """Typed client for the ``/api/sync`` endpoints."""

    def __init__(
        self,
        device_id: str,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.device_id = device_id
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.sync_server_url).rstrip("/") + API_PREFIX,
            timeout=timeout or settings.sync_request_timeout_seconds,
            transport=transport,
        )
        self.documents = DocumentsApi(self)
        self.folders = FoldersApi(self)
        self.session = SessionApi(self)
        self.settings = SettingsApi(self)

    def set_token(self, token: str | None) -> None:
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = {"X-Device-Id": self.device_id, "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one request; any non-2xx outcome becomes a ``SyncApiError``."""
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            logger.warning("Sync request %s %s failed: %s", method, path, exc)
            raise SyncApiError(SyncErrorKind.UNKNOWN, f"Network error: {exc}") from exc

        if response.is_success:
            return response

        kind = kind_for_status(response.status_code)
        message = _error_message(response)
        if kind == SyncErrorKind.CONFLICT:
            raise self._conflict(response, message)
        retry_after = None
        if kind == SyncErrorKind.RATE_LIMITED:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
        logger.debug("Sync request %s %s -> %d (%s)", method, path, response.status_code, kind.value)
        raise SyncApiError(kind, message, status=response.status_code, retry_after=retry_after)

    def _conflict(self, response: httpx.Response, message: str) -> SyncApiError:
        try:
            body = ConflictResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return SyncApiError(SyncErrorKind.CONFLICT, message, status=409)
        return SyncConflictError(body.message, body.server_version, body.server_document)

    async def status(self) -> SyncStatusResponse:
        response = await self.request("GET", "/status")
        return SyncStatusResponse.model_validate(response.json())

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SyncApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _since_params(since: datetime | None) -> dict[str, str] | None:
    return {"since": since.isoformat()} if since is not None else None


class DocumentsApi:
    def __init__(self, client: SyncApiClient) -> None:
        self._client = client

    async def fetch(self, since: datetime | None = None) -> DocumentListResponse:
        """Full listing, or incremental (tombstones included) after ``since``."""
        response = await self._client.request("GET", "/documents", params=_since_params(since))
        return DocumentListResponse.model_validate(response.json())

    async def get(self, doc_id: str) -> SyncDocument:
        response = await self._client.request("GET", f"/documents/{doc_id}")
        return DocumentResponse.model_validate(response.json()).document

    async def put(self, doc_id: str, payload: DocumentUpsert) -> SyncDocument:
        """Create or update. Raises ``SyncConflictError`` on a stale ``sync_version``."""
        response = await self._client.request(
            "PUT", f"/documents/{doc_id}", json=payload.model_dump(by_alias=True, mode="json")
        )
        return DocumentResponse.model_validate(response.json()).document

    async def delete(self, doc_id: str) -> SyncDocument:
        response = await self._client.request("DELETE", f"/documents/{doc_id}")
        return DocumentDeleteResponse.model_validate(response.json()).document


class FoldersApi:
    def __init__(self, client: SyncApiClient) -> None:
        self._client = client

    async def fetch(self, since: datetime | None = None) -> FolderListResponse:
        response = await self._client.request("GET", "/folders", params=_since_params(since))
        return FolderListResponse.model_validate(response.json())

    async def put(self, folder_id: str, payload: FolderUpsert) -> SyncFolder:
        response = await self._client.request(
            "PUT", f"/folders/{folder_id}", json=payload.model_dump(by_alias=True, mode="json")
        )
        return FolderResponse.model_validate(response.json()).folder

    async def delete(self, folder_id: str) -> SyncFolder:
        response = await self._client.request("DELETE", f"/folders/{folder_id}")
        return FolderDeleteResponse.model_validate(response.json()).folder


class SessionApi:
    def __init__(self, client: SyncApiClient) -> None:
        self._client = client

    async def fetch(self) -> SessionStateResponse:
        response = await self._client.request("GET", "/session")
        return SessionStateResponse.model_validate(response.json())

    async def update(
        self,
        open_document_ids: list[str],
        active_document_id: str | None,
    ) -> SessionStateResponse:
        body = SessionStateUpdate(
            open_document_ids=open_document_ids,
            active_document_id=active_document_id,
        )
        response = await self._client.request("PUT", "/session", json=body.to_wire())
        return SessionStateResponse.model_validate(response.json())


class SettingsApi:
    def __init__(self, client: SyncApiClient) -> None:
        self._client = client

    async def fetch(self) -> SettingsResponse:
        response = await self._client.request("GET", "/settings")
        return SettingsResponse.model_validate(response.json())

    async def update(self, values: dict[str, Any]) -> SettingsResponse:
        """Merge ``values`` over the stored settings; returns the merged result."""
        response = await self._client.request("PUT", "/settings", json=SettingsUpdate(settings=values).to_wire())
        return SettingsResponse.model_validate(response.json())

    async def reset(self) -> SettingsDeleteResponse:
        response = await self._client.request("DELETE", "/settings")
        return SettingsDeleteResponse.model_validate(response.json())
