"""Wire schemas for the sync API, shared by the server routes and the sync client.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


class CursorPosition(CamelModel):
    line: int
    column: int


class ScrollPosition(CamelModel):
    line: int
    percentage: float


# ---------------------------------------------------------------------------
# Document schemas
# ---------------------------------------------------------------------------

class DocumentUpsert(CamelModel):
    """Body of ``PUT /documents/{id}``."""

    id: str
    name: str = Field(min_length=1)
    content: str = ""
    folder_id: str | None = None
    is_manually_named: bool | None = None
    cursor: CursorPosition | None = None
    scroll: ScrollPosition | None = None
    sync_version: int | None = None


class SyncDocument(CamelModel):
    """Document as stored on the server."""

    id: str
    name: str
    content: str = ""
    folder_id: str | None = None
    is_manually_named: bool = False
    cursor: CursorPosition | None = None
    scroll: ScrollPosition | None = None
    sync_version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None
    deleted_at: datetime | None = None


class DocumentListResponse(CamelModel):
    documents: list[SyncDocument] = []
    synced_at: datetime


class DocumentResponse(CamelModel):
    document: SyncDocument


class DocumentDeleteResponse(CamelModel):
    success: bool = True
    document: SyncDocument


class ConflictResponse(CamelModel):
    """409 body returned when a write carries a stale sync version."""

    error: str = "Conflict"
    message: str = "Document has been modified on server"
    server_version: int
    server_document: SyncDocument


# ---------------------------------------------------------------------------
# Folder schemas
# ---------------------------------------------------------------------------

class FolderUpsert(CamelModel):
    """Body of ``PUT /folders/{id}``."""

    id: str
    name: str = Field(min_length=1)
    parent_id: str | None = None
    color: str | None = None
    icon: str | None = None
    sort_order: int | None = None


class SyncFolder(CamelModel):
    """Folder as stored on the server."""

    id: str
    name: str
    parent_id: str | None = None
    color: str | None = None
    icon: str | None = None
    sort_order: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class FolderListResponse(CamelModel):
    folders: list[SyncFolder] = []
    synced_at: datetime


class FolderResponse(CamelModel):
    folder: SyncFolder


class FolderDeleteResponse(CamelModel):
    success: bool = True
    folder: SyncFolder


# ---------------------------------------------------------------------------
# Session + status
# ---------------------------------------------------------------------------

class SessionStateUpdate(CamelModel):
    """Body of ``PUT /session``."""

    open_document_ids: list[str] = []
    active_document_id: str | None = None


class SessionStateResponse(CamelModel):
    open_document_ids: list[str] = []
    active_document_id: str | None = None
    updated_at: datetime | None = None


class SyncStatusResponse(CamelModel):
    documents_count: int
    folders_count: int
    timestamp: datetime


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class SettingsUpdate(CamelModel):
    """Body of ``PUT /settings``: top-level keys to merge over the stored settings."""

    settings: dict[str, Any]


class SettingsResponse(CamelModel):
    settings: dict[str, Any] = {}
    updated_at: datetime | None = None


class SettingsDeleteResponse(CamelModel):
    success: bool = True
    settings: dict[str, Any] = {}
