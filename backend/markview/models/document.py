"""Client-side document and folder models held by the local store."""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from markview.models.sync import (
    CursorPosition,
    DocumentUpsert,
    FolderUpsert,
    ScrollPosition,
    SyncDocument,
    SyncFolder,
)
from markview.utils.hashing import content_hash
from markview.utils.markdown import DEFAULT_DOCUMENT_NAME


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncStatus(str, Enum):
    SYNCED = "synced"
    LOCAL = "local"  # never synced; shown like SYNCED
    MODIFIED = "modified"
    SYNCING = "syncing"
    CLOUD_PENDING = "cloud-pending"  # provider-linked, waiting on the auto-save debounce
    ERROR = "error"


class DocumentSource(str, Enum):
    LOCAL = "local"
    GITHUB = "github"
    GDRIVE = "gdrive"


class GitHubInfo(BaseModel):
    owner: str
    repo: str
    path: str
    sha: str | None = None
    branch: str = "main"

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class DriveInfo(BaseModel):
    file_id: str
    name: str
    mime_type: str = "text/markdown"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class LocalDocument(BaseModel):
    """A document as the editor sees it, with its derived sync metadata."""

    id: str = Field(default_factory=_new_id)
    name: str = DEFAULT_DOCUMENT_NAME
    content: str = ""
    folder_id: str | None = None
    is_manually_named: bool = False
    cursor: CursorPosition | None = None
    scroll: ScrollPosition | None = None
    source: DocumentSource = DocumentSource.LOCAL
    github_info: GitHubInfo | None = None
    drive_info: DriveInfo | None = None
    sync_version: int = 1
    synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.LOCAL
    original_content_hash: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_provider_link(self) -> "LocalDocument":
        if self.source == DocumentSource.GITHUB and self.github_info is None:
            raise ValueError("GitHub documents need github_info")
        if self.source == DocumentSource.GDRIVE and self.drive_info is None:
            raise ValueError("Drive documents need drive_info")
        if self.source == DocumentSource.LOCAL and (self.github_info or self.drive_info):
            raise ValueError("Local documents cannot carry a provider link")
        return self

    @property
    def is_provider_linked(self) -> bool:
        return self.source != DocumentSource.LOCAL

    @classmethod
    def from_server(cls, doc: SyncDocument) -> "LocalDocument":
        """Materialize a server copy as a clean, synced local document."""
        return cls(
            id=doc.id,
            name=doc.name,
            content=doc.content or "",
            folder_id=doc.folder_id,
            is_manually_named=doc.is_manually_named,
            cursor=doc.cursor,
            scroll=doc.scroll,
            sync_version=doc.sync_version,
            synced_at=doc.synced_at or _utcnow(),
            sync_status=SyncStatus.SYNCED,
            original_content_hash=content_hash(doc.content or ""),
            created_at=doc.created_at or _utcnow(),
            updated_at=doc.updated_at or _utcnow(),
        )

    def to_upsert(self) -> DocumentUpsert:
        """Payload for ``PUT /documents/{id}`` carrying the latest known version."""
        return DocumentUpsert(
            id=self.id,
            name=self.name,
            content=self.content,
            folder_id=self.folder_id,
            is_manually_named=self.is_manually_named,
            cursor=self.cursor,
            scroll=self.scroll,
            sync_version=self.sync_version,
        )


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

class LocalFolder(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = "New Folder"
    parent_id: str | None = None
    color: str | None = None
    icon: str | None = None
    sort_order: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_server(cls, folder: SyncFolder) -> "LocalFolder":
        return cls(
            id=folder.id,
            name=folder.name,
            parent_id=folder.parent_id,
            color=folder.color,
            icon=folder.icon,
            sort_order=folder.sort_order,
            created_at=folder.created_at or _utcnow(),
            updated_at=folder.updated_at or _utcnow(),
        )

    def to_upsert(self) -> FolderUpsert:
        return FolderUpsert(
            id=self.id,
            name=self.name,
            parent_id=self.parent_id,
            color=self.color,
            icon=self.icon,
            sort_order=self.sort_order,
        )
