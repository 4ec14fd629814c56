"""Local document/folder store.

In-memory, authoritative client state: the open documents (in tab order),
the active document, the folder tree, the shared settings and the set of
documents the user closed by hand. Every mutation goes through this API,
whether it comes from the user or from sync, so the derived fields (content
hash, sync status) stay consistent. Mutations notify subscribers with a
``StoreChange``.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from markview.models.document import (
    DocumentSource,
    DriveInfo,
    GitHubInfo,
    LocalDocument,
    LocalFolder,
    SyncStatus,
)
from markview.models.sync import CursorPosition, ScrollPosition, SyncDocument, SyncFolder
from markview.utils.hashing import content_hash
from markview.utils.markdown import DEFAULT_DOCUMENT_NAME, derive_name

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for local store operations."""

    pass


class DocumentNotFoundError(StoreError, KeyError):
    def __init__(self, doc_id: str):
        super().__init__(f"Document not found: {doc_id}")
        self.doc_id = doc_id


class FolderNotFoundError(StoreError, KeyError):
    def __init__(self, folder_id: str):
        super().__init__(f"Folder not found: {folder_id}")
        self.folder_id = folder_id


class InvalidFolderMoveError(StoreError, ValueError):
    """Raised when a folder parent would be unknown or would form a cycle."""

    pass


class ChangeTopic(str, Enum):
    OPEN_SET = "open_set"
    ACTIVE_DOCUMENT = "active_document"
    DOCUMENTS = "documents"
    FOLDERS = "folders"
    SETTINGS = "settings"


class ChangeKind(str, Enum):
    CREATED = "created"
    OPENED = "opened"
    UPDATED = "updated"
    CLOSED = "closed"
    DELETED = "deleted"


class ChangeOrigin(str, Enum):
    LOCAL = "local"  # user action on this device
    REMOTE = "remote"  # applied by sync


@dataclass(frozen=True)
class StoreChange:
    topic: ChangeTopic
    kind: ChangeKind
    entity_id: str | None
    origin: ChangeOrigin = ChangeOrigin.LOCAL


StoreListener = Callable[[StoreChange], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LocalStore:
    """Constructed service holding client state; see module docstring."""

    def __init__(self) -> None:
        self._documents: dict[str, LocalDocument] = {}
        self._folders: dict[str, LocalFolder] = {}
        self._active_document_id: str | None = None
        self._locally_closed: set[str] = set()
        self._settings: dict[str, Any] = {}
        self._listeners: dict[int, tuple[StoreListener, frozenset[ChangeTopic] | None]] = {}
        self._next_listener_id = 0
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(
        self,
        documents: Iterable[LocalDocument] = (),
        folders: Iterable[LocalFolder] = (),
        active_document_id: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> None:
        """Load persisted state. Does not notify listeners."""
        self._documents = {doc.id: doc for doc in documents}
        self._folders = {folder.id: folder for folder in folders}
        self._settings = dict(settings or {})
        if active_document_id in self._documents:
            self._active_document_id = active_document_id
        else:
            self._active_document_id = next(iter(self._documents), None)
        self._initialized = True
        logger.debug(
            "Local store initialized with %d documents, %d folders",
            len(self._documents), len(self._folders),
        )

    def destroy(self) -> None:
        """Drop all state and listeners."""
        self._listeners.clear()
        self._documents.clear()
        self._folders.clear()
        self._locally_closed.clear()
        self._settings.clear()
        self._active_document_id = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        listener: StoreListener,
        topics: Iterable[ChangeTopic] | None = None,
    ) -> Callable[[], None]:
        """Call ``listener`` for changes on ``topics`` (all topics if None).

        Returns an idempotent unsubscribe function.
        """
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = (listener, frozenset(topics) if topics is not None else None)

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def _emit(
        self,
        topic: ChangeTopic,
        kind: ChangeKind,
        entity_id: str | None,
        origin: ChangeOrigin,
    ) -> None:
        change = StoreChange(topic, kind, entity_id, origin)
        for listener, topics in list(self._listeners.values()):
            if topics is not None and topic not in topics:
                continue
            try:
                listener(change)
            except Exception:
                logger.error("Store listener failed on %s", change, exc_info=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_document(self, doc_id: str) -> LocalDocument | None:
        return self._documents.get(doc_id)

    def get_documents(self) -> list[LocalDocument]:
        return list(self._documents.values())

    def get_active_document(self) -> LocalDocument | None:
        if self._active_document_id is None:
            return None
        return self._documents.get(self._active_document_id)

    def get_documents_by_folder(self, folder_id: str | None) -> list[LocalDocument]:
        """Documents directly inside ``folder_id`` (None for the root)."""
        return [doc for doc in self._documents.values() if doc.folder_id == folder_id]

    def find_document_by_github(self, repo_full_name: str, path: str) -> LocalDocument | None:
        for doc in self._documents.values():
            info = doc.github_info
            if info is not None and info.repo_full_name == repo_full_name and info.path == path:
                return doc
        return None

    def find_document_by_drive(self, file_id: str) -> LocalDocument | None:
        for doc in self._documents.values():
            if doc.drive_info is not None and doc.drive_info.file_id == file_id:
                return doc
        return None

    def get_folder(self, folder_id: str) -> LocalFolder | None:
        return self._folders.get(folder_id)

    def get_folders(self) -> list[LocalFolder]:
        return sorted(self._folders.values(), key=lambda f: (f.sort_order, f.name))

    @property
    def open_document_ids(self) -> list[str]:
        """Open documents in tab order."""
        return list(self._documents)

    @property
    def active_document_id(self) -> str | None:
        return self._active_document_id

    def is_locally_closed(self, doc_id: str) -> bool:
        return doc_id in self._locally_closed

    # ------------------------------------------------------------------
    # Documents: open set
    # ------------------------------------------------------------------

    def _require_document(self, doc_id: str) -> LocalDocument:
        doc = self._documents.get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(doc_id)
        return doc

    def _set_active(self, doc_id: str | None, origin: ChangeOrigin) -> None:
        if doc_id == self._active_document_id:
            return
        self._active_document_id = doc_id
        self._emit(ChangeTopic.ACTIVE_DOCUMENT, ChangeKind.UPDATED, doc_id, origin)

    def _remove_from_open_set(self, doc_id: str, kind: ChangeKind, origin: ChangeOrigin) -> None:
        del self._documents[doc_id]
        self._emit(ChangeTopic.DOCUMENTS, kind, doc_id, origin)
        self._emit(ChangeTopic.OPEN_SET, kind, doc_id, origin)
        if self._active_document_id == doc_id:
            self._set_active(next(iter(self._documents), None), origin)

    def create_document(
        self,
        content: str = "",
        *,
        name: str | None = None,
        folder_id: str | None = None,
        source: DocumentSource = DocumentSource.LOCAL,
        github_info: GitHubInfo | None = None,
        drive_info: DriveInfo | None = None,
        activate: bool = True,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalDocument:
        """Create and open a new document. The name is derived from content unless given."""
        if folder_id is not None and folder_id not in self._folders:
            raise FolderNotFoundError(folder_id)
        doc = LocalDocument(
            name=name or derive_name(content),
            content=content,
            folder_id=folder_id,
            is_manually_named=name is not None,
            source=source,
            github_info=github_info,
            drive_info=drive_info,
            cursor=CursorPosition(line=1, column=1),
            scroll=ScrollPosition(line=1, percentage=0),
        )
        if doc.is_provider_linked:
            # Provider documents start out matching the file they were opened from.
            doc.original_content_hash = content_hash(content)
            doc.sync_status = SyncStatus.SYNCED
        self._documents[doc.id] = doc
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.CREATED, doc.id, origin)
        self._emit(ChangeTopic.OPEN_SET, ChangeKind.CREATED, doc.id, origin)
        if activate:
            self._set_active(doc.id, origin)
        logger.debug("Created document %s", doc.id)
        return doc

    def open_document(
        self,
        doc: LocalDocument,
        *,
        activate: bool = True,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalDocument:
        """Add ``doc`` to the open set (or focus it if already open).

        Reopening clears any locally-closed mark for the ID.
        """
        self._locally_closed.discard(doc.id)
        existing = self._documents.get(doc.id)
        if existing is None:
            self._documents[doc.id] = doc
            existing = doc
            self._emit(ChangeTopic.DOCUMENTS, ChangeKind.OPENED, doc.id, origin)
            self._emit(ChangeTopic.OPEN_SET, ChangeKind.OPENED, doc.id, origin)
        if activate:
            self._set_active(doc.id, origin)
        return existing

    def close_document(
        self,
        doc_id: str,
        *,
        by_user: bool = True,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> None:
        """Remove a document from the open set.

        A close by the user is remembered so that other devices' session
        state does not silently reopen it.
        """
        self._require_document(doc_id)
        if by_user:
            self._locally_closed.add(doc_id)
        self._remove_from_open_set(doc_id, ChangeKind.CLOSED, origin)

    def activate_document(self, doc_id: str, *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> None:
        self._require_document(doc_id)
        self._set_active(doc_id, origin)

    def delete_document(self, doc_id: str, *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> LocalDocument:
        """Hard-remove a document locally. Returns the removed record."""
        doc = self._require_document(doc_id)
        self._locally_closed.discard(doc_id)
        self._remove_from_open_set(doc_id, ChangeKind.DELETED, origin)
        logger.debug("Deleted document %s (%s)", doc_id, origin.value)
        return doc

    def clear_locally_closed(self) -> None:
        """Forget every locally-closed mark (logout)."""
        self._locally_closed.clear()

    # ------------------------------------------------------------------
    # Documents: edits
    # ------------------------------------------------------------------

    def _touch(self, doc: LocalDocument, origin: ChangeOrigin, *, modified: bool) -> None:
        doc.updated_at = _utcnow()
        if modified and origin == ChangeOrigin.LOCAL:
            doc.sync_status = SyncStatus.MODIFIED
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc.id, origin)

    def update_content(
        self,
        doc_id: str,
        content: str,
        *,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalDocument:
        """Replace content, re-deriving the name unless it was set by hand.

        The document becomes ``modified`` only when the content hash differs
        from the hash at the last successful sync.
        """
        doc = self._require_document(doc_id)
        doc.content = content
        if not doc.is_manually_named:
            doc.name = derive_name(content)
        changed = content_hash(content) != doc.original_content_hash
        self._touch(doc, origin, modified=changed)
        return doc

    def rename_document(
        self,
        doc_id: str,
        name: str,
        manual: bool = True,
        *,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalDocument:
        doc = self._require_document(doc_id)
        doc.name = name.strip() or DEFAULT_DOCUMENT_NAME
        doc.is_manually_named = manual
        self._touch(doc, origin, modified=True)
        return doc

    def move_document(
        self,
        doc_id: str,
        folder_id: str | None,
        *,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalDocument:
        """Move a document into ``folder_id`` (None for the root)."""
        doc = self._require_document(doc_id)
        if folder_id is not None and folder_id not in self._folders:
            raise FolderNotFoundError(folder_id)
        if doc.folder_id == folder_id:
            return doc
        doc.folder_id = folder_id
        self._touch(doc, origin, modified=True)
        return doc

    def update_cursor(self, doc_id: str, line: int, column: int) -> None:
        doc = self._require_document(doc_id)
        doc.cursor = CursorPosition(line=line, column=column)
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc_id, ChangeOrigin.LOCAL)

    def update_scroll(self, doc_id: str, line: int, percentage: float) -> None:
        doc = self._require_document(doc_id)
        doc.scroll = ScrollPosition(line=line, percentage=percentage)
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc_id, ChangeOrigin.LOCAL)

    # ------------------------------------------------------------------
    # Documents: sync metadata
    # ------------------------------------------------------------------

    def add_synced_document(self, server_doc: SyncDocument, *, activate: bool = False) -> LocalDocument | None:
        """Apply a server copy: replace the local document or materialize a new one.

        Versions never go backwards: a server copy that is not newer than the
        local document is ignored and None is returned.
        """
        existing = self._documents.get(server_doc.id)
        if existing is not None and existing.sync_version >= server_doc.sync_version:
            logger.debug(
                "Ignoring server copy of %s: local version %d, server version %d",
                server_doc.id, existing.sync_version, server_doc.sync_version,
            )
            return None

        doc = LocalDocument.from_server(server_doc)
        self._documents[doc.id] = doc
        if existing is None:
            self._emit(ChangeTopic.DOCUMENTS, ChangeKind.CREATED, doc.id, ChangeOrigin.REMOTE)
            self._emit(ChangeTopic.OPEN_SET, ChangeKind.OPENED, doc.id, ChangeOrigin.REMOTE)
        else:
            self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc.id, ChangeOrigin.REMOTE)
        if activate or self._active_document_id is None:
            self._set_active(doc.id, ChangeOrigin.REMOTE)
        return doc

    def set_sync_status(self, doc_id: str, status: SyncStatus) -> None:
        doc = self._require_document(doc_id)
        if doc.sync_status == status:
            return
        doc.sync_status = status
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc_id, ChangeOrigin.REMOTE)

    def mark_syncing(self, doc_id: str) -> str:
        """Mark a push as in flight. Returns the hash of the content being pushed."""
        doc = self._require_document(doc_id)
        self.set_sync_status(doc_id, SyncStatus.SYNCING)
        return content_hash(doc.content)

    def mark_synced(
        self,
        doc_id: str,
        pushed_hash: str,
        *,
        sync_version: int | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        """Record a successful push of content whose hash is ``pushed_hash``.

        If the content changed again while the push was in flight the
        document stays ``modified``.
        """
        doc = self._documents.get(doc_id)
        if doc is None:
            return
        doc.original_content_hash = pushed_hash
        if sync_version is not None and sync_version > doc.sync_version:
            doc.sync_version = sync_version
        doc.synced_at = synced_at or _utcnow()
        # Any edit during the push (content, name or folder) keeps it modified.
        if doc.sync_status == SyncStatus.SYNCING and content_hash(doc.content) == pushed_hash:
            doc.sync_status = SyncStatus.SYNCED
        else:
            doc.sync_status = SyncStatus.MODIFIED
        self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc_id, ChangeOrigin.REMOTE)

    def mark_error(self, doc_id: str) -> None:
        if doc_id in self._documents:
            self.set_sync_status(doc_id, SyncStatus.ERROR)

    def update_provider_link(
        self,
        doc_id: str,
        *,
        github_info: GitHubInfo | None = None,
        drive_info: DriveInfo | None = None,
    ) -> None:
        """Store the link a provider returned after a push (e.g. a new commit sha)."""
        doc = self._require_document(doc_id)
        if github_info is not None:
            doc.github_info = github_info
        if drive_info is not None:
            doc.drive_info = drive_info

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def _require_folder(self, folder_id: str) -> LocalFolder:
        folder = self._folders.get(folder_id)
        if folder is None:
            raise FolderNotFoundError(folder_id)
        return folder

    def _check_parent(self, folder_id: str, parent_id: str | None) -> None:
        """Reject unknown parents and parents that would create a cycle."""
        seen: set[str] = set()
        current = parent_id
        while current is not None:
            if current == folder_id:
                raise InvalidFolderMoveError(f"Folder {folder_id} cannot be its own ancestor")
            if current in seen:
                raise InvalidFolderMoveError(f"Folder tree already has a cycle at {current}")
            parent = self._folders.get(current)
            if parent is None:
                raise InvalidFolderMoveError(f"Unknown parent folder: {current}")
            seen.add(current)
            current = parent.parent_id

    def create_folder(
        self,
        name: str,
        parent_id: str | None = None,
        *,
        color: str | None = None,
        icon: str | None = None,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalFolder:
        folder = LocalFolder(name=name, parent_id=parent_id, color=color, icon=icon)
        self._check_parent(folder.id, parent_id)
        folder.sort_order = len(self._folders)
        self._folders[folder.id] = folder
        self._emit(ChangeTopic.FOLDERS, ChangeKind.CREATED, folder.id, origin)
        return folder

    def rename_folder(self, folder_id: str, name: str, *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> LocalFolder:
        folder = self._require_folder(folder_id)
        folder.name = name
        folder.updated_at = _utcnow()
        self._emit(ChangeTopic.FOLDERS, ChangeKind.UPDATED, folder_id, origin)
        return folder

    def move_folder(
        self,
        folder_id: str,
        parent_id: str | None,
        *,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalFolder:
        folder = self._require_folder(folder_id)
        self._check_parent(folder_id, parent_id)
        folder.parent_id = parent_id
        folder.updated_at = _utcnow()
        self._emit(ChangeTopic.FOLDERS, ChangeKind.UPDATED, folder_id, origin)
        return folder

    def update_folder_appearance(
        self,
        folder_id: str,
        *,
        color: str | None = None,
        icon: str | None = None,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> LocalFolder:
        folder = self._require_folder(folder_id)
        folder.color = color
        folder.icon = icon
        folder.updated_at = _utcnow()
        self._emit(ChangeTopic.FOLDERS, ChangeKind.UPDATED, folder_id, origin)
        return folder

    def upsert_folder(self, server_folder: SyncFolder) -> LocalFolder:
        """Apply a server copy of a folder (last write wins).

        A parent that is unknown locally, or that would close a cycle, is
        replaced by the root so the tree invariant holds.
        """
        folder = LocalFolder.from_server(server_folder)
        try:
            self._check_parent(folder.id, folder.parent_id)
        except InvalidFolderMoveError:
            logger.warning("Folder %s has an invalid parent %s, placing it at root", folder.id, folder.parent_id)
            folder.parent_id = None
        kind = ChangeKind.UPDATED if folder.id in self._folders else ChangeKind.CREATED
        self._folders[folder.id] = folder
        self._emit(ChangeTopic.FOLDERS, kind, folder.id, ChangeOrigin.REMOTE)
        return folder

    def replace_folders(self, server_folders: Iterable[SyncFolder], keep: Iterable[str] = ()) -> None:
        """Replace the folder tree with the server's live folders.

        Local folders named in ``keep`` (e.g. not pushed yet) survive unless
        the server listing has its own copy of them.
        """
        live = [f for f in server_folders if f.deleted_at is None]
        live_ids = {f.id for f in live}
        keep_ids = set(keep) - live_ids
        kept = {fid: folder for fid, folder in self._folders.items() if fid in keep_ids}
        self._folders = {}
        # Insert parents before children so parent checks see them.
        pending = {f.id: f for f in live}
        while pending:
            progressed = False
            for folder_id, server_folder in list(pending.items()):
                parent_id = server_folder.parent_id
                if parent_id is None or parent_id in self._folders or parent_id not in pending:
                    self._folders[folder_id] = self._placed(server_folder)
                    del pending[folder_id]
                    progressed = True
            if not progressed:
                # Remaining folders form a cycle; break it at root.
                folder_id, server_folder = next(iter(pending.items()))
                placed = LocalFolder.from_server(server_folder)
                placed.parent_id = None
                self._folders[folder_id] = placed
                del pending[folder_id]
        for folder_id, folder in kept.items():
            if folder.parent_id is not None and folder.parent_id not in self._folders and folder.parent_id not in kept:
                folder.parent_id = None
            self._folders[folder_id] = folder
        for doc in self._documents.values():
            if doc.folder_id is not None and doc.folder_id not in self._folders:
                doc.folder_id = None
        self._emit(ChangeTopic.FOLDERS, ChangeKind.UPDATED, None, ChangeOrigin.REMOTE)

    def _placed(self, server_folder: SyncFolder) -> LocalFolder:
        folder = LocalFolder.from_server(server_folder)
        if folder.parent_id is not None and folder.parent_id not in self._folders:
            folder.parent_id = None
        return folder

    def delete_folder(self, folder_id: str, *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> list[str]:
        """Delete a folder after moving its documents and child folders to the root.

        Returns the IDs of the documents that were moved.
        """
        self._require_folder(folder_id)
        moved: list[str] = []
        for doc in self._documents.values():
            if doc.folder_id == folder_id:
                doc.folder_id = None
                moved.append(doc.id)
        for child in self._folders.values():
            if child.parent_id == folder_id:
                child.parent_id = None
        for doc_id in moved:
            # Reparenting is bookkeeping for the folder delete; the server
            # does the same on its side, so it is not a local edit to push.
            self._emit(ChangeTopic.DOCUMENTS, ChangeKind.UPDATED, doc_id, ChangeOrigin.REMOTE)
        del self._folders[folder_id]
        self._emit(ChangeTopic.FOLDERS, ChangeKind.DELETED, folder_id, origin)
        logger.debug("Deleted folder %s (%d documents moved to root)", folder_id, len(moved))
        return moved

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def settings(self) -> dict[str, Any]:
        return dict(self._settings)

    def update_settings(self, values: dict[str, Any], *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> dict[str, Any]:
        """Shallow-merge ``values`` into the settings. Returns the merged settings."""
        merged = {**self._settings, **values}
        if merged != self._settings:
            self._settings = merged
            self._emit(ChangeTopic.SETTINGS, ChangeKind.UPDATED, None, origin)
        return dict(merged)

    def reset_settings(self, *, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> None:
        if self._settings:
            self._settings = {}
            self._emit(ChangeTopic.SETTINGS, ChangeKind.UPDATED, None, origin)
