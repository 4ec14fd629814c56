"""Outgoing push queue.

Pending pushes are coalesced per entity: a second mutation before the
first push completes replaces the queued payload instead of adding a
second entry. Upserts wait for a debounce window; deletes go out
immediately. Failures are handled per entity:

  CONFLICT          server copy wins, local copy kept as a SyncConflict
  VALIDATION_ERROR  entry dropped, document marked ``error``
  NOT_FOUND         entry dropped (the entity is already gone)
  RATE_LIMITED      pass stops, retried after ``Retry-After``
  UNAUTHORIZED      pass stops, entries kept, no retry until re-auth
  UNKNOWN           bounded retry with growing delays, then ``error``

A document push claims the version this device last pushed or applied,
never a version it has only heard about, so the server can detect that
another device got there first.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from markview.client.api import SyncApiClient
from markview.client.conflict import (
    ConflictNotFoundError,
    ConflictResolution,
    DiffStats,
    calculate_diff,
    generate_conflict_copy_name,
)
from markview.client.debounce import DebouncedTask
from markview.client.errors import SyncApiError, SyncConflictError, SyncErrorKind
from markview.client.store import ChangeOrigin, LocalStore
from markview.config import settings
from markview.models.document import LocalDocument
from markview.models.sync import DocumentUpsert, FolderUpsert, SyncDocument

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60.0


class EntityType(str, Enum):
    DOCUMENT = "document"
    FOLDER = "folder"


class QueueOperation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class QueueEntry:
    entity_type: EntityType
    entity_id: str
    operation: QueueOperation
    payload: DocumentUpsert | FolderUpsert | None
    sequence: int
    retries: int = 0
    not_before: float = 0.0

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.entity_id)


@dataclass
class SyncConflict:
    """A local copy discarded because the server held a newer version."""

    document_id: str
    local_name: str
    local_content: str
    local_version: int
    server_version: int
    server_document: SyncDocument
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def diff(self) -> DiffStats:
        return calculate_diff(self.local_content, self.server_document.content or "")


class _Outcome(str, Enum):
    DONE = "done"
    RETRY = "retry"
    STOP = "stop"


class SyncQueue:
    """Coalescing, single-flight push queue for documents and folders."""

    def __init__(
        self,
        api: SyncApiClient,
        store: LocalStore,
        *,
        debounce_seconds: float | None = None,
        max_retries: int | None = None,
        retry_delays: list[float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.store = store
        self.max_retries = max_retries if max_retries is not None else settings.queue_max_retries
        self.retry_delays = list(retry_delays if retry_delays is not None else settings.queue_retry_delays_seconds)
        self._clock = clock

        self._entries: dict[tuple[EntityType, str], QueueEntry] = {}
        self._sequence = 0
        self._known_versions: dict[str, int] = {}
        self._processing = False
        self._rerun = False
        self._blocked = False

        self.conflicts: list[SyncConflict] = []
        self.last_error: SyncApiError | None = None

        delay = debounce_seconds if debounce_seconds is not None else settings.queue_debounce_ms / 1000
        self._debounce = DebouncedTask(self.process_queue, delay, name="sync-queue")
        self._wakeup = DebouncedTask(self.process_queue, 0, name="sync-queue-wakeup")

    # ------------------------------------------------------------------
    # Queue contents
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[QueueEntry]:
        return sorted(self._entries.values(), key=lambda e: e.sequence)

    def get(self, entity_type: EntityType, entity_id: str) -> QueueEntry | None:
        return self._entries.get((entity_type, entity_id))

    @property
    def is_processing(self) -> bool:
        return self._processing

    def _put(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: QueueOperation,
        payload: DocumentUpsert | FolderUpsert | None,
    ) -> QueueEntry:
        self._sequence += 1
        entry = QueueEntry(entity_type, entity_id, operation, payload, self._sequence)
        replaced = self._entries.get(entry.key)
        if replaced is not None:
            logger.debug("Coalescing %s %s into pending entry", entity_type.value, entity_id)
        self._entries[entry.key] = entry
        if operation == QueueOperation.DELETE:
            self._wakeup.schedule(0)
        else:
            self._debounce.schedule()
        return entry

    def enqueue_document_upsert(self, doc_id: str) -> QueueEntry | None:
        doc = self.store.get_document(doc_id)
        if doc is None:
            return None
        return self._put(EntityType.DOCUMENT, doc_id, QueueOperation.UPSERT, doc.to_upsert())

    def enqueue_document_delete(self, doc_id: str) -> QueueEntry:
        return self._put(EntityType.DOCUMENT, doc_id, QueueOperation.DELETE, None)

    def enqueue_folder_upsert(self, folder_id: str) -> QueueEntry | None:
        folder = self.store.get_folder(folder_id)
        if folder is None:
            return None
        return self._put(EntityType.FOLDER, folder_id, QueueOperation.UPSERT, folder.to_upsert())

    def enqueue_folder_delete(self, folder_id: str) -> QueueEntry:
        return self._put(EntityType.FOLDER, folder_id, QueueOperation.DELETE, None)

    def discard(self, entity_type: EntityType, entity_id: str) -> None:
        """Forget a pending push (the entity was deleted elsewhere)."""
        self._entries.pop((entity_type, entity_id), None)

    def pending_ids(self, entity_type: EntityType) -> set[str]:
        return {e.entity_id for e in self._entries.values() if e.entity_type == entity_type}

    def remember_version(self, doc_id: str, sync_version: int) -> None:
        """Record a version this device pushed or applied from the server.

        Versions only announced by other devices must not be recorded here.
        """
        if sync_version > self._known_versions.get(doc_id, 0):
            self._known_versions[doc_id] = sync_version

    def resume(self) -> None:
        """Allow processing again after an authorization failure."""
        self._blocked = False
        self.last_error = None
        if self._entries:
            self._wakeup.schedule(0)

    def clear(self) -> None:
        self._entries.clear()
        self._known_versions.clear()

    def stop(self) -> None:
        """Cancel timers and any pass in flight. Entries are kept."""
        self._debounce.close()
        self._wakeup.close()
        self._processing = False

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def resolve_conflict(self, doc_id: str, resolution: ConflictResolution) -> LocalDocument | None:
        """Act on the latest conflict recorded for ``doc_id`` and forget it.

        Returns the open document holding the kept local content (the
        original for ``LOCAL``, the new copy for ``BOTH``), or the current
        document for ``SERVER``.
        """
        conflict = next((c for c in reversed(self.conflicts) if c.document_id == doc_id), None)
        if conflict is None:
            raise ConflictNotFoundError(doc_id)
        self.conflicts[:] = [c for c in self.conflicts if c.document_id != doc_id]
        logger.info("Resolving conflict on document %s: keep %s", doc_id, resolution.value)

        if resolution == ConflictResolution.SERVER:
            return self.store.get_document(doc_id)
        if resolution == ConflictResolution.LOCAL:
            return self._keep_local(conflict)
        return self._keep_both(conflict)

    def _keep_local(self, conflict: SyncConflict) -> LocalDocument:
        doc_id = conflict.document_id
        doc = self.store.get_document(doc_id)
        if doc is None:
            # Closed or deleted here after the conflict; reopen on the server copy.
            base = conflict.server_document.model_copy(update={"deleted_at": None})
            doc = self.store.open_document(LocalDocument.from_server(base), activate=False)
        if doc.sync_version < conflict.server_version:
            doc.sync_version = conflict.server_version

        self.store.update_content(doc_id, conflict.local_content)
        if doc.name != conflict.local_name:
            self.store.rename_document(doc_id, conflict.local_name, manual=doc.is_manually_named)
        self.enqueue_document_upsert(doc_id)
        return doc

    def _keep_both(self, conflict: SyncConflict) -> LocalDocument:
        folder_id = conflict.server_document.folder_id
        if folder_id is not None and self.store.get_folder(folder_id) is None:
            folder_id = None
        copy = self.store.create_document(
            conflict.local_content,
            name=generate_conflict_copy_name(conflict.local_name),
            folder_id=folder_id,
            activate=False,
        )
        self.enqueue_document_upsert(copy.id)
        return copy

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_queue(self) -> None:
        """Push every due entry. Single-flight: a call during a pass re-runs it."""
        if self._processing:
            self._rerun = True
            return
        if self._blocked:
            logger.debug("Sync queue blocked until re-authentication")
            return

        self._processing = True
        try:
            while True:
                self._rerun = False
                now = self._clock()
                due = [e for e in self.entries() if e.not_before <= now]
                stopped = False
                for entry in due:
                    if await self._process_entry(entry) == _Outcome.STOP:
                        stopped = True
                        break
                if stopped or not self._rerun:
                    break
        finally:
            self._processing = False
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self._blocked or not self._entries:
            return
        now = self._clock()
        waits = [e.not_before - now for e in self._entries.values() if e.not_before > now]
        if waits:
            self._wakeup.schedule(max(0.0, min(waits)))

    def _finish(self, entry: QueueEntry) -> None:
        """Drop ``entry`` unless a newer mutation replaced it during the push."""
        current = self._entries.get(entry.key)
        if current is not None and current.sequence == entry.sequence:
            del self._entries[entry.key]
        elif current is not None:
            self._debounce.schedule()

    def _document_payload(self, entry: QueueEntry) -> DocumentUpsert:
        doc = self.store.get_document(entry.entity_id)
        payload = doc.to_upsert() if doc is not None else entry.payload
        if not isinstance(payload, DocumentUpsert):
            raise TypeError(f"Queued upsert for document {entry.entity_id} has no document payload")
        base = max(payload.sync_version or 1, self._known_versions.get(entry.entity_id, 0))
        return payload.model_copy(update={"sync_version": base})

    def _folder_payload(self, entry: QueueEntry) -> FolderUpsert:
        folder = self.store.get_folder(entry.entity_id)
        payload = folder.to_upsert() if folder is not None else entry.payload
        if not isinstance(payload, FolderUpsert):
            raise TypeError(f"Queued upsert for folder {entry.entity_id} has no folder payload")
        return payload

    async def _process_entry(self, entry: QueueEntry) -> _Outcome:
        try:
            if entry.entity_type == EntityType.DOCUMENT:
                if entry.operation == QueueOperation.UPSERT:
                    await self._push_document(entry)
                else:
                    await self.api.documents.delete(entry.entity_id)
            else:
                if entry.operation == QueueOperation.UPSERT:
                    await self.api.folders.put(entry.entity_id, self._folder_payload(entry))
                else:
                    await self.api.folders.delete(entry.entity_id)
        except SyncConflictError as exc:
            self._resolve_conflict(entry, exc)
            self._finish(entry)
            return _Outcome.DONE
        except SyncApiError as exc:
            return self._handle_failure(entry, exc)

        logger.info("Pushed %s %s (%s)", entry.entity_type.value, entry.entity_id, entry.operation.value)
        self.last_error = None
        self._finish(entry)
        return _Outcome.DONE

    async def _push_document(self, entry: QueueEntry) -> None:
        payload = self._document_payload(entry)
        pushed_hash = None
        if self.store.get_document(entry.entity_id) is not None:
            pushed_hash = self.store.mark_syncing(entry.entity_id)
        server_doc = await self.api.documents.put(entry.entity_id, payload)
        self.remember_version(server_doc.id, server_doc.sync_version)
        if pushed_hash is not None:
            self.store.mark_synced(
                entry.entity_id,
                pushed_hash,
                sync_version=server_doc.sync_version,
                synced_at=server_doc.synced_at,
            )

    def _resolve_conflict(self, entry: QueueEntry, exc: SyncConflictError) -> None:
        """Server wins: replace the local copy and keep what was discarded."""
        doc = self.store.get_document(entry.entity_id)
        payload = entry.payload if isinstance(entry.payload, DocumentUpsert) else None
        local_name = doc.name if doc is not None else (payload.name if payload else "")
        local_content = doc.content if doc is not None else (payload.content if payload else "")
        if doc is not None:
            local_version = doc.sync_version
        else:
            local_version = (payload.sync_version or 1) if payload else 1

        self.conflicts.append(
            SyncConflict(
                document_id=entry.entity_id,
                local_name=local_name,
                local_content=local_content,
                local_version=local_version,
                server_version=exc.server_version,
                server_document=exc.server_document,
            )
        )
        logger.warning(
            "Conflict on document %s: local version %d, server version %d; keeping server copy",
            entry.entity_id, local_version, exc.server_version,
        )
        if doc is None:
            return
        if exc.server_document.deleted_at is not None:
            self.store.delete_document(entry.entity_id, origin=ChangeOrigin.REMOTE)
        elif self.store.add_synced_document(exc.server_document) is not None:
            self.remember_version(entry.entity_id, exc.server_version)

    def _handle_failure(self, entry: QueueEntry, exc: SyncApiError) -> _Outcome:
        doc_id = entry.entity_id if entry.entity_type == EntityType.DOCUMENT else None

        if exc.kind == SyncErrorKind.NOT_FOUND:
            logger.info("%s %s no longer exists on the server", entry.entity_type.value, entry.entity_id)
            self._finish(entry)
            return _Outcome.DONE

        if exc.kind == SyncErrorKind.VALIDATION_ERROR:
            logger.error(
                "Server rejected %s %s as invalid: %s", entry.entity_type.value, entry.entity_id, exc.message,
            )
            self._finish(entry)
            if doc_id:
                self.store.mark_error(doc_id)
            return _Outcome.DONE

        if exc.kind in (SyncErrorKind.UNAUTHORIZED, SyncErrorKind.FORBIDDEN):
            logger.warning("Sync queue stopped: %s", exc.kind.value)
            self.last_error = exc
            self._blocked = True
            if doc_id:
                self.store.mark_error(doc_id)
            return _Outcome.STOP

        if exc.kind == SyncErrorKind.RATE_LIMITED:
            wait = exc.retry_after if exc.retry_after is not None else DEFAULT_RATE_LIMIT_WAIT_SECONDS
            logger.warning("Sync queue rate limited, retrying in %.0fs", wait)
            self.last_error = exc
            not_before = self._clock() + wait
            for pending in self._entries.values():
                pending.not_before = max(pending.not_before, not_before)
            if doc_id:
                self.store.mark_error(doc_id)
            return _Outcome.STOP

        # UNKNOWN and anything unexpected: bounded retry.
        self.last_error = exc
        if doc_id:
            self.store.mark_error(doc_id)
        entry.retries += 1
        if entry.retries > self.max_retries:
            logger.error(
                "Giving up on %s %s after %d retries: %s",
                entry.entity_type.value, entry.entity_id, self.max_retries, exc.message,
            )
            self._finish(entry)
            return _Outcome.DONE
        delay = self.retry_delays[min(entry.retries - 1, len(self.retry_delays) - 1)] if self.retry_delays else 0
        entry.not_before = self._clock() + delay
        logger.warning(
            "Push of %s %s failed (%s), retry %d/%d in %.0fs",
            entry.entity_type.value, entry.entity_id, exc.message, entry.retries, self.max_retries, delay,
        )
        return _Outcome.RETRY
