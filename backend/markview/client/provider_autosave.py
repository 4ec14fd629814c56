"""Debounced auto-save of GitHub/Drive-linked documents to their provider."""

import logging
from collections.abc import Awaitable, Callable

from markview.client.debounce import DebouncedTask
from markview.client.store import ChangeKind, ChangeOrigin, ChangeTopic, LocalStore, StoreChange
from markview.config import settings
from markview.models.document import DriveInfo, GitHubInfo, LocalDocument, SyncStatus
from markview.utils.hashing import content_hash

logger = logging.getLogger(__name__)

# Pushes a document to its provider; may return the updated link (e.g. new commit sha).
ProviderPush = Callable[[LocalDocument], Awaitable[GitHubInfo | DriveInfo | None]]


class ProviderAutoSave:
    """Watch local edits of provider-linked documents and push them after a quiet period.

    ``cloud-pending`` while waiting, ``syncing`` during the push, then
    ``synced`` or ``error``.
    """

    def __init__(self, store: LocalStore, push: ProviderPush, delay: float | None = None) -> None:
        self.store = store
        self.push = push
        self.delay = delay if delay is not None else settings.provider_autosave_ms / 1000
        self._tasks: dict[str, DebouncedTask] = {}
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_change, [ChangeTopic.DOCUMENTS])

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in self._tasks.values():
            task.close()
        self._tasks.clear()

    def is_pending(self, doc_id: str) -> bool:
        task = self._tasks.get(doc_id)
        return task is not None and task.pending

    async def flush(self) -> None:
        """Push every pending document now."""
        for task in list(self._tasks.values()):
            await task.flush()

    async def wait(self) -> None:
        for task in list(self._tasks.values()):
            await task.wait()

    def _on_change(self, change: StoreChange) -> None:
        if change.origin != ChangeOrigin.LOCAL or change.entity_id is None:
            return
        doc_id = change.entity_id

        if change.kind in (ChangeKind.CLOSED, ChangeKind.DELETED):
            task = self._tasks.pop(doc_id, None)
            if task is not None:
                task.cancel()
            return
        if change.kind != ChangeKind.UPDATED:
            return

        doc = self.store.get_document(doc_id)
        if doc is None or not doc.is_provider_linked:
            return
        if content_hash(doc.content) == doc.original_content_hash:
            return

        self.store.set_sync_status(doc_id, SyncStatus.CLOUD_PENDING)
        task = self._tasks.get(doc_id)
        if task is None:
            task = DebouncedTask(lambda: self._save(doc_id), self.delay, name=f"provider-save:{doc_id}")
            self._tasks[doc_id] = task
        task.schedule()

    async def _save(self, doc_id: str) -> None:
        doc = self.store.get_document(doc_id)
        if doc is None:
            return
        pushed_hash = self.store.mark_syncing(doc_id)
        logger.info("Saving %s document %s to provider", doc.source.value, doc_id)
        try:
            link = await self.push(doc)
        except Exception:
            logger.error("Provider save failed for document %s", doc_id, exc_info=True)
            self.store.mark_error(doc_id)
            return

        if self.store.get_document(doc_id) is None:
            return
        if isinstance(link, GitHubInfo):
            self.store.update_provider_link(doc_id, github_info=link)
        elif isinstance(link, DriveInfo):
            self.store.update_provider_link(doc_id, drive_info=link)
        self.store.mark_synced(doc_id, pushed_hash)
        if self.is_pending(doc_id):
            self.store.set_sync_status(doc_id, SyncStatus.CLOUD_PENDING)
