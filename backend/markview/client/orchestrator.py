"""Sync orchestrator.

Ties the local store, the REST client, the outgoing queue and the realtime
channel together:

- local edits (origin ``local``) are queued for push; remote changes are
  applied through the same store API with origin ``remote``
- the open set and active document are pushed as session state, debounced;
  local settings changes are pushed the same way on a longer delay
- realtime events from other devices are reconciled into the store; events
  carrying this device's ID are ignored
- on every new connection the folder tree, session snapshot and settings
  are pulled
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from markview.client.api import SyncApiClient
from markview.client.conflict import ConflictResolution
from markview.client.debounce import DebouncedTask
from markview.client.errors import SyncApiError, SyncErrorKind
from markview.client.queue import EntityType, SyncConflict, SyncQueue
from markview.client.realtime import ConnectionState, RealtimeChannel
from markview.client.store import ChangeKind, ChangeOrigin, ChangeTopic, LocalStore, StoreChange
from markview.config import settings
from markview.models.document import DocumentSource, LocalDocument
from markview.models.events import (
    EVENT_MODELS,
    ChannelEvent,
    ConnectedEvent,
    DocumentDeletedEvent,
    DocumentUpdatedEvent,
    FolderDeletedEvent,
    FolderUpdatedEvent,
    HeartbeatEvent,
    SessionUpdatedEvent,
    SettingsUpdatedEvent,
)
from markview.models.sync import SyncDocument

logger = logging.getLogger(__name__)

SessionSnapshot = tuple[tuple[str, ...], str | None]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SyncApiError) and exc.kind == SyncErrorKind.UNKNOWN


class SyncOrchestrator:
    """Keeps one device's store in step with the server and the user's other devices."""

    def __init__(
        self,
        store: LocalStore,
        api: SyncApiClient,
        channel: RealtimeChannel,
        *,
        queue: SyncQueue | None = None,
        session_debounce_seconds: float | None = None,
        settings_debounce_seconds: float | None = None,
        fetch_attempts: int | None = None,
        fetch_delay_seconds: float | None = None,
        auto_sync_interval_seconds: float | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.api = api
        self.channel = channel
        self.queue = queue if queue is not None else SyncQueue(api, store)

        self.fetch_attempts = fetch_attempts if fetch_attempts is not None else settings.fetch_retry_attempts
        self.fetch_delay_seconds = (
            fetch_delay_seconds if fetch_delay_seconds is not None else settings.fetch_retry_delay_seconds
        )
        self.auto_sync_interval_seconds = (
            auto_sync_interval_seconds
            if auto_sync_interval_seconds is not None
            else settings.auto_sync_interval_seconds
        )
        self._retry_sleep = retry_sleep

        session_delay = (
            session_debounce_seconds
            if session_debounce_seconds is not None
            else settings.session_push_debounce_ms / 1000
        )
        self._session_debounce = DebouncedTask(self.push_session_state, session_delay, name="session-push")
        settings_delay = (
            settings_debounce_seconds
            if settings_debounce_seconds is not None
            else settings.settings_push_debounce_ms / 1000
        )
        self._settings_debounce = DebouncedTask(self.push_settings, settings_delay, name="settings-push")

        self._started = False
        self._unsubscribers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()
        self._auto_sync_task: asyncio.Task | None = None

        self._last_pushed: SessionSnapshot | None = None
        self._settings_dirty = False
        self._pending_fetches: set[tuple[str, int | None]] = set()
        self._remotely_deleted: set[str] = set()
        self._sync_depth = 0
        self._sync_error: SyncApiError | None = None
        self.last_synced_at: datetime | None = None

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self.channel.get_state()

    @property
    def connection_id(self) -> str | None:
        return self.channel.get_connection_id()

    @property
    def last_heartbeat(self) -> float | None:
        return self.channel.get_last_heartbeat()

    def is_stale(self, threshold_seconds: float | None = None) -> bool:
        return self.channel.is_stale(threshold_seconds)

    @property
    def is_syncing(self) -> bool:
        return self._sync_depth > 0 or self.queue.is_processing

    @property
    def sync_error(self) -> SyncApiError | None:
        """The last failure that sync could not recover from on its own."""
        return self._sync_error or self.queue.last_error

    @property
    def conflicts(self) -> list[SyncConflict]:
        return self.queue.conflicts

    def resolve_conflict(self, doc_id: str, resolution: ConflictResolution) -> LocalDocument | None:
        """Keep the local copy, the server copy or both for a recorded conflict."""
        return self.queue.resolve_conflict(doc_id, resolution)

    @property
    def running(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the store and the channel, then connect."""
        if self._started:
            return
        self._started = True
        self._unsubscribers = [
            self.store.subscribe(
                self._on_session_change, [ChangeTopic.OPEN_SET, ChangeTopic.ACTIVE_DOCUMENT]
            ),
            self.store.subscribe(self._on_local_change, [ChangeTopic.DOCUMENTS, ChangeTopic.FOLDERS]),
            self.store.subscribe(self._on_settings_change, [ChangeTopic.SETTINGS]),
        ]
        for event_type in EVENT_MODELS:
            self._unsubscribers.append(self.channel.on_event(event_type, self._on_event))
        self.channel.connect()
        if self.auto_sync_interval_seconds > 0:
            self._auto_sync_task = asyncio.get_running_loop().create_task(self._auto_sync_loop())
        logger.info("Sync started for device %s", self.channel.get_device_id())

    def stop(self) -> None:
        """Tear everything down synchronously.

        Unsubscribes every listener, cancels timers and handler tasks and
        disconnects the channel. Queued pushes are kept.
        """
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._session_debounce.close()
        self._settings_debounce.close()
        self.queue.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._auto_sync_task is not None:
            self._auto_sync_task.cancel()
            self._auto_sync_task = None
        self._pending_fetches.clear()
        self.channel.disconnect()
        if self._started:
            logger.info("Sync stopped")
        self._started = False

    async def logout(self) -> None:
        """Stop syncing and forget everything tied to the signed-in user."""
        self.stop()
        await self.channel.wait_closed()
        self.queue.clear()
        self.queue.conflicts.clear()
        self.store.clear_locally_closed()
        self._remotely_deleted.clear()
        self._last_pushed = None
        self._settings_dirty = False
        self._sync_error = None
        self.last_synced_at = None
        self.api.set_token(None)
        self.channel.set_token(None)

    def set_token(self, token: str | None) -> None:
        """Swap credentials and let a queue blocked on authorization run again."""
        self.api.set_token(token)
        self.channel.set_token(token)
        self._sync_error = None
        self.queue.resume()

    async def drain(self) -> None:
        """Wait until pending session and settings pushes and every handler task are done."""
        while self._tasks or self._session_debounce.pending or self._settings_debounce.pending:
            await self._session_debounce.wait()
            await self._settings_debounce.wait()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync handler failed", exc_info=exc)

    # ------------------------------------------------------------------
    # Local changes
    # ------------------------------------------------------------------

    def _on_session_change(self, change: StoreChange) -> None:
        self._session_debounce.schedule()

    def _session_snapshot(self) -> SessionSnapshot:
        return (tuple(self.store.open_document_ids), self.store.active_document_id)

    async def push_session_state(self) -> None:
        """Push the open set and active document unless unchanged since the last push."""
        snapshot = self._session_snapshot()
        if snapshot == self._last_pushed:
            return
        previous = self._last_pushed
        self._last_pushed = snapshot
        try:
            await self.api.session.update(list(snapshot[0]), snapshot[1])
        except SyncApiError as exc:
            self._last_pushed = previous
            logger.warning("Session push failed: %s", exc)
            return
        logger.debug("Pushed session state (%d open)", len(snapshot[0]))

    def _on_settings_change(self, change: StoreChange) -> None:
        if change.origin != ChangeOrigin.LOCAL:
            return
        self._settings_dirty = True
        self._settings_debounce.schedule()

    async def push_settings(self) -> None:
        """Push the local settings; the server merges them over its copy."""
        if not self._settings_dirty:
            return
        self._settings_dirty = False
        try:
            await self.api.settings.update(self.store.settings)
        except SyncApiError as exc:
            self._settings_dirty = True
            logger.warning("Settings push failed: %s", exc)
            return
        logger.debug("Pushed settings")

    async def fetch_settings(self) -> None:
        """Merge the server's settings into the store.

        Local settings not yet pushed win over the server copy.
        """
        try:
            response = await self.api.settings.fetch()
        except SyncApiError as exc:
            logger.warning("Settings fetch failed: %s", exc)
            return
        local = self.store.settings if self._settings_dirty else {}
        self.store.update_settings({**response.settings, **local}, origin=ChangeOrigin.REMOTE)

    def _on_local_change(self, change: StoreChange) -> None:
        if change.origin != ChangeOrigin.LOCAL or change.entity_id is None:
            return

        if change.topic == ChangeTopic.FOLDERS:
            if change.kind == ChangeKind.DELETED:
                self.queue.enqueue_folder_delete(change.entity_id)
            else:
                self.queue.enqueue_folder_upsert(change.entity_id)
            return

        if change.kind == ChangeKind.DELETED:
            self.queue.enqueue_document_delete(change.entity_id)
        elif change.kind in (ChangeKind.CREATED, ChangeKind.UPDATED):
            doc = self.store.get_document(change.entity_id)
            # Provider documents are saved to their provider instead.
            if doc is not None and doc.source == DocumentSource.LOCAL:
                self.queue.enqueue_document_upsert(change.entity_id)

    # ------------------------------------------------------------------
    # Realtime events
    # ------------------------------------------------------------------

    def _is_own(self, event: ChannelEvent) -> bool:
        return event.origin_device_id is not None and event.origin_device_id == self.channel.get_device_id()

    def _on_event(self, event: ChannelEvent) -> None:
        if isinstance(event, ConnectedEvent):
            self._spawn(self.initial_sync())
        elif isinstance(event, HeartbeatEvent):
            pass
        elif isinstance(event, DocumentUpdatedEvent):
            self._spawn(self.handle_document_updated(event))
        elif isinstance(event, DocumentDeletedEvent):
            self._spawn(self.handle_document_deleted(event))
        elif isinstance(event, SessionUpdatedEvent):
            self._spawn(self.handle_session_updated(event))
        elif isinstance(event, FolderUpdatedEvent):
            self._spawn(self.handle_folder_updated(event))
        elif isinstance(event, FolderDeletedEvent):
            self._spawn(self.handle_folder_deleted(event))
        elif isinstance(event, SettingsUpdatedEvent):
            self._spawn(self.handle_settings_updated(event))
        else:
            logger.error("Unhandled realtime event: %r", event)

    async def handle_document_updated(self, event: DocumentUpdatedEvent) -> None:
        if self._is_own(event):
            return
        doc_id = event.document_id
        self._remotely_deleted.discard(doc_id)

        local = self.store.get_document(doc_id)
        if local is not None and local.sync_version >= event.sync_version:
            logger.debug(
                "Document %s already at version %d (event %d)", doc_id, local.sync_version, event.sync_version,
            )
            return
        await self._load_document(doc_id, event.sync_version)

    async def handle_document_deleted(self, event: DocumentDeletedEvent) -> None:
        if self._is_own(event):
            return
        self._apply_remote_deletion(event.document_id)

    async def handle_session_updated(self, event: SessionUpdatedEvent) -> None:
        if self._is_own(event):
            return
        await self.load_missing_documents(event.open_document_ids)

    async def handle_folder_updated(self, event: FolderUpdatedEvent) -> None:
        if self._is_own(event):
            return
        folder_id = event.folder_id
        try:
            response = await self.api.folders.fetch()
        except SyncApiError as exc:
            logger.warning("Could not refetch folder %s: %s", folder_id, exc)
            return

        server_folder = next((f for f in response.folders if f.id == folder_id), None)
        if server_folder is not None and server_folder.deleted_at is None:
            self.store.upsert_folder(server_folder)
        elif self.store.get_folder(folder_id) is not None:
            logger.info("Folder %s is gone on the server, removing it locally", folder_id)
            self.store.delete_folder(folder_id, origin=ChangeOrigin.REMOTE)

    async def handle_folder_deleted(self, event: FolderDeletedEvent) -> None:
        if self._is_own(event):
            return
        self.queue.discard(EntityType.FOLDER, event.folder_id)
        if self.store.get_folder(event.folder_id) is not None:
            self.store.delete_folder(event.folder_id, origin=ChangeOrigin.REMOTE)

    async def handle_settings_updated(self, event: SettingsUpdatedEvent) -> None:
        if self._is_own(event):
            return
        await self.fetch_settings()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def initial_sync(self) -> None:
        """Pull the folder tree and session snapshot for a new connection."""
        self._sync_depth += 1
        try:
            folders, session = await asyncio.gather(self.api.folders.fetch(), self.api.session.fetch())
        except SyncApiError as exc:
            logger.error("Initial sync failed: %s", exc)
            self._sync_error = exc
            return
        finally:
            self._sync_depth -= 1

        self.store.replace_folders(folders.folders, keep=self.queue.pending_ids(EntityType.FOLDER))
        self._last_pushed = (tuple(session.open_document_ids), session.active_document_id)
        logger.info(
            "Initial sync: %d folders, %d open documents on server",
            len(folders.folders), len(session.open_document_ids),
        )
        await self.load_missing_documents(session.open_document_ids)
        await self.fetch_settings()
        if len(self.queue):
            self._spawn(self.queue.process_queue())

    async def load_missing_documents(self, document_ids: list[str]) -> None:
        """Fetch documents open elsewhere that are not open here.

        Documents the user closed on this device are left closed.
        """
        missing = [
            doc_id
            for doc_id in dict.fromkeys(document_ids)
            if self.store.get_document(doc_id) is None
            and not self.store.is_locally_closed(doc_id)
            and doc_id not in self._remotely_deleted
        ]
        if missing:
            await asyncio.gather(*(self._load_document(doc_id, None) for doc_id in missing))

    async def _load_document(self, doc_id: str, version: int | None) -> None:
        """Fetch and apply one document; at most one fetch per document/version at a time."""
        key = (doc_id, version)
        if key in self._pending_fetches:
            logger.debug("Fetch of %s (version %s) already in flight", doc_id, version)
            return
        self._pending_fetches.add(key)
        try:
            server_doc = await self._fetch_document(doc_id)
        finally:
            self._pending_fetches.discard(key)
        if server_doc is None:
            return
        if version is None and self.store.is_locally_closed(doc_id):
            return
        self._apply_server_document(server_doc)

    async def _fetch_document(self, doc_id: str) -> SyncDocument | None:
        """GET a document, retrying transient failures with a fixed delay.

        Returns None when the document is gone or every attempt failed.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.fetch_attempts),
            wait=wait_fixed(self.fetch_delay_seconds),
            retry=retry_if_exception(_is_transient),
            sleep=self._retry_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.api.documents.get(doc_id)
        except SyncApiError as exc:
            if exc.kind == SyncErrorKind.NOT_FOUND:
                logger.info("Document %s not found on server, treating as deleted", doc_id)
                self._apply_remote_deletion(doc_id)
                return None
            logger.error("Failed to fetch document %s: %s", doc_id, exc)
            self._sync_error = exc
            return None
        return None

    def _apply_server_document(self, server_doc: SyncDocument) -> None:
        if server_doc.deleted_at is not None:
            self._apply_remote_deletion(server_doc.id)
            return
        if server_doc.id in self._remotely_deleted:
            logger.debug("Dropping late copy of deleted document %s", server_doc.id)
            return
        if self.store.add_synced_document(server_doc) is not None:
            self.queue.remember_version(server_doc.id, server_doc.sync_version)

    def _apply_remote_deletion(self, doc_id: str) -> None:
        self._remotely_deleted.add(doc_id)
        self.queue.discard(EntityType.DOCUMENT, doc_id)
        if self.store.get_document(doc_id) is not None:
            self.store.close_document(doc_id, by_user=False, origin=ChangeOrigin.REMOTE)
            logger.info("Closed document %s deleted on another device", doc_id)

    # ------------------------------------------------------------------
    # Pull sync
    # ------------------------------------------------------------------

    async def sync_all(self) -> bool:
        """Pull documents and folders changed since the last pull.

        Open documents with a pending push are left alone; the push still
        claims the version it was edited from, so a newer server copy comes
        back as a conflict. Returns False if the pull failed.
        """
        since = self.last_synced_at
        self._sync_depth += 1
        try:
            documents = await self.api.documents.fetch(since=since)
            folders = await self.api.folders.fetch(since=since)
        except SyncApiError as exc:
            logger.warning("Pull sync failed: %s", exc)
            self._sync_error = exc
            return False
        finally:
            self._sync_depth -= 1

        if since is None:
            self.store.replace_folders(folders.folders, keep=self.queue.pending_ids(EntityType.FOLDER))
        else:
            for server_folder in folders.folders:
                if server_folder.deleted_at is None:
                    self.store.upsert_folder(server_folder)
                elif self.store.get_folder(server_folder.id) is not None:
                    self.store.delete_folder(server_folder.id, origin=ChangeOrigin.REMOTE)

        pending = self.queue.pending_ids(EntityType.DOCUMENT)
        for server_doc in documents.documents:
            if server_doc.deleted_at is not None:
                self._apply_remote_deletion(server_doc.id)
            elif self.store.get_document(server_doc.id) is not None and server_doc.id not in pending:
                if self.store.add_synced_document(server_doc) is not None:
                    self.queue.remember_version(server_doc.id, server_doc.sync_version)

        self.last_synced_at = documents.synced_at
        self._sync_error = None
        logger.info(
            "Pulled %d documents, %d folders%s",
            len(documents.documents), len(folders.folders), " (incremental)" if since else "",
        )
        return True

    async def sync_now(self) -> bool:
        """Push everything queued, then pull."""
        await self.queue.process_queue()
        return await self.sync_all()

    async def _auto_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.auto_sync_interval_seconds)
            if not self.channel.is_connected():
                continue
            try:
                await self.sync_now()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Automatic sync failed", exc_info=True)
