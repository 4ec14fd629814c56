"""Sync API: documents, folders, session state, settings and the realtime event stream."""

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from markview.api.dependencies import Connections, CurrentUserId, DbSession, OriginDeviceId
from markview.config import settings
from markview.db.exceptions import VersionConflictError
from markview.db.repositories import document_repo, folder_repo, session_repo, settings_repo
from markview.middleware.rate_limiter import limiter, sync_limit
from markview.models.events import (
    ConnectedEvent,
    DocumentDeletedEvent,
    DocumentUpdatedEvent,
    FolderDeletedEvent,
    FolderUpdatedEvent,
    HeartbeatEvent,
    SessionUpdatedEvent,
    SettingsUpdatedEvent,
    encode_event,
)
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
from markview.sse.connection_manager import ConnectionManager, SSEConnection, SSEMessage

logger = logging.getLogger(__name__)

router = APIRouter()


def _as_naive_utc(value: datetime | None) -> datetime | None:
    """Stored timestamps are naive UTC; normalise aware query values to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get("/documents", response_model=DocumentListResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def list_documents(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
    since: datetime | None = Query(default=None),
) -> DocumentListResponse:
    """All live documents, or everything changed after ``since`` (tombstones included)."""
    documents = await document_repo.get_documents_by_user(db, current_user, _as_naive_utc(since))
    return DocumentListResponse(
        documents=[SyncDocument.model_validate(d) for d in documents],
        synced_at=_now(),
    )


@router.get("/documents/{doc_id}", response_model=DocumentResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def get_document(
    request: Request,
    doc_id: str,
    current_user: CurrentUserId,
    db: DbSession,
) -> DocumentResponse:
    """Fetch one live document."""
    doc = await document_repo.get_document_by_id(db, doc_id, current_user)
    if doc is None or doc.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Document not found")
    return DocumentResponse(document=SyncDocument.model_validate(doc))


@router.put("/documents/{doc_id}", response_model=DocumentResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def put_document(
    request: Request,
    doc_id: str,
    body: DocumentUpsert,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
):
    """Create or update a document.

    A stale ``syncVersion`` yields 409 with the server copy. Creation
    answers 201; updates answer 200 with the incremented version.
    """
    if body.id != doc_id:
        raise HTTPException(status_code=400, detail="Document ID mismatch")

    data = body.model_dump(exclude={"id"})
    try:
        doc, created = await document_repo.upsert_document(db, current_user, doc_id, data)
    except VersionConflictError as exc:
        conflict = ConflictResponse(
            server_version=exc.server_version,
            server_document=SyncDocument.model_validate(exc.server_record),
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=conflict.to_wire())

    await db.commit()
    synced = SyncDocument.model_validate(doc)
    connections.broadcast(
        current_user,
        DocumentUpdatedEvent(
            document_id=synced.id,
            sync_version=synced.sync_version,
            updated_at=synced.updated_at,
        ),
        origin_device,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=DocumentResponse(document=synced).to_wire(),
    )


@router.delete("/documents/{doc_id}", response_model=DocumentDeleteResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def delete_document(
    request: Request,
    doc_id: str,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
) -> DocumentDeleteResponse:
    """Soft-delete a document."""
    doc = await document_repo.soft_delete_document(db, doc_id, current_user)
    if doc is None:
        raise HTTPException(status_code=404, detail="Document not found")

    await db.commit()
    connections.broadcast(current_user, DocumentDeletedEvent(document_id=doc_id), origin_device)
    return DocumentDeleteResponse(document=SyncDocument.model_validate(doc))


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

@router.get("/folders", response_model=FolderListResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def list_folders(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
    since: datetime | None = Query(default=None),
) -> FolderListResponse:
    """All live folders, or everything changed after ``since``."""
    folders = await folder_repo.get_folders_by_user(db, current_user, _as_naive_utc(since))
    return FolderListResponse(
        folders=[SyncFolder.model_validate(f) for f in folders],
        synced_at=_now(),
    )


@router.put("/folders/{folder_id}", response_model=FolderResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def put_folder(
    request: Request,
    folder_id: str,
    body: FolderUpsert,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
):
    """Create or update a folder (last write wins)."""
    if body.id != folder_id:
        raise HTTPException(status_code=400, detail="Folder ID mismatch")

    folder, created = await folder_repo.upsert_folder(
        db, current_user, folder_id, body.model_dump(exclude={"id"})
    )
    await db.commit()
    synced = SyncFolder.model_validate(folder)
    connections.broadcast(
        current_user,
        FolderUpdatedEvent(folder_id=synced.id, updated_at=synced.updated_at),
        origin_device,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=FolderResponse(folder=synced).to_wire(),
    )


@router.delete("/folders/{folder_id}", response_model=FolderDeleteResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def delete_folder(
    request: Request,
    folder_id: str,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
) -> FolderDeleteResponse:
    """Soft-delete a folder. Its documents and child folders move to root."""
    folder = await folder_repo.soft_delete_folder(db, folder_id, current_user)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")

    await db.commit()
    connections.broadcast(current_user, FolderDeletedEvent(folder_id=folder_id), origin_device)
    return FolderDeleteResponse(folder=SyncFolder.model_validate(folder))


# ---------------------------------------------------------------------------
# Status + session
# ---------------------------------------------------------------------------

@router.get("/status", response_model=SyncStatusResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def sync_status(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
) -> SyncStatusResponse:
    """Counts of live documents and folders."""
    return SyncStatusResponse(
        documents_count=await document_repo.count_live_documents(db, current_user),
        folders_count=await folder_repo.count_live_folders(db, current_user),
        timestamp=_now(),
    )


@router.get("/session", response_model=SessionStateResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def get_session_state(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
) -> SessionStateResponse:
    """The user's shared open-document set (empty if never saved)."""
    state = await session_repo.get_session_state(db, current_user)
    if state is None:
        return SessionStateResponse()
    return SessionStateResponse.model_validate(state)


@router.put("/session", response_model=SessionStateResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def put_session_state(
    request: Request,
    body: SessionStateUpdate,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
) -> SessionStateResponse:
    """Replace the user's open-document set and notify their other devices."""
    state = await session_repo.upsert_session_state(
        db, current_user, body.open_document_ids, body.active_document_id
    )
    await db.commit()
    response = SessionStateResponse.model_validate(state)
    connections.broadcast(
        current_user,
        SessionUpdatedEvent(
            open_document_ids=response.open_document_ids,
            active_document_id=response.active_document_id,
            updated_at=response.updated_at,
        ),
        origin_device,
    )
    return response


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@router.get("/settings", response_model=SettingsResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def get_settings(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
) -> SettingsResponse:
    """The user's stored settings (empty if never saved)."""
    row = await settings_repo.get_user_settings(db, current_user)
    if row is None:
        return SettingsResponse()
    return SettingsResponse(settings=row.settings or {}, updated_at=row.updated_at)


@router.put("/settings", response_model=SettingsResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def put_settings(
    request: Request,
    body: SettingsUpdate,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
):
    """Merge top-level keys over the stored settings and notify other devices."""
    row, created = await settings_repo.merge_user_settings(db, current_user, body.settings)
    await db.commit()
    response = SettingsResponse(settings=row.settings, updated_at=row.updated_at)
    connections.broadcast(current_user, SettingsUpdatedEvent(updated_at=row.updated_at), origin_device)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=response.to_wire(),
    )


@router.delete("/settings", response_model=SettingsDeleteResponse, response_model_by_alias=True)
@limiter.limit(sync_limit)
async def delete_settings(
    request: Request,
    current_user: CurrentUserId,
    db: DbSession,
    connections: Connections,
    origin_device: OriginDeviceId,
) -> SettingsDeleteResponse:
    """Reset the user's settings to defaults."""
    if await settings_repo.delete_user_settings(db, current_user):
        await db.commit()
        connections.broadcast(current_user, SettingsUpdatedEvent(updated_at=_now()), origin_device)
    return SettingsDeleteResponse()


# ---------------------------------------------------------------------------
# Realtime stream
# ---------------------------------------------------------------------------

async def _event_stream(
    request: Request,
    manager: ConnectionManager,
    connection: SSEConnection,
) -> AsyncIterator[str]:
    """Yield SSE frames for one connection until the client goes away."""
    try:
        connected = ConnectedEvent(
            connection_id=connection.id,
            device_id=connection.device_id,
            user_id=connection.user_id,
        )
        yield SSEMessage(event=connected.event_type, data=encode_event(connected)).encode()

        while manager.get_connection(connection.id) is not None:
            try:
                message = await asyncio.wait_for(
                    connection.queue.get(), timeout=settings.sse_heartbeat_seconds
                )
            except TimeoutError:
                if await request.is_disconnected():
                    break
                continue
            yield message.encode()
            if message.event == HeartbeatEvent.event_type:
                manager.mark_heartbeat(connection.id)
    except asyncio.CancelledError:
        logger.debug("SSE stream cancelled for connection %s", connection.id)
        raise
    finally:
        manager.remove_connection(connection.id)


@router.get("/sse")
async def event_stream(
    request: Request,
    current_user: CurrentUserId,
    connections: Connections,
    device_id: str = Query(alias="deviceId", min_length=1, max_length=128),
) -> StreamingResponse:
    """Open the realtime channel for this user and device."""
    connection = connections.add_connection(current_user, device_id)
    return StreamingResponse(
        _event_stream(request, connections, connection),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
