"""Document repository: the per-document sync version ledger."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from markview.db.exceptions import ConnectionError, DatabaseError, VersionConflictError
from markview.db.models import Document

logger = logging.getLogger(__name__)


async def get_documents_by_user(
    db: AsyncSession,
    user_id: str,
    since: datetime | None = None,
) -> list[Document]:
    """List a user's documents, newest first.

    Without ``since`` only live documents are returned. With ``since`` the
    result is incremental and includes tombstones deleted after ``since``.
    """
    try:
        query = select(Document).where(Document.user_id == user_id)
        if since is None:
            query = query.where(Document.deleted_at.is_(None))
        else:
            query = query.where(
                or_(Document.updated_at > since, Document.deleted_at > since)
            )
        result = await db.execute(query.order_by(Document.updated_at.desc()))
        return list(result.scalars().all())
    except OperationalError as e:
        logger.error(f"Database connection error in get_documents_by_user for user {user_id}: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting documents for user {user_id}: {e}")
        raise DatabaseError(f"Failed to get documents: {e}") from e


async def get_document_by_id(
    db: AsyncSession,
    doc_id: str,
    user_id: str,
    *,
    for_update: bool = False,
) -> Document | None:
    """Get a single document (tombstones included) scoped to a user."""
    try:
        query = select(Document).where(Document.id == doc_id, Document.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error(f"Database connection error in get_document_by_id: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting document {doc_id}: {e}")
        raise DatabaseError(f"Failed to get document: {e}") from e


async def upsert_document(
    db: AsyncSession,
    user_id: str,
    doc_id: str,
    data: dict[str, Any],
) -> tuple[Document, bool]:
    """Create or update a document under optimistic concurrency.

    Returns ``(document, created)``. Raises VersionConflictError when the
    submitted ``sync_version`` is older than the stored one. Every update
    increments the stored version and clears any tombstone.
    """
    submitted_version = data.get("sync_version")
    try:
        existing = await get_document_by_id(db, doc_id, user_id, for_update=True)
        now = datetime.utcnow()

        if existing is None:
            doc = Document(
                id=doc_id,
                user_id=user_id,
                name=data["name"],
                content=data.get("content", ""),
                folder_id=data.get("folder_id"),
                is_manually_named=data.get("is_manually_named") or False,
                cursor=data.get("cursor"),
                scroll=data.get("scroll"),
                sync_version=1,
                created_at=now,
                updated_at=now,
                synced_at=now,
            )
            db.add(doc)
            await db.flush()
            await db.refresh(doc)
            logger.info("Created document %s for user %s", doc_id, user_id)
            return doc, True

        if submitted_version and existing.sync_version > submitted_version:
            logger.info(
                "Version conflict on document %s: submitted %d, stored %d",
                doc_id, submitted_version, existing.sync_version,
            )
            raise VersionConflictError(existing.sync_version, existing)

        existing.name = data["name"]
        existing.content = data.get("content", "")
        existing.folder_id = data.get("folder_id")
        if data.get("is_manually_named") is not None:
            existing.is_manually_named = data["is_manually_named"]
        existing.cursor = data.get("cursor")
        existing.scroll = data.get("scroll")
        existing.sync_version = existing.sync_version + 1
        existing.updated_at = now
        existing.synced_at = now
        existing.deleted_at = None
        await db.flush()
        await db.refresh(existing)
        return existing, False
    except VersionConflictError:
        raise
    except OperationalError as e:
        logger.error(f"Database connection error in upsert_document: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error upserting document {doc_id}: {e}")
        raise DatabaseError(f"Failed to upsert document: {e}") from e


async def soft_delete_document(db: AsyncSession, doc_id: str, user_id: str) -> Document | None:
    """Tombstone a live document. Returns None if there was nothing to delete."""
    try:
        doc = await get_document_by_id(db, doc_id, user_id, for_update=True)
        if doc is None or doc.deleted_at is not None:
            return None
        now = datetime.utcnow()
        doc.deleted_at = now
        doc.updated_at = now
        await db.flush()
        await db.refresh(doc)
        return doc
    except OperationalError as e:
        logger.error(f"Database connection error in soft_delete_document: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error deleting document {doc_id}: {e}")
        raise DatabaseError(f"Failed to delete document: {e}") from e


async def move_documents_to_root(db: AsyncSession, user_id: str, folder_id: str) -> int:
    """Detach every document of ``folder_id``. Returns the number moved."""
    try:
        result = await db.execute(
            update(Document)
            .where(Document.user_id == user_id, Document.folder_id == folder_id)
            .values(folder_id=None)
        )
        await db.flush()
        return int(result.rowcount or 0)  # type: ignore[union-attr]
    except OperationalError as e:
        logger.error(f"Database connection error in move_documents_to_root: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error moving documents out of folder {folder_id}: {e}")
        raise DatabaseError(f"Failed to move documents: {e}") from e


async def count_live_documents(db: AsyncSession, user_id: str) -> int:
    """Count documents that are not tombstoned."""
    try:
        result = await db.execute(
            select(func.count(Document.id)).where(
                Document.user_id == user_id, Document.deleted_at.is_(None)
            )
        )
        return int(result.scalar_one())
    except OperationalError as e:
        logger.error(f"Database connection error in count_live_documents: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error counting documents for user {user_id}: {e}")
        raise DatabaseError(f"Failed to count documents: {e}") from e


async def purge_tombstones_before(db: AsyncSession, cutoff: datetime) -> int:
    """Hard-delete documents tombstoned before ``cutoff``. Returns count."""
    try:
        result = await db.execute(
            delete(Document).where(
                Document.deleted_at.is_not(None), Document.deleted_at < cutoff
            )
        )
        await db.flush()
        return int(result.rowcount or 0)  # type: ignore[union-attr]
    except OperationalError as e:
        logger.error(f"Database connection error in purge_tombstones_before: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error purging document tombstones: {e}")
        raise DatabaseError(f"Failed to purge documents: {e}") from e
