"""Folder repository."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from markview.db.exceptions import ConnectionError, DatabaseError
from markview.db.models import Folder
from markview.db.repositories import document_repo

logger = logging.getLogger(__name__)


async def get_folders_by_user(
    db: AsyncSession,
    user_id: str,
    since: datetime | None = None,
) -> list[Folder]:
    """List a user's folders ordered by sort_order then name.

    With ``since`` the listing is incremental and includes tombstones.
    """
    try:
        query = select(Folder).where(Folder.user_id == user_id)
        if since is None:
            query = query.where(Folder.deleted_at.is_(None))
        else:
            query = query.where(or_(Folder.updated_at > since, Folder.deleted_at > since))
        result = await db.execute(query.order_by(Folder.sort_order, Folder.name))
        return list(result.scalars().all())
    except OperationalError as e:
        logger.error(f"Database connection error in get_folders_by_user for user {user_id}: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting folders for user {user_id}: {e}")
        raise DatabaseError(f"Failed to get folders: {e}") from e


async def get_folder_by_id(db: AsyncSession, folder_id: str, user_id: str) -> Folder | None:
    """Get a single folder (tombstones included) scoped to a user."""
    try:
        result = await db.execute(
            select(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        )
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error(f"Database connection error in get_folder_by_id: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting folder {folder_id}: {e}")
        raise DatabaseError(f"Failed to get folder: {e}") from e


async def upsert_folder(
    db: AsyncSession,
    user_id: str,
    folder_id: str,
    data: dict[str, Any],
) -> tuple[Folder, bool]:
    """Create or update a folder (last write wins). Returns ``(folder, created)``."""
    try:
        existing = await get_folder_by_id(db, folder_id, user_id)
        now = datetime.utcnow()

        if existing is None:
            folder = Folder(
                id=folder_id,
                user_id=user_id,
                name=data["name"],
                parent_id=data.get("parent_id"),
                color=data.get("color"),
                icon=data.get("icon"),
                sort_order=data.get("sort_order") or 0,
                created_at=now,
                updated_at=now,
            )
            db.add(folder)
            await db.flush()
            await db.refresh(folder)
            return folder, True

        existing.name = data["name"]
        existing.parent_id = data.get("parent_id")
        existing.color = data.get("color")
        existing.icon = data.get("icon")
        if data.get("sort_order") is not None:
            existing.sort_order = data["sort_order"]
        existing.updated_at = now
        existing.deleted_at = None
        await db.flush()
        await db.refresh(existing)
        return existing, False
    except OperationalError as e:
        logger.error(f"Database connection error in upsert_folder: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error upserting folder {folder_id}: {e}")
        raise DatabaseError(f"Failed to upsert folder: {e}") from e


async def soft_delete_folder(db: AsyncSession, folder_id: str, user_id: str) -> Folder | None:
    """Tombstone a folder after moving its documents and child folders to root."""
    try:
        folder = await get_folder_by_id(db, folder_id, user_id)
        if folder is None or folder.deleted_at is not None:
            return None

        moved = await document_repo.move_documents_to_root(db, user_id, folder_id)
        now = datetime.utcnow()
        await db.execute(
            update(Folder)
            .where(Folder.user_id == user_id, Folder.parent_id == folder_id)
            .values(parent_id=None, updated_at=now)
        )
        folder.deleted_at = now
        folder.updated_at = now
        await db.flush()
        await db.refresh(folder)
        logger.info("Deleted folder %s (%d documents moved to root)", folder_id, moved)
        return folder
    except OperationalError as e:
        logger.error(f"Database connection error in soft_delete_folder: {e}")
        raise ConnectionError("Database connection failed") from e
    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error deleting folder {folder_id}: {e}")
        raise DatabaseError(f"Failed to delete folder: {e}") from e


async def count_live_folders(db: AsyncSession, user_id: str) -> int:
    """Count folders that are not tombstoned."""
    try:
        result = await db.execute(
            select(func.count(Folder.id)).where(
                Folder.user_id == user_id, Folder.deleted_at.is_(None)
            )
        )
        return int(result.scalar_one())
    except OperationalError as e:
        logger.error(f"Database connection error in count_live_folders: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error counting folders for user {user_id}: {e}")
        raise DatabaseError(f"Failed to count folders: {e}") from e


async def purge_tombstones_before(db: AsyncSession, cutoff: datetime) -> int:
    """Hard-delete folders tombstoned before ``cutoff``. Returns count."""
    try:
        result = await db.execute(
            delete(Folder).where(Folder.deleted_at.is_not(None), Folder.deleted_at < cutoff)
        )
        await db.flush()
        return int(result.rowcount or 0)  # type: ignore[union-attr]
    except OperationalError as e:
        logger.error(f"Database connection error in purge_tombstones_before: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error purging folder tombstones: {e}")
        raise DatabaseError(f"Failed to purge folders: {e}") from e
