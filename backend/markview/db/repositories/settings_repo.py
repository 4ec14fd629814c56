"""User settings repository (one row per user, shallow-merged on write)."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from markview.db.exceptions import ConnectionError, DatabaseError
from markview.db.models import UserSettings

logger = logging.getLogger(__name__)


async def get_user_settings(db: AsyncSession, user_id: str) -> UserSettings | None:
    """Get the stored settings row for a user, if any."""
    try:
        result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error(f"Database connection error in get_user_settings: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting settings for user {user_id}: {e}")
        raise DatabaseError(f"Failed to get settings: {e}") from e


async def merge_user_settings(
    db: AsyncSession,
    user_id: str,
    values: dict[str, Any],
) -> tuple[UserSettings, bool]:
    """Shallow-merge ``values`` over the stored settings.

    Top-level keys in ``values`` replace stored ones; other stored keys are
    kept. Returns ``(row, created)``.
    """
    try:
        row = await get_user_settings(db, user_id)
        created = row is None
        if row is None:
            row = UserSettings(user_id=user_id, settings={})
            db.add(row)
        # Assign a new dict so the JSON column is flagged dirty.
        row.settings = {**(row.settings or {}), **values}
        row.updated_at = datetime.utcnow()
        await db.flush()
        await db.refresh(row)
        return row, created
    except OperationalError as e:
        logger.error(f"Database connection error in merge_user_settings: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error saving settings for user {user_id}: {e}")
        raise DatabaseError(f"Failed to save settings: {e}") from e


async def delete_user_settings(db: AsyncSession, user_id: str) -> bool:
    """Drop a user's settings so every device falls back to defaults."""
    try:
        result = await db.execute(delete(UserSettings).where(UserSettings.user_id == user_id))
        await db.flush()
        return bool(result.rowcount)  # type: ignore[union-attr]
    except OperationalError as e:
        logger.error(f"Database connection error in delete_user_settings: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error deleting settings for user {user_id}: {e}")
        raise DatabaseError(f"Failed to delete settings: {e}") from e
