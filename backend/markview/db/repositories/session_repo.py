"""Session state repository (one row per user)."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from markview.db.exceptions import ConnectionError, DatabaseError
from markview.db.models import SessionState

logger = logging.getLogger(__name__)


async def get_session_state(db: AsyncSession, user_id: str) -> SessionState | None:
    """Get the stored session state for a user, if any."""
    try:
        result = await db.execute(select(SessionState).where(SessionState.user_id == user_id))
        return result.scalar_one_or_none()
    except OperationalError as e:
        logger.error(f"Database connection error in get_session_state: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error getting session state for user {user_id}: {e}")
        raise DatabaseError(f"Failed to get session state: {e}") from e


async def upsert_session_state(
    db: AsyncSession,
    user_id: str,
    open_document_ids: list[str],
    active_document_id: str | None,
) -> SessionState:
    """Replace the user's session state."""
    try:
        state = await get_session_state(db, user_id)
        now = datetime.utcnow()
        if state is None:
            state = SessionState(user_id=user_id)
            db.add(state)
        state.open_document_ids = list(open_document_ids)
        state.active_document_id = active_document_id
        state.updated_at = now
        await db.flush()
        await db.refresh(state)
        return state
    except OperationalError as e:
        logger.error(f"Database connection error in upsert_session_state: {e}")
        raise ConnectionError("Database connection failed") from e
    except Exception as e:
        logger.error(f"Unexpected error saving session state for user {user_id}: {e}")
        raise DatabaseError(f"Failed to save session state: {e}") from e
