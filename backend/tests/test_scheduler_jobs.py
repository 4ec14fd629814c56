"""Tests for the background scheduler jobs."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from markview.sse.connection_manager import ConnectionManager


class FakeSession:
    """Minimal async context-manager that acts like AsyncSession."""

    def __init__(self):
        self.committed = False

    async def commit(self):
        self.committed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


# ---------------------------------------------------------------------------
# Job 1: send_heartbeats_job
# ---------------------------------------------------------------------------


async def test_heartbeat_job_reaches_every_connection():
    from markview.services.scheduler import send_heartbeats_job

    manager = ConnectionManager()
    laptop = manager.add_connection("user-1", "laptop")
    phone = manager.add_connection("user-2", "phone")

    with patch("markview.services.scheduler.get_connection_manager", return_value=manager):
        await send_heartbeats_job()

    assert laptop.queue.get_nowait().event == "heartbeat"
    assert phone.queue.get_nowait().event == "heartbeat"


# ---------------------------------------------------------------------------
# Job 2: cleanup_stale_connections_job
# ---------------------------------------------------------------------------


async def test_cleanup_job_uses_configured_stale_window():
    from markview.services.scheduler import cleanup_stale_connections_job

    manager = MagicMock()
    manager.cleanup_stale.return_value = 2

    with patch("markview.services.scheduler.get_connection_manager", return_value=manager), \
         patch("markview.services.scheduler.settings") as mock_settings:
        mock_settings.sse_stale_seconds = 90
        await cleanup_stale_connections_job()

    manager.cleanup_stale.assert_called_once_with(90)


# ---------------------------------------------------------------------------
# Job 3: purge_tombstones_job
# ---------------------------------------------------------------------------


@patch("markview.db.repositories.folder_repo.purge_tombstones_before", new_callable=AsyncMock)
@patch("markview.db.repositories.document_repo.purge_tombstones_before", new_callable=AsyncMock)
async def test_purge_job_deletes_old_tombstones(mock_docs, mock_folders):
    from markview.services.scheduler import purge_tombstones_job

    mock_docs.return_value = 3
    mock_folders.return_value = 1
    session = FakeSession()

    with patch("markview.db.database.async_session_factory", return_value=session), \
         patch("markview.services.scheduler.settings") as mock_settings:
        mock_settings.retention_cleanup_enabled = True
        mock_settings.tombstone_retention_days = 30
        await purge_tombstones_job()

    assert session.committed
    cutoff = mock_docs.call_args.args[1]
    assert cutoff.tzinfo is None
    expected = datetime.utcnow() - timedelta(days=30)
    assert abs((cutoff - expected).total_seconds()) < 5
    assert mock_folders.call_args.args[1] == cutoff


@patch("markview.db.repositories.document_repo.purge_tombstones_before", new_callable=AsyncMock)
async def test_purge_job_respects_disabled_flag(mock_docs):
    from markview.services.scheduler import purge_tombstones_job

    with patch("markview.services.scheduler.settings") as mock_settings:
        mock_settings.retention_cleanup_enabled = False
        await purge_tombstones_job()

    mock_docs.assert_not_called()


@patch("markview.db.repositories.document_repo.purge_tombstones_before", new_callable=AsyncMock)
async def test_purge_job_logs_failures(mock_docs, caplog):
    from markview.services.scheduler import purge_tombstones_job

    mock_docs.side_effect = RuntimeError("db down")
    session = FakeSession()

    with patch("markview.db.database.async_session_factory", return_value=session), \
         patch("markview.services.scheduler.settings") as mock_settings:
        mock_settings.retention_cleanup_enabled = True
        mock_settings.tombstone_retention_days = 30
        await purge_tombstones_job()

    assert not session.committed
    assert "Failed to run tombstone cleanup" in caplog.text


# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_and_stop_scheduler():
    from markview.services.scheduler import get_scheduler, start_scheduler, stop_scheduler

    scheduler = start_scheduler()
    try:
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"send_heartbeats", "cleanup_stale_connections", "purge_tombstones"}
        assert start_scheduler() is scheduler
        assert get_scheduler() is scheduler
    finally:
        stop_scheduler()
    assert get_scheduler() is None
