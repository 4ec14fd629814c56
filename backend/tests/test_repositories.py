"""Unit tests for the sync repositories."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from markview.db.exceptions import VersionConflictError
from markview.db.repositories import document_repo, folder_repo, session_repo, settings_repo

USER = "user-1"
OTHER_USER = "user-2"


def _doc(name: str = "Notes", content: str = "# Notes", **extra) -> dict:
    return {"name": name, "content": content, **extra}


# ---------------------------------------------------------------------------
# document_repo
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_document_creates_at_version_1(db: AsyncSession):
    doc, created = await document_repo.upsert_document(db, USER, "doc-1", _doc())
    assert created is True
    assert doc.sync_version == 1
    assert doc.synced_at is not None
    assert doc.deleted_at is None


@pytest.mark.asyncio
async def test_upsert_document_increments_version(db: AsyncSession):
    """Every accepted update bumps the server version by one."""
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    doc, created = await document_repo.upsert_document(
        db, USER, "doc-1", _doc(content="# Notes\nmore", sync_version=1)
    )
    assert created is False
    assert doc.sync_version == 2
    assert doc.content == "# Notes\nmore"

    doc, _ = await document_repo.upsert_document(db, USER, "doc-1", _doc(sync_version=2))
    assert doc.sync_version == 3


@pytest.mark.asyncio
async def test_upsert_document_without_version_is_accepted(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    await document_repo.upsert_document(db, USER, "doc-1", _doc(sync_version=1))
    doc, _ = await document_repo.upsert_document(db, USER, "doc-1", _doc(content="x"))
    assert doc.sync_version == 3


@pytest.mark.asyncio
async def test_upsert_document_stale_version_conflicts(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    for version in range(1, 5):
        await document_repo.upsert_document(db, USER, "doc-1", _doc(sync_version=version))

    with pytest.raises(VersionConflictError) as exc_info:
        await document_repo.upsert_document(db, USER, "doc-1", _doc(content="stale", sync_version=3))

    assert exc_info.value.server_version == 5
    assert exc_info.value.server_record.content == "# Notes"
    stored = await document_repo.get_document_by_id(db, "doc-1", USER)
    assert stored.sync_version == 5


@pytest.mark.asyncio
async def test_upsert_document_keeps_manual_name_flag_when_omitted(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc(is_manually_named=True))
    doc, _ = await document_repo.upsert_document(db, USER, "doc-1", _doc(sync_version=1))
    assert doc.is_manually_named is True


@pytest.mark.asyncio
async def test_upsert_document_stores_cursor_and_scroll(db: AsyncSession):
    doc, _ = await document_repo.upsert_document(
        db, USER, "doc-1",
        _doc(cursor={"line": 3, "column": 7}, scroll={"line": 1, "percentage": 0.5}),
    )
    assert doc.cursor == {"line": 3, "column": 7}
    assert doc.scroll["percentage"] == 0.5


@pytest.mark.asyncio
async def test_documents_are_scoped_to_user(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    assert await document_repo.get_document_by_id(db, "doc-1", OTHER_USER) is None
    assert await document_repo.get_documents_by_user(db, OTHER_USER) == []


@pytest.mark.asyncio
async def test_soft_delete_leaves_tombstone(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    deleted = await document_repo.soft_delete_document(db, "doc-1", USER)
    assert deleted is not None
    assert deleted.deleted_at is not None

    # Still readable by ID, but no longer listed or counted
    stored = await document_repo.get_document_by_id(db, "doc-1", USER)
    assert stored.deleted_at is not None
    assert await document_repo.get_documents_by_user(db, USER) == []
    assert await document_repo.count_live_documents(db, USER) == 0


@pytest.mark.asyncio
async def test_soft_delete_missing_or_already_deleted_returns_none(db: AsyncSession):
    assert await document_repo.soft_delete_document(db, "nope", USER) is None
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    await document_repo.soft_delete_document(db, "doc-1", USER)
    assert await document_repo.soft_delete_document(db, "doc-1", USER) is None


@pytest.mark.asyncio
async def test_upsert_clears_tombstone(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    await document_repo.soft_delete_document(db, "doc-1", USER)
    doc, created = await document_repo.upsert_document(db, USER, "doc-1", _doc(sync_version=1))
    assert created is False
    assert doc.deleted_at is None
    assert doc.sync_version == 2


@pytest.mark.asyncio
async def test_incremental_listing_includes_recent_tombstones(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "old", _doc())
    await document_repo.upsert_document(db, USER, "gone", _doc())
    since = datetime.utcnow() - timedelta(seconds=1)

    # Make "old" predate the cut-off
    old = await document_repo.get_document_by_id(db, "old", USER)
    old.updated_at = since - timedelta(hours=1)
    await db.flush()

    await document_repo.soft_delete_document(db, "gone", USER)
    await document_repo.upsert_document(db, USER, "new", _doc())

    changed = await document_repo.get_documents_by_user(db, USER, since)
    ids = {d.id for d in changed}
    assert ids == {"gone", "new"}
    assert next(d for d in changed if d.id == "gone").deleted_at is not None

    live = await document_repo.get_documents_by_user(db, USER)
    assert {d.id for d in live} == {"old", "new"}


@pytest.mark.asyncio
async def test_purge_tombstones_before(db: AsyncSession):
    await document_repo.upsert_document(db, USER, "doc-1", _doc())
    await document_repo.upsert_document(db, USER, "doc-2", _doc())
    deleted = await document_repo.soft_delete_document(db, "doc-1", USER)
    deleted.deleted_at = datetime.utcnow() - timedelta(days=40)
    await db.flush()

    purged = await document_repo.purge_tombstones_before(db, datetime.utcnow() - timedelta(days=30))
    assert purged == 1
    assert await document_repo.get_document_by_id(db, "doc-1", USER) is None
    assert await document_repo.get_document_by_id(db, "doc-2", USER) is not None


# ---------------------------------------------------------------------------
# folder_repo
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_folder_last_write_wins(db: AsyncSession):
    folder, created = await folder_repo.upsert_folder(db, USER, "f-1", {"name": "Work"})
    assert created is True
    folder, created = await folder_repo.upsert_folder(
        db, USER, "f-1", {"name": "Projects", "color": "#ff0000"}
    )
    assert created is False
    assert folder.name == "Projects"
    assert folder.color == "#ff0000"


@pytest.mark.asyncio
async def test_soft_delete_folder_moves_contents_to_root(db: AsyncSession):
    """Deleting a folder never orphans its documents or child folders."""
    await folder_repo.upsert_folder(db, USER, "parent", {"name": "Parent"})
    await folder_repo.upsert_folder(db, USER, "child", {"name": "Child", "parent_id": "parent"})
    await document_repo.upsert_document(db, USER, "doc-1", _doc(folder_id="parent"))
    await document_repo.upsert_document(db, USER, "doc-2", _doc(folder_id="child"))

    deleted = await folder_repo.soft_delete_folder(db, "parent", USER)
    assert deleted.deleted_at is not None

    doc_1 = await document_repo.get_document_by_id(db, "doc-1", USER)
    doc_2 = await document_repo.get_document_by_id(db, "doc-2", USER)
    child = await folder_repo.get_folder_by_id(db, "child", USER)
    await db.refresh(doc_1)
    await db.refresh(child)
    assert doc_1.folder_id is None
    assert doc_2.folder_id == "child"
    assert child.parent_id is None

    live = await folder_repo.get_folders_by_user(db, USER)
    assert [f.id for f in live] == ["child"]
    assert await folder_repo.count_live_folders(db, USER) == 1


@pytest.mark.asyncio
async def test_soft_delete_unknown_folder_returns_none(db: AsyncSession):
    assert await folder_repo.soft_delete_folder(db, "missing", USER) is None


# ---------------------------------------------------------------------------
# session_repo
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_session_state_round_trip(db: AsyncSession):
    assert await session_repo.get_session_state(db, USER) is None

    await session_repo.upsert_session_state(db, USER, ["a", "b"], "b")
    state = await session_repo.upsert_session_state(db, USER, ["b"], None)

    assert state.open_document_ids == ["b"]
    assert state.active_document_id is None
    assert state.updated_at is not None


# ---------------------------------------------------------------------------
# settings_repo
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_settings_merge_keeps_other_keys(db: AsyncSession):
    assert await settings_repo.get_user_settings(db, USER) is None

    row, created = await settings_repo.merge_user_settings(db, USER, {"theme": "dark", "editor": {"tabSize": 2}})
    assert created is True

    row, created = await settings_repo.merge_user_settings(db, USER, {"editor": {"wordWrap": True}})
    assert created is False
    assert row.settings == {"theme": "dark", "editor": {"wordWrap": True}}

    stored = await settings_repo.get_user_settings(db, USER)
    assert stored.settings == {"theme": "dark", "editor": {"wordWrap": True}}
    assert await settings_repo.get_user_settings(db, OTHER_USER) is None


@pytest.mark.asyncio
async def test_delete_settings(db: AsyncSession):
    await settings_repo.merge_user_settings(db, USER, {"theme": "dark"})

    assert await settings_repo.delete_user_settings(db, USER) is True
    assert await settings_repo.delete_user_settings(db, USER) is False
    assert await settings_repo.get_user_settings(db, USER) is None
