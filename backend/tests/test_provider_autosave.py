"""Tests for auto-saving provider-linked documents."""

import pytest_asyncio

from markview.client.provider_autosave import ProviderAutoSave
from markview.models.document import DocumentSource, DriveInfo, GitHubInfo, SyncStatus


class RecordingProvider:
    def __init__(self, link=None, error: Exception | None = None):
        self.link = link
        self.error = error
        self.saved: list[tuple[str, str, SyncStatus]] = []

    async def __call__(self, doc):
        self.saved.append((doc.id, doc.content, doc.sync_status))
        if self.error is not None:
            raise self.error
        return self.link


def _github_doc(store, content: str = "# Readme"):
    info = GitHubInfo(owner="octo", repo="notes", path="README.md", sha="old")
    return store.create_document(content, source=DocumentSource.GITHUB, github_info=info)


@pytest_asyncio.fixture
async def provider():
    return RecordingProvider()


@pytest_asyncio.fixture
async def autosave(store, provider):
    saver = ProviderAutoSave(store, provider, delay=60)
    saver.start()
    yield saver
    saver.stop()


async def test_edit_goes_pending_then_synced(autosave, store, provider):
    doc = _github_doc(store)
    store.update_content(doc.id, "# Readme v2")
    store.update_content(doc.id, "# Readme v3")

    assert doc.sync_status == SyncStatus.CLOUD_PENDING
    assert autosave.is_pending(doc.id)

    await autosave.flush()

    assert provider.saved == [(doc.id, "# Readme v3", SyncStatus.SYNCING)]
    assert doc.sync_status == SyncStatus.SYNCED
    assert not autosave.is_pending(doc.id)


async def test_returned_link_is_stored(store):
    new_link = GitHubInfo(owner="octo", repo="notes", path="README.md", sha="new")
    saver = ProviderAutoSave(store, RecordingProvider(link=new_link), delay=60)
    saver.start()
    doc = _github_doc(store)
    store.update_content(doc.id, "# Changed")

    await saver.flush()
    saver.stop()

    assert doc.github_info.sha == "new"


async def test_drive_link_is_stored(store):
    new_link = DriveInfo(file_id="file-1", name="notes.md")
    saver = ProviderAutoSave(store, RecordingProvider(link=new_link), delay=60)
    saver.start()
    doc = store.create_document(
        "# Drive", source=DocumentSource.GDRIVE, drive_info=DriveInfo(file_id="file-1", name="old.md")
    )
    store.update_content(doc.id, "# Drive edited")

    await saver.flush()
    saver.stop()

    assert doc.drive_info.name == "notes.md"
    assert doc.sync_status == SyncStatus.SYNCED


async def test_failed_save_marks_error(store, caplog):
    saver = ProviderAutoSave(store, RecordingProvider(error=RuntimeError("GitHub is down")), delay=60)
    saver.start()
    doc = _github_doc(store)
    store.update_content(doc.id, "# Changed")

    await saver.flush()
    saver.stop()

    assert doc.sync_status == SyncStatus.ERROR
    assert "Provider save failed" in caplog.text


async def test_unchanged_content_and_local_documents_are_ignored(autosave, store, provider):
    linked = _github_doc(store, "# Same")
    store.update_content(linked.id, "# Same")
    plain = store.create_document("# Local only")
    store.update_content(plain.id, "# Local edit")

    assert not autosave.is_pending(linked.id)
    assert not autosave.is_pending(plain.id)
    assert linked.sync_status == SyncStatus.SYNCED

    await autosave.flush()
    assert provider.saved == []


async def test_close_cancels_pending_save(autosave, store, provider):
    doc = _github_doc(store)
    store.update_content(doc.id, "# Changed")
    assert autosave.is_pending(doc.id)

    store.close_document(doc.id)
    await autosave.flush()

    assert not autosave.is_pending(doc.id)
    assert provider.saved == []
