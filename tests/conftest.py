from pathlib import Path

import pytest

from guide_reader.indexing import (
    BookmarkManager,
    GuideMetadata,
    GuideParser,
    ImportWorker,
    IndexStore,
    InMemoryIndexRepository,
    LocalGuideStorage,
    StoragePaths,
)


def numbered_lines(count: int, prefix: str = "line") -> bytes:
    return "".join(f"{prefix} {i:06d}\n" for i in range(count)).encode("utf-8")


@pytest.fixture
def store(tmp_path: Path) -> IndexStore:
    return IndexStore(InMemoryIndexRepository(), LocalGuideStorage(StoragePaths(tmp_path / "data")), retry_delay=0)


@pytest.fixture
def bookmarks(store) -> BookmarkManager:
    return BookmarkManager(store)


@pytest.fixture
def worker(store, bookmarks) -> ImportWorker:
    return ImportWorker(store, GuideParser(), bookmarks=bookmarks)


@pytest.fixture
def import_text(worker):
    """Import raw bytes as guide `guide_id` and return its record."""

    def _import(data: bytes, guide_id: str = "guide-1", title: str = "Test Guide"):
        return worker.import_bytes(data, GuideMetadata(title=title, system="NES"), guide_id=guide_id)

    return _import
