from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url

from guide_reader.indexing import (
    BookmarkManager,
    CacheConfig,
    CollectionManager,
    GuideParser,
    HeadingConfig,
    ImportConfig,
    ImportWorker,
    IndexStore,
    LocalGuideStorage,
    PositionTracker,
    RQJobQueue,
    SqlAlchemyIndexRepository,
    StoragePaths,
    WindowCache,
)

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./data/guide_reader.db"


@dataclass
class Services:
    store: IndexStore
    worker: ImportWorker
    bookmarks: BookmarkManager
    positions: PositionTracker
    cache: WindowCache
    collections: CollectionManager
    import_config: ImportConfig


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_services() -> Services:
    db_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    root = Path(os.getenv("GUIDE_STORAGE_ROOT", "./data"))
    threshold = float(os.getenv("HEADING_THRESHOLD", "0.5"))
    _ensure_sqlite_dir(db_url)

    repo = SqlAlchemyIndexRepository(db_url)
    storage = LocalGuideStorage(StoragePaths(root))
    store = IndexStore(repo, storage)
    bookmarks = BookmarkManager(store)
    worker = ImportWorker(store, GuideParser(HeadingConfig(threshold=threshold)), bookmarks=bookmarks)
    positions = PositionTracker(store, settle_interval=float(os.getenv("POSITION_SETTLE_SECONDS", "0.5")))
    cache = WindowCache(
        store,
        CacheConfig(
            max_bytes=int(os.getenv("CACHE_MAX_BYTES", str(256 * 1024))),
            max_lines=int(os.getenv("CACHE_MAX_LINES", "4096")),
        ),
        positions=positions,
    )
    return Services(
        store=store,
        worker=worker,
        bookmarks=bookmarks,
        positions=positions,
        cache=cache,
        collections=CollectionManager(store),
        # Pins live in this process, so an out-of-process worker leaves pruning to us.
        import_config=ImportConfig(
            database_url=db_url,
            storage_root=str(root),
            heading_threshold=threshold,
            prune_superseded=False,
        ),
    )


@lru_cache(maxsize=1)
def get_job_queue() -> Optional[RQJobQueue]:
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None
    return RQJobQueue(redis_url)


def shutdown_services() -> None:
    if get_services.cache_info().currsize == 0:
        return
    services = get_services()
    services.positions.close()
    services.cache.close()
    services.store.repo.close()
    get_services.cache_clear()
    get_job_queue.cache_clear()
