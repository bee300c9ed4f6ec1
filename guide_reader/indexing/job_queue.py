from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from redis import Redis
from rq import Queue, Worker

from .bookmarks import BookmarkManager
from .headings import HeadingConfig
from .models import GuideVersionRecord
from .parser import GuideParser
from .repository import SqlAlchemyIndexRepository
from .storage import LocalGuideStorage, StoragePaths
from .store import IndexStore
from .worker import ImportWorker

logger = logging.getLogger(__name__)


@dataclass
class ImportConfig:
    database_url: str
    storage_root: str
    heading_threshold: float = 0.5
    encoding: str = "utf-8"
    batch_size: int = 1000
    prune_superseded: bool = True


def build_import_worker(config: ImportConfig) -> ImportWorker:
    repo = SqlAlchemyIndexRepository(config.database_url, batch_size=config.batch_size)
    storage = LocalGuideStorage(StoragePaths(Path(config.storage_root)))
    store = IndexStore(repo, storage)
    parser = GuideParser(HeadingConfig(threshold=config.heading_threshold), encoding=config.encoding)
    return ImportWorker(
        store=store,
        parser=parser,
        bookmarks=BookmarkManager(store),
        prune_superseded=config.prune_superseded,
    )


def run_import_job(job_id: str, config: ImportConfig) -> None:
    """
    RQ task entrypoint. Creates all required components and executes an import
    job. Version pins live in the serving process, so an out-of-process worker
    should run with `prune_superseded=False` and leave pruning to the server.
    """
    worker = build_import_worker(config)
    worker.run_job(job_id)


class ThreadJobQueue:
    """
    In-process queue backed by a thread pool. Imports run beside the reading
    path and never block it; the returned future carries the committed version
    or the failure.
    """

    def __init__(self, worker: ImportWorker, max_workers: int = 1):
        self.worker = worker
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="guide-import")

    def enqueue_import_job(self, job_id: str) -> "Future[GuideVersionRecord]":
        return self.executor.submit(self._run, job_id)

    def _run(self, job_id: str) -> GuideVersionRecord:
        try:
            return self.worker.run_job(job_id)
        except Exception:
            logger.exception("Import job %s failed", job_id)
            raise

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


class RQJobQueue:
    """
    Redis-backed job queue using RQ. The queue pushes jobs to Redis and workers
    can be started by calling `work()` in a dedicated process.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", queue_name: str = "import-jobs"):
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    def enqueue_import_job(self, job_id: str, config: ImportConfig):
        """
        Enqueue an import job. RQ job_id is set to the import job id for idempotency.
        """
        return self.queue.enqueue(run_import_job, job_id, config, job_id=job_id, retry=None)

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
