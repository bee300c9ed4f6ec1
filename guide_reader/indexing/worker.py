from __future__ import annotations

import hashlib
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from .bookmarks import BookmarkManager
from .errors import GuideIndexError, NotFoundError
from .models import (
    GuideMetadata,
    GuideRecord,
    GuideStatus,
    GuideVersionRecord,
    ImportJobPhase,
    ImportJobRecord,
    ImportJobState,
    utcnow,
)
from .parser import GuideParser
from .store import IndexStore

logger = logging.getLogger(__name__)


def build_guide_id(title: str, system: str = "") -> str:
    normalized = f"{title.strip().lower()}|{system.strip().lower()}"
    slug = "".join(ch if ch.isalnum() else "-" for ch in title.strip().lower()).strip("-") or "guide"
    while "--" in slug:
        slug = slug.replace("--", "-")
    digest = hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


class ImportWorker:
    """
    Drives an import job through precheck -> parse -> commit -> finalize.
    The worker is stateless and relies on the index store for job/guide state
    and for the atomic version commit.

    A failed first import leaves the guide FAILED with no version. A failed
    re-import returns the guide to READY; its previous version never stopped
    serving reads.
    """

    def __init__(
        self,
        store: IndexStore,
        parser: GuideParser,
        bookmarks: Optional[BookmarkManager] = None,
        prune_superseded: bool = True,
    ):
        self.store = store
        self.repo = store.repo
        self.storage = store.storage
        self.parser = parser
        self.bookmarks = bookmarks
        self.prune_superseded = prune_superseded

    def create_job(
        self,
        source_path: Path,
        metadata: GuideMetadata,
        guide_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> ImportJobRecord:
        guide_id = guide_id or build_guide_id(metadata.title, metadata.system)
        existing = self.store.run(lambda: self.repo.get_guide(guide_id), "get_guide")
        if existing is None:
            guide = GuideRecord(
                id=guide_id,
                title=metadata.title,
                system=metadata.system,
                author=metadata.author,
                version_label=metadata.version_label,
                status=GuideStatus.IMPORTING,
                encoding=self.parser.encoding,
            )
            self.store.run(lambda: self.repo.save_guide(guide), "save_guide")

        job = ImportJobRecord(
            id=f"job-{uuid.uuid4().hex}",
            guide_id=guide_id,
            source_path=str(source_path),
            metadata=metadata,
            config_json=dict(config or {}),
        )
        self.store.run(lambda: self.repo.save_job(job), "save_job")
        return job

    def run_job(self, job_id: str) -> GuideVersionRecord:
        job = self.store.run(lambda: self.repo.get_job(job_id), "get_job")
        if not job:
            raise NotFoundError(f"Import job {job_id} not found", {"job_id": job_id})
        guide = self.store.run(lambda: self.repo.get_guide(job.guide_id), "get_guide")
        if not guide:
            raise NotFoundError(f"Guide {job.guide_id} not found for job {job_id}", {"job_id": job_id})

        had_version = guide.current_version is not None
        content_path: Optional[Path] = None
        committed = False
        try:
            job.state = ImportJobState.RUNNING
            job.phase = ImportJobPhase.PRECHECK
            job.started_at = utcnow()
            self.store.run(lambda: self.repo.save_job(job), "save_job")
            self._set_guide_status(guide.id, GuideStatus.REIMPORTING if had_version else GuideStatus.IMPORTING)
            source = self._locate_source(job.source_path)

            self._set_job(job_id, phase=ImportJobPhase.PARSE)
            content_path = self.storage.paths.content_path(guide.id, job.id)
            with self.storage.open_content_sink(guide.id, job.id) as sink:
                parsed = self.parser.parse_path(source, sink=sink)

            self._set_job(job_id, phase=ImportJobPhase.COMMIT)
            guide = self.store.get_metadata(guide.id)
            guide.title = job.metadata.title
            guide.system = job.metadata.system
            guide.author = job.metadata.author
            guide.version_label = job.metadata.version_label
            record = self.store.commit_version(guide, parsed, str(content_path))
            committed = True

            self._set_job(job_id, phase=ImportJobPhase.FINALIZE, version=record.version)
            self._finalize(guide.id)
            self._set_job(job_id, state=ImportJobState.COMPLETED)
            return record
        except Exception as exc:  # noqa: BLE001
            logger.error("Import job %s for %s failed: %s", job_id, job.guide_id, exc)
            self._record_failure(job, exc, content_path, committed, had_version)
            raise
        finally:
            if job.config_json.get("cleanup_source"):
                self.storage.delete_upload(Path(job.source_path))

    def import_file(
        self,
        source_path: Path,
        metadata: GuideMetadata,
        guide_id: Optional[str] = None,
    ) -> GuideRecord:
        job = self.create_job(source_path, metadata, guide_id=guide_id)
        self.run_job(job.id)
        return self.store.get_metadata(job.guide_id)

    def import_bytes(self, data: bytes, metadata: GuideMetadata, guide_id: Optional[str] = None) -> GuideRecord:
        upload = self.storage.save_upload(uuid.uuid4().hex, data)
        try:
            return self.import_file(upload, metadata, guide_id=guide_id)
        finally:
            self.storage.delete_upload(upload)

    def _set_job(self, job_id: str, **changes) -> None:
        self.store.run(lambda: self.repo.update_job_state_phase(job_id, **changes), "update_job_state_phase")

    def _set_guide_status(self, guide_id: str, status: GuideStatus) -> None:
        self.store.run(lambda: self.repo.update_guide_status(guide_id, status), "update_guide_status")

    def _record_failure(
        self,
        job: ImportJobRecord,
        exc: Exception,
        content_path: Optional[Path],
        committed: bool,
        had_version: bool,
    ) -> None:
        # Each step runs on its own so one failed write cannot strand the guide
        # in an importing state. The original error is what the caller sees.
        if not committed:
            status = GuideStatus.READY if had_version else GuideStatus.FAILED
            try:
                self._set_guide_status(job.guide_id, status)
            except GuideIndexError as status_exc:
                logger.error("Could not return %s to %s: %s", job.guide_id, status.value, status_exc)
            if content_path is not None:
                try:
                    self.store.run(lambda: self.storage.delete_content(str(content_path)), "delete_content")
                except GuideIndexError as cleanup_exc:
                    logger.warning("Could not remove staged content %s: %s", content_path, cleanup_exc)
        try:
            self._set_job(job.id, state=ImportJobState.FAILED, error_message=str(exc) or type(exc).__name__)
        except GuideIndexError as job_exc:
            logger.error("Could not mark job %s failed: %s", job.id, job_exc)

    def _locate_source(self, source_path: str) -> Path:
        candidate = Path(source_path)
        if not candidate.exists():
            raise FileNotFoundError(f"Guide source not found at {candidate}")
        return candidate

    def _finalize(self, guide_id: str) -> None:
        # The new version is already live; clean-up problems are only logged.
        try:
            if self.bookmarks is not None:
                stale = self.bookmarks.refresh_stale(guide_id)
                if stale:
                    logger.info("%s bookmark(s) of %s are stale after re-import", stale, guide_id)
            if self.prune_superseded:
                self.store.prune(guide_id)
        except GuideIndexError as exc:
            logger.warning("Finalizing %s left work undone: %s", guide_id, exc)
