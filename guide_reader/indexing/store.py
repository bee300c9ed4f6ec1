from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple, TypeVar

from sqlalchemy.exc import OperationalError

from .errors import (
    GuideNotReadyError,
    NotFoundError,
    OutOfRangeError,
    StaleReferenceError,
    StorageError,
)
from .headings import build_section_tree
from .models import GuideRecord, GuideStatus, GuideVersionRecord, ParsedGuide, SectionMarker, SectionNode, utcnow
from .repository import IndexRepository
from .storage import LocalGuideStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

VersionKey = Tuple[str, int]


class IndexStore:
    """
    Versioned, random-access view over the guide index.

    Every import commits a new immutable version and swaps the guide's
    current-version pointer in the same transaction. Readers pin the version
    they started on; a superseded version keeps serving byte-identical lines
    until its last pin is released, after which it is pruned.

    Repository and filesystem calls go through `run`, which retries transient
    failures with exponential backoff and raises StorageError once the retries
    are exhausted.
    """

    def __init__(
        self,
        repository: IndexRepository,
        storage: LocalGuideStorage,
        max_retries: int = 3,
        retry_delay: float = 0.05,
    ):
        self.repo = repository
        self.storage = storage
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._lock = threading.Lock()
        self._pins: Dict[VersionKey, int] = {}
        self._pruning: Set[VersionKey] = set()
        self._versions: Dict[VersionKey, GuideVersionRecord] = {}
        self._commit_locks: Dict[str, threading.Lock] = {}

    def run(self, operation: Callable[[], T], operation_name: str) -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries):
            try:
                return operation()
            except (OperationalError, OSError, StorageError) as exc:
                last_error = exc
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2**attempt)
                    logger.warning(
                        "%s failed (attempt %s/%s): %s. Retrying in %.2fs",
                        operation_name,
                        attempt + 1,
                        self.max_retries,
                        exc,
                        delay,
                    )
                    time.sleep(delay)
        logger.error("%s failed after %s attempts", operation_name, self.max_retries)
        raise StorageError(
            f"{operation_name} failed after {self.max_retries} attempts: {last_error}",
            {"operation": operation_name, "error_type": type(last_error).__name__},
        ) from last_error

    # region Metadata
    def get_metadata(self, guide_id: str) -> GuideRecord:
        guide = self.run(lambda: self.repo.get_guide(guide_id), "get_guide")
        if guide is None:
            raise NotFoundError(f"Guide not found: {guide_id}", {"guide_id": guide_id})
        return guide

    def list_guides(self) -> List[GuideRecord]:
        return self.run(self.repo.list_guides, "list_guides")

    def current_version(self, guide_id: str) -> int:
        guide = self.get_metadata(guide_id)
        if not guide.is_readable:
            raise GuideNotReadyError(
                f"Guide {guide_id} has no ready version (status={guide.status.value})",
                {"guide_id": guide_id, "status": guide.status.value},
            )
        return guide.current_version

    def get_version(self, guide_id: str, version: int) -> GuideVersionRecord:
        key = (guide_id, version)
        record = self._versions.get(key)
        if record is not None:
            return record
        record = self.run(lambda: self.repo.get_version(guide_id, version), "get_version")
        if record is None:
            raise NotFoundError(f"Version {version} of guide {guide_id} not found", {"guide_id": guide_id, "version": version})
        with self._lock:
            if key not in self._pruning:
                self._versions[key] = record
        return record

    def line_count(self, guide_id: str, version: Optional[int] = None) -> int:
        if version is None:
            version = self.current_version(guide_id)
        return self.get_version(guide_id, version).line_count

    # endregion

    # region Reads
    def get_line_range(self, guide_id: str, version: int, start: int, end: int) -> List[str]:
        """
        Lines `[start, end)` of a version, decoded. Each string encodes back to
        exactly the bytes that were imported, whitespace included.
        """
        record = self.get_version(guide_id, version)
        if not (0 <= start < end <= record.line_count):
            raise OutOfRangeError(
                f"Range [{start}, {end}) is outside 0..{record.line_count} of {guide_id} v{version}",
                line_count=record.line_count,
                start=start,
                end=end,
            )
        lines = self.run(lambda: self.repo.get_line_records(guide_id, version, start, end), "get_line_records")
        if len(lines) != end - start:
            raise StorageError(
                f"Line index for {guide_id} v{version} is missing rows in [{start}, {end})",
                {"guide_id": guide_id, "version": version},
            )
        span_start = lines[0].byte_offset
        span_end = lines[-1].byte_offset + lines[-1].byte_length
        data = self.run(
            lambda: self.storage.read_span(record.content_path, span_start, span_end - span_start),
            "read_span",
        )
        result = []
        for line in lines:
            offset = line.byte_offset - span_start
            result.append(data[offset : offset + line.byte_length].decode(record.encoding))
        return result

    def get_section_markers(self, guide_id: str, version: Optional[int] = None) -> List[SectionMarker]:
        if version is None:
            version = self.current_version(guide_id)
        self.get_version(guide_id, version)
        return self.run(lambda: self.repo.list_section_markers(guide_id, version), "list_section_markers")

    def get_section_tree(self, guide_id: str, version: Optional[int] = None) -> List[SectionNode]:
        return build_section_tree(self.get_section_markers(guide_id, version))

    def check_line(self, guide_id: str, line: int, version: Optional[int] = None) -> int:
        count = self.line_count(guide_id, version)
        if 0 <= line < count:
            return line
        nearest = min(max(line, 0), count - 1)
        raise StaleReferenceError(
            f"Line {line} is outside 0..{count - 1} of {guide_id}",
            line_number=line,
            nearest_line=nearest,
        )

    def nearest_valid_line(self, guide_id: str, line: int) -> int:
        try:
            return self.check_line(guide_id, line)
        except StaleReferenceError as exc:
            return exc.nearest_line

    # endregion

    # region Pinning
    def pin(self, guide_id: str, version: int) -> None:
        key = (guide_id, version)
        with self._lock:
            if key in self._pruning:
                raise NotFoundError(f"Version {version} of guide {guide_id} is being removed", {"guide_id": guide_id})
            self._pins[key] = self._pins.get(key, 0) + 1
        try:
            self.get_version(guide_id, version)
        except Exception:
            self._unpin(key)
            raise

    def release(self, guide_id: str, version: int) -> None:
        if self._unpin((guide_id, version)) == 0:
            self._prune_if_superseded(guide_id, version)

    def pin_count(self, guide_id: str, version: int) -> int:
        with self._lock:
            return self._pins.get((guide_id, version), 0)

    def _unpin(self, key: VersionKey) -> int:
        with self._lock:
            count = self._pins.get(key, 0) - 1
            if count <= 0:
                self._pins.pop(key, None)
                return 0
            self._pins[key] = count
            return count

    def session(self, guide_id: str, attempts: int = 3) -> "ReadSession":
        """
        Open a read session pinned to the version that is current right now.
        """
        for attempt in range(attempts):
            version = self.current_version(guide_id)
            try:
                self.pin(guide_id, version)
            except NotFoundError:
                # A commit and prune slipped in between; read the pointer again.
                if attempt == attempts - 1:
                    raise
                continue
            return ReadSession(self, guide_id, version)
        raise GuideNotReadyError(f"Could not pin a version of {guide_id}", {"guide_id": guide_id})

    # endregion

    # region Writes
    def _commit_lock(self, guide_id: str) -> threading.Lock:
        with self._lock:
            return self._commit_locks.setdefault(guide_id, threading.Lock())

    def commit_version(self, guide: GuideRecord, parsed: ParsedGuide, content_path: str) -> GuideVersionRecord:
        """
        Write the parsed index as the guide's next version and make it current.
        `guide` carries the metadata to store alongside the new version.
        """
        with self._commit_lock(guide.id):
            version = self.run(lambda: self.repo.next_version(guide.id), "next_version")
            record = GuideVersionRecord(
                guide_id=guide.id,
                version=version,
                line_count=parsed.line_count,
                byte_size=parsed.byte_size,
                checksum=parsed.checksum,
                encoding=parsed.encoding,
                content_path=str(content_path),
            )
            guide.current_version = version
            guide.line_count = parsed.line_count
            guide.checksum = parsed.checksum
            guide.encoding = parsed.encoding
            guide.status = GuideStatus.READY
            guide.updated_at = utcnow()
            self.run(
                lambda: self.repo.commit_version(
                    guide,
                    record,
                    parsed.iter_line_records(guide.id, version),
                    parsed.iter_section_markers(guide.id, version),
                ),
                "commit_version",
            )
        logger.info("Committed %s v%s (%s lines, %s sections)", guide.id, version, parsed.line_count, len(parsed.sections))
        return record

    def prune(self, guide_id: str) -> int:
        """
        Remove superseded versions that no reader has pinned. Returns the number
        of versions removed.
        """
        guide = self.run(lambda: self.repo.get_guide(guide_id), "get_guide")
        if guide is None:
            return 0
        removed = 0
        for record in self.run(lambda: self.repo.list_versions(guide_id), "list_versions"):
            if record.version == guide.current_version:
                continue
            if self._claim_for_pruning((guide_id, record.version)):
                self._delete_version(record)
                removed += 1
        return removed

    def _prune_if_superseded(self, guide_id: str, version: int) -> None:
        guide = self.run(lambda: self.repo.get_guide(guide_id), "get_guide")
        if guide is None or guide.current_version == version:
            return
        record = self.run(lambda: self.repo.get_version(guide_id, version), "get_version")
        if record is not None and self._claim_for_pruning((guide_id, version)):
            self._delete_version(record)

    def _claim_for_pruning(self, key: VersionKey) -> bool:
        with self._lock:
            if self._pins.get(key) or key in self._pruning:
                return False
            self._pruning.add(key)
            self._versions.pop(key, None)
            return True

    def _delete_version(self, record: GuideVersionRecord) -> None:
        key = (record.guide_id, record.version)
        try:
            self.run(lambda: self.repo.delete_version(record.guide_id, record.version), "delete_version")
            self.run(lambda: self.storage.delete_content(record.content_path), "delete_content")
            logger.info("Pruned %s v%s", record.guide_id, record.version)
        finally:
            with self._lock:
                self._pruning.discard(key)

    def delete_guide(self, guide_id: str) -> None:
        self.get_metadata(guide_id)
        with self._commit_lock(guide_id):
            self.run(lambda: self.repo.delete_guide(guide_id), "delete_guide")
            self.run(lambda: self.storage.delete_guide(guide_id), "delete_guide_content")
            with self._lock:
                for key in [k for k in self._versions if k[0] == guide_id]:
                    self._versions.pop(key, None)
        logger.info("Deleted guide %s", guide_id)

    # endregion


class ReadSession:
    """
    A consistent snapshot of one guide version. Reads keep hitting the pinned
    version even if a re-import commits a newer one; `close` releases the pin.
    """

    def __init__(self, store: IndexStore, guide_id: str, version: int):
        self.store = store
        self.guide_id = guide_id
        self.version = version
        self.line_count = store.line_count(guide_id, version)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def get_line_range(self, start: int, end: int) -> List[str]:
        if self._closed:
            raise RuntimeError("Read session is closed")
        return self.store.get_line_range(self.guide_id, self.version, start, end)

    def get_section_tree(self) -> List[SectionNode]:
        if self._closed:
            raise RuntimeError("Read session is closed")
        return self.store.get_section_tree(self.guide_id, self.version)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.store.release(self.guide_id, self.version)

    def __enter__(self) -> "ReadSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
