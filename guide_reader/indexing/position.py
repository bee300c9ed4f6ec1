from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Set

from .errors import GuideIndexError, GuideNotReadyError, NotFoundError, StaleReferenceError
from .models import PositionRecord, utcnow
from .store import IndexStore

logger = logging.getLogger(__name__)


class PositionTracker:
    """
    Owns the per-guide reading position. Scroll updates are held as a pending
    value and committed once they settle for `settle_interval` seconds;
    `suspend` commits everything immediately. Commits for one guide go through
    a per-guide lock, so the newest pending value is always the one persisted.
    """

    def __init__(self, store: IndexStore, settle_interval: float = 0.5):
        self.store = store
        self.repo = store.repo
        self.settle_interval = settle_interval
        self._lock = threading.Lock()
        self._pending: Dict[str, PositionRecord] = {}
        self._known: Dict[str, PositionRecord] = {}
        self._loaded: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._guide_locks: Dict[str, threading.Lock] = {}
        self._closed = False

    def get_position(self, guide_id: str) -> PositionRecord:
        with self._lock:
            pending = self._pending.get(guide_id)
        if pending is not None:
            return replace(pending)
        record = self.store.run(lambda: self.repo.get_position(guide_id), "get_position")
        if record is None:
            return PositionRecord(guide_id=guide_id)
        with self._lock:
            self._known.setdefault(guide_id, record)
        try:
            line = self.store.nearest_valid_line(guide_id, record.line_number)
        except (GuideNotReadyError, NotFoundError):
            return record
        if line != record.line_number:
            logger.info("Stored position %s of %s is stale, using line %s", record.line_number, guide_id, line)
            record = replace(record, line_number=line, column_offset=0)
        return record

    def peek(self, guide_id: str) -> Optional[PositionRecord]:
        """
        Latest known position, unclamped. The stored value is read once per
        guide; after that this never touches storage.
        """
        with self._lock:
            known = self._pending.get(guide_id) or self._known.get(guide_id)
            if known is not None or guide_id in self._loaded:
                return known
        record = self.store.run(lambda: self.repo.get_position(guide_id), "get_position")
        with self._lock:
            self._loaded.add(guide_id)
            if record is not None:
                self._known.setdefault(guide_id, record)
            return self._pending.get(guide_id) or self._known.get(guide_id)

    def set_position(self, guide_id: str, line: int, column: int = 0) -> PositionRecord:
        try:
            line = self.store.check_line(guide_id, line)
        except StaleReferenceError as exc:
            logger.debug("Clamping position %s of %s to %s", line, guide_id, exc.nearest_line)
            line = exc.nearest_line
            column = 0
        record = PositionRecord(guide_id=guide_id, line_number=line, column_offset=max(0, column), updated_at=utcnow())
        with self._lock:
            if self._closed:
                raise RuntimeError("Position tracker is closed")
            self._pending[guide_id] = record
            if self.settle_interval > 0:
                self._arm(guide_id)
        if self.settle_interval <= 0:
            self._commit(guide_id)
        return replace(record)

    def flush(self, guide_id: Optional[str] = None) -> int:
        """Commit pending positions now. Returns how many were written."""
        if guide_id is not None:
            guide_ids: List[str] = [guide_id]
        else:
            with self._lock:
                guide_ids = list(self._pending)
        return sum(1 for gid in guide_ids if self._commit(gid) is not None)

    def suspend(self) -> int:
        flushed = self.flush()
        logger.info("Suspend flushed %s position(s)", flushed)
        return flushed

    def close(self) -> None:
        try:
            self.flush()
        finally:
            with self._lock:
                self._closed = True
                for timer in self._timers.values():
                    timer.cancel()
                self._timers.clear()

    def _guide_lock(self, guide_id: str) -> threading.Lock:
        with self._lock:
            return self._guide_locks.setdefault(guide_id, threading.Lock())

    def _arm(self, guide_id: str) -> None:
        # Caller holds self._lock.
        timer = self._timers.pop(guide_id, None)
        if timer is not None:
            timer.cancel()
        timer = threading.Timer(self.settle_interval, self._settle, args=(guide_id,))
        timer.daemon = True
        self._timers[guide_id] = timer
        timer.start()

    def _settle(self, guide_id: str) -> None:
        try:
            self._commit(guide_id)
        except GuideIndexError as exc:
            logger.error("Failed to persist position for %s: %s", guide_id, exc)

    def _commit(self, guide_id: str) -> Optional[PositionRecord]:
        with self._guide_lock(guide_id):
            with self._lock:
                record = self._pending.pop(guide_id, None)
                timer = self._timers.pop(guide_id, None)
            if timer is not None and timer is not threading.current_thread():
                timer.cancel()
            if record is None:
                return None
            try:
                self.store.run(lambda: self.repo.save_position(record), "save_position")
            except GuideIndexError:
                with self._lock:
                    # keep it for the next flush unless a newer value arrived
                    self._pending.setdefault(guide_id, record)
                raise
            with self._lock:
                self._known[guide_id] = record
            logger.debug("Persisted position of %s at %s:%s", guide_id, record.line_number, record.column_offset)
            return record
