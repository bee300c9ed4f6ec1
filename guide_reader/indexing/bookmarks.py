from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from .errors import NotFoundError, OutOfRangeError, StaleReferenceError, ValidationError
from .models import BookmarkRecord, ResolvedBookmark
from .store import IndexStore

logger = logging.getLogger(__name__)


class BookmarkManager:
    """
    Labeled line references into a guide. Lines are validated against the
    current version when a bookmark is created and again every time it is
    resolved; a bookmark whose line falls outside a later revision is marked
    stale and resolves to the nearest valid line instead of failing.
    """

    def __init__(self, store: IndexStore):
        self.store = store
        self.repo = store.repo

    def create(self, guide_id: str, line: int, label: str, category: str = "general") -> str:
        if not label or not label.strip():
            raise ValidationError("Bookmark label must not be empty", {"guide_id": guide_id})
        try:
            self.store.check_line(guide_id, line)
        except StaleReferenceError as exc:
            raise OutOfRangeError(
                f"Line {line} is outside the current bounds of {guide_id}",
                line_count=self.store.line_count(guide_id),
                start=line,
            ) from exc
        bookmark = BookmarkRecord(
            id=uuid.uuid4().hex,
            guide_id=guide_id,
            line_number=line,
            label=label.strip(),
            category=category or "general",
        )
        self.store.run(lambda: self.repo.save_bookmark(bookmark), "save_bookmark")
        logger.debug("Created bookmark %s on %s line %s", bookmark.id, guide_id, line)
        return bookmark.id

    def get(self, bookmark_id: str) -> BookmarkRecord:
        bookmark = self.store.run(lambda: self.repo.get_bookmark(bookmark_id), "get_bookmark")
        if bookmark is None:
            raise NotFoundError(f"Bookmark not found: {bookmark_id}", {"bookmark_id": bookmark_id})
        return bookmark

    def list(self, guide_id: str, category: Optional[str] = None) -> List[BookmarkRecord]:
        return self.store.run(lambda: self.repo.list_bookmarks(guide_id, category), "list_bookmarks")

    def resolve(self, bookmark_id: str) -> ResolvedBookmark:
        bookmark = self.get(bookmark_id)
        try:
            line = self.store.check_line(bookmark.guide_id, bookmark.line_number)
            stale = False
        except StaleReferenceError as exc:
            line = exc.nearest_line
            stale = True
        if not self._record_staleness(bookmark, stale):
            raise NotFoundError(f"Bookmark not found: {bookmark_id}", {"bookmark_id": bookmark_id})
        return ResolvedBookmark(
            bookmark_id=bookmark.id,
            guide_id=bookmark.guide_id,
            line_number=line,
            column_offset=0,
            stale=stale,
        )

    def delete(self, bookmark_id: str) -> None:
        removed = self.store.run(lambda: self.repo.delete_bookmark(bookmark_id), "delete_bookmark")
        if not removed:
            raise NotFoundError(f"Bookmark not found: {bookmark_id}", {"bookmark_id": bookmark_id})

    def refresh_stale(self, guide_id: str) -> int:
        """
        Re-check every bookmark of a guide against its current version.
        Returns how many bookmarks are stale afterwards.
        """
        line_count = self.store.line_count(guide_id)
        stale_count = 0
        for bookmark in self.list(guide_id):
            stale = not (0 <= bookmark.line_number < line_count)
            if self._record_staleness(bookmark, stale):
                stale_count += int(stale)
        return stale_count

    def _record_staleness(self, bookmark: BookmarkRecord, stale: bool) -> bool:
        """
        Persist a stale transition with an in-place update, so a bookmark
        deleted meanwhile stays deleted. Returns False if it is gone.
        """
        if bookmark.stale == stale:
            return True
        if not self.store.run(lambda: self.repo.set_bookmark_stale(bookmark.id, stale), "set_bookmark_stale"):
            return False
        if stale:
            logger.warning(
                "Bookmark %s (%s line %s) no longer fits the current version",
                bookmark.id,
                bookmark.guide_id,
                bookmark.line_number,
            )
        bookmark.stale = stale
        return True
