from __future__ import annotations

from array import array
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


def utcnow() -> datetime:
    # Naive UTC so values compare equal after a round trip through SQLite.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GuideStatus(str, Enum):
    IMPORTING = "importing"
    READY = "ready"
    REIMPORTING = "reimporting"
    FAILED = "failed"


class ImportJobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportJobPhase(str, Enum):
    PRECHECK = "precheck"
    PARSE = "parse"
    COMMIT = "commit"
    FINALIZE = "finalize"


class EntryKind(str, Enum):
    GUIDE = "guide"
    BOOKMARK = "bookmark"
    WEB_LINK = "web_link"
    IMAGE_LINK = "image_link"


@dataclass
class GuideMetadata:
    title: str
    system: str = ""
    author: Optional[str] = None
    version_label: Optional[str] = None


@dataclass
class ParsedSection:
    line_number: int
    title: str
    level: int
    confidence: float


@dataclass
class ParsedGuide:
    line_offsets: array
    line_lengths: array
    sections: List[ParsedSection]
    checksum: str
    byte_size: int
    encoding: str

    @property
    def line_count(self) -> int:
        return len(self.line_offsets)

    def iter_line_records(self, guide_id: str, version: int) -> Iterator[LineRecord]:
        for number, (offset, length) in enumerate(zip(self.line_offsets, self.line_lengths)):
            yield LineRecord(guide_id, version, number, offset, length)

    def iter_section_markers(self, guide_id: str, version: int) -> Iterator[SectionMarker]:
        for section in self.sections:
            yield SectionMarker(guide_id, version, section.line_number, section.title, section.level, section.confidence)


@dataclass
class GuideRecord:
    id: str
    title: str
    system: str
    author: Optional[str]
    version_label: Optional[str]
    status: GuideStatus = GuideStatus.IMPORTING
    current_version: Optional[int] = None
    line_count: int = 0
    checksum: Optional[str] = None
    encoding: str = "utf-8"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_readable(self) -> bool:
        return self.current_version is not None and self.status in (GuideStatus.READY, GuideStatus.REIMPORTING)


@dataclass
class GuideVersionRecord:
    guide_id: str
    version: int
    line_count: int
    byte_size: int
    checksum: str
    encoding: str
    content_path: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class LineRecord:
    guide_id: str
    version: int
    line_number: int
    byte_offset: int
    byte_length: int


@dataclass(frozen=True)
class SectionMarker:
    guide_id: str
    version: int
    line_number: int
    title: str
    level: int
    confidence: float


@dataclass
class SectionNode:
    marker: SectionMarker
    children: List["SectionNode"] = field(default_factory=list)

    @property
    def line_number(self) -> int:
        return self.marker.line_number

    @property
    def title(self) -> str:
        return self.marker.title

    @property
    def level(self) -> int:
        return self.marker.level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.marker.line_number,
            "title": self.marker.title,
            "level": self.marker.level,
            "confidence": self.marker.confidence,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class PositionRecord:
    guide_id: str
    line_number: int = 0
    column_offset: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class BookmarkRecord:
    id: str
    guide_id: str
    line_number: int
    label: str
    category: str = "general"
    created_at: datetime = field(default_factory=utcnow)
    stale: bool = False


@dataclass
class ResolvedBookmark:
    bookmark_id: str
    guide_id: str
    line_number: int
    column_offset: int = 0
    stale: bool = False


@dataclass
class CollectionRecord:
    id: str
    name: str
    parent_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CollectionEntry:
    id: str
    collection_id: str
    kind: EntryKind
    target: str
    label: Optional[str] = None
    order_index: int = 0


@dataclass
class ImportJobRecord:
    id: str
    guide_id: str
    source_path: str
    metadata: GuideMetadata
    state: ImportJobState = ImportJobState.QUEUED
    phase: ImportJobPhase = ImportJobPhase.PRECHECK
    version: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    config_json: Dict[str, Any] = field(default_factory=dict)
