from .bookmarks import BookmarkManager
from .bundle import export_bundle, import_bundle, read_manifest
from .cache import CacheConfig, Window, WindowCache
from .collection_tree import CollectionManager
from .errors import (
    CollectionCycleError,
    EmptyDocumentError,
    GuideIndexError,
    GuideNotReadyError,
    InvalidEncodingError,
    NotFoundError,
    OutOfRangeError,
    ParseError,
    StaleReferenceError,
    StorageError,
    ValidationError,
)
from .headings import DEFAULT_HEADING_CONFIG, HeadingConfig, HeadingScanner, build_section_tree, score_heading
from .job_queue import ImportConfig, RQJobQueue, ThreadJobQueue, build_import_worker, run_import_job
from .models import (
    BookmarkRecord,
    CollectionEntry,
    CollectionRecord,
    EntryKind,
    GuideMetadata,
    GuideRecord,
    GuideStatus,
    GuideVersionRecord,
    ImportJobPhase,
    ImportJobRecord,
    ImportJobState,
    LineRecord,
    ParsedGuide,
    ParsedSection,
    PositionRecord,
    ResolvedBookmark,
    SectionMarker,
    SectionNode,
)
from .parser import GuideParser
from .position import PositionTracker
from .repository import InMemoryIndexRepository, IndexRepository, SqlAlchemyIndexRepository
from .storage import LocalGuideStorage, StoragePaths
from .store import IndexStore, ReadSession
from .worker import ImportWorker, build_guide_id

__all__ = [
    "BookmarkManager",
    "BookmarkRecord",
    "CacheConfig",
    "CollectionCycleError",
    "CollectionEntry",
    "CollectionManager",
    "CollectionRecord",
    "DEFAULT_HEADING_CONFIG",
    "EmptyDocumentError",
    "EntryKind",
    "GuideIndexError",
    "GuideMetadata",
    "GuideNotReadyError",
    "GuideParser",
    "GuideRecord",
    "GuideStatus",
    "GuideVersionRecord",
    "HeadingConfig",
    "HeadingScanner",
    "ImportConfig",
    "ImportJobPhase",
    "ImportJobRecord",
    "ImportJobState",
    "ImportWorker",
    "IndexRepository",
    "IndexStore",
    "InMemoryIndexRepository",
    "InvalidEncodingError",
    "LineRecord",
    "LocalGuideStorage",
    "NotFoundError",
    "OutOfRangeError",
    "ParseError",
    "ParsedGuide",
    "ParsedSection",
    "PositionRecord",
    "PositionTracker",
    "ReadSession",
    "ResolvedBookmark",
    "RQJobQueue",
    "SectionMarker",
    "SectionNode",
    "SqlAlchemyIndexRepository",
    "StaleReferenceError",
    "StorageError",
    "StoragePaths",
    "ThreadJobQueue",
    "ValidationError",
    "Window",
    "WindowCache",
    "build_guide_id",
    "build_import_worker",
    "export_bundle",
    "import_bundle",
    "read_manifest",
    "run_import_job",
    "score_heading",
]
