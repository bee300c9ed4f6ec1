from __future__ import annotations

import json
import threading
from copy import deepcopy
from dataclasses import asdict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

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
    PositionRecord,
    SectionMarker,
    utcnow,
)

Base = declarative_base()


class GuideModel(Base):
    __tablename__ = "guides"
    id = Column(String, primary_key=True)
    title = Column(String)
    system = Column(String)
    author = Column(String)
    version_label = Column(String)
    status = Column(Enum(GuideStatus))
    current_version = Column(Integer)
    line_count = Column(Integer)
    checksum = Column(String)
    encoding = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class GuideVersionModel(Base):
    __tablename__ = "guide_versions"
    guide_id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    line_count = Column(Integer)
    byte_size = Column(Integer)
    checksum = Column(String)
    encoding = Column(String)
    content_path = Column(String)
    created_at = Column(DateTime)


class LineIndexModel(Base):
    __tablename__ = "line_index"
    guide_id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    line_number = Column(Integer, primary_key=True)
    byte_offset = Column(Integer, nullable=False)
    byte_length = Column(Integer, nullable=False)


class SectionMarkerModel(Base):
    __tablename__ = "section_markers"
    guide_id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    line_number = Column(Integer, primary_key=True)
    title = Column(String)
    level = Column(Integer)
    confidence = Column(Float)


class PositionModel(Base):
    __tablename__ = "positions"
    guide_id = Column(String, primary_key=True)
    line_number = Column(Integer)
    column_offset = Column(Integer)
    updated_at = Column(DateTime)


class BookmarkModel(Base):
    __tablename__ = "bookmarks"
    id = Column(String, primary_key=True)
    guide_id = Column(String, index=True)
    line_number = Column(Integer)
    label = Column(String)
    category = Column(String, index=True)
    created_at = Column(DateTime)
    stale = Column(Boolean, default=False)


class CollectionModel(Base):
    __tablename__ = "collections"
    id = Column(String, primary_key=True)
    name = Column(String)
    parent_id = Column(String, index=True)
    created_at = Column(DateTime)


class CollectionEntryModel(Base):
    __tablename__ = "collection_entries"
    id = Column(String, primary_key=True)
    collection_id = Column(String, index=True)
    kind = Column(Enum(EntryKind))
    target = Column(String, index=True)
    label = Column(String)
    order_index = Column(Integer)


class ImportJobModel(Base):
    __tablename__ = "import_jobs"
    id = Column(String, primary_key=True)
    guide_id = Column(String, index=True)
    source_path = Column(String)
    metadata_json = Column(String)
    state = Column(Enum(ImportJobState))
    phase = Column(Enum(ImportJobPhase))
    version = Column(Integer)
    error_message = Column(String)
    started_at = Column(DateTime)
    updated_at = Column(DateTime)
    config_json = Column(String)


class IndexRepository:
    """
    Abstract persistence boundary for the guide index. Implementations can
    target SQLite/Postgres or any other backing store. `commit_version` must be
    all-or-nothing: readers either see the previous current version or the new
    one, never a partially written line index.
    """

    # Guide operations
    def get_guide(self, guide_id: str) -> Optional[GuideRecord]:
        raise NotImplementedError

    def list_guides(self) -> List[GuideRecord]:
        raise NotImplementedError

    def save_guide(self, guide: GuideRecord) -> None:
        raise NotImplementedError

    def update_guide_status(self, guide_id: str, status: GuideStatus) -> None:
        raise NotImplementedError

    def delete_guide(self, guide_id: str) -> None:
        raise NotImplementedError

    # Import job operations
    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        raise NotImplementedError

    def save_job(self, job: ImportJobRecord) -> None:
        raise NotImplementedError

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ImportJobState] = None,
        phase: Optional[ImportJobPhase] = None,
        version: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    # Versions and the line index
    def next_version(self, guide_id: str) -> int:
        raise NotImplementedError

    def commit_version(
        self,
        guide: GuideRecord,
        version: GuideVersionRecord,
        lines: Iterable[LineRecord],
        sections: Iterable[SectionMarker],
    ) -> None:
        raise NotImplementedError

    def get_version(self, guide_id: str, version: int) -> Optional[GuideVersionRecord]:
        raise NotImplementedError

    def list_versions(self, guide_id: str) -> List[GuideVersionRecord]:
        raise NotImplementedError

    def delete_version(self, guide_id: str, version: int) -> None:
        raise NotImplementedError

    def get_line_records(self, guide_id: str, version: int, start: int, end: int) -> List[LineRecord]:
        raise NotImplementedError

    def list_section_markers(self, guide_id: str, version: int) -> List[SectionMarker]:
        raise NotImplementedError

    # Reading positions
    def get_position(self, guide_id: str) -> Optional[PositionRecord]:
        raise NotImplementedError

    def save_position(self, position: PositionRecord) -> None:
        raise NotImplementedError

    # Bookmarks
    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        raise NotImplementedError

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        raise NotImplementedError

    def list_bookmarks(self, guide_id: str, category: Optional[str] = None) -> List[BookmarkRecord]:
        raise NotImplementedError

    def set_bookmark_stale(self, bookmark_id: str, stale: bool) -> bool:
        """Flip the stale flag in place. Missing bookmarks are left missing."""
        raise NotImplementedError

    def delete_bookmark(self, bookmark_id: str) -> bool:
        raise NotImplementedError

    # Collections
    def get_collection(self, collection_id: str) -> Optional[CollectionRecord]:
        raise NotImplementedError

    def save_collection(self, collection: CollectionRecord) -> None:
        raise NotImplementedError

    def list_collections(self) -> List[CollectionRecord]:
        raise NotImplementedError

    def delete_collection(self, collection_id: str) -> None:
        raise NotImplementedError

    def list_entries(self, collection_id: str) -> List[CollectionEntry]:
        raise NotImplementedError

    def save_entries(self, collection_id: str, entries: Iterable[CollectionEntry]) -> None:
        raise NotImplementedError

    def list_entries_for_target(self, kind: EntryKind, target: str) -> List[CollectionEntry]:
        raise NotImplementedError


def _bookmark_sort_key(bookmark: BookmarkRecord):
    return (bookmark.line_number, bookmark.created_at, bookmark.id)


class InMemoryIndexRepository(IndexRepository):
    """
    Simple in-memory store for local runs and tests. It mirrors the DB shape
    and keeps copies of dataclasses to avoid cross-mutation between calls.
    Line records are immutable and shared rather than copied.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.guides: Dict[str, GuideRecord] = {}
        self.jobs: Dict[str, ImportJobRecord] = {}
        self.versions: Dict[Tuple[str, int], GuideVersionRecord] = {}
        self.lines: Dict[Tuple[str, int], List[LineRecord]] = {}
        self.sections: Dict[Tuple[str, int], List[SectionMarker]] = {}
        self.positions: Dict[str, PositionRecord] = {}
        self.bookmarks: Dict[str, BookmarkRecord] = {}
        self.collections: Dict[str, CollectionRecord] = {}
        self.entries: Dict[str, List[CollectionEntry]] = {}

    def _clone(self, obj):
        return deepcopy(obj)

    def get_guide(self, guide_id: str) -> Optional[GuideRecord]:
        guide = self.guides.get(guide_id)
        return self._clone(guide) if guide else None

    def list_guides(self) -> List[GuideRecord]:
        with self._lock:
            return [self._clone(g) for g in sorted(self.guides.values(), key=lambda g: g.id)]

    def save_guide(self, guide: GuideRecord) -> None:
        with self._lock:
            self.guides[guide.id] = self._clone(guide)

    def update_guide_status(self, guide_id: str, status: GuideStatus) -> None:
        with self._lock:
            guide = self.guides.get(guide_id)
            if not guide:
                return
            guide.status = status
            guide.updated_at = utcnow()

    def delete_guide(self, guide_id: str) -> None:
        with self._lock:
            self.guides.pop(guide_id, None)
            for key in [k for k in self.versions if k[0] == guide_id]:
                self.versions.pop(key, None)
                self.lines.pop(key, None)
                self.sections.pop(key, None)
            self.positions.pop(guide_id, None)
            removed_bookmarks = {b.id for b in self.bookmarks.values() if b.guide_id == guide_id}
            for bookmark_id in removed_bookmarks:
                self.bookmarks.pop(bookmark_id, None)
            for job_id in [j.id for j in self.jobs.values() if j.guide_id == guide_id]:
                self.jobs.pop(job_id, None)
            for collection_id, entries in self.entries.items():
                self.entries[collection_id] = [
                    e
                    for e in entries
                    if not (e.kind == EntryKind.GUIDE and e.target == guide_id)
                    and not (e.kind == EntryKind.BOOKMARK and e.target in removed_bookmarks)
                ]

    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        job = self.jobs.get(job_id)
        return self._clone(job) if job else None

    def save_job(self, job: ImportJobRecord) -> None:
        with self._lock:
            self.jobs[job.id] = self._clone(job)

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ImportJobState] = None,
        phase: Optional[ImportJobPhase] = None,
        version: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                return
            if state is not None:
                job.state = state
            if phase is not None:
                job.phase = phase
            if version is not None:
                job.version = version
            if error_message is not None:
                job.error_message = error_message
            job.updated_at = utcnow()

    def next_version(self, guide_id: str) -> int:
        with self._lock:
            existing = [v for (g, v) in self.versions if g == guide_id]
            guide = self.guides.get(guide_id)
            floor = guide.current_version if guide and guide.current_version else 0
            return max(existing + [floor]) + 1

    def commit_version(
        self,
        guide: GuideRecord,
        version: GuideVersionRecord,
        lines: Iterable[LineRecord],
        sections: Iterable[SectionMarker],
    ) -> None:
        line_list = list(lines)
        section_list = list(sections)
        key = (version.guide_id, version.version)
        with self._lock:
            if key in self.versions:
                raise ValueError(f"Version {version.version} of {version.guide_id} already exists")
            self.versions[key] = self._clone(version)
            self.lines[key] = line_list
            self.sections[key] = section_list
            self.guides[guide.id] = self._clone(guide)

    def get_version(self, guide_id: str, version: int) -> Optional[GuideVersionRecord]:
        record = self.versions.get((guide_id, version))
        return self._clone(record) if record else None

    def list_versions(self, guide_id: str) -> List[GuideVersionRecord]:
        with self._lock:
            records = [v for (g, _), v in self.versions.items() if g == guide_id]
        return [self._clone(v) for v in sorted(records, key=lambda v: v.version)]

    def delete_version(self, guide_id: str, version: int) -> None:
        with self._lock:
            key = (guide_id, version)
            self.versions.pop(key, None)
            self.lines.pop(key, None)
            self.sections.pop(key, None)

    def get_line_records(self, guide_id: str, version: int, start: int, end: int) -> List[LineRecord]:
        lines = self.lines.get((guide_id, version), [])
        return lines[start:end]

    def list_section_markers(self, guide_id: str, version: int) -> List[SectionMarker]:
        return list(self.sections.get((guide_id, version), []))

    def get_position(self, guide_id: str) -> Optional[PositionRecord]:
        position = self.positions.get(guide_id)
        return self._clone(position) if position else None

    def save_position(self, position: PositionRecord) -> None:
        with self._lock:
            self.positions[position.guide_id] = self._clone(position)

    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        bookmark = self.bookmarks.get(bookmark_id)
        return self._clone(bookmark) if bookmark else None

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        with self._lock:
            self.bookmarks[bookmark.id] = self._clone(bookmark)

    def list_bookmarks(self, guide_id: str, category: Optional[str] = None) -> List[BookmarkRecord]:
        with self._lock:
            matches = [
                b
                for b in self.bookmarks.values()
                if b.guide_id == guide_id and (category is None or b.category == category)
            ]
        return [self._clone(b) for b in sorted(matches, key=_bookmark_sort_key)]

    def set_bookmark_stale(self, bookmark_id: str, stale: bool) -> bool:
        with self._lock:
            bookmark = self.bookmarks.get(bookmark_id)
            if bookmark is None:
                return False
            bookmark.stale = stale
            return True

    def delete_bookmark(self, bookmark_id: str) -> bool:
        with self._lock:
            removed = self.bookmarks.pop(bookmark_id, None)
            if removed:
                for collection_id, entries in self.entries.items():
                    self.entries[collection_id] = [
                        e for e in entries if not (e.kind == EntryKind.BOOKMARK and e.target == bookmark_id)
                    ]
            return removed is not None

    def get_collection(self, collection_id: str) -> Optional[CollectionRecord]:
        collection = self.collections.get(collection_id)
        return self._clone(collection) if collection else None

    def save_collection(self, collection: CollectionRecord) -> None:
        with self._lock:
            self.collections[collection.id] = self._clone(collection)

    def list_collections(self) -> List[CollectionRecord]:
        with self._lock:
            return [self._clone(c) for c in sorted(self.collections.values(), key=lambda c: (c.created_at, c.id))]

    def delete_collection(self, collection_id: str) -> None:
        with self._lock:
            self.collections.pop(collection_id, None)
            self.entries.pop(collection_id, None)

    def list_entries(self, collection_id: str) -> List[CollectionEntry]:
        entries = self.entries.get(collection_id, [])
        return [self._clone(e) for e in sorted(entries, key=lambda e: e.order_index)]

    def save_entries(self, collection_id: str, entries: Iterable[CollectionEntry]) -> None:
        with self._lock:
            self.entries[collection_id] = [self._clone(e) for e in entries]

    def list_entries_for_target(self, kind: EntryKind, target: str) -> List[CollectionEntry]:
        with self._lock:
            return [
                self._clone(e)
                for entries in self.entries.values()
                for e in entries
                if e.kind == kind and e.target == target
            ]


def _enable_sqlite_wal(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


class SqlAlchemyIndexRepository(IndexRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    SQLite databases are opened in WAL mode so readers keep going while an
    import commits a new version.
    """

    def __init__(self, database_url: str, batch_size: int = 1000):
        self.batch_size = batch_size
        if database_url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if database_url.rstrip("/").endswith(":memory:") or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, future=True, **kwargs)
            event.listen(self.engine, "connect", _enable_sqlite_wal)
        else:
            self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    def close(self) -> None:
        self.engine.dispose()

    # region Guide operations
    def _guide_record(self, model: GuideModel) -> GuideRecord:
        return GuideRecord(
            id=model.id,
            title=model.title,
            system=model.system,
            author=model.author,
            version_label=model.version_label,
            status=model.status,
            current_version=model.current_version,
            line_count=int(model.line_count or 0),
            checksum=model.checksum,
            encoding=model.encoding or "utf-8",
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _guide_model(self, guide: GuideRecord) -> GuideModel:
        return GuideModel(
            id=guide.id,
            title=guide.title,
            system=guide.system,
            author=guide.author,
            version_label=guide.version_label,
            status=guide.status,
            current_version=guide.current_version,
            line_count=guide.line_count,
            checksum=guide.checksum,
            encoding=guide.encoding,
            created_at=guide.created_at,
            updated_at=guide.updated_at,
        )

    def get_guide(self, guide_id: str) -> Optional[GuideRecord]:
        with self._session() as session:
            model = session.get(GuideModel, guide_id)
            return self._guide_record(model) if model else None

    def list_guides(self) -> List[GuideRecord]:
        with self._session() as session:
            models = session.execute(select(GuideModel).order_by(GuideModel.id)).scalars().all()
            return [self._guide_record(m) for m in models]

    def save_guide(self, guide: GuideRecord) -> None:
        with self._session() as session:
            session.merge(self._guide_model(guide))
            session.commit()

    def update_guide_status(self, guide_id: str, status: GuideStatus) -> None:
        with self._session() as session:
            stmt = update(GuideModel).where(GuideModel.id == guide_id).values(status=status, updated_at=utcnow())
            session.execute(stmt)
            session.commit()

    def delete_guide(self, guide_id: str) -> None:
        with self._session() as session:
            bookmark_ids = (
                session.execute(select(BookmarkModel.id).where(BookmarkModel.guide_id == guide_id)).scalars().all()
            )
            session.execute(delete(LineIndexModel).where(LineIndexModel.guide_id == guide_id))
            session.execute(delete(SectionMarkerModel).where(SectionMarkerModel.guide_id == guide_id))
            session.execute(delete(GuideVersionModel).where(GuideVersionModel.guide_id == guide_id))
            session.execute(delete(PositionModel).where(PositionModel.guide_id == guide_id))
            session.execute(delete(BookmarkModel).where(BookmarkModel.guide_id == guide_id))
            session.execute(delete(ImportJobModel).where(ImportJobModel.guide_id == guide_id))
            session.execute(
                delete(CollectionEntryModel).where(
                    CollectionEntryModel.kind == EntryKind.GUIDE, CollectionEntryModel.target == guide_id
                )
            )
            if bookmark_ids:
                session.execute(
                    delete(CollectionEntryModel).where(
                        CollectionEntryModel.kind == EntryKind.BOOKMARK,
                        CollectionEntryModel.target.in_(bookmark_ids),
                    )
                )
            session.execute(delete(GuideModel).where(GuideModel.id == guide_id))
            session.commit()

    # endregion

    # region Job operations
    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        with self._session() as session:
            model = session.get(ImportJobModel, job_id)
            if not model:
                return None
            return ImportJobRecord(
                id=model.id,
                guide_id=model.guide_id,
                source_path=model.source_path,
                metadata=GuideMetadata(**json.loads(model.metadata_json or "{}")),
                state=model.state,
                phase=model.phase,
                version=model.version,
                error_message=model.error_message,
                started_at=model.started_at,
                updated_at=model.updated_at,
                config_json=json.loads(model.config_json or "{}"),
            )

    def save_job(self, job: ImportJobRecord) -> None:
        with self._session() as session:
            model = ImportJobModel(
                id=job.id,
                guide_id=job.guide_id,
                source_path=job.source_path,
                metadata_json=json.dumps(asdict(job.metadata)),
                state=job.state,
                phase=job.phase,
                version=job.version,
                error_message=job.error_message,
                started_at=job.started_at,
                updated_at=job.updated_at,
                config_json=json.dumps(job.config_json or {}),
            )
            session.merge(model)
            session.commit()

    def update_job_state_phase(
        self,
        job_id: str,
        state: Optional[ImportJobState] = None,
        phase: Optional[ImportJobPhase] = None,
        version: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            stmt = update(ImportJobModel).where(ImportJobModel.id == job_id)
            values = {}
            if state is not None:
                values["state"] = state
            if phase is not None:
                values["phase"] = phase
            if version is not None:
                values["version"] = version
            if error_message is not None:
                values["error_message"] = error_message
            if values:
                values["updated_at"] = utcnow()
                session.execute(stmt.values(**values))
                session.commit()

    # endregion

    # region Versions and line index
    def _version_record(self, model: GuideVersionModel) -> GuideVersionRecord:
        return GuideVersionRecord(
            guide_id=model.guide_id,
            version=model.version,
            line_count=model.line_count,
            byte_size=model.byte_size,
            checksum=model.checksum,
            encoding=model.encoding,
            content_path=model.content_path,
            created_at=model.created_at,
        )

    def next_version(self, guide_id: str) -> int:
        with self._session() as session:
            latest = session.execute(
                select(func.max(GuideVersionModel.version)).where(GuideVersionModel.guide_id == guide_id)
            ).scalar()
            current = session.execute(select(GuideModel.current_version).where(GuideModel.id == guide_id)).scalar()
            return max(latest or 0, current or 0) + 1

    def commit_version(
        self,
        guide: GuideRecord,
        version: GuideVersionRecord,
        lines: Iterable[LineRecord],
        sections: Iterable[SectionMarker],
    ) -> None:
        with self._session() as session:
            session.add(
                GuideVersionModel(
                    guide_id=version.guide_id,
                    version=version.version,
                    line_count=version.line_count,
                    byte_size=version.byte_size,
                    checksum=version.checksum,
                    encoding=version.encoding,
                    content_path=version.content_path,
                    created_at=version.created_at,
                )
            )
            batch: List[dict] = []
            for line in lines:
                batch.append(
                    {
                        "guide_id": line.guide_id,
                        "version": line.version,
                        "line_number": line.line_number,
                        "byte_offset": line.byte_offset,
                        "byte_length": line.byte_length,
                    }
                )
                if len(batch) >= self.batch_size:
                    session.execute(insert(LineIndexModel), batch)
                    batch = []
            if batch:
                session.execute(insert(LineIndexModel), batch)

            section_rows = [
                {
                    "guide_id": s.guide_id,
                    "version": s.version,
                    "line_number": s.line_number,
                    "title": s.title,
                    "level": s.level,
                    "confidence": s.confidence,
                }
                for s in sections
            ]
            if section_rows:
                session.execute(insert(SectionMarkerModel), section_rows)

            # The pointer swap is the last write of the same transaction.
            session.merge(self._guide_model(guide))
            session.commit()

    def get_version(self, guide_id: str, version: int) -> Optional[GuideVersionRecord]:
        with self._session() as session:
            model = session.get(GuideVersionModel, (guide_id, version))
            return self._version_record(model) if model else None

    def list_versions(self, guide_id: str) -> List[GuideVersionRecord]:
        with self._session() as session:
            stmt = (
                select(GuideVersionModel)
                .where(GuideVersionModel.guide_id == guide_id)
                .order_by(GuideVersionModel.version)
            )
            return [self._version_record(m) for m in session.execute(stmt).scalars().all()]

    def delete_version(self, guide_id: str, version: int) -> None:
        with self._session() as session:
            session.execute(
                delete(LineIndexModel).where(LineIndexModel.guide_id == guide_id, LineIndexModel.version == version)
            )
            session.execute(
                delete(SectionMarkerModel).where(
                    SectionMarkerModel.guide_id == guide_id, SectionMarkerModel.version == version
                )
            )
            session.execute(
                delete(GuideVersionModel).where(
                    GuideVersionModel.guide_id == guide_id, GuideVersionModel.version == version
                )
            )
            session.commit()

    def get_line_records(self, guide_id: str, version: int, start: int, end: int) -> List[LineRecord]:
        with self._session() as session:
            stmt = (
                select(LineIndexModel)
                .where(
                    LineIndexModel.guide_id == guide_id,
                    LineIndexModel.version == version,
                    LineIndexModel.line_number >= start,
                    LineIndexModel.line_number < end,
                )
                .order_by(LineIndexModel.line_number)
            )
            return [
                LineRecord(m.guide_id, m.version, m.line_number, m.byte_offset, m.byte_length)
                for m in session.execute(stmt).scalars().all()
            ]

    def list_section_markers(self, guide_id: str, version: int) -> List[SectionMarker]:
        with self._session() as session:
            stmt = (
                select(SectionMarkerModel)
                .where(SectionMarkerModel.guide_id == guide_id, SectionMarkerModel.version == version)
                .order_by(SectionMarkerModel.line_number)
            )
            return [
                SectionMarker(m.guide_id, m.version, m.line_number, m.title, int(m.level), float(m.confidence))
                for m in session.execute(stmt).scalars().all()
            ]

    # endregion

    # region Positions
    def get_position(self, guide_id: str) -> Optional[PositionRecord]:
        with self._session() as session:
            model = session.get(PositionModel, guide_id)
            if not model:
                return None
            return PositionRecord(
                guide_id=model.guide_id,
                line_number=model.line_number,
                column_offset=model.column_offset,
                updated_at=model.updated_at,
            )

    def save_position(self, position: PositionRecord) -> None:
        with self._session() as session:
            session.merge(
                PositionModel(
                    guide_id=position.guide_id,
                    line_number=position.line_number,
                    column_offset=position.column_offset,
                    updated_at=position.updated_at,
                )
            )
            session.commit()

    # endregion

    # region Bookmarks
    def _bookmark_record(self, model: BookmarkModel) -> BookmarkRecord:
        return BookmarkRecord(
            id=model.id,
            guide_id=model.guide_id,
            line_number=model.line_number,
            label=model.label,
            category=model.category,
            created_at=model.created_at,
            stale=bool(model.stale),
        )

    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        with self._session() as session:
            model = session.get(BookmarkModel, bookmark_id)
            return self._bookmark_record(model) if model else None

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        with self._session() as session:
            session.merge(
                BookmarkModel(
                    id=bookmark.id,
                    guide_id=bookmark.guide_id,
                    line_number=bookmark.line_number,
                    label=bookmark.label,
                    category=bookmark.category,
                    created_at=bookmark.created_at,
                    stale=bookmark.stale,
                )
            )
            session.commit()

    def list_bookmarks(self, guide_id: str, category: Optional[str] = None) -> List[BookmarkRecord]:
        with self._session() as session:
            stmt = select(BookmarkModel).where(BookmarkModel.guide_id == guide_id)
            if category is not None:
                stmt = stmt.where(BookmarkModel.category == category)
            stmt = stmt.order_by(BookmarkModel.line_number, BookmarkModel.created_at, BookmarkModel.id)
            return [self._bookmark_record(m) for m in session.execute(stmt).scalars().all()]

    def set_bookmark_stale(self, bookmark_id: str, stale: bool) -> bool:
        with self._session() as session:
            result = session.execute(update(BookmarkModel).where(BookmarkModel.id == bookmark_id).values(stale=stale))
            session.commit()
            return result.rowcount > 0

    def delete_bookmark(self, bookmark_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(BookmarkModel).where(BookmarkModel.id == bookmark_id))
            session.execute(
                delete(CollectionEntryModel).where(
                    CollectionEntryModel.kind == EntryKind.BOOKMARK, CollectionEntryModel.target == bookmark_id
                )
            )
            session.commit()
            return result.rowcount > 0

    # endregion

    # region Collections
    def _entry_record(self, model: CollectionEntryModel) -> CollectionEntry:
        return CollectionEntry(
            id=model.id,
            collection_id=model.collection_id,
            kind=model.kind,
            target=model.target,
            label=model.label,
            order_index=int(model.order_index or 0),
        )

    def get_collection(self, collection_id: str) -> Optional[CollectionRecord]:
        with self._session() as session:
            model = session.get(CollectionModel, collection_id)
            if not model:
                return None
            return CollectionRecord(id=model.id, name=model.name, parent_id=model.parent_id, created_at=model.created_at)

    def save_collection(self, collection: CollectionRecord) -> None:
        with self._session() as session:
            session.merge(
                CollectionModel(
                    id=collection.id,
                    name=collection.name,
                    parent_id=collection.parent_id,
                    created_at=collection.created_at,
                )
            )
            session.commit()

    def list_collections(self) -> List[CollectionRecord]:
        with self._session() as session:
            stmt = select(CollectionModel).order_by(CollectionModel.created_at, CollectionModel.id)
            return [
                CollectionRecord(id=m.id, name=m.name, parent_id=m.parent_id, created_at=m.created_at)
                for m in session.execute(stmt).scalars().all()
            ]

    def delete_collection(self, collection_id: str) -> None:
        with self._session() as session:
            session.execute(delete(CollectionEntryModel).where(CollectionEntryModel.collection_id == collection_id))
            session.execute(delete(CollectionModel).where(CollectionModel.id == collection_id))
            session.commit()

    def list_entries(self, collection_id: str) -> List[CollectionEntry]:
        with self._session() as session:
            stmt = (
                select(CollectionEntryModel)
                .where(CollectionEntryModel.collection_id == collection_id)
                .order_by(CollectionEntryModel.order_index)
            )
            return [self._entry_record(m) for m in session.execute(stmt).scalars().all()]

    def save_entries(self, collection_id: str, entries: Iterable[CollectionEntry]) -> None:
        with self._session() as session:
            session.execute(delete(CollectionEntryModel).where(CollectionEntryModel.collection_id == collection_id))
            for entry in entries:
                session.add(
                    CollectionEntryModel(
                        id=entry.id,
                        collection_id=collection_id,
                        kind=entry.kind,
                        target=entry.target,
                        label=entry.label,
                        order_index=entry.order_index,
                    )
                )
            session.commit()

    def list_entries_for_target(self, kind: EntryKind, target: str) -> List[CollectionEntry]:
        with self._session() as session:
            stmt = select(CollectionEntryModel).where(
                CollectionEntryModel.kind == kind, CollectionEntryModel.target == target
            )
            return [self._entry_record(m) for m in session.execute(stmt).scalars().all()]

    # endregion
