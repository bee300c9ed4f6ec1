"""
Portable guide bundles.

A bundle is a zip archive holding `manifest.json` (metadata, section markers,
bookmarks and collection paths) next to `content.txt`, the raw bytes of the
guide's current version. Importing a bundle re-parses the content, so the
line index and section tree are rebuilt rather than trusted from the archive.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .collection_tree import CollectionManager
from .errors import ValidationError
from .models import BookmarkRecord, EntryKind, GuideMetadata, GuideRecord, utcnow
from .store import IndexStore
from .worker import ImportWorker

logger = logging.getLogger(__name__)

BUNDLE_FORMAT = "guide-reader-bundle"
BUNDLE_VERSION = 1
MANIFEST_NAME = "manifest.json"
CONTENT_NAME = "content.txt"

BookmarkKey = Tuple[int, str, str]


def export_bundle(store: IndexStore, guide_id: str, dest: Path) -> Path:
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    collections = CollectionManager(store)
    with store.session(guide_id) as session:
        guide = store.get_metadata(guide_id)
        record = store.get_version(guide_id, session.version)
        markers = store.get_section_markers(guide_id, session.version)
        bookmarks = store.run(lambda: store.repo.list_bookmarks(guide_id), "list_bookmarks")
        manifest: Dict[str, Any] = {
            "format": BUNDLE_FORMAT,
            "format_version": BUNDLE_VERSION,
            "exported_at": utcnow().isoformat(),
            "guide": {
                "id": guide.id,
                "title": guide.title,
                "system": guide.system,
                "author": guide.author,
                "version_label": guide.version_label,
            },
            "version": record.version,
            "line_count": record.line_count,
            "byte_size": record.byte_size,
            "checksum": record.checksum,
            "encoding": record.encoding,
            "sections": [
                {"line_number": m.line_number, "title": m.title, "level": m.level, "confidence": m.confidence}
                for m in markers
            ],
            "bookmarks": [
                {
                    "line_number": b.line_number,
                    "label": b.label,
                    "category": b.category,
                    "stale": b.stale,
                    "created_at": b.created_at.isoformat(),
                }
                for b in bookmarks
            ],
            "collections": [collections.path(c.id) for c in collections.memberships(guide_id)],
            "bookmark_collections": _bookmark_memberships(collections, bookmarks),
        }
        with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
            with archive.open(CONTENT_NAME, "w", force_zip64=True) as target:
                store.storage.copy_content(record.content_path, target)
    logger.info("Exported %s v%s to %s", guide_id, record.version, dest)
    return dest


def _bookmark_memberships(collections: CollectionManager, bookmarks) -> List[Dict[str, Any]]:
    found = []
    for bookmark in bookmarks:
        for entry in collections.entries_for(EntryKind.BOOKMARK, bookmark.id):
            found.append(
                {
                    "path": collections.path(entry.collection_id),
                    "line_number": bookmark.line_number,
                    "label": bookmark.label,
                    "category": bookmark.category,
                    "entry_label": entry.label,
                }
            )
    return found


def read_manifest(path: Path) -> Dict[str, Any]:
    try:
        with zipfile.ZipFile(path) as archive:
            manifest = json.loads(archive.read(MANIFEST_NAME).decode("utf-8"))
    except (zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise ValidationError(f"Not a guide bundle: {path}", {"path": str(path)}) from exc
    if manifest.get("format") != BUNDLE_FORMAT:
        raise ValidationError(f"Unknown bundle format {manifest.get('format')!r}", {"path": str(path)})
    if manifest.get("format_version", 0) > BUNDLE_VERSION:
        raise ValidationError(
            f"Bundle format version {manifest.get('format_version')} is newer than {BUNDLE_VERSION}",
            {"path": str(path)},
        )
    return manifest


def import_bundle(worker: ImportWorker, path: Path, guide_id: Optional[str] = None) -> GuideRecord:
    """
    Import a bundle as a new version of `guide_id` (the bundled guide id by
    default). Bookmarks come back on their original line numbers with their
    stale flags; collection membership is restored by collection path.
    """
    manifest = read_manifest(path)
    info = manifest["guide"]
    metadata = GuideMetadata(
        title=info["title"],
        system=info.get("system") or "",
        author=info.get("author"),
        version_label=info.get("version_label"),
    )
    guide_id = guide_id or info.get("id")

    digest = hashlib.sha256()
    upload = worker.storage.paths.upload_path(uuid.uuid4().hex)
    upload.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(path) as archive, archive.open(CONTENT_NAME) as source, upload.open("wb") as target:
            while True:
                chunk = source.read(1 << 16)
                if not chunk:
                    break
                digest.update(chunk)
                target.write(chunk)
    except KeyError as exc:
        worker.storage.delete_upload(upload)
        raise ValidationError(f"Bundle {path} has no {CONTENT_NAME}", {"path": str(path)}) from exc
    if manifest.get("checksum") and digest.hexdigest() != manifest["checksum"]:
        worker.storage.delete_upload(upload)
        raise ValidationError(f"Checksum mismatch in bundle {path}", {"path": str(path)})

    job = worker.create_job(upload, metadata, guide_id=guide_id, config={"cleanup_source": True})
    version = worker.run_job(job.id)
    if version.line_count != manifest.get("line_count", version.line_count):
        logger.warning(
            "Bundle %s declared %s lines, import produced %s", path, manifest["line_count"], version.line_count
        )

    store = worker.store
    restored = _restore_bookmarks(store, job.guide_id, manifest.get("bookmarks", []))
    _restore_collections(store, job.guide_id, manifest.get("collections", []))
    _restore_bookmark_collections(store, restored, manifest.get("bookmark_collections", []))
    logger.info("Imported bundle %s as %s v%s", path, job.guide_id, version.version)
    return store.get_metadata(job.guide_id)


def _restore_bookmarks(store: IndexStore, guide_id: str, entries) -> Dict[BookmarkKey, str]:
    """
    Recreate bookmarks under fresh ids, skipping ones the guide already has.
    Returns the bookmark id for every (line, label, category) key.
    """
    existing = {
        (b.line_number, b.label, b.category): b.id
        for b in store.run(lambda: store.repo.list_bookmarks(guide_id), "list_bookmarks")
    }
    line_count = store.line_count(guide_id)
    for entry in entries:
        key = (entry["line_number"], entry["label"], entry.get("category") or "general")
        if key in existing:
            continue
        bookmark = BookmarkRecord(
            id=uuid.uuid4().hex,
            guide_id=guide_id,
            line_number=key[0],
            label=key[1],
            category=key[2],
            stale=bool(entry.get("stale")) or not (0 <= key[0] < line_count),
        )
        store.run(lambda: store.repo.save_bookmark(bookmark), "save_bookmark")
        existing[key] = bookmark.id
    return existing


def _restore_collections(store: IndexStore, guide_id: str, paths) -> None:
    collections = CollectionManager(store)
    member_of = {c.id for c in collections.memberships(guide_id)}
    for names in paths:
        if not names:
            continue
        collection = collections.ensure_path(names)
        if collection.id not in member_of:
            collections.add_entry(collection.id, EntryKind.GUIDE, guide_id)
            member_of.add(collection.id)


def _restore_bookmark_collections(store: IndexStore, bookmark_ids: Dict[BookmarkKey, str], memberships) -> None:
    collections = CollectionManager(store)
    for membership in memberships:
        key = (membership["line_number"], membership["label"], membership.get("category") or "general")
        bookmark_id = bookmark_ids.get(key)
        if bookmark_id is None or not membership.get("path"):
            continue
        collection = collections.ensure_path(membership["path"])
        if collection.id in {c.id for c in collections.memberships(bookmark_id, EntryKind.BOOKMARK)}:
            continue
        collections.add_entry(collection.id, EntryKind.BOOKMARK, bookmark_id, label=membership.get("entry_label"))
