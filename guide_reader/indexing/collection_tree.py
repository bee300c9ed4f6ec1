from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse

from .errors import CollectionCycleError, NotFoundError, ValidationError
from .models import CollectionEntry, CollectionRecord, EntryKind
from .store import IndexStore

logger = logging.getLogger(__name__)


class CollectionManager:
    """
    User-defined folders of guides, bookmarks and links.

    Collections form a flat set of records addressed by id; the hierarchy is
    only the `parent_id` field, so moves are checked for cycles by walking the
    parent chain and a tree serializes as a plain list.
    """

    def __init__(self, store: IndexStore):
        self.store = store
        self.repo = store.repo

    # region Nodes
    def create(self, name: str, parent_id: Optional[str] = None) -> CollectionRecord:
        name = self._clean_name(name)
        if parent_id is not None:
            self.get(parent_id)
        collection = CollectionRecord(id=uuid.uuid4().hex, name=name, parent_id=parent_id)
        self.store.run(lambda: self.repo.save_collection(collection), "save_collection")
        return collection

    def get(self, collection_id: str) -> CollectionRecord:
        collection = self.store.run(lambda: self.repo.get_collection(collection_id), "get_collection")
        if collection is None:
            raise NotFoundError(f"Collection not found: {collection_id}", {"collection_id": collection_id})
        return collection

    def list(self) -> List[CollectionRecord]:
        return self.store.run(self.repo.list_collections, "list_collections")

    def children(self, parent_id: Optional[str] = None) -> List[CollectionRecord]:
        if parent_id is not None:
            self.get(parent_id)
        return [c for c in self.list() if c.parent_id == parent_id]

    def ancestors(self, collection_id: str) -> List[CollectionRecord]:
        """Parents of a collection, nearest first."""
        by_id = {c.id: c for c in self.list()}
        if collection_id not in by_id:
            raise NotFoundError(f"Collection not found: {collection_id}", {"collection_id": collection_id})
        chain = []
        parent_id = by_id[collection_id].parent_id
        while parent_id is not None and parent_id in by_id:
            chain.append(by_id[parent_id])
            parent_id = by_id[parent_id].parent_id
        return chain

    def path(self, collection_id: str) -> List[str]:
        """Names from the root down to the collection."""
        node = self.get(collection_id)
        return [c.name for c in reversed(self.ancestors(collection_id))] + [node.name]

    def ensure_path(self, names: Sequence[str]) -> CollectionRecord:
        """Find the collection at `names` below the root, creating missing levels."""
        if not names:
            raise ValidationError("Collection path must not be empty")
        parent: Optional[CollectionRecord] = None
        for name in names:
            parent_id = parent.id if parent else None
            match = next((c for c in self.children(parent_id) if c.name == name), None)
            parent = match or self.create(name, parent_id)
        return parent

    def rename(self, collection_id: str, name: str) -> CollectionRecord:
        collection = self.get(collection_id)
        collection.name = self._clean_name(name)
        self.store.run(lambda: self.repo.save_collection(collection), "save_collection")
        return collection

    def move(self, collection_id: str, new_parent_id: Optional[str]) -> CollectionRecord:
        collection = self.get(collection_id)
        if new_parent_id is not None:
            self.get(new_parent_id)
            if new_parent_id == collection_id or any(
                c.id == collection_id for c in self.ancestors(new_parent_id)
            ):
                raise CollectionCycleError(
                    f"Cannot move {collection_id} below itself",
                    {"collection_id": collection_id, "parent_id": new_parent_id},
                )
        collection.parent_id = new_parent_id
        self.store.run(lambda: self.repo.save_collection(collection), "save_collection")
        return collection

    def delete(self, collection_id: str) -> int:
        """Delete a collection with its whole subtree. Returns the number of collections removed."""
        self.get(collection_id)
        children: Dict[Optional[str], List[str]] = {}
        for c in self.list():
            children.setdefault(c.parent_id, []).append(c.id)
        doomed = []
        stack = [collection_id]
        while stack:
            current = stack.pop()
            doomed.append(current)
            stack.extend(children.get(current, []))
        for cid in reversed(doomed):
            self.store.run(lambda cid=cid: self.repo.delete_collection(cid), "delete_collection")
        logger.debug("Deleted %s collection(s) under %s", len(doomed), collection_id)
        return len(doomed)

    # endregion

    # region Entries
    def entries(self, collection_id: str) -> List[CollectionEntry]:
        self.get(collection_id)
        return self.store.run(lambda: self.repo.list_entries(collection_id), "list_entries")

    def add_entry(
        self,
        collection_id: str,
        kind: EntryKind,
        target: str,
        label: Optional[str] = None,
        index: Optional[int] = None,
    ) -> CollectionEntry:
        kind = EntryKind(kind)
        self._validate_target(kind, target)
        entries = self.entries(collection_id)
        entry = CollectionEntry(
            id=uuid.uuid4().hex,
            collection_id=collection_id,
            kind=kind,
            target=target,
            label=label,
        )
        if index is None or index >= len(entries):
            entries.append(entry)
        else:
            entries.insert(max(0, index), entry)
        self._save_entries(collection_id, entries)
        return entry

    def remove_entry(self, collection_id: str, entry_id: str) -> None:
        entries = self.entries(collection_id)
        remaining = [e for e in entries if e.id != entry_id]
        if len(remaining) == len(entries):
            raise NotFoundError(f"Entry {entry_id} not found in {collection_id}", {"entry_id": entry_id})
        self._save_entries(collection_id, remaining)

    def move_entry(self, collection_id: str, entry_id: str, new_index: int) -> List[CollectionEntry]:
        entries = self.entries(collection_id)
        entry = next((e for e in entries if e.id == entry_id), None)
        if entry is None:
            raise NotFoundError(f"Entry {entry_id} not found in {collection_id}", {"entry_id": entry_id})
        entries.remove(entry)
        entries.insert(min(max(0, new_index), len(entries)), entry)
        return self._save_entries(collection_id, entries)

    def memberships(self, target: str, kind: EntryKind = EntryKind.GUIDE) -> List[CollectionRecord]:
        """Collections that list the target directly (a guide id by default)."""
        ids = {e.collection_id for e in self.entries_for(kind, target)}
        return [c for c in self.list() if c.id in ids]

    def entries_for(self, kind: EntryKind, target: str) -> List[CollectionEntry]:
        kind = EntryKind(kind)
        return self.store.run(lambda: self.repo.list_entries_for_target(kind, target), "list_entries_for_target")

    def _save_entries(self, collection_id: str, entries: List[CollectionEntry]) -> List[CollectionEntry]:
        for position, entry in enumerate(entries):
            entry.order_index = position
        self.store.run(lambda: self.repo.save_entries(collection_id, entries), "save_entries")
        return entries

    def _validate_target(self, kind: EntryKind, target: str) -> None:
        if not target or not target.strip():
            raise ValidationError("Entry target must not be empty", {"kind": kind.value})
        if kind == EntryKind.GUIDE:
            self.store.get_metadata(target)
        elif kind == EntryKind.BOOKMARK:
            if self.store.run(lambda: self.repo.get_bookmark(target), "get_bookmark") is None:
                raise NotFoundError(f"Bookmark not found: {target}", {"bookmark_id": target})
        elif kind == EntryKind.WEB_LINK:
            parsed = urlparse(target)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError(f"Not an http(s) URL: {target}", {"target": target})

    # endregion

    @staticmethod
    def _clean_name(name: str) -> str:
        if not name or not name.strip():
            raise ValidationError("Collection name must not be empty")
        return name.strip()
