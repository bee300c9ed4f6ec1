from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Form

from guide_reader.indexing import CollectionEntry, CollectionRecord, EntryKind

from api.dependencies import get_services

router = APIRouter(prefix="/collections", tags=["collections"])


def collection_to_dict(collection: CollectionRecord) -> dict:
    return {
        "id": collection.id,
        "name": collection.name,
        "parent_id": collection.parent_id,
        "created_at": collection.created_at.isoformat(),
    }


def entry_to_dict(entry: CollectionEntry) -> dict:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "target": entry.target,
        "label": entry.label,
        "index": entry.order_index,
    }


@router.get("")
def list_collections(parent_id: Optional[str] = None, guide_id: Optional[str] = None):
    collections = get_services().collections
    if guide_id:
        return [collection_to_dict(c) for c in collections.memberships(guide_id)]
    return [collection_to_dict(c) for c in collections.children(parent_id)]


@router.post("")
def create_collection(name: str = Form(...), parent_id: Optional[str] = Form(None)):
    return collection_to_dict(get_services().collections.create(name, parent_id or None))


@router.get("/{collection_id}")
def get_collection(collection_id: str):
    collections = get_services().collections
    payload = collection_to_dict(collections.get(collection_id))
    payload["path"] = collections.path(collection_id)
    payload["children"] = [collection_to_dict(c) for c in collections.children(collection_id)]
    payload["entries"] = [entry_to_dict(e) for e in collections.entries(collection_id)]
    return payload


@router.put("/{collection_id}/name")
def rename_collection(collection_id: str, name: str = Form(...)):
    return collection_to_dict(get_services().collections.rename(collection_id, name))


@router.put("/{collection_id}/parent")
def move_collection(collection_id: str, parent_id: Optional[str] = Form(None)):
    # An empty parent moves the collection to the top level.
    return collection_to_dict(get_services().collections.move(collection_id, parent_id or None))


@router.delete("/{collection_id}")
def delete_collection(collection_id: str):
    removed = get_services().collections.delete(collection_id)
    return {"status": "deleted", "collection_id": collection_id, "removed": removed}


@router.post("/{collection_id}/entries")
def add_entry(
    collection_id: str,
    kind: EntryKind = Form(...),
    target: str = Form(...),
    label: Optional[str] = Form(None),
    index: Optional[int] = Form(None),
):
    entry = get_services().collections.add_entry(collection_id, kind, target, label=label, index=index)
    return entry_to_dict(entry)


@router.put("/{collection_id}/entries/{entry_id}/index")
def move_entry(collection_id: str, entry_id: str, index: int = Form(...)):
    entries = get_services().collections.move_entry(collection_id, entry_id, index)
    return [entry_to_dict(e) for e in entries]


@router.delete("/{collection_id}/entries/{entry_id}")
def remove_entry(collection_id: str, entry_id: str):
    get_services().collections.remove_entry(collection_id, entry_id)
    return {"status": "deleted", "entry_id": entry_id}
