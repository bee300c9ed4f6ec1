from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Form

from guide_reader.indexing import BookmarkRecord

from api.dependencies import get_services

router = APIRouter(tags=["bookmarks"])


def bookmark_to_dict(bookmark: BookmarkRecord) -> dict:
    return {
        "id": bookmark.id,
        "guide_id": bookmark.guide_id,
        "line": bookmark.line_number,
        "label": bookmark.label,
        "category": bookmark.category,
        "stale": bookmark.stale,
        "created_at": bookmark.created_at.isoformat(),
    }


@router.get("/guides/{guide_id}/bookmarks")
def list_bookmarks(guide_id: str, category: Optional[str] = None):
    services = get_services()
    services.store.get_metadata(guide_id)
    return [bookmark_to_dict(b) for b in services.bookmarks.list(guide_id, category)]


@router.post("/guides/{guide_id}/bookmarks")
def create_bookmark(
    guide_id: str,
    line: int = Form(...),
    label: str = Form(...),
    category: str = Form("general"),
):
    bookmarks = get_services().bookmarks
    bookmark_id = bookmarks.create(guide_id, line, label, category)
    return bookmark_to_dict(bookmarks.get(bookmark_id))


@router.get("/bookmarks/{bookmark_id}")
def get_bookmark(bookmark_id: str):
    return bookmark_to_dict(get_services().bookmarks.get(bookmark_id))


@router.get("/bookmarks/{bookmark_id}/resolve")
def resolve_bookmark(bookmark_id: str):
    resolved = get_services().bookmarks.resolve(bookmark_id)
    return {
        "bookmark_id": resolved.bookmark_id,
        "guide_id": resolved.guide_id,
        "line": resolved.line_number,
        "column": resolved.column_offset,
        "stale": resolved.stale,
    }


@router.delete("/bookmarks/{bookmark_id}")
def delete_bookmark(bookmark_id: str):
    get_services().bookmarks.delete(bookmark_id)
    return {"status": "deleted", "bookmark_id": bookmark_id}
