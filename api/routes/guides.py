from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse

from guide_reader.indexing import (
    GuideIndexError,
    GuideMetadata,
    GuideRecord,
    GuideStatus,
    export_bundle,
    import_bundle,
)
from guide_reader.indexing.worker import build_guide_id

from api.dependencies import get_job_queue, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/guides", tags=["guides"])


def guide_to_dict(guide: GuideRecord) -> dict:
    return {
        "id": guide.id,
        "title": guide.title,
        "system": guide.system,
        "author": guide.author,
        "version_label": guide.version_label,
        "status": guide.status,
        "current_version": guide.current_version,
        "line_count": guide.line_count,
        "checksum": guide.checksum,
        "encoding": guide.encoding,
        "created_at": guide.created_at.isoformat(),
        "updated_at": guide.updated_at.isoformat(),
    }


def _save_upload(file: UploadFile):
    storage = get_services().store.storage
    upload = storage.save_upload_stream(uuid.uuid4().hex, file.file)
    if upload.stat().st_size == 0:
        storage.delete_upload(upload)
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return upload


def _dispatch(background_tasks: BackgroundTasks, job_id: str) -> None:
    queue = get_job_queue()
    if queue is not None:
        queue.enqueue_import_job(job_id, get_services().import_config)
    else:
        background_tasks.add_task(_run_job, job_id)


def _run_job(job_id: str) -> None:
    try:
        get_services().worker.run_job(job_id)
    except (GuideIndexError, OSError) as exc:
        # The job record carries the failure for clients polling /jobs.
        logger.warning("Background import %s failed: %s", job_id, exc)


@router.get("")
def list_guides():
    return [guide_to_dict(g) for g in get_services().store.list_guides()]


@router.post("/upload")
def upload_guide(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    title: str = Form(...),
    system: str = Form(""),
    author: Optional[str] = Form(None),
    version_label: Optional[str] = Form(None),
):
    if not title.strip():
        raise HTTPException(status_code=400, detail="Title must not be empty")
    services = get_services()
    guide_id = build_guide_id(title, system)
    if services.store.repo.get_guide(guide_id):
        raise HTTPException(status_code=409, detail=f"Guide already exists: {guide_id}")

    upload = _save_upload(file)
    metadata = GuideMetadata(title=title.strip(), system=system.strip(), author=author, version_label=version_label)
    job = services.worker.create_job(upload, metadata, guide_id=guide_id, config={"cleanup_source": True})
    _dispatch(background_tasks, job.id)
    return {"guide_id": guide_id, "job_id": job.id}


@router.post("/import-bundle")
def upload_bundle(file: UploadFile = File(...), guide_id: Optional[str] = Form(None)):
    services = get_services()
    upload = _save_upload(file)
    try:
        guide = import_bundle(services.worker, upload, guide_id=guide_id or None)
    finally:
        services.store.storage.delete_upload(upload)
    return guide_to_dict(guide)


@router.post("/suspend")
def suspend():
    return {"flushed": get_services().positions.suspend()}


@router.get("/{guide_id}")
def get_guide(guide_id: str):
    return guide_to_dict(get_services().store.get_metadata(guide_id))


@router.get("/{guide_id}/versions")
def list_versions(guide_id: str):
    store = get_services().store
    store.get_metadata(guide_id)
    return [
        {
            "version": v.version,
            "line_count": v.line_count,
            "byte_size": v.byte_size,
            "checksum": v.checksum,
            "encoding": v.encoding,
            "created_at": v.created_at.isoformat(),
        }
        for v in store.run(lambda: store.repo.list_versions(guide_id), "list_versions")
    ]


@router.post("/{guide_id}/reimport")
def reimport_guide(
    guide_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    version_label: Optional[str] = Form(None),
):
    services = get_services()
    guide = services.store.get_metadata(guide_id)
    if guide.status in (GuideStatus.IMPORTING, GuideStatus.REIMPORTING):
        raise HTTPException(status_code=409, detail=f"Guide {guide_id} is already being imported")

    upload = _save_upload(file)
    metadata = GuideMetadata(
        title=guide.title,
        system=guide.system,
        author=guide.author,
        version_label=version_label or guide.version_label,
    )
    job = services.worker.create_job(upload, metadata, guide_id=guide_id, config={"cleanup_source": True})
    _dispatch(background_tasks, job.id)
    return {"guide_id": guide_id, "job_id": job.id}


@router.get("/{guide_id}/window")
def get_window(
    guide_id: str,
    center: int = 0,
    radius: int = Query(40, ge=0, le=2000),
    version: Optional[int] = None,
):
    with get_services().cache.get_window(guide_id, center, radius, version=version) as window:
        return {
            "guide_id": guide_id,
            "version": window.version,
            "start": window.start,
            "end": window.end,
            "line_count": window.line_count,
            "lines": window.lines,
        }


@router.get("/{guide_id}/lines")
def get_lines(guide_id: str, start: int, end: int):
    with get_services().store.session(guide_id) as session:
        return {
            "guide_id": guide_id,
            "version": session.version,
            "start": start,
            "end": end,
            "lines": session.get_line_range(start, end),
        }


@router.get("/{guide_id}/sections")
def get_sections(guide_id: str):
    with get_services().store.session(guide_id) as session:
        return {
            "guide_id": guide_id,
            "version": session.version,
            "sections": [node.to_dict() for node in session.get_section_tree()],
        }


@router.get("/{guide_id}/position")
def get_position(guide_id: str):
    services = get_services()
    services.store.get_metadata(guide_id)
    position = services.positions.get_position(guide_id)
    return {"guide_id": guide_id, "line": position.line_number, "column": position.column_offset}


@router.put("/{guide_id}/position")
def set_position(guide_id: str, line: int = Form(...), column: int = Form(0)):
    position = get_services().positions.set_position(guide_id, line, column)
    return {"guide_id": guide_id, "line": position.line_number, "column": position.column_offset}


@router.get("/{guide_id}/export")
def export_guide(guide_id: str):
    services = get_services()
    dest = services.store.storage.paths.exports_dir() / f"{guide_id}.zip"
    export_bundle(services.store, guide_id, dest)
    return FileResponse(dest, media_type="application/zip", filename=f"{guide_id}.zip")


@router.post("/{guide_id}/prune")
def prune_guide(guide_id: str):
    services = get_services()
    services.store.get_metadata(guide_id)
    return {"guide_id": guide_id, "pruned": services.store.prune(guide_id)}


@router.delete("/{guide_id}")
def delete_guide(guide_id: str):
    services = get_services()
    services.store.delete_guide(guide_id)
    services.cache.invalidate(guide_id)
    return {"status": "deleted", "guide_id": guide_id}
