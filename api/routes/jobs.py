from __future__ import annotations

from fastapi import APIRouter, HTTPException

from api.dependencies import get_services

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}")
def get_job(job_id: str):
    store = get_services().store
    job = store.run(lambda: store.repo.get_job(job_id), "get_job")
    if not job:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {
        "id": job.id,
        "guide_id": job.guide_id,
        "state": job.state,
        "phase": job.phase,
        "version": job.version,
        "error_message": job.error_message,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }
