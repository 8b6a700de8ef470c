"""
FastAPI routes for the job pipeline.

Job Endpoints:
  POST   /api/jobs/{kind}              Submit a job of the given kind
  GET    /api/jobs/{job_id}/status     Ledger record for a job
  DELETE /api/jobs/{job_id}?type=kind  Cancel a job

Queue Endpoints:
  GET    /api/queues/status            Counts for every kind
  GET    /api/queues/{kind}            Counts for one kind

Project Endpoints:
  POST   /api/projects                 Create project
  GET    /api/projects/{id}            Get project
  PATCH  /api/projects/{id}            Update title / summary / plot
  GET    /api/projects/{id}/jobs       Every job submitted for the project
  GET    /api/projects/{id}/stream     Live progress (server-sent events)
"""

import os
import json
import time
import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from .errors import EntityNotFoundError, InvalidJobInput, JobNotFoundError
from .models import (
    JobKind,
    JobRecord,
    JobStatusResponse,
    Project,
    ProjectCreateRequest,
    ProjectUpdateRequest,
    QueueStatusResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)
from .progress import ProjectProgressTracker

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
STREAM_POLL_INTERVAL = float(os.environ.get("STREAM_POLL_INTERVAL", "1.0"))
STREAM_MAX_SECONDS = float(os.environ.get("STREAM_MAX_SECONDS", "1800"))


def _registry(request: Request):
    return request.app.state.registry


def _parse_kind(kind: str) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown job type: {kind}")


def _http_error(action: str, e: Exception) -> HTTPException:
    if isinstance(e, InvalidJobInput):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (EntityNotFoundError, JobNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Job Router
# ═════════════════════════════════════════════════════════════════════════════

job_router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@job_router.post("/{kind}", response_model=SubmitJobResponse, status_code=201)
def submit_job(kind: str, body: SubmitJobRequest, request: Request):
    """Validate and enqueue a job. Returns the job id immediately."""
    job_kind = _parse_kind(kind)
    try:
        job_id = _registry(request).pipeline.submit_job(
            job_kind, body.project_id, body.input_data, job_id=body.job_id,
        )
    except Exception as e:
        raise _http_error("Job submit", e)
    return SubmitJobResponse(job_id=job_id)


@job_router.get("/{job_id}/status", response_model=JobStatusResponse)
def get_job_status(job_id: str, request: Request):
    try:
        record = _registry(request).pipeline.get_job_status(job_id)
    except Exception as e:
        raise _http_error("Job status", e)
    return JobStatusResponse(
        status=record.status,
        progress=record.progress,
        output_data=record.output_data,
        error_message=record.error_message,
        updated_at=record.updated_at,
    )


@job_router.delete("/{job_id}")
def cancel_job(job_id: str, request: Request, type: str = Query(..., description="Job kind")):
    job_kind = _parse_kind(type)
    try:
        _registry(request).pipeline.cancel_job(job_kind, job_id)
    except Exception as e:
        raise _http_error("Job cancel", e)
    return {"status": "cancelled", "job_id": job_id}


# ═════════════════════════════════════════════════════════════════════════════
# Queue Router
# ═════════════════════════════════════════════════════════════════════════════

queue_router = APIRouter(prefix="/api/queues", tags=["queues"])


@queue_router.get("/status")
def all_queue_status(request: Request):
    counts = _registry(request).pipeline.all_queue_counts()
    return {kind: c.model_dump() for kind, c in counts.items()}


@queue_router.get("/{kind}", response_model=QueueStatusResponse)
def queue_status(kind: str, request: Request):
    job_kind = _parse_kind(kind)
    return QueueStatusResponse(
        kind=job_kind,
        counts=_registry(request).pipeline.get_queue_counts(job_kind),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/api/projects", tags=["projects"])


@project_router.post("", response_model=Project, status_code=201)
def create_project(body: ProjectCreateRequest, request: Request):
    try:
        return _registry(request).services.store.create_project(body.title, body.summary, body.plot)
    except Exception as e:
        raise _http_error("Project create", e)


@project_router.get("/{project_id}", response_model=Project)
def get_project(project_id: str, request: Request):
    project = _registry(request).services.store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@project_router.patch("/{project_id}", response_model=Project)
def update_project(project_id: str, body: ProjectUpdateRequest, request: Request):
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return _registry(request).services.store.update_project(project_id, updates)
    except Exception as e:
        raise _http_error("Project update", e)


@project_router.get("/{project_id}/jobs", response_model=list[JobRecord])
def list_project_jobs(project_id: str, request: Request):
    return _registry(request).pipeline.list_project_jobs(project_id)


# ── Live stream ──────────────────────────────────────────────────────────────

def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def _project_stream(ledger, project_id: str, poll_interval: float, max_seconds: float):
    tracker = ProjectProgressTracker(project_id)
    deadline = time.monotonic() + max_seconds

    yield _sse("connected", {"project_id": project_id})
    while time.monotonic() < deadline:
        records = await asyncio.to_thread(ledger.project_records, project_id)
        for event, data in tracker.update(records):
            yield _sse(event, data)
        if tracker.ready:
            return
        await asyncio.sleep(poll_interval)

    logger.info(f"Stream for project {project_id} reached its time limit")


@project_router.get("/{project_id}/stream")
def stream_project(project_id: str, request: Request):
    """Push character / scene / video completions and batch progress until every job is terminal."""
    ledger = _registry(request).ledger
    return StreamingResponse(
        _project_stream(ledger, project_id, STREAM_POLL_INTERVAL, STREAM_MAX_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
