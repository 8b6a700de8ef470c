"""
PipelineService: the job interface exposed to callers.

  submit_job       validate payload → check ancestors exist → enqueue → pending ledger record
  get_job_status   the ledger record (never the queue's own bookkeeping)
  cancel_job       pull from the queue if not started; mark the ledger failed
  get_queue_counts per-kind waiting / active / completed / failed / delayed
"""

import logging
import uuid
from typing import Optional

from ..ledger import JobLedger
from ..queue import QueueSet
from .errors import EntityNotFoundError, InvalidJobInput, JobNotFoundError
from .models import (
    CANCELLED_MESSAGE,
    FrameGenerationInput,
    JobKind,
    JobRecord,
    JobStatus,
    ObjectGenerationInput,
    QueueCounts,
    VideoGenerationInput,
    parse_payload,
)

logger = logging.getLogger(__name__)


class PipelineService:

    def __init__(self, queues: QueueSet, ledger: JobLedger, store):
        self.queues = queues
        self.ledger = ledger
        self.store = store

    # ── Submit ───────────────────────────────────────────────────────────────

    def submit_job(
        self,
        kind,
        project_id: str,
        input_data: dict,
        job_id: Optional[str] = None,
        delay_ms: int = 0,
    ) -> str:
        """
        Enqueue a job and return its id. Re-submitting an id the ledger already
        knows (pending, running or finished) is a no-op and returns the same id.

        Raises InvalidJobInput for a malformed payload and EntityNotFoundError
        when a declared ancestor cannot be read; in both cases nothing is
        enqueued or written to the ledger.
        """
        try:
            kind = JobKind(kind)
        except ValueError:
            raise InvalidJobInput(f"Unknown job kind: {kind}") from None
        if not project_id:
            raise InvalidJobInput("project_id is required")

        payload = parse_payload(kind, input_data)
        self._check_ancestors(kind, project_id, payload)

        job_id = job_id or str(uuid.uuid4())
        if self.ledger.get(job_id) is not None:
            # The ledger outlives queue metadata (cancel, retention trim, TTL)
            logger.info(f"Job {job_id} was already submitted, ignoring resubmission")
            return job_id

        # Indexed first so a project's stream never sees the job run unlisted
        self.ledger.index(project_id, job_id)
        added = self.queues.enqueue(
            kind, job_id, project_id, payload.model_dump(mode="json"), delay_ms=delay_ms,
        )
        if added:
            self.ledger.put(job_id, JobStatus.PENDING, 0, kind=kind, project_id=project_id)
            logger.info(f"Submitted {kind.value} job {job_id} for project {project_id}")
        return job_id

    def _check_ancestors(self, kind: JobKind, project_id: str, payload):
        if self.store.get_project(project_id) is None:
            raise EntityNotFoundError(f"Project {project_id} not found")

        if isinstance(payload, FrameGenerationInput):
            if self.store.get_scene(payload.scene_id) is None:
                raise EntityNotFoundError(f"Scene {payload.scene_id} not found")
        elif isinstance(payload, ObjectGenerationInput) and payload.scene_id:
            if self.store.get_scene(payload.scene_id) is None:
                raise EntityNotFoundError(f"Scene {payload.scene_id} not found")
        elif isinstance(payload, VideoGenerationInput) and payload.frame_id:
            if self.store.get_frame(payload.frame_id) is None:
                raise EntityNotFoundError(f"Frame {payload.frame_id} not found")

    # ── Status ───────────────────────────────────────────────────────────────

    def get_job_status(self, job_id: str) -> JobRecord:
        record = self.ledger.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return record

    def list_project_jobs(self, project_id: str) -> list[JobRecord]:
        return self.ledger.project_records(project_id)

    # ── Cancel ───────────────────────────────────────────────────────────────

    def cancel_job(self, kind, job_id: str):
        """
        Cancel a job. A job that has not started is removed from its queue;
        one already in flight is not interrupted, but its ledger record turns
        failed and any later completion is ignored.

        Raises InvalidJobInput when `kind` is not the kind the job was
        submitted as.
        """
        kind = JobKind(kind)
        record = self.ledger.get(job_id)
        if record is not None and record.kind is not None and record.kind != kind:
            raise InvalidJobInput(f"Job {job_id} is a {record.kind.value} job, not {kind.value}")

        outcome = self.queues.get(kind).remove(job_id)
        if outcome == "not_found" and record is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        written = self.ledger.put(job_id, JobStatus.FAILED, 0, error_message=CANCELLED_MESSAGE)
        if written:
            logger.info(f"Cancelled job {job_id} ({outcome})")
        else:
            logger.info(f"Cancel for job {job_id} had no effect, already terminal")

    # ── Queue Counts ─────────────────────────────────────────────────────────

    def get_queue_counts(self, kind) -> QueueCounts:
        return self.queues.counts(JobKind(kind))

    def all_queue_counts(self) -> dict[str, QueueCounts]:
        return self.queues.all_counts()
