"""
Redis-backed job status ledger.

The ledger is what clients poll. It is kept apart from the queue's own
bookkeeping so a job's status survives queue retention trimming.

Keys:
  job:{job_id}:status      per-job status record (Redis hash)
  project:{id}:jobs        ids of every job submitted for a project (Redis set)

Write rules (enforced in put, under WATCH so concurrent writers cannot
interleave a read and a write):
  - completed / failed are sticky; any later write for the job is dropped
  - a pending write never replaces an existing record
  - processing progress never decreases
"""

import json
import logging
from typing import Optional

import redis

from .pipeline.models import JobKind, JobRecord, JobStatus, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_KEY = "job:{job_id}:status"
PROJECT_INDEX_KEY = "project:{project_id}:jobs"

_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}

MAX_WATCH_RETRIES = 5


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _decode_hash(data: dict) -> dict:
    return {_decode(k): _decode(v) for k, v in data.items()}


def _clamp(progress) -> int:
    return max(0, min(100, int(progress)))


class JobLedger:
    """Status record per job, plus a per-project index of job ids."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    # ── Write ────────────────────────────────────────────────────────────────

    def put(
        self,
        job_id: str,
        status: JobStatus,
        progress: int = 0,
        output_data: Optional[dict] = None,
        error_message: Optional[str] = None,
        kind: Optional[JobKind] = None,
        project_id: Optional[str] = None,
    ) -> bool:
        """
        Write a status record for `job_id`.

        Returns False when the write was dropped by the rules above (a late
        write after a terminal status, or a pending write over an existing
        record). Redis errors propagate.
        """
        status = JobStatus(status)
        key = STATUS_KEY.format(job_id=job_id)

        for _ in range(MAX_WATCH_RETRIES):
            with self.redis.pipeline(transaction=True) as pipe:
                try:
                    pipe.watch(key)
                    current = _decode_hash(pipe.hgetall(key))
                    fields = self._merge(job_id, current, status, progress, output_data, error_message)
                    if fields is None:
                        pipe.unwatch()
                        return False

                    if kind is not None:
                        fields["kind"] = JobKind(kind).value
                    if project_id is not None:
                        fields["project_id"] = project_id

                    pipe.multi()
                    pipe.hset(key, mapping=fields)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    logger.debug(f"Ledger write for {job_id} raced, retrying")
                    continue

        raise RuntimeError(f"Ledger write for job {job_id} kept conflicting")

    def _merge(self, job_id, current, status, progress, output_data, error_message) -> Optional[dict]:
        now = utc_now_iso()

        if current:
            existing = JobStatus(current["status"])
            if existing in (JobStatus.COMPLETED, JobStatus.FAILED):
                logger.debug(f"Dropped {status.value} write for {job_id}: already {existing.value}")
                return None
            if status == JobStatus.PENDING:
                logger.debug(f"Dropped pending write for {job_id}: record exists ({existing.value})")
                return None
            if _RANK[status] < _RANK[existing]:
                return None
            if status == JobStatus.PROCESSING and existing == JobStatus.PROCESSING:
                progress = max(_clamp(progress), int(current.get("progress") or 0))

        fields = {
            "status": status.value,
            "progress": str(_clamp(progress)),
            "updated_at": now,
        }
        if not current:
            fields["created_at"] = now
        if output_data is not None:
            fields["output_data"] = json.dumps(output_data, default=str)
        if error_message is not None:
            fields["error_message"] = error_message
        return fields

    # ── Read ─────────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Current record for `job_id`, or None when nothing was ever written."""
        data = self.redis.hgetall(STATUS_KEY.format(job_id=job_id))
        if not data:
            return None
        return self._to_record(job_id, _decode_hash(data))

    def get_many(self, job_ids) -> list[JobRecord]:
        job_ids = list(job_ids)
        if not job_ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for job_id in job_ids:
            pipe.hgetall(STATUS_KEY.format(job_id=job_id))
        records = []
        for job_id, data in zip(job_ids, pipe.execute()):
            if data:
                records.append(self._to_record(job_id, _decode_hash(data)))
        return records

    @staticmethod
    def _to_record(job_id: str, fields: dict) -> JobRecord:
        output = fields.get("output_data")
        return JobRecord(
            job_id=job_id,
            status=JobStatus(fields["status"]),
            progress=int(fields.get("progress") or 0),
            kind=fields.get("kind") or None,
            project_id=fields.get("project_id") or None,
            output_data=json.loads(output) if output else None,
            error_message=fields.get("error_message") or None,
            created_at=fields.get("created_at"),
            updated_at=fields.get("updated_at"),
        )

    # ── Project Index ────────────────────────────────────────────────────────

    def index(self, project_id: str, job_id: str):
        self.redis.sadd(PROJECT_INDEX_KEY.format(project_id=project_id), job_id)

    def project_job_ids(self, project_id: str) -> list[str]:
        members = self.redis.smembers(PROJECT_INDEX_KEY.format(project_id=project_id))
        return sorted(_decode(m) for m in members)

    def project_records(self, project_id: str) -> list[JobRecord]:
        return self.get_many(self.project_job_ids(project_id))
