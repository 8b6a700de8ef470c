"""
Redis-backed job queues, one per job kind.

Each kind gets its own independently configured queue with a fixed
priority, optional per-job delay and a uniform retry policy (exponential
backoff). A job id doubles as the de-duplication key: adding an id that is
already known to the queue is a no-op.

A dequeued job holds a lease of `lease_seconds`. Its worker renews the
lease while the job runs; only jobs whose lease ran out (a dead worker) are
handed out again by `recover_stale`.

Keys (per kind):
  queue:{kind}:waiting       ready jobs (sorted set, score = priority then enqueue time)
  queue:{kind}:delayed       jobs waiting for a delay or retry backoff (sorted set, score = ready-at ms)
  queue:{kind}:active        in-flight jobs (sorted set, score = lease deadline ms)
  queue:{kind}:completed     most recent completed ids (list, trimmed)
  queue:{kind}:failed        most recent exhausted ids (list, trimmed)
  queue:{kind}:job:{id}      per-job metadata (hash, expires once terminal)
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

import redis

from .pipeline.models import JobKind, QueueCounts

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MAX_ATTEMPTS = int(os.environ.get("QUEUE_MAX_ATTEMPTS", "3"))
BACKOFF_BASE_MS = int(os.environ.get("QUEUE_BACKOFF_BASE_MS", "2000"))
KEEP_COMPLETED = int(os.environ.get("QUEUE_KEEP_COMPLETED", "50"))
KEEP_FAILED = int(os.environ.get("QUEUE_KEEP_FAILED", "20"))
STALE_TASK_TIMEOUT = int(os.environ.get("QUEUE_STALE_TIMEOUT", "600"))  # lease length, seconds
META_TTL = 7200  # terminal metadata auto-expires after 2 hours

# Lower is served first. Interactive, cheap kinds ahead of slow media kinds.
PRIORITIES = {
    JobKind.CHARACTER_GENERATION: 1,
    JobKind.OBJECT_GENERATION: 2,
    JobKind.SCRIPT_GENERATION: 3,
    JobKind.SCENE_GENERATION: 4,
    JobKind.FRAME_GENERATION: 5,
    JobKind.IMAGE_EDITING: 6,
    JobKind.VIDEO_GENERATION: 7,
    JobKind.VIDEO_STITCHING: 8,
}

_PRIORITY_SPAN = 10 ** 13  # larger than any millisecond timestamp


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueuedJob:
    id: str
    kind: JobKind
    project_id: str
    payload: dict = field(default_factory=dict)
    attempts_made: int = 0


class JobQueue:
    """A single kind's queue."""

    def __init__(
        self,
        redis_client: redis.Redis,
        kind: JobKind,
        priority: Optional[int] = None,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base_ms: int = BACKOFF_BASE_MS,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
        lease_seconds: float = STALE_TASK_TIMEOUT,
    ):
        self.redis = redis_client
        self.kind = JobKind(kind)
        self.priority = PRIORITIES[self.kind] if priority is None else priority
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.lease_seconds = lease_seconds

        prefix = f"queue:{self.kind.value}"
        self.waiting_key = f"{prefix}:waiting"
        self.delayed_key = f"{prefix}:delayed"
        self.active_key = f"{prefix}:active"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"
        self._meta_prefix = f"{prefix}:job:"

    def meta_key(self, job_id: str) -> str:
        return f"{self._meta_prefix}{job_id}"

    def _waiting_score(self, priority: int, ts_ms: int) -> int:
        return priority * _PRIORITY_SPAN + ts_ms

    def _lease_deadline(self) -> int:
        return _now_ms() + int(self.lease_seconds * 1000)

    # ── Enqueue ──────────────────────────────────────────────────────────────

    def add(
        self,
        job_id: str,
        project_id: str,
        payload: dict,
        delay_ms: int = 0,
        priority: Optional[int] = None,
    ) -> bool:
        """
        Add a job. Returns False (and changes nothing) when `job_id` is
        already known to this queue.
        """
        meta_key = self.meta_key(job_id)
        if not self.redis.hsetnx(meta_key, "id", job_id):
            logger.info(f"[{self.kind.value}] job {job_id} already queued, skipping duplicate")
            return False

        priority = self.priority if priority is None else priority
        now = _now_ms()
        meta = {
            "project_id": project_id,
            "payload": json.dumps(payload, default=str),
            "priority": str(priority),
            "enqueued_at": str(now),
            "attempts_made": "0",
            "state": "delayed" if delay_ms > 0 else "waiting",
        }

        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(meta_key, mapping=meta)
        if delay_ms > 0:
            pipe.zadd(self.delayed_key, {job_id: now + delay_ms})
        else:
            pipe.zadd(self.waiting_key, {job_id: self._waiting_score(priority, now)})
        pipe.execute()

        logger.info(
            f"[{self.kind.value}] enqueued job {job_id} (project={project_id}, "
            f"priority={priority}, delay={delay_ms}ms)"
        )
        return True

    # ── Dequeue ──────────────────────────────────────────────────────────────

    def promote_delayed(self) -> int:
        """Move delayed jobs whose ready time has passed into waiting."""
        now = _now_ms()
        due = self.redis.zrangebyscore(self.delayed_key, "-inf", now)
        promoted = 0
        for item in due:
            job_id = _decode(item)
            # zrem decides ownership when several workers promote at once
            if not self.redis.zrem(self.delayed_key, job_id):
                continue
            priority = int(_decode(self.redis.hget(self.meta_key(job_id), "priority")) or self.priority)
            self.redis.zadd(self.waiting_key, {job_id: self._waiting_score(priority, now)})
            self.redis.hset(self.meta_key(job_id), "state", "waiting")
            promoted += 1
        return promoted

    def dequeue(self) -> Optional[QueuedJob]:
        """
        Pop the best waiting job into the active set and count the attempt.
        Returns None when nothing is ready.
        """
        self.promote_delayed()

        while True:
            popped = self.redis.zpopmin(self.waiting_key, 1)
            if not popped:
                return None

            job_id = _decode(popped[0][0])
            meta = self.get_job(job_id)
            if meta is None:
                logger.warning(f"[{self.kind.value}] dropped orphaned job {job_id} (no metadata)")
                continue

            pipe = self.redis.pipeline(transaction=True)
            pipe.zadd(self.active_key, {job_id: self._lease_deadline()})
            pipe.hincrby(self.meta_key(job_id), "attempts_made", 1)
            pipe.hset(self.meta_key(job_id), mapping={"state": "active", "processed_on": str(_now_ms())})
            _, attempts, _ = pipe.execute()

            logger.info(f"[{self.kind.value}] dequeued job {job_id} (attempt {attempts}/{self.max_attempts})")
            return QueuedJob(
                id=job_id,
                kind=self.kind,
                project_id=meta.get("project_id", ""),
                payload=meta.get("payload", {}),
                attempts_made=int(attempts),
            )

    # ── Ack / Nack ───────────────────────────────────────────────────────────

    def complete(self, job_id: str, return_value=None):
        meta_key = self.meta_key(job_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.zrem(self.active_key, job_id)
        pipe.hset(meta_key, mapping={
            "state": "completed",
            "return_value": json.dumps(return_value, default=str),
            "finished_on": str(_now_ms()),
        })
        pipe.expire(meta_key, META_TTL)
        pipe.lpush(self.completed_key, job_id)
        pipe.execute()
        self._trim(self.completed_key, self.keep_completed)
        logger.info(f"[{self.kind.value}] completed job {job_id}")

    def fail(self, job_id: str, error_msg: str = "") -> bool:
        """
        Record a failed attempt. Schedules a retry with exponential backoff
        while attempts remain; returns True when the failure is final
        (attempts exhausted, or the job was cancelled while in flight).
        """
        meta_key = self.meta_key(job_id)
        meta = self.get_job(job_id) or {}
        attempts = int(meta.get("attempts_made", 0))
        cancelled = meta.get("cancelled") == "1"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zrem(self.active_key, job_id)
        pipe.hset(meta_key, "last_error", error_msg[:500])

        if not cancelled and attempts < self.max_attempts:
            delay = self.backoff_base_ms * 2 ** max(attempts - 1, 0)
            pipe.zadd(self.delayed_key, {job_id: _now_ms() + delay})
            pipe.hset(meta_key, "state", "delayed")
            pipe.execute()
            logger.warning(
                f"[{self.kind.value}] job {job_id} failed (attempt {attempts}/{self.max_attempts}), "
                f"retrying in {delay}ms: {error_msg}"
            )
            return False

        pipe.hset(meta_key, mapping={"state": "failed", "finished_on": str(_now_ms())})
        pipe.expire(meta_key, META_TTL)
        pipe.lpush(self.failed_key, job_id)
        pipe.execute()
        self._trim(self.failed_key, self.keep_failed)
        logger.error(f"[{self.kind.value}] job {job_id} failed after {attempts} attempt(s): {error_msg}")
        return True

    def _trim(self, list_key: str, keep: int):
        """Drop ids (and their metadata) beyond the retention window."""
        evicted = self.redis.lrange(list_key, keep, -1)
        if not evicted:
            return
        pipe = self.redis.pipeline(transaction=True)
        for item in evicted:
            pipe.delete(self.meta_key(_decode(item)))
        pipe.ltrim(list_key, 0, keep - 1)
        pipe.execute()

    # ── Removal ──────────────────────────────────────────────────────────────

    def remove(self, job_id: str) -> str:
        """
        Take a job out of the queue.

        Returns "removed" when it had not started yet, "in_flight" when a
        worker holds it (the job is flagged cancelled so it is not retried),
        "finished" when it already completed or failed, and "not_found".
        """
        if self.redis.zrem(self.waiting_key, job_id) or self.redis.zrem(self.delayed_key, job_id):
            self.redis.delete(self.meta_key(job_id))
            logger.info(f"[{self.kind.value}] removed job {job_id} before it started")
            return "removed"

        if self.redis.zscore(self.active_key, job_id) is not None:
            self.redis.hset(self.meta_key(job_id), "cancelled", "1")
            logger.info(f"[{self.kind.value}] job {job_id} is in flight, flagged cancelled")
            return "in_flight"

        if self.redis.exists(self.meta_key(job_id)):
            return "finished"
        return "not_found"

    # ── Leases / Stale Task Recovery ─────────────────────────────────────────

    def renew_lease(self, job_id: str) -> bool:
        """Push an in-flight job's lease deadline out. False once the job left the active set."""
        return bool(self.redis.zadd(self.active_key, {job_id: self._lease_deadline()}, xx=True, ch=True))

    def recover_stale(self) -> int:
        """
        Move in-flight jobs whose lease expired back to waiting. A live worker
        keeps renewing its lease, so only jobs of crashed workers qualify.
        """
        stale = self.redis.zrangebyscore(self.active_key, "-inf", _now_ms())
        recovered = 0
        for item in stale:
            job_id = _decode(item)
            if not self.redis.zrem(self.active_key, job_id):
                continue
            meta = self.get_job(job_id)
            if meta is None:
                logger.warning(f"[{self.kind.value}] removed orphaned job {job_id} from active (no metadata)")
                continue
            priority = int(meta.get("priority", self.priority))
            self.redis.zadd(self.waiting_key, {job_id: self._waiting_score(priority, _now_ms())})
            self.redis.hset(self.meta_key(job_id), "state", "waiting")
            recovered += 1
            logger.warning(f"[{self.kind.value}] recovered job {job_id}, lease expired")

        if recovered:
            logger.info(f"[{self.kind.value}] recovered {recovered} stale job(s)")
        return recovered

    # ── Inspection ───────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[dict]:
        data = self.redis.hgetall(self.meta_key(job_id))
        if not data:
            return None
        meta = {_decode(k): _decode(v) for k, v in data.items()}
        meta["payload"] = json.loads(meta.get("payload") or "{}")
        if "return_value" in meta:
            meta["return_value"] = json.loads(meta["return_value"])
        return meta

    def waiting_ids(self) -> list[str]:
        """Waiting job ids in dispatch order."""
        return [_decode(i) for i in self.redis.zrange(self.waiting_key, 0, -1)]

    def delayed_ids(self) -> list[str]:
        return [_decode(i) for i in self.redis.zrange(self.delayed_key, 0, -1)]

    def counts(self) -> QueueCounts:
        pipe = self.redis.pipeline(transaction=False)
        pipe.zcard(self.waiting_key)
        pipe.zcard(self.active_key)
        pipe.llen(self.completed_key)
        pipe.llen(self.failed_key)
        pipe.zcard(self.delayed_key)
        waiting, active, completed, failed, delayed = pipe.execute()
        return QueueCounts(
            waiting=waiting, active=active, completed=completed, failed=failed, delayed=delayed,
        )


class QueueSet:
    """One JobQueue per kind, sharing a Redis connection."""

    def __init__(self, redis_client: redis.Redis, **queue_options):
        self.redis = redis_client
        self._queues = {
            kind: JobQueue(redis_client, kind, **queue_options)
            for kind in JobKind
        }

    def get(self, kind) -> JobQueue:
        return self._queues[JobKind(kind)]

    def __iter__(self):
        return iter(self._queues.values())

    def enqueue(self, kind, job_id: str, project_id: str, payload: dict, delay_ms: int = 0) -> bool:
        return self.get(kind).add(job_id, project_id, payload, delay_ms=delay_ms)

    def counts(self, kind) -> QueueCounts:
        return self.get(kind).counts()

    def all_counts(self) -> dict[str, QueueCounts]:
        return {queue.kind.value: queue.counts() for queue in self._queues.values()}
