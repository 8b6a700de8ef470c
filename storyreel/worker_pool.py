"""
Per-kind worker pools.

A pool runs `concurrency` consumer threads against one kind's queue. Each
thread dequeues a job, hands a JobHandle to the kind's processing function
and reports the outcome:

  success      → queue.complete()  → completed event
  exception    → queue.fail()      → retry with backoff, or a failed event
                                     once attempts are exhausted

While a processor runs, a LeaseHeartbeat keeps renewing the job's queue
lease so another pool starting up never reclaims it. Processing functions
only report progress (through the handle); terminal ledger writes are left
to the EventBridge.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import redis

from . import metrics
from .events import EventHub
from .pipeline.models import JobKind, parse_payload
from .queue import JobQueue, QueueSet

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = float(os.environ.get("WORKER_POLL_INTERVAL", "1.0"))

# Text kinds share one model's rate limit; media kinds mostly wait on providers.
DEFAULT_CONCURRENCY = {
    JobKind.CHARACTER_GENERATION: 3,
    JobKind.OBJECT_GENERATION: 3,
    JobKind.IMAGE_EDITING: 2,
    JobKind.SCRIPT_GENERATION: 4,
    JobKind.SCENE_GENERATION: 3,
    JobKind.FRAME_GENERATION: 5,
    JobKind.VIDEO_GENERATION: 30,
    JobKind.VIDEO_STITCHING: 1,
}


def concurrency_for(kind: JobKind) -> int:
    """WORKER_CONCURRENCY_<KIND> overrides the default table."""
    kind = JobKind(kind)
    env_name = "WORKER_CONCURRENCY_" + kind.name
    return max(1, int(os.environ.get(env_name, DEFAULT_CONCURRENCY[kind])))


@dataclass
class JobHandle:
    """What a processing function receives for one attempt of a job."""
    kind: JobKind
    id: str
    project_id: str
    input_data: dict
    payload: object = None  # the validated pydantic input model
    attempt: int = 1
    _hub: Optional[EventHub] = field(default=None, repr=False)

    def update_progress(self, progress: int):
        if self._hub is not None:
            self._hub.emit_progress(self.kind, self.id, progress, project_id=self.project_id)


Processor = Callable[[JobHandle, object], dict]


class LeaseHeartbeat:
    """Renews a job's queue lease in the background while its processor runs."""

    def __init__(self, queue: JobQueue, job_id: str, interval: Optional[float] = None):
        self.queue = queue
        self.job_id = job_id
        self.interval = interval if interval is not None else queue.lease_seconds / 4
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lease-{job_id}", daemon=True)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc_info):
        self._done.set()
        self._thread.join(timeout=5)
        return False

    def _run(self):
        while not self._done.wait(self.interval):
            try:
                if not self.queue.renew_lease(self.job_id):
                    logger.warning(f"[{self.queue.kind.value}] lease for job {self.job_id} is gone, no longer renewing")
                    return
            except redis.RedisError as e:
                logger.warning(f"[{self.queue.kind.value}] lease renewal for job {self.job_id} failed: {e}")


class WorkerPool:

    def __init__(
        self,
        kind: JobKind,
        processor: Processor,
        queues: QueueSet,
        hub: EventHub,
        services,
        concurrency: Optional[int] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.kind = JobKind(kind)
        self.processor = processor
        self.queue: JobQueue = queues.get(self.kind)
        self.hub = hub
        self.services = services
        self.concurrency = concurrency or concurrency_for(self.kind)
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        recovered = self.queue.recover_stale()
        if recovered:
            logger.info(f"[{self.kind.value}] re-queued {recovered} job(s) from a previous session")

        self._stop.clear()
        for i in range(self.concurrency):
            thread = threading.Thread(
                target=self._consumer_loop,
                name=f"{self.kind.value}-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"[{self.kind.value}] worker pool started ({self.concurrency} thread(s))")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info(f"[{self.kind.value}] worker pool stopped")

    def _consumer_loop(self):
        while not self._stop.is_set():
            try:
                if not self.run_once():
                    self._stop.wait(self.poll_interval)
            except Exception as e:
                # Redis trouble; the in-flight job (if any) is recovered as stale later
                logger.error(f"[{self.kind.value}] consumer loop error: {e}", exc_info=True)
                self._stop.wait(2)

    # ── One Job ──────────────────────────────────────────────────────────────

    def run_once(self) -> bool:
        """
        Dequeue and process at most one job. Returns False when the queue had
        nothing ready.
        """
        queued = self.queue.dequeue()
        if queued is None:
            return False

        handle = JobHandle(
            kind=self.kind,
            id=queued.id,
            project_id=queued.project_id,
            input_data=queued.payload,
            attempt=queued.attempts_made,
            _hub=self.hub,
        )
        metrics.inc_counter(f"started.{self.kind.value}")
        started = time.time()

        try:
            handle.payload = parse_payload(self.kind, queued.payload)
            handle.update_progress(0)
            with LeaseHeartbeat(self.queue, queued.id):
                result = self.processor(handle, self.services)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            final = self.queue.fail(queued.id, message)
            metrics.record_error(self.kind.value, queued.id, message, final)
            if final:
                metrics.inc_counter(f"failed.{self.kind.value}")
                self.hub.emit_failed(self.kind, queued.id, message, project_id=queued.project_id)
            else:
                metrics.inc_counter(f"retried.{self.kind.value}")
            return True

        self.queue.complete(queued.id, result)
        metrics.inc_counter(f"completed.{self.kind.value}")
        metrics.record_latency(self.kind.value, (time.time() - started) * 1000)
        self.hub.emit_completed(self.kind, queued.id, result, project_id=queued.project_id)
        return True

    def drain(self, limit: int = 100) -> int:
        """Process ready jobs synchronously until the queue is empty."""
        processed = 0
        while processed < limit and self.run_once():
            processed += 1
        return processed
