"""
Queue lifecycle events and the bridge that mirrors them into the ledger.

EventHub is the subscription interface: handlers register per kind for
completed / failed / progress and are called in registration order by the
worker that produced the event. A handler that raises is logged and the
remaining handlers still run.

EventBridge is the only writer of terminal statuses to the ledger.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .ledger import JobLedger
from .pipeline.models import JobKind, JobStatus

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
PROGRESS = "progress"


@dataclass
class QueueEvent:
    kind: JobKind
    job_id: str
    project_id: Optional[str] = None
    # completed: the processor's return value; failed: the error message;
    # progress: a number or {"progress": n, ...}
    value: Any = None


Handler = Callable[[QueueEvent], None]


class EventHub:

    def __init__(self):
        self._handlers: dict[tuple[str, JobKind], list[Handler]] = defaultdict(list)

    # ── Subscribe ────────────────────────────────────────────────────────────

    def on_completed(self, kind, handler: Handler):
        self._handlers[(COMPLETED, JobKind(kind))].append(handler)

    def on_failed(self, kind, handler: Handler):
        self._handlers[(FAILED, JobKind(kind))].append(handler)

    def on_progress(self, kind, handler: Handler):
        self._handlers[(PROGRESS, JobKind(kind))].append(handler)

    # ── Emit ─────────────────────────────────────────────────────────────────

    def emit_completed(self, kind, job_id: str, result=None, project_id: Optional[str] = None):
        self._dispatch(COMPLETED, QueueEvent(JobKind(kind), job_id, project_id, result))

    def emit_failed(self, kind, job_id: str, reason: str, project_id: Optional[str] = None):
        self._dispatch(FAILED, QueueEvent(JobKind(kind), job_id, project_id, reason))

    def emit_progress(self, kind, job_id: str, value, project_id: Optional[str] = None):
        self._dispatch(PROGRESS, QueueEvent(JobKind(kind), job_id, project_id, value))

    def _dispatch(self, signal: str, event: QueueEvent):
        for handler in list(self._handlers[(signal, event.kind)]):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    f"{signal} handler {getattr(handler, '__qualname__', handler)!s} "
                    f"failed for {event.kind.value} job {event.job_id}"
                )


def normalize_result(result) -> dict:
    """Shape a processor's return value into ledger output_data."""
    if isinstance(result, str):
        return {"result": result}
    if isinstance(result, dict):
        return result
    return {"raw_return": result}


def _progress_value(value) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("progress")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class EventBridge:
    """Writes every lifecycle event of every queue into the ledger."""

    def __init__(self, hub: EventHub, ledger: JobLedger):
        self.hub = hub
        self.ledger = ledger

    def attach(self):
        for kind in JobKind:
            self.hub.on_completed(kind, self.handle_completed)
            self.hub.on_failed(kind, self.handle_failed)
            self.hub.on_progress(kind, self.handle_progress)
        return self

    def handle_completed(self, event: QueueEvent):
        written = self.ledger.put(
            event.job_id, JobStatus.COMPLETED, 100, output_data=normalize_result(event.value),
            kind=event.kind, project_id=event.project_id,
        )
        if written:
            logger.info(f"Job {event.job_id} ({event.kind.value}) completed")

    def handle_failed(self, event: QueueEvent):
        message = str(event.value) if event.value else "Job failed"
        written = self.ledger.put(
            event.job_id, JobStatus.FAILED, 0, error_message=message,
            kind=event.kind, project_id=event.project_id,
        )
        if written:
            logger.error(f"Job {event.job_id} ({event.kind.value}) failed: {message}")

    def handle_progress(self, event: QueueEvent):
        progress = _progress_value(event.value)
        if progress is None:
            logger.warning(f"Ignoring non-numeric progress for job {event.job_id}: {event.value!r}")
            return
        self.ledger.put(
            event.job_id, JobStatus.PROCESSING, progress,
            kind=event.kind, project_id=event.project_id,
        )
