"""
Live project progress derived from ledger polling.

A tracker is fed the project's current job records on every tick and
returns the events to push to the client since the previous tick:

  character_complete   a character-generation job completed
  scene_complete       a scene-generation job completed
  video_complete       a video-generation or video-stitching job completed
  batch_progress       the per-status summary changed
  project_ready        every job is terminal (sent once)
"""

import logging
from typing import Iterable

from .models import JobKind, JobRecord, JobStatus

logger = logging.getLogger(__name__)

_COMPLETION_EVENTS = {
    JobKind.CHARACTER_GENERATION: "character_complete",
    JobKind.SCENE_GENERATION: "scene_complete",
    JobKind.VIDEO_GENERATION: "video_complete",
    JobKind.VIDEO_STITCHING: "video_complete",
}


class ProjectProgressTracker:

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._announced: set[str] = set()
        self._last_summary = None
        self.ready = False

    @staticmethod
    def summarize(records: list[JobRecord]) -> dict:
        summary = {status.value: 0 for status in JobStatus}
        for record in records:
            summary[record.status.value] += 1
        summary["total"] = len(records)
        done = summary[JobStatus.COMPLETED.value] + summary[JobStatus.FAILED.value]
        summary["percent"] = round(done * 100 / len(records)) if records else 0
        return summary

    def update(self, records: Iterable[JobRecord]) -> list[tuple[str, dict]]:
        records = list(records)
        events = []

        for record in records:
            if record.status != JobStatus.COMPLETED or record.job_id in self._announced:
                continue
            self._announced.add(record.job_id)
            event_name = _COMPLETION_EVENTS.get(record.kind)
            if event_name:
                events.append((event_name, {
                    "job_id": record.job_id,
                    "kind": record.kind.value,
                    "output_data": record.output_data,
                }))

        summary = self.summarize(records)
        if summary != self._last_summary:
            self._last_summary = summary
            events.append(("batch_progress", {"project_id": self.project_id, **summary}))

        if not self.ready and records and all(r.is_terminal for r in records):
            self.ready = True
            events.append(("project_ready", {
                "project_id": self.project_id,
                "completed": summary[JobStatus.COMPLETED.value],
                "failed": summary[JobStatus.FAILED.value],
            }))
            logger.info(f"Project {self.project_id} ready ({summary['total']} jobs)")

        return events
