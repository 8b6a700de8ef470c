"""
Completion-driven cascade between pipeline stages.

  scene completed → ceil(duration / 8) frame-generation jobs, each carrying the
                    scene id, its metadata and the scene-level context snapshot
                    taken when the scene was generated
  frame completed → exactly one video-generation job for the frame

Nothing else cascades; stitching and script jobs are user-initiated. Failed
parents never cascade (only completed events are subscribed). A failing
descendant enqueue is logged and leaves the parent's status untouched.
"""

import logging
import math
from typing import Callable

from ..events import EventHub, QueueEvent
from ..ledger import JobLedger
from .models import JobKind, JobStatus
from .references import parse_referenced_ids

logger = logging.getLogger(__name__)

FRAME_SECONDS = 8


def frame_count_for(duration) -> int:
    """Number of frames a scene of `duration` seconds is split into."""
    try:
        duration = float(duration or 0)
    except (TypeError, ValueError):
        duration = 0
    if not math.isfinite(duration) or duration <= 0:
        duration = FRAME_SECONDS
    return math.ceil(duration / FRAME_SECONDS)


class CascadeTrigger:
    """
    Subscribes to scene and frame completions and submits descendant jobs
    through `submit(kind, project_id, input_data, job_id=...)`.
    """

    def __init__(self, hub: EventHub, ledger: JobLedger, submit: Callable):
        self.hub = hub
        self.ledger = ledger
        self.submit = submit

    def attach(self):
        self.hub.on_completed(JobKind.SCENE_GENERATION, self.on_scene_completed)
        self.hub.on_completed(JobKind.FRAME_GENERATION, self.on_frame_completed)
        return self

    def _cancelled(self, event: QueueEvent) -> bool:
        record = self.ledger.get(event.job_id)
        if record is not None and record.status == JobStatus.FAILED:
            logger.info(f"Skipping cascade for {event.kind.value} job {event.job_id}: {record.error_message}")
            return True
        return False

    # ── Scene → Frames ───────────────────────────────────────────────────────

    def on_scene_completed(self, event: QueueEvent):
        result = event.value if isinstance(event.value, dict) else {}
        scene_id = result.get("scene_id")
        if not scene_id:
            logger.warning(f"Scene job {event.job_id} completed without a scene_id, no frames triggered")
            return
        if self._cancelled(event):
            return

        scene_data = result.get("scene_data") or {}
        frame_count = frame_count_for(scene_data.get("duration"))

        for i in range(frame_count):
            input_data = {
                "scene_id": scene_id,
                "scene_metadata": scene_data,
                "scene_context": result.get("scene_context"),
                "frame_index": i,
            }
            try:
                job_id = self.submit(
                    JobKind.FRAME_GENERATION, event.project_id, input_data,
                    job_id=f"{event.job_id}-frame-{i}",
                )
            except Exception:
                logger.exception(f"Failed to enqueue frame {i + 1}/{frame_count} for scene {scene_id}")
                continue
            logger.info(f"Triggered frame generation {i + 1}/{frame_count} for scene {scene_id} (job {job_id})")

    # ── Frame → Video ────────────────────────────────────────────────────────

    def on_frame_completed(self, event: QueueEvent):
        result = event.value if isinstance(event.value, dict) else {}
        frame_id = result.get("frame_id")
        if not frame_id:
            logger.warning(f"Frame job {event.job_id} completed without a frame_id, no video triggered")
            return
        if self._cancelled(event):
            return

        frame_data = result.get("frame_data") or {}
        prompt = frame_data.get("veo3_prompt", "")
        refs = parse_referenced_ids(f"{prompt}\n{frame_data.get('dialogue', '')}")

        input_data = {
            "frame_id": frame_id,
            "prompt": prompt,
            "duration": frame_data.get("duration_constraint") or FRAME_SECONDS,
            "type": "frame_video",
            "metadata": {
                "frame_id": frame_id,
                "character_ids": refs.character_ids,
                "object_ids": refs.object_ids,
            },
        }
        try:
            job_id = self.submit(
                JobKind.VIDEO_GENERATION, event.project_id, input_data,
                job_id=f"{event.job_id}-video",
            )
        except Exception:
            logger.exception(f"Failed to enqueue video generation for frame {frame_id}")
            return
        logger.info(f"Triggered video generation for frame {frame_id} (job {job_id})")
