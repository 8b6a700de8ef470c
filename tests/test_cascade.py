import pytest

from conftest import drain_all
from storyreel.events import EventBridge, EventHub
from storyreel.ledger import JobLedger
from storyreel.pipeline.cascade import CascadeTrigger, frame_count_for
from storyreel.pipeline.models import JobKind, JobStatus
from storyreel.pipeline.references import character_token, object_token

SCENE = JobKind.SCENE_GENERATION
FRAME = JobKind.FRAME_GENERATION
VIDEO = JobKind.VIDEO_GENERATION


@pytest.mark.parametrize("duration, expected", [
    (None, 1),
    (0, 1),
    (-4, 1),
    ("not a number", 1),
    (1, 1),
    (8, 1),
    (8.5, 2),
    (16, 2),
    (17, 3),
    (60, 8),
    (float("nan"), 1),
    (float("inf"), 1),
    ("-inf", 1),
])
def test_frame_count_for(duration, expected):
    assert frame_count_for(duration) == expected


def _submit_scene(registry, project, job_id="scene-job"):
    return registry.pipeline.submit_job(SCENE, project.id, {"scene_description": "desert crossing"}, job_id=job_id)


def test_scene_of_16_seconds_triggers_two_frames(registry, project):
    _submit_scene(registry, project)
    registry.pool(SCENE).run_once()

    scene_id = registry.pipeline.get_job_status("scene-job").output_data["scene_id"]
    frame_queue = registry.queues.get(FRAME)
    assert frame_queue.waiting_ids() == ["scene-job-frame-0", "scene-job-frame-1"]

    for index, job_id in enumerate(frame_queue.waiting_ids()):
        payload = frame_queue.get_job(job_id)["payload"]
        assert payload["scene_id"] == scene_id
        assert payload["frame_index"] == index
        assert payload["scene_metadata"]["duration"] == 16
        assert payload["scene_context"]["project_summary"] == "Two explorers race a storm"
        assert registry.pipeline.get_job_status(job_id).status == JobStatus.PENDING


@pytest.mark.parametrize("duration, frames", [(None, 1), (24, 3), (5, 1)])
def test_frame_count_follows_scene_duration(registry, project, generator, duration, frames):
    generator.replies["scene"]["duration"] = duration
    _submit_scene(registry, project)
    registry.pool(SCENE).run_once()
    assert registry.queues.counts(FRAME).waiting == frames


def test_frame_completion_triggers_exactly_one_video(registry, project):
    _submit_scene(registry, project)
    registry.pool(SCENE).run_once()
    registry.pool(FRAME).run_once()

    video_queue = registry.queues.get(VIDEO)
    assert video_queue.waiting_ids() == ["scene-job-frame-0-video"]

    frame_id = registry.pipeline.get_job_status("scene-job-frame-0").output_data["frame_id"]
    payload = video_queue.get_job("scene-job-frame-0-video")["payload"]
    assert payload["frame_id"] == frame_id
    assert payload["prompt"] == "Wide shot of the desert at dawn"
    assert payload["duration"] == 8
    assert payload["type"] == "frame_video"


def test_repeated_completion_does_not_duplicate_descendants(registry, project):
    _submit_scene(registry, project)
    registry.pool(SCENE).run_once()
    output = registry.pipeline.get_job_status("scene-job").output_data

    registry.hub.emit_completed(SCENE, "scene-job", output, project_id=project.id)
    assert registry.queues.counts(FRAME).waiting == 2


def test_failed_scene_does_not_cascade(registry, project, generator):
    generator.failures["generate_structured"] = 10
    _submit_scene(registry, project)
    drain_all(registry)

    assert registry.pipeline.get_job_status("scene-job").status == JobStatus.FAILED
    assert registry.queues.counts(FRAME).waiting == 0


def test_scene_cancelled_in_flight_does_not_cascade(registry, project, generator):
    original = generator.generate_structured

    def cancel_then_generate(prompt, schema, system_prompt=None):
        registry.pipeline.cancel_job(SCENE, "scene-job")
        return original(prompt, schema, system_prompt)

    generator.generate_structured = cancel_then_generate
    _submit_scene(registry, project)
    registry.pool(SCENE).run_once()

    assert registry.pipeline.get_job_status("scene-job").error_message == "Job cancelled"
    assert registry.queues.counts(FRAME).waiting == 0


def test_enqueue_failure_leaves_parent_completed(redis_client):
    hub = EventHub()
    ledger = JobLedger(redis_client)

    def broken_submit(*args, **kwargs):
        raise RuntimeError("redis unavailable")

    CascadeTrigger(hub, ledger, submit=broken_submit).attach()
    EventBridge(hub, ledger).attach()

    hub.emit_completed(SCENE, "scene-job", {"scene_id": "s1", "scene_data": {"duration": 16}}, project_id="p1")
    assert ledger.get("scene-job").status == JobStatus.COMPLETED


def test_completion_without_ids_does_not_cascade(redis_client):
    submitted = []
    hub = EventHub()
    CascadeTrigger(hub, JobLedger(redis_client), submit=lambda *a, **k: submitted.append(a)).attach()

    hub.emit_completed(SCENE, "scene-job", {"scene_data": {"duration": 16}})
    hub.emit_completed(FRAME, "frame-job", "no frame here")
    assert submitted == []


def test_other_kinds_do_not_cascade(registry, project):
    registry.pipeline.submit_job(JobKind.CHARACTER_GENERATION, project.id, {"prompt": "Zara"})
    drain_all(registry)
    counts = registry.pipeline.all_queue_counts()
    assert sum(c.waiting + c.delayed for c in counts.values()) == 0


def test_full_pipeline_with_references(registry, project, store, generator):
    registry.pipeline.submit_job(JobKind.CHARACTER_GENERATION, project.id, {"prompt": "Zara"})
    registry.pipeline.submit_job(JobKind.OBJECT_GENERATION, project.id, {
        "prompt": "brass lantern", "object_type": "lantern",
    })
    drain_all(registry)

    zara = store.list_characters(project.id)[0]
    lantern = store.list_objects(project.id)[0]
    generator.replies["scene"] = {
        "detailed_plot": f"{character_token(zara.id)} lights the {object_token(lantern.id)}.",
        "concise_plot": "Camp at night",
        "duration": 8,
        "dialogue": "Stay close.",
    }
    generator.replies["frame"] = {
        "veo3_prompt": f"Close-up of {character_token(zara.id)} holding the {object_token(lantern.id)}",
        "dialogue": "Stay close.",
        "duration_constraint": 6,
    }

    _submit_scene(registry, project)
    drain_all(registry)

    frame_job = registry.pipeline.get_job_status("scene-job-frame-0")
    assert frame_job.output_data["referenced_ids"] == {
        "character_ids": [zara.id], "object_ids": [lantern.id],
    }
    assert frame_job.output_data["context_entities_used"] == {"characters": 1, "objects": 1}

    video_job = registry.pipeline.get_job_status("scene-job-frame-0-video")
    assert video_job.status == JobStatus.COMPLETED
    assert video_job.output_data["metadata"]["character_ids"] == [zara.id]

    # the stored frame keeps its tokens; the provider prompt gets prose
    frame = store.get_frame(frame_job.output_data["frame_id"])
    assert character_token(zara.id) in frame.metadata.veo3_prompt
    assert frame.media_url == video_job.output_data["video_url"]
    assert frame.metadata.frame_order == 0

    video_prompt = [p for name, p in generator.prompts if name == "video"][-1]
    assert video_prompt == "Close-up of Zara (Tall explorer in a red coat) holding the lantern (brass lantern)"

    records = registry.pipeline.list_project_jobs(project.id)
    assert len(records) == 5
    assert all(r.status == JobStatus.COMPLETED for r in records)
