import base64
import os

import pytest

from conftest import PUBLIC_URL, make_image
from storyreel.pipeline import (
    animate,
    character_gen,
    frame_gen,
    image_edit,
    object_gen,
    scene_gen,
    script_gen,
    stitch,
)
from storyreel.pipeline.errors import EntityNotFoundError, GenerationError
from storyreel.pipeline.models import JobKind, parse_payload
from storyreel.pipeline.processors import PROCESSORS
from storyreel.pipeline.references import character_token
from storyreel.worker_pool import JobHandle


def _job(kind, project_id, input_data):
    return JobHandle(
        kind=kind,
        id="job-1",
        project_id=project_id,
        input_data=input_data,
        payload=parse_payload(kind, input_data),
    )


def test_every_kind_has_a_processor():
    assert set(PROCESSORS) == set(JobKind)


# ── Character / Object ───────────────────────────────────────────────────────

def test_character_uses_project_context(services, project, generator, media):
    job = _job(JobKind.CHARACTER_GENERATION, project.id, {"prompt": "a fearless pilot", "name": "Kai"})
    result = character_gen.process(job, services)

    assert result["type"] == "character"
    assert result["character_data"]["name"] == "Kai"
    assert result["image_url"].startswith(f"{PUBLIC_URL}/projects/{project.id}/characters/character_")
    structured_prompt = [p for name, p in generator.prompts if name == "character"][0]
    assert "Project: Two explorers race a storm" in structured_prompt
    assert "Characters:" not in structured_prompt


def test_character_with_malformed_reply_fails(services, project, generator):
    generator.replies["character"] = {"age": "unknown"}
    job = _job(JobKind.CHARACTER_GENERATION, project.id, {"prompt": "a pilot"})
    with pytest.raises(GenerationError):
        character_gen.process(job, services)


def test_character_for_missing_project(services):
    job = _job(JobKind.CHARACTER_GENERATION, "no-such-project", {"prompt": "a pilot"})
    with pytest.raises(EntityNotFoundError):
        character_gen.process(job, services)


def test_object_sees_characters_and_defaults_environment(services, store, project, generator):
    zara = store.create_character(project.id, {"name": "Zara", "description": "explorer"})
    job = _job(JobKind.OBJECT_GENERATION, project.id, {"prompt": "brass lantern", "object_type": "lantern"})
    result = object_gen.process(job, services)

    assert result["object_data"] == {
        "type": "lantern",
        "description": "brass lantern",
        "environmental_context": "General environment",
    }
    image_prompt = [p for name, p in generator.prompts if name == "image"][0]
    assert character_token(zara.id) in image_prompt
    assert store.get_object(result["object_id"]).media_url == result["image_url"]


# ── Scene / Frame ────────────────────────────────────────────────────────────

def test_scene_result_shape(services, store, project, generator):
    zara = store.create_character(project.id, {"name": "Zara"})
    job = _job(JobKind.SCENE_GENERATION, project.id, {"scene_description": "desert crossing"})
    result = scene_gen.process(job, services)

    assert store.get_scene(result["scene_id"]).metadata.concise_plot == "Desert crossing"
    assert result["frames_triggered"] == 2
    assert result["context_tokens_available"] == {"characters": [character_token(zara.id)], "objects": []}
    assert result["scene_context"]["characters"][0]["name"] == "Zara"
    scene_prompt = [p for name, p in generator.prompts if name == "scene"][0]
    assert "Scene Description: desert crossing" in scene_prompt


def test_frame_without_snapshot_reads_live_context(services, store, project, generator):
    zara = store.create_character(project.id, {"name": "Zara", "description": "explorer"})
    store.create_character(project.id, {"name": "Unmentioned"})
    scene = store.create_scene(project.id, {"detailed_plot": f"{character_token(zara.id)} waits."})

    job = _job(JobKind.FRAME_GENERATION, project.id, {
        "scene_id": scene.id,
        "scene_metadata": scene.metadata.model_dump(),
        "frame_index": 2,
    })
    result = frame_gen.process(job, services)

    assert result["referenced_ids"] == {"character_ids": [zara.id], "object_ids": []}
    assert result["context_entities_used"] == {"characters": 1, "objects": 0}
    assert result["frame_data"]["frame_order"] == 2
    assert store.get_frame(result["frame_id"]).scene_id == scene.id

    frame_prompt = [p for name, p in generator.prompts if name == "frame"][0]
    referenced_block = frame_prompt.split("Referenced Entities in Frame:")[1]
    assert "Zara" in referenced_block
    assert "Unmentioned" not in referenced_block


# ── Video ────────────────────────────────────────────────────────────────────

def test_custom_video_without_frame(services, project, generator, media):
    job = _job(JobKind.VIDEO_GENERATION, project.id, {"prompt": "a sunrise over dunes", "duration": 6})
    result = animate.process(job, services)

    assert result["type"] == "video"
    assert result["original_url"] == generator.video_url
    assert result["frame_id"] is None
    assert result["video_url"].startswith(f"{PUBLIC_URL}/projects/{project.id}/videos/")
    assert media.read_url(result["video_url"]) == generator.download(generator.video_url)


def test_video_provider_failure_propagates(services, project, generator):
    generator.failures["generate_video"] = 1
    job = _job(JobKind.VIDEO_GENERATION, project.id, {"prompt": "a sunrise"})
    with pytest.raises(RuntimeError, match="generate_video unavailable"):
        animate.process(job, services)


# ── Stitching ────────────────────────────────────────────────────────────────

def test_stitch_concatenates_stored_clips(services, project, media, monkeypatch):
    urls = [
        media.save(project.id, "videos", f"clip{i}.mp4", f"clip-{i}".encode())
        for i in range(3)
    ]
    seen = {}

    def fake_concatenate(paths, output_path, options):
        seen["inputs"] = []
        for path in paths:
            with open(path, "rb") as f:
                seen["inputs"].append(f.read())
        seen["options"] = options
        with open(output_path, "wb") as f:
            f.write(b"final-video")

    monkeypatch.setattr(stitch, "concatenate_clips", fake_concatenate)
    job = _job(JobKind.VIDEO_STITCHING, project.id, {
        "video_urls": urls, "output_name": "episode1", "options": {"fps": 30},
    })
    result = stitch.process(job, services)

    assert seen["inputs"] == [b"clip-0", b"clip-1", b"clip-2"]
    assert seen["options"] == {"fps": 30}
    assert result["type"] == "final_video"
    assert result["video_count"] == 3
    assert result["file_size"] == len(b"final-video")
    assert os.path.basename(result["video_url"]).startswith("final_episode1_")
    assert media.read_url(result["video_url"]) == b"final-video"


# ── Script ───────────────────────────────────────────────────────────────────

def test_script_lists_project_characters(services, store, project, generator):
    store.create_character(project.id, {"name": "Zara"})
    job = _job(JobKind.SCRIPT_GENERATION, project.id, {"type": "script", "prompt": "a storm chase"})
    result = script_gen.process(job, services)

    assert result == {
        "type": "script",
        "content": "generated text",
        "characters": ["Zara"],
        "project_id": project.id,
    }


def test_script_character_creates_entity_without_image(services, store, project):
    job = _job(JobKind.SCRIPT_GENERATION, project.id, {"type": "character", "prompt": "a mechanic"})
    result = script_gen.process(job, services)

    character = store.get_character(result["character_id"])
    assert character.metadata.name == "Zara"
    assert character.media_url is None


def test_script_plot_outline(services, project):
    job = _job(JobKind.SCRIPT_GENERATION, project.id, {"type": "plot", "prompt": "a heist"})
    result = script_gen.process(job, services)
    assert result["type"] == "plot_outline"
    assert result["structure"] == "three_act"


# ── Image editing ────────────────────────────────────────────────────────────

def test_edit_data_url_updates_character(services, store, project, media):
    zara = store.create_character(project.id, {"name": "Zara"}, media_url="https://old.test/zara.png")
    data_url = "data:image/png;base64," + base64.b64encode(make_image()).decode()

    job = _job(JobKind.IMAGE_EDITING, project.id, {
        "source_url": data_url,
        "edit_prompt": "make the coat blue",
        "metadata": {"character_id": zara.id},
    })
    result = image_edit.process(job, services)

    edited = media.read_url(result["image_url"])
    assert edited.startswith(b"\x89PNG")
    assert "/images/edited_" in result["image_url"]
    assert store.get_character(zara.id).media_url == result["image_url"]


def test_edit_stored_image_updates_object(services, store, project, media):
    source = media.save(project.id, "objects", "lantern.png", make_image())
    lantern = store.create_object(project.id, {"type": "lantern"}, media_url=source)

    job = _job(JobKind.IMAGE_EDITING, project.id, {
        "source_url": source,
        "edit_prompt": "add rust",
        "metadata": {"object_id": lantern.id},
    })
    result = image_edit.process(job, services)
    assert store.get_object(lantern.id).media_url == result["image_url"]


def test_concatenate_closes_clips_when_write_fails(monkeypatch):
    moviepy = pytest.importorskip("moviepy")
    closed = []

    class FakeClip:
        def __init__(self, name):
            self.name = name

        def resized(self, height):
            return FakeClip(f"{self.name}@{height}")

        def write_videofile(self, *args, **kwargs):
            raise OSError("disk full")

        def close(self):
            closed.append(self.name)

    monkeypatch.setattr(moviepy, "VideoFileClip", FakeClip)
    monkeypatch.setattr(moviepy, "concatenate_videoclips", lambda clips, method: FakeClip("final"))

    with pytest.raises(OSError, match="disk full"):
        stitch.concatenate_clips(["a.mp4", "b.mp4"], "out.mp4", {"height": 480})
    assert sorted(closed) == ["a.mp4", "a.mp4@480", "b.mp4", "b.mp4@480", "final"]
