import pytest

from storyreel.pipeline.context import (
    build_character_context,
    build_frame_context,
    build_object_context,
    build_scene_context,
    format_context_for_prompt,
    frame_context_from_snapshot,
    load_frame_context,
    load_object_context,
    load_scene_context,
)
from storyreel.pipeline.errors import EntityNotFoundError
from storyreel.pipeline.models import Scene, SceneMetadata
from storyreel.pipeline.references import character_token, object_token


@pytest.fixture()
def cast(store, project):
    zara = store.create_character(project.id, {
        "name": "Zara", "description": "explorer in a red coat", "personality": "bold",
    })
    lantern = store.create_object(project.id, {
        "type": "lantern", "description": "brass, flickering", "environmental_context": "night camp",
    })
    return zara, lantern


def _scene(project_id):
    return Scene(
        id="scene-1",
        project_id=project_id,
        metadata=SceneMetadata(detailed_plot="Zara lights the lantern.", concise_plot="Camp at night"),
    )


def test_character_context_is_project_only(project):
    context = build_character_context(project)
    assert context.project_summary == "Two explorers race a storm"
    assert context.plot == "A desert chase"
    assert context.characters == []
    assert context.objects == []
    assert context.scenes is None


def test_missing_project_raises():
    with pytest.raises(EntityNotFoundError):
        build_character_context(None)


def test_load_with_unknown_project_raises(store):
    with pytest.raises(EntityNotFoundError):
        load_scene_context(store, "no-such-project")


def test_object_context_adds_characters_only(store, project, cast):
    context = load_object_context(store, project.id)
    assert [c.name for c in context.characters] == ["Zara"]
    assert context.objects == []


def test_scene_context_adds_objects(store, project, cast):
    zara, lantern = cast
    context = load_scene_context(store, project.id)
    assert [c.id for c in context.characters] == [zara.id]
    assert [o.id for o in context.objects] == [lantern.id]
    assert context.objects[0].environmental_context == "night camp"
    assert context.scenes is None


def test_frame_context_adds_only_current_scene(store, project, cast):
    context = load_frame_context(store, project.id, _scene(project.id))
    assert len(context.scenes) == 1
    assert context.scenes[0].concise_plot == "Camp at night"
    assert len(context.characters) == 1
    assert len(context.objects) == 1


def test_builders_are_pure_over_inputs(project, cast):
    zara, lantern = cast
    assert build_object_context(project, [zara]).characters[0].personality == "bold"
    scene_ctx = build_scene_context(project, [zara], [lantern])
    frame_ctx = build_frame_context(project, [zara], [lantern], _scene(project.id))
    assert scene_ctx.scenes is None
    assert frame_ctx.characters == scene_ctx.characters


def test_frame_context_from_snapshot_keeps_snapshot_entities(store, project, cast):
    snapshot = load_scene_context(store, project.id)
    store.create_character(project.id, {"name": "Late arrival"})

    context = frame_context_from_snapshot(snapshot, _scene(project.id))
    assert [c.name for c in context.characters] == ["Zara"]
    assert context.scenes[0].id == "scene-1"
    assert snapshot.scenes is None


def test_format_full_context(store, project, cast):
    zara, lantern = cast
    text = format_context_for_prompt(load_frame_context(store, project.id, _scene(project.id)))

    assert text.startswith("Project: Two explorers race a storm\nPlot: A desert chase\n\n")
    assert f"Characters:\n- {character_token(zara.id)} Zara: explorer in a red coat (bold)\n" in text
    assert f"Objects:\n- {object_token(lantern.id)} lantern: brass, flickering (night camp)\n" in text
    assert "Current Scene:\n- Scene: Camp at night\n  Details: Zara lights the lantern.\n" in text


def test_format_omits_empty_sections(project):
    text = format_context_for_prompt(build_character_context(project))
    assert text == "Project: Two explorers race a storm\nPlot: A desert chase\n\n"
    assert "Characters:" not in text
    assert "Objects:" not in text
