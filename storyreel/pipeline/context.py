"""
Hierarchical context for generation prompts.

Each entity kind inherits context from its ancestors only:
  character → project summary + plot
  object    → + every character
  scene     → + every character and object
  frame     → + every character and object, plus its own scene

The build_* functions are pure over already-read entities. The load_*
functions read live entities from the store first, so context always
reflects the store at the time the stage runs. A snapshot is never
persisted.
"""

import logging
from typing import Optional

from .errors import EntityNotFoundError
from .models import (
    Character,
    CharacterContext,
    ContextSnapshot,
    ObjectContext,
    ObjectEntity,
    Project,
    Scene,
    SceneContext,
)
from .references import character_token, object_token

logger = logging.getLogger(__name__)


# ── Reducers ─────────────────────────────────────────────────────────────────

def _character_entry(character: Character) -> CharacterContext:
    return CharacterContext(
        id=character.id,
        name=character.metadata.name,
        description=character.metadata.description,
        personality=character.metadata.personality,
        media_url=character.media_url,
    )


def _object_entry(obj: ObjectEntity) -> ObjectContext:
    return ObjectContext(
        id=obj.id,
        type=obj.metadata.type,
        description=obj.metadata.description,
        environmental_context=obj.metadata.environmental_context,
        media_url=obj.media_url,
    )


def _require_project(project: Optional[Project]) -> Project:
    if project is None:
        raise EntityNotFoundError("Project not found")
    return project


# ── Builders ─────────────────────────────────────────────────────────────────

def build_character_context(project: Optional[Project]) -> ContextSnapshot:
    project = _require_project(project)
    return ContextSnapshot(project_summary=project.summary or "", plot=project.plot or "")


def build_object_context(project: Optional[Project], characters: list[Character]) -> ContextSnapshot:
    context = build_character_context(project)
    context.characters = [_character_entry(c) for c in characters]
    return context


def build_scene_context(
    project: Optional[Project],
    characters: list[Character],
    objects: list[ObjectEntity],
) -> ContextSnapshot:
    context = build_object_context(project, characters)
    context.objects = [_object_entry(o) for o in objects]
    return context


def build_frame_context(
    project: Optional[Project],
    characters: list[Character],
    objects: list[ObjectEntity],
    current_scene: Scene,
) -> ContextSnapshot:
    context = build_scene_context(project, characters, objects)
    context.scenes = [SceneContext(
        id=current_scene.id,
        detailed_plot=current_scene.metadata.detailed_plot,
        concise_plot=current_scene.metadata.concise_plot,
    )]
    return context


def frame_context_from_snapshot(snapshot: ContextSnapshot, current_scene: Scene) -> ContextSnapshot:
    """Frame context on top of a scene-level snapshot taken earlier."""
    return snapshot.model_copy(update={"scenes": [SceneContext(
        id=current_scene.id,
        detailed_plot=current_scene.metadata.detailed_plot,
        concise_plot=current_scene.metadata.concise_plot,
    )]})


# ── Loaders (live reads) ─────────────────────────────────────────────────────

def _load_project(store, project_id: str) -> Project:
    project = store.get_project(project_id)
    if project is None:
        raise EntityNotFoundError(f"Project {project_id} not found")
    return project


def load_character_context(store, project_id: str) -> ContextSnapshot:
    return build_character_context(_load_project(store, project_id))


def load_object_context(store, project_id: str) -> ContextSnapshot:
    project = _load_project(store, project_id)
    return build_object_context(project, store.list_characters(project_id))


def load_scene_context(store, project_id: str) -> ContextSnapshot:
    project = _load_project(store, project_id)
    return build_scene_context(
        project,
        store.list_characters(project_id),
        store.list_objects(project_id),
    )


def load_frame_context(store, project_id: str, current_scene: Scene) -> ContextSnapshot:
    project = _load_project(store, project_id)
    return build_frame_context(
        project,
        store.list_characters(project_id),
        store.list_objects(project_id),
        current_scene,
    )


# ── Formatting ───────────────────────────────────────────────────────────────

def format_context_for_prompt(context: ContextSnapshot) -> str:
    """
    Render a snapshot as a prompt block. Characters and objects are listed
    with their reference tokens so the model can cite them. Empty sections
    are left out.
    """
    prompt = f"Project: {context.project_summary}\nPlot: {context.plot}\n\n"

    if context.characters:
        prompt += "Characters:\n"
        for char in context.characters:
            prompt += f"- {character_token(char.id)} {char.name}: {char.description} ({char.personality})\n"
        prompt += "\n"

    if context.objects:
        prompt += "Objects:\n"
        for obj in context.objects:
            prompt += f"- {object_token(obj.id)} {obj.type}: {obj.description} ({obj.environmental_context})\n"
        prompt += "\n"

    if context.scenes:
        prompt += "Current Scene:\n"
        for scene in context.scenes:
            prompt += f"- Scene: {scene.concise_plot}\n  Details: {scene.detailed_plot}\n"
        prompt += "\n"

    return prompt
