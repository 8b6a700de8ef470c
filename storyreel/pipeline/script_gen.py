"""
Script-side text jobs: full script, a text-only character, or a plot outline.
"""

import logging

from .character_gen import CHARACTER_SCHEMA, CHARACTER_SYSTEM_PROMPT
from .models import CharacterMetadata, ScriptGenerationInput, parse_generated

logger = logging.getLogger(__name__)

SCRIPT_SYSTEM_PROMPT = (
    "You are a professional screenwriter. Generate detailed scripts with dialogue, scene "
    "descriptions, and camera directions. Keep scenes under 8 seconds for video generation."
)

PLOT_SYSTEM_PROMPT = (
    "You are a professional story consultant. Generate a detailed plot outline with clear "
    "story beats, character arcs, and scene breakdowns."
)


def _script(job, services, payload: ScriptGenerationInput) -> dict:
    names = [c.metadata.name for c in services.store.list_characters(job.project_id)]
    prompt = (
        f"Plot: {payload.prompt}\nCharacters: {', '.join(names)}\n\n"
        "Generate a complete script with scene descriptions, character dialogue, camera "
        "directions, and time constraints (max 8 seconds per scene)."
    )
    return {
        "type": "script",
        "content": services.generator.generate_text(prompt, SCRIPT_SYSTEM_PROMPT),
        "characters": names,
        "project_id": job.project_id,
    }


def _character(job, services, payload: ScriptGenerationInput) -> dict:
    prompt = f'Create a character description for "{payload.prompt}" in the context of: {payload.context.get("plot", "")}'
    data = services.generator.generate_structured(prompt, CHARACTER_SCHEMA, CHARACTER_SYSTEM_PROMPT)
    metadata: CharacterMetadata = parse_generated(CharacterMetadata, data)
    character = services.store.create_character(job.project_id, metadata.model_dump(exclude_none=True))
    return {
        "type": "character",
        "character_id": character.id,
        "character_data": metadata.model_dump(exclude_none=True),
    }


def _plot(job, services, payload: ScriptGenerationInput) -> dict:
    return {
        "type": "plot_outline",
        "content": services.generator.generate_text(payload.prompt, PLOT_SYSTEM_PROMPT),
        "structure": "three_act",
    }


_HANDLERS = {
    "script": _script,
    "character": _character,
    "plot": _plot,
}


def process(job, services) -> dict:
    payload: ScriptGenerationInput = job.payload
    job.update_progress(10)
    logger.info(f"Processing script job: {payload.type}")

    result = _HANDLERS[payload.type](job, services, payload)

    job.update_progress(90)
    return result
