"""
Character generation: description (structured JSON) + portrait image.

Characters inherit project-level context only (summary and plot).
"""

import logging

from .context import format_context_for_prompt, load_character_context
from .models import CharacterGenerationInput, CharacterMetadata, parse_generated
from .storage import generate_asset_filename, to_png

logger = logging.getLogger(__name__)

CHARACTER_SYSTEM_PROMPT = (
    "You are a professional character designer. Create detailed character descriptions "
    "in JSON format with fields: name, age, personality, description, role, backstory."
)

CHARACTER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING"},
        "age": {"type": "INTEGER"},
        "personality": {"type": "STRING"},
        "description": {"type": "STRING", "description": "Physical appearance and clothing"},
        "role": {"type": "STRING"},
        "backstory": {"type": "STRING"},
    },
    "required": ["name", "age", "personality", "description"],
}


def process(job, services) -> dict:
    payload: CharacterGenerationInput = job.payload
    job.update_progress(10)

    context = load_character_context(services.store, job.project_id)

    job.update_progress(20)

    prompt = (
        f'Create a character description for "{payload.name or payload.prompt}".\n'
        f"Character brief: {payload.prompt}\n"
    )
    if payload.context.get("plot"):
        prompt += f"Additional context: {payload.context['plot']}\n"
    prompt += f"\n{format_context_for_prompt(context)}"
    character_data = services.generator.generate_structured(prompt, CHARACTER_SCHEMA, CHARACTER_SYSTEM_PROMPT)
    if payload.name:
        character_data["name"] = payload.name
    metadata: CharacterMetadata = parse_generated(CharacterMetadata, character_data)

    job.update_progress(50)

    image_prompt = f"Character portrait of {metadata.name}: {metadata.description}. {payload.prompt}"
    image_bytes = to_png(services.generator.generate_image(image_prompt, payload.width, payload.height))
    image_url = services.media.save(
        job.project_id, "characters", generate_asset_filename("png", prefix="character"), image_bytes,
    )

    job.update_progress(80)

    character = services.store.create_character(
        job.project_id, metadata.model_dump(exclude_none=True), media_url=image_url,
    )

    job.update_progress(95)
    logger.info(f"Character generated: {metadata.name} ({character.id})")

    return {
        "type": "character",
        "character_id": character.id,
        "image_url": image_url,
        "character_data": metadata.model_dump(exclude_none=True),
    }
