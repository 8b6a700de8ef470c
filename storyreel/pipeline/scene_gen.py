"""
Scene generation.

Scenes see every character and object that exists when the job runs. The
scene-level snapshot used for the prompt is returned with the result so the
frames cascaded from this scene build on the same context.
"""

import logging

from .cascade import frame_count_for
from .context import format_context_for_prompt, load_scene_context
from .models import SceneGenerationInput, SceneMetadata, parse_generated
from .references import character_token, object_token

logger = logging.getLogger(__name__)

SCENE_SYSTEM_PROMPT = (
    "You are a film director. Generate a detailed scene based on the description "
    "and hierarchical context."
)

SCENE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "detailed_plot": {
            "type": "STRING",
            "description": "Detailed scene plot with character actions and environmental details",
        },
        "concise_plot": {"type": "STRING", "description": "Concise one-sentence summary of the scene"},
        "duration": {"type": "NUMBER", "description": "Scene duration in seconds"},
        "dialogue": {"type": "STRING", "description": "Dialogue and spoken content for the scene"},
    },
    "required": ["detailed_plot", "concise_plot", "duration", "dialogue"],
}


def process(job, services) -> dict:
    payload: SceneGenerationInput = job.payload
    job.update_progress(10)

    context = load_scene_context(services.store, job.project_id)
    formatted_context = format_context_for_prompt(context)

    job.update_progress(30)

    character_tokens = [character_token(c.id) for c in context.characters]
    object_tokens = [object_token(o.id) for o in context.objects]

    prompt = f"""
Scene Description: {payload.scene_description}
Additional Context: {payload.characters_context} / {payload.plot_context}

{formatted_context}
Generate a scene that:
- Has clear dialogue and action, split into 8 second shots
- References characters using tokens when needed: {', '.join(character_tokens)}
- References objects using tokens when needed: {', '.join(object_tokens)}
- Includes environmental details
"""

    job.update_progress(50)

    scene_data = services.generator.generate_structured(prompt, SCENE_SCHEMA, SCENE_SYSTEM_PROMPT)
    metadata: SceneMetadata = parse_generated(SceneMetadata, scene_data)

    job.update_progress(70)

    scene = services.store.create_scene(job.project_id, metadata.model_dump(exclude_none=True))

    job.update_progress(85)
    logger.info(f"Scene generated: {scene.id} ({metadata.duration}s)")

    return {
        "scene_id": scene.id,
        "scene_data": metadata.model_dump(),
        "scene_context": context.model_dump(mode="json"),
        "frames_triggered": frame_count_for(metadata.duration),
        "context_tokens_available": {
            "characters": character_tokens,
            "objects": object_tokens,
        },
    }
