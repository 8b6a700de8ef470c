"""
Frame generation: one Veo-ready shot of a scene.

Frames see the scene-level characters and objects plus their own scene. The
prompt lists only the entities the scene's plot actually references.
"""

import logging

from .context import format_context_for_prompt, frame_context_from_snapshot, load_frame_context
from .models import FrameGenerationInput, FrameMetadata, Scene, parse_generated
from .references import character_token, object_token, parse_referenced_ids

logger = logging.getLogger(__name__)

FRAME_SYSTEM_PROMPT = (
    "You are a video prompt engineer. Generate a detailed Veo 3 video prompt for this "
    "frame using hierarchical context."
)

FRAME_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "veo3_prompt": {
            "type": "STRING",
            "description": "Detailed Veo 3 video prompt with cinematic quality and specific camera angles",
        },
        "dialogue": {"type": "STRING", "description": "Clear dialogue timing for the frame"},
        "duration_constraint": {"type": "NUMBER", "description": "Maximum duration in seconds (max 8)"},
        "split_reason": {"type": "STRING", "description": "Reason for frame splitting if needed"},
    },
    "required": ["veo3_prompt", "dialogue", "duration_constraint"],
}


def process(job, services) -> dict:
    payload: FrameGenerationInput = job.payload
    job.update_progress(10)

    refs = parse_referenced_ids(payload.scene_metadata.detailed_plot)

    job.update_progress(30)

    current_scene = Scene(id=payload.scene_id, project_id=job.project_id, metadata=payload.scene_metadata)
    if payload.scene_context is not None:
        context = frame_context_from_snapshot(payload.scene_context, current_scene)
    else:
        context = load_frame_context(services.store, job.project_id, current_scene)

    referenced_characters = [c for c in context.characters if c.id in refs.character_ids]
    referenced_objects = [o for o in context.objects if o.id in refs.object_ids]

    job.update_progress(50)

    characters_line = ", ".join(f"{character_token(c.id)} {c.name}: {c.description}" for c in referenced_characters)
    objects_line = ", ".join(f"{object_token(o.id)} {o.type}: {o.description}" for o in referenced_objects)

    prompt = f"""
Frame Index: {payload.frame_index}

{format_context_for_prompt(context)}
Referenced Entities in Frame:
Characters: {characters_line}
Objects: {objects_line}

Generate a Veo 3 video prompt for this frame:
- Maximum 8 seconds duration
- Cinematic quality with specific camera angles
- Clear dialogue timing
- Keep the reference tokens of the entities that appear
"""

    frame_data = services.generator.generate_structured(prompt, FRAME_SCHEMA, FRAME_SYSTEM_PROMPT)
    metadata: FrameMetadata = parse_generated(FrameMetadata, frame_data)
    metadata.frame_order = payload.frame_index

    job.update_progress(70)

    frame = services.store.create_frame(
        job.project_id, metadata.model_dump(exclude_none=True), scene_id=payload.scene_id,
    )

    job.update_progress(85)
    logger.info(f"Frame generated: {frame.id} (scene={payload.scene_id}, index={payload.frame_index})")

    return {
        "frame_id": frame.id,
        "frame_data": metadata.model_dump(exclude_none=True),
        "video_triggered": True,
        "referenced_ids": {
            "character_ids": refs.character_ids,
            "object_ids": refs.object_ids,
        },
        "context_entities_used": {
            "characters": len(referenced_characters),
            "objects": len(referenced_objects),
        },
    }
