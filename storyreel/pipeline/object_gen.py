"""Object (prop / environment) generation. Objects see the project's characters."""

import logging

from .context import format_context_for_prompt, load_object_context
from .models import ObjectGenerationInput, ObjectMetadata
from .storage import generate_asset_filename, to_png

logger = logging.getLogger(__name__)


def process(job, services) -> dict:
    payload: ObjectGenerationInput = job.payload
    job.update_progress(10)

    context = load_object_context(services.store, job.project_id)

    job.update_progress(30)

    image_prompt = (
        f"{payload.object_type}: {payload.prompt}\n"
        f"Setting: {payload.environmental_context}\n\n"
        f"{format_context_for_prompt(context)}"
    )
    image_bytes = to_png(services.generator.generate_image(image_prompt, payload.width, payload.height))

    job.update_progress(70)

    image_url = services.media.save(
        job.project_id, "objects", generate_asset_filename("png", prefix="object"), image_bytes,
    )

    job.update_progress(90)

    object_data = ObjectMetadata(
        type=payload.object_type,
        description=payload.prompt,
        environmental_context=payload.environmental_context,
    ).model_dump()
    obj = services.store.create_object(
        job.project_id, object_data, media_url=image_url, scene_id=payload.scene_id,
    )
    logger.info(f"Object generated: {payload.object_type} ({obj.id})")

    return {
        "type": "object",
        "object_id": obj.id,
        "image_url": image_url,
        "object_data": object_data,
    }
