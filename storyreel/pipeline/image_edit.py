"""
Image editing: apply an instruction to an existing image.

The source may be a data URL, one of our stored assets, or any HTTP(S) URL.
When the job's metadata names a character or object, that entity's
media_url is switched to the edited image.
"""

import logging

from .models import ImageEditingInput, utc_now_iso
from .storage import generate_asset_filename, to_png

logger = logging.getLogger(__name__)


def process(job, services) -> dict:
    payload: ImageEditingInput = job.payload
    job.update_progress(10)

    logger.info(f"Editing image: {payload.edit_prompt[:50]}...")
    source_bytes = services.media.read_url(payload.source_url)

    job.update_progress(30)

    edited = to_png(services.generator.edit_image(source_bytes, payload.edit_prompt))

    job.update_progress(70)

    image_url = services.media.save(
        job.project_id, "images", generate_asset_filename("png", prefix="edited"), edited,
    )

    job.update_progress(90)

    if payload.metadata.get("character_id"):
        services.store.update_character(payload.metadata["character_id"], {"media_url": image_url})
    elif payload.metadata.get("object_id"):
        services.store.update_object(payload.metadata["object_id"], {"media_url": image_url})

    logger.info(f"Image edited: {payload.type} ({len(edited)} bytes)")

    return {
        "type": payload.type,
        "image_url": image_url,
        "edit_prompt": payload.edit_prompt,
        "source_url": payload.source_url,
        "metadata": payload.metadata,
        "edited_at": utc_now_iso(),
    }
