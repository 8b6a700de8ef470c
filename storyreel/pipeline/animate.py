"""
Video generation: Veo via Kie.ai for one frame (or a user-supplied prompt).

Reference tokens in the prompt are swapped for inline descriptions before
the provider call, since the video model needs prose. The finished video is
re-uploaded to our storage and linked to its frame.
"""

import logging

from .models import VideoGenerationInput
from .references import inject_referenced_context, parse_referenced_ids
from .storage import generate_asset_filename

logger = logging.getLogger(__name__)


def _resolve_prompt(prompt: str, store) -> str:
    refs = parse_referenced_ids(prompt)
    if not refs:
        return prompt
    characters = [c for c in (store.get_character(i) for i in refs.character_ids) if c is not None]
    objects = [o for o in (store.get_object(i) for i in refs.object_ids) if o is not None]
    return inject_referenced_context(prompt, characters, objects)


def process(job, services) -> dict:
    payload: VideoGenerationInput = job.payload
    job.update_progress(10)

    prompt = _resolve_prompt(payload.prompt, services.store)
    logger.info(f"Generating video: {prompt[:50]}...")

    job.update_progress(20)

    original_url = services.generator.generate_video(
        prompt, image_url=payload.image_url, options={"duration": payload.duration},
    )

    job.update_progress(60)

    video_bytes = services.generator.download(original_url)

    job.update_progress(80)

    filename = generate_asset_filename("mp4", prefix=payload.metadata.get("name"))
    video_url = services.media.save(job.project_id, "videos", filename, video_bytes)

    job.update_progress(95)

    if payload.frame_id:
        services.store.update_frame(payload.frame_id, {"media_url": video_url})

    logger.info(f"Video generated: {filename} ({len(video_bytes)} bytes)")

    return {
        "type": "video",
        "video_url": video_url,
        "original_url": original_url,
        "filename": filename,
        "prompt": payload.prompt,
        "image_url": payload.image_url,
        "frame_id": payload.frame_id,
        "metadata": payload.metadata,
        "file_size": len(video_bytes),
    }
