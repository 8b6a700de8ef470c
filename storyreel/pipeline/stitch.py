"""
Video stitching: concatenate finished clips into one final video (moviepy).
"""

import os
import logging
import tempfile

from .models import VideoStitchingInput
from .storage import generate_asset_filename

logger = logging.getLogger(__name__)

DEFAULT_HEIGHT = 720
DEFAULT_FPS = 24


def concatenate_clips(paths: list[str], output_path: str, options: dict):
    """Concatenate video files at `paths` into `output_path`."""
    from moviepy import VideoFileClip, concatenate_videoclips

    height = int(options.get("height", DEFAULT_HEIGHT))
    sources, clips = [], []
    final_clip = None
    try:
        for path in paths:
            source = VideoFileClip(path)
            sources.append(source)
            clips.append(source.resized(height=height))
        final_clip = concatenate_videoclips(clips, method="compose")
        final_clip.write_videofile(
            output_path,
            codec="libx264",
            audio_codec="aac",
            fps=int(options.get("fps", DEFAULT_FPS)),
            logger=None,
        )
    finally:
        if final_clip is not None:
            final_clip.close()
        for clip in clips + sources:
            clip.close()


def process(job, services) -> dict:
    payload: VideoStitchingInput = job.payload
    job.update_progress(10)

    logger.info(f"Stitching {len(payload.video_urls)} videos for project {job.project_id}")

    with tempfile.TemporaryDirectory(prefix="stitch_") as workdir:
        paths = []
        for i, url in enumerate(payload.video_urls):
            path = os.path.join(workdir, f"clip_{i:03d}.mp4")
            with open(path, "wb") as f:
                f.write(services.media.read_url(url))
            paths.append(path)

        job.update_progress(30)

        output_path = os.path.join(workdir, "final.mp4")
        concatenate_clips(paths, output_path, payload.options)

        job.update_progress(90)

        with open(output_path, "rb") as f:
            final_bytes = f.read()

    filename = generate_asset_filename("mp4", prefix=f"final_{payload.output_name}")
    video_url = services.media.save(job.project_id, "videos", filename, final_bytes)
    logger.info(f"Video stitching completed: {filename} ({len(final_bytes)} bytes)")

    return {
        "type": "final_video",
        "video_url": video_url,
        "filename": filename,
        "input_videos": payload.video_urls,
        "file_size": len(final_bytes),
        "video_count": len(payload.video_urls),
        "options": payload.options,
    }
