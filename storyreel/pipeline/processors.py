"""Processing function per job kind."""

from . import animate, character_gen, frame_gen, image_edit, object_gen, scene_gen, script_gen, stitch
from .models import JobKind

PROCESSORS = {
    JobKind.CHARACTER_GENERATION: character_gen.process,
    JobKind.OBJECT_GENERATION: object_gen.process,
    JobKind.SCENE_GENERATION: scene_gen.process,
    JobKind.FRAME_GENERATION: frame_gen.process,
    JobKind.VIDEO_GENERATION: animate.process,
    JobKind.VIDEO_STITCHING: stitch.process,
    JobKind.SCRIPT_GENERATION: script_gen.process,
    JobKind.IMAGE_EDITING: image_edit.process,
}
