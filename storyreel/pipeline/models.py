"""
Pydantic models and enums for the generation pipeline.

Job payloads are a tagged union keyed by JobKind: one concrete input model
per kind (see PAYLOAD_MODELS). Storage rows stay schema-light; the models
below are what the workers and routes actually exchange.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import GenerationError, InvalidJobInput


# ── Job Kind / Status ────────────────────────────────────────────────────────

class JobKind(str, Enum):
    CHARACTER_GENERATION = "character-generation"
    OBJECT_GENERATION = "object-generation"
    SCENE_GENERATION = "scene-generation"
    FRAME_GENERATION = "frame-generation"
    VIDEO_GENERATION = "video-generation"
    VIDEO_STITCHING = "video-stitching"
    SCRIPT_GENERATION = "script-generation"
    IMAGE_EDITING = "image-editing"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

CANCELLED_MESSAGE = "Job cancelled"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Entities ─────────────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    title: str = ""
    summary: str = ""
    plot: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CharacterMetadata(BaseModel):
    name: str
    description: str = ""
    personality: str = ""
    age: Optional[int] = None
    role: Optional[str] = None
    backstory: Optional[str] = None


class Character(BaseModel):
    id: str
    project_id: str
    media_url: Optional[str] = None
    metadata: CharacterMetadata


class ObjectMetadata(BaseModel):
    type: str
    description: str = ""
    environmental_context: str = ""


class ObjectEntity(BaseModel):
    """A prop or environment element ("object" in the API)."""
    id: str
    project_id: str
    scene_id: Optional[str] = None
    media_url: Optional[str] = None
    metadata: ObjectMetadata


class SceneMetadata(BaseModel):
    detailed_plot: str = ""
    concise_plot: str = ""
    duration: Optional[float] = None
    dialogue: str = ""
    scene_order: Optional[int] = None


class Scene(BaseModel):
    id: str
    project_id: str
    media_url: Optional[str] = None
    metadata: SceneMetadata


class FrameMetadata(BaseModel):
    veo3_prompt: str
    dialogue: str = ""
    duration_constraint: Optional[float] = None
    split_reason: Optional[str] = None
    summary: Optional[str] = None
    frame_order: Optional[int] = None


class Frame(BaseModel):
    id: str
    project_id: str
    scene_id: Optional[str] = None
    media_url: Optional[str] = None
    metadata: FrameMetadata


# ── Context Snapshot ─────────────────────────────────────────────────────────

class CharacterContext(BaseModel):
    id: str
    name: str
    description: str = ""
    personality: str = ""
    media_url: Optional[str] = None


class ObjectContext(BaseModel):
    id: str
    type: str
    description: str = ""
    environmental_context: str = ""
    media_url: Optional[str] = None


class SceneContext(BaseModel):
    id: str
    detailed_plot: str = ""
    concise_plot: str = ""


class ContextSnapshot(BaseModel):
    """Ancestor context assembled before a generation call. Never persisted."""
    project_summary: str = ""
    plot: str = ""
    characters: list[CharacterContext] = Field(default_factory=list)
    objects: list[ObjectContext] = Field(default_factory=list)
    scenes: Optional[list[SceneContext]] = None


# ── Job Payloads (one per kind) ──────────────────────────────────────────────

class CharacterGenerationInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    name: Optional[str] = None
    width: int = 1024
    height: int = 1024
    context: dict[str, Any] = Field(default_factory=dict)


class ObjectGenerationInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    object_type: str = Field(..., min_length=1)
    environmental_context: str = "General environment"
    scene_id: Optional[str] = None
    width: int = 1024
    height: int = 1024


class SceneGenerationInput(BaseModel):
    scene_description: str = Field(..., min_length=1)
    characters_context: str = ""
    plot_context: str = ""


class FrameGenerationInput(BaseModel):
    scene_id: str
    scene_metadata: SceneMetadata
    scene_context: Optional[ContextSnapshot] = None
    frame_index: int = 0


class VideoGenerationInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    image_url: Optional[str] = None
    duration: float = 8
    frame_id: Optional[str] = None
    type: str = "custom_video"
    metadata: dict[str, Any] = Field(default_factory=dict)


class VideoStitchingInput(BaseModel):
    video_urls: list[str] = Field(..., min_length=1)
    output_name: str = "final_video"
    options: dict[str, Any] = Field(default_factory=dict)


class ScriptGenerationInput(BaseModel):
    type: Literal["script", "character", "plot"]
    prompt: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)


class ImageEditingInput(BaseModel):
    source_url: str
    edit_prompt: str = Field(..., min_length=1)
    type: str = "edited_images"
    metadata: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.CHARACTER_GENERATION: CharacterGenerationInput,
    JobKind.OBJECT_GENERATION: ObjectGenerationInput,
    JobKind.SCENE_GENERATION: SceneGenerationInput,
    JobKind.FRAME_GENERATION: FrameGenerationInput,
    JobKind.VIDEO_GENERATION: VideoGenerationInput,
    JobKind.VIDEO_STITCHING: VideoStitchingInput,
    JobKind.SCRIPT_GENERATION: ScriptGenerationInput,
    JobKind.IMAGE_EDITING: ImageEditingInput,
}


def parse_payload(kind: JobKind, input_data: Any) -> BaseModel:
    """Validate a raw input_data dict against the payload model for `kind`."""
    model = PAYLOAD_MODELS[JobKind(kind)]
    try:
        return model.model_validate(input_data or {})
    except ValidationError as e:
        raise InvalidJobInput(f"Invalid input for {JobKind(kind).value}: {e}") from e


def parse_generated(model: type[BaseModel], data: Any) -> BaseModel:
    """Validate structured model output; a malformed reply is a GenerationError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise GenerationError(f"Generated {model.__name__} did not match its schema: {e}") from e


# ── Ledger Record ────────────────────────────────────────────────────────────

class JobRecord(BaseModel):
    job_id: str
    status: JobStatus
    progress: int = 0
    kind: Optional[JobKind] = None
    project_id: Optional[str] = None
    output_data: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ── API Request / Response Models ────────────────────────────────────────────

class SubmitJobRequest(BaseModel):
    project_id: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = Field(None, description="Idempotency key; generated when omitted")


class SubmitJobResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    status: JobStatus
    progress: int = 0
    output_data: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    updated_at: Optional[str] = None


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class QueueStatusResponse(BaseModel):
    kind: JobKind
    counts: QueueCounts


class ProjectCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    summary: str = ""
    plot: str = ""


class ProjectUpdateRequest(BaseModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    plot: Optional[str] = None
