"""
Story Pipeline

Hierarchical content generation for a project:
  Characters / Objects  →  Scenes  →  Frames  →  Videos  →  Final stitch

Each step is a queued job; finished scenes and frames fan out into their
children automatically, and every generation prompt carries the project's
entity context with reference tokens.
"""

from .errors import (
    EntityNotFoundError,
    GenerationError,
    InvalidJobInput,
    JobNotFoundError,
    StoryreelError,
)
from .models import JobKind, JobStatus

__all__ = [
    "EntityNotFoundError",
    "GenerationError",
    "InvalidJobInput",
    "JobNotFoundError",
    "StoryreelError",
    "JobKind",
    "JobStatus",
]
