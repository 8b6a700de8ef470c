"""Domain exceptions raised by the pipeline and mapped to HTTP codes in routes."""


class StoryreelError(Exception):
    pass


class EntityNotFoundError(StoryreelError, LookupError):
    """A project, scene, frame or other entity could not be read."""


class JobNotFoundError(StoryreelError, LookupError):
    pass


class InvalidJobInput(StoryreelError, ValueError):
    """Submission payload failed validation; the job never reaches a queue."""


class GenerationError(StoryreelError, RuntimeError):
    """A provider answered but the response held no usable output."""
