"""Collaborators handed to every processing function."""

from dataclasses import dataclass


@dataclass
class PipelineServices:
    generator: object   # GenerationService: text / structured / image / video
    store: object       # EntityStore: project, character, object, scene, frame rows
    media: object       # MediaStore: binary assets
