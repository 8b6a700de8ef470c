"""
Inline entity reference tokens.

Generated text marks the entities it uses with tokens such as
`<|character_3f2a...|>` or `<|object_9b1c...|>`. Tokens are never removed:
surfaces that show text to end users keep them, surfaces that feed a model
swap resolvable tokens for a short inline description.
"""

import re
from dataclasses import dataclass, field

# Hex digits and hyphens only; "<|character|>" and "<|object_|>" never match.
TOKEN_PATTERN = re.compile(r"<\|(character|object)_([0-9a-fA-F-]+)\|>")


def character_token(entity_id: str) -> str:
    return f"<|character_{entity_id}|>"


def object_token(entity_id: str) -> str:
    return f"<|object_{entity_id}|>"


@dataclass
class ReferencedIds:
    character_ids: list[str] = field(default_factory=list)
    object_ids: list[str] = field(default_factory=list)

    def __bool__(self):
        return bool(self.character_ids or self.object_ids)


def parse_referenced_ids(text: str) -> ReferencedIds:
    """Collect referenced ids in first-occurrence order, without duplicates."""
    refs = ReferencedIds()
    for entity_kind, entity_id in TOKEN_PATTERN.findall(text or ""):
        bucket = refs.character_ids if entity_kind == "character" else refs.object_ids
        if entity_id not in bucket:
            bucket.append(entity_id)
    return refs


def _fields(entity):
    # Entities carry their prompt fields under .metadata; context records carry them directly.
    return getattr(entity, "metadata", None) or entity


def _index(entities) -> dict:
    return {str(entity.id): _fields(entity) for entity in entities or []}


def inject_referenced_context(text: str, characters=(), objects=()) -> str:
    """
    Replace resolvable tokens with "name (description)" for characters and
    "type (description)" for objects. Tokens whose id is not among the
    supplied entities are left as they are.
    """
    by_character = _index(characters)
    by_object = _index(objects)

    def _replace(match):
        entity_kind, entity_id = match.group(1), match.group(2)
        if entity_kind == "character":
            found = by_character.get(entity_id)
            if found is None:
                return match.group(0)
            return f"{found.name} ({found.description})"
        found = by_object.get(entity_id)
        if found is None:
            return match.group(0)
        return f"{found.type} ({found.description})"

    return TOKEN_PATTERN.sub(_replace, text or "")
