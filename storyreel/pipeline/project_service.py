"""
Entity storage on Supabase.

Tables: projects, characters, objects, scenes, frames. Each row keeps its
kind-specific fields in a `metadata` JSON column; rows are keyed by `id`
and listed per `project_id` (the reads the context builders rely on).

All access goes through the service role client (bypasses RLS).
"""

import os
import logging
from typing import Optional
from uuid import uuid4

from supabase import create_client, Client

from .errors import EntityNotFoundError
from .models import (
    Character,
    Frame,
    ObjectEntity,
    Project,
    Scene,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


class EntityStore:
    """CRUD for the entity hierarchy. Missing rows read as None."""

    def __init__(self, client: Client):
        self.sb = client

    # ── Row helpers ──────────────────────────────────────────────────────────

    def _insert(self, table: str, row: dict) -> dict:
        result = self.sb.table(table).insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Failed to create {table} row")
        return result.data[0]

    def _get(self, table: str, row_id: str) -> Optional[dict]:
        result = self.sb.table(table).select("*").eq("id", row_id).limit(1).execute()
        return result.data[0] if result.data else None

    def _list(self, table: str, column: str, value: str) -> list[dict]:
        result = self.sb.table(table).select("*").eq(column, value).execute()
        return result.data or []

    def _update(self, table: str, row_id: str, updates: dict) -> dict:
        result = self.sb.table(table).update(updates).eq("id", row_id).execute()
        if not result.data:
            raise EntityNotFoundError(f"{table} row {row_id} not found")
        return result.data[0]

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(self, title: str, summary: str = "", plot: str = "") -> Project:
        now = utc_now_iso()
        row = self._insert("projects", {
            "id": str(uuid4()),
            "title": title,
            "summary": summary,
            "plot": plot,
            "created_at": now,
            "updated_at": now,
        })
        logger.info(f"Created project: {title} ({row['id']})")
        return Project.model_validate(row)

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._get("projects", project_id)
        return Project.model_validate(row) if row else None

    def update_project(self, project_id: str, updates: dict) -> Project:
        row = self._update("projects", project_id, {**updates, "updated_at": utc_now_iso()})
        logger.info(f"Updated project: {project_id}")
        return Project.model_validate(row)

    # ── Characters ───────────────────────────────────────────────────────────

    def create_character(self, project_id: str, metadata: dict, media_url: Optional[str] = None) -> Character:
        row = self._insert("characters", {
            "id": str(uuid4()),
            "project_id": project_id,
            "media_url": media_url,
            "metadata": metadata,
        })
        logger.info(f"Created character: {metadata.get('name')} ({row['id']})")
        return Character.model_validate(row)

    def get_character(self, character_id: str) -> Optional[Character]:
        row = self._get("characters", character_id)
        return Character.model_validate(row) if row else None

    def list_characters(self, project_id: str) -> list[Character]:
        return [Character.model_validate(r) for r in self._list("characters", "project_id", project_id)]

    def update_character(self, character_id: str, updates: dict) -> Character:
        return Character.model_validate(self._update("characters", character_id, updates))

    # ── Objects ──────────────────────────────────────────────────────────────

    def create_object(
        self,
        project_id: str,
        metadata: dict,
        media_url: Optional[str] = None,
        scene_id: Optional[str] = None,
    ) -> ObjectEntity:
        row = self._insert("objects", {
            "id": str(uuid4()),
            "project_id": project_id,
            "scene_id": scene_id,
            "media_url": media_url,
            "metadata": metadata,
        })
        logger.info(f"Created object: {metadata.get('type')} ({row['id']})")
        return ObjectEntity.model_validate(row)

    def get_object(self, object_id: str) -> Optional[ObjectEntity]:
        row = self._get("objects", object_id)
        return ObjectEntity.model_validate(row) if row else None

    def list_objects(self, project_id: str) -> list[ObjectEntity]:
        return [ObjectEntity.model_validate(r) for r in self._list("objects", "project_id", project_id)]

    def update_object(self, object_id: str, updates: dict) -> ObjectEntity:
        return ObjectEntity.model_validate(self._update("objects", object_id, updates))

    # ── Scenes ───────────────────────────────────────────────────────────────

    def create_scene(self, project_id: str, metadata: dict, media_url: Optional[str] = None) -> Scene:
        row = self._insert("scenes", {
            "id": str(uuid4()),
            "project_id": project_id,
            "media_url": media_url,
            "metadata": metadata,
        })
        logger.info(f"Created scene: {row['id']}")
        return Scene.model_validate(row)

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        row = self._get("scenes", scene_id)
        return Scene.model_validate(row) if row else None

    def list_scenes(self, project_id: str) -> list[Scene]:
        return [Scene.model_validate(r) for r in self._list("scenes", "project_id", project_id)]

    # ── Frames ───────────────────────────────────────────────────────────────

    def create_frame(
        self,
        project_id: str,
        metadata: dict,
        scene_id: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> Frame:
        row = self._insert("frames", {
            "id": str(uuid4()),
            "project_id": project_id,
            "scene_id": scene_id,
            "media_url": media_url,
            "metadata": metadata,
        })
        logger.info(f"Created frame: {row['id']} (scene={scene_id})")
        return Frame.model_validate(row)

    def get_frame(self, frame_id: str) -> Optional[Frame]:
        row = self._get("frames", frame_id)
        return Frame.model_validate(row) if row else None

    def list_frames(self, project_id: str) -> list[Frame]:
        return [Frame.model_validate(r) for r in self._list("frames", "project_id", project_id)]

    def update_frame(self, frame_id: str, updates: dict) -> Frame:
        return Frame.model_validate(self._update("frames", frame_id, updates))
