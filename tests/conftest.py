"""Shared test fixtures: fake Redis, fake Supabase, fake R2 and a scripted generator."""

import copy
import uuid
from io import BytesIO
from types import SimpleNamespace

import fakeredis
import pytest
from botocore.exceptions import ClientError
from PIL import Image

from storyreel import metrics
from storyreel.pipeline.models import JobKind
from storyreel.pipeline.project_service import EntityStore
from storyreel.pipeline.services import PipelineServices
from storyreel.pipeline.storage import MediaStore
from storyreel.registry import Registry

PUBLIC_URL = "https://media.test"


def make_image(fmt: str = "PNG", color=(200, 40, 40)) -> bytes:
    out = BytesIO()
    Image.new("RGB", (8, 8), color).save(out, format=fmt)
    return out.getvalue()


def new_id() -> str:
    return str(uuid.uuid4())


# ── Supabase ─────────────────────────────────────────────────────────────────

class _FakeQuery:
    """The subset of the postgrest builder EntityStore uses."""

    def __init__(self, rows: list):
        self._rows = rows
        self._op = "select"
        self._payload = None
        self._filters = []
        self._limit = None

    def select(self, *_columns):
        self._op = "select"
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def update(self, updates):
        self._op, self._payload = "update", updates
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        if self._op == "insert":
            row = copy.deepcopy(self._payload)
            self._rows.append(row)
            return SimpleNamespace(data=[copy.deepcopy(row)])

        matched = [row for row in self._rows if self._matches(row)]
        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=copy.deepcopy(matched))


class FakeSupabase:

    def __init__(self):
        self.tables: dict[str, list] = {}

    def table(self, name: str):
        return _FakeQuery(self.tables.setdefault(name, []))


# ── R2 ───────────────────────────────────────────────────────────────────────

class FakeS3:

    def __init__(self):
        self.objects: dict[str, bytes] = {}

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": BytesIO(self.objects[Key])}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)


# ── Generator ────────────────────────────────────────────────────────────────

class FakeGenerator:
    """
    Scripted stand-in for GenerationService. Replies can be set per
    structured schema ("character", "scene", "frame"); `failures` makes the
    named method raise that many times first.
    """

    def __init__(self):
        self.replies = {
            "character": {
                "name": "Zara",
                "age": 28,
                "personality": "bold, curious",
                "description": "Tall explorer in a red coat",
            },
            "scene": {
                "detailed_plot": "The heroes cross the desert.",
                "concise_plot": "Desert crossing",
                "duration": 16,
                "dialogue": "We keep moving.",
            },
            "frame": {
                "veo3_prompt": "Wide shot of the desert at dawn",
                "dialogue": "We keep moving.",
                "duration_constraint": 8,
            },
        }
        self.failures: dict[str, int] = {}
        self.prompts: list[tuple[str, str]] = []
        self.video_url = "https://provider.test/video.mp4"

    def _maybe_fail(self, method: str):
        if self.failures.get(method, 0) > 0:
            self.failures[method] -= 1
            raise RuntimeError(f"{method} unavailable")

    @staticmethod
    def _schema_name(schema: dict) -> str:
        props = schema.get("properties", {})
        if "veo3_prompt" in props:
            return "frame"
        if "detailed_plot" in props:
            return "scene"
        return "character"

    def generate_text(self, prompt, system_prompt=None):
        self._maybe_fail("generate_text")
        self.prompts.append(("text", prompt))
        return "generated text"

    def generate_structured(self, prompt, schema, system_prompt=None):
        self._maybe_fail("generate_structured")
        name = self._schema_name(schema)
        self.prompts.append((name, prompt))
        return copy.deepcopy(self.replies[name])

    def generate_image(self, prompt, width=1024, height=1024):
        self._maybe_fail("generate_image")
        self.prompts.append(("image", prompt))
        return make_image("PNG")

    def edit_image(self, image_bytes, edit_prompt):
        self._maybe_fail("edit_image")
        self.prompts.append(("edit", edit_prompt))
        return make_image("JPEG", color=(10, 10, 200))

    def generate_video(self, prompt, image_url=None, options=None):
        self._maybe_fail("generate_video")
        self.prompts.append(("video", prompt))
        return self.video_url

    def download(self, url):
        return b"\x00\x00\x00\x18ftypmp42video"


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture()
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture()
def store():
    return EntityStore(FakeSupabase())


@pytest.fixture()
def media():
    return MediaStore(s3_client=FakeS3(), bucket="test-assets", public_url=PUBLIC_URL)


@pytest.fixture()
def generator():
    return FakeGenerator()


@pytest.fixture()
def services(generator, store, media):
    return PipelineServices(generator=generator, store=store, media=media)


@pytest.fixture()
def registry(redis_client, services):
    reg = Registry(
        redis_client,
        services,
        queue_options={"backoff_base_ms": 0},
        concurrency={kind: 1 for kind in JobKind},
    )
    yield reg
    reg.shutdown()


@pytest.fixture()
def project(store):
    return store.create_project("Dune Run", summary="Two explorers race a storm", plot="A desert chase")


def drain_all(registry, max_rounds: int = 50) -> int:
    """Run every pool synchronously until no queue has ready work."""
    total = 0
    for _ in range(max_rounds):
        processed = sum(registry.pool(kind).drain() for kind in JobKind)
        if processed == 0:
            break
        total += processed
    return total
