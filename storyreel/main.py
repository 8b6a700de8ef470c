import os
import time
import logging
from contextlib import asynccontextmanager

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from . import metrics
from .generation import GenerationService
from .pipeline.project_service import EntityStore, get_service_client
from .pipeline.routes import job_router, project_router, queue_router
from .pipeline.services import PipelineServices
from .pipeline.storage import MediaStore
from .registry import Registry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
START_WORKERS = os.environ.get("START_WORKERS", "true").lower() == "true"


def build_registry() -> Registry:
    """Wire the production collaborators: Redis, Supabase, R2, Gemini + Kie.ai."""
    r = redis.from_url(REDIS_URL, decode_responses=False)
    r.ping()
    logger.info(f"Redis connected: {REDIS_URL[:30]}...")

    services = PipelineServices(
        generator=GenerationService(),
        store=EntityStore(get_service_client()),
        media=MediaStore(),
    )
    return Registry(r, services)


def create_app(registry_factory=build_registry, start_workers: bool = START_WORKERS) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Pipeline starting up...")
        metrics.set_gauge("start_time", time.time())
        registry = registry_factory()
        app.state.registry = registry
        if start_workers:
            registry.start_workers()
        else:
            logger.info("START_WORKERS disabled, API only")
        yield
        logger.info("Pipeline shutting down...")
        registry.shutdown()

    app = FastAPI(title="storyreel", lifespan=lifespan)
    app.include_router(job_router)
    app.include_router(queue_router)
    app.include_router(project_router)

    @app.get("/health")
    def health_check():
        """Verify the service is running and which provider credentials are configured."""
        return {
            "status": "ok",
            **{f"{name}_api_key_set": ok for name, ok in GenerationService.configured().items()},
            "supabase_url_set": bool(os.environ.get("SUPABASE_URL", "")),
            "r2_configured": bool(os.environ.get("R2_ACCOUNT_ID", "")),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of worker metrics with fresh queue depth gauges."""
        registry = app.state.registry
        try:
            for kind, counts in registry.pipeline.all_queue_counts().items():
                metrics.set_gauge(f"waiting.{kind}", counts.waiting)
                metrics.set_gauge(f"active.{kind}", counts.active)
                metrics.set_gauge(f"delayed.{kind}", counts.delayed)
        except redis.RedisError as e:
            logger.warning(f"Queue gauges unavailable: {e}")
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("storyreel.main:app", host="0.0.0.0", port=port)
