"""
Registry: every long-lived component, built once at startup.

Subscription order on the EventHub matters: the cascade attaches before the
EventBridge, so descendant jobs are submitted (and indexed) before the
parent's completed status becomes visible in the ledger.
"""

import logging
from typing import Optional

import redis

from .events import EventBridge, EventHub
from .ledger import JobLedger
from .pipeline.cascade import CascadeTrigger
from .pipeline.models import JobKind
from .pipeline.orchestrator import PipelineService
from .pipeline.processors import PROCESSORS
from .pipeline.services import PipelineServices
from .queue import QueueSet
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class Registry:

    def __init__(
        self,
        redis_client: redis.Redis,
        services: PipelineServices,
        queue_options: Optional[dict] = None,
        concurrency: Optional[dict] = None,
        poll_interval: Optional[float] = None,
    ):
        self.redis = redis_client
        self.services = services

        self.ledger = JobLedger(redis_client)
        self.queues = QueueSet(redis_client, **(queue_options or {}))
        self.hub = EventHub()
        self.pipeline = PipelineService(self.queues, self.ledger, services.store)

        self.cascade = CascadeTrigger(self.hub, self.ledger, submit=self.pipeline.submit_job).attach()
        self.bridge = EventBridge(self.hub, self.ledger).attach()

        concurrency = concurrency or {}
        pool_options = {} if poll_interval is None else {"poll_interval": poll_interval}
        self.pools: dict[JobKind, WorkerPool] = {
            kind: WorkerPool(
                kind,
                PROCESSORS[kind],
                self.queues,
                self.hub,
                services,
                concurrency=concurrency.get(kind),
                **pool_options,
            )
            for kind in JobKind
        }
        self._started = False

    def pool(self, kind) -> WorkerPool:
        return self.pools[JobKind(kind)]

    def start_workers(self):
        if self._started:
            return
        for pool in self.pools.values():
            pool.start()
        self._started = True
        logger.info(f"Started {len(self.pools)} worker pools")

    def shutdown(self):
        if self._started:
            for pool in self.pools.values():
                pool.stop()
            self._started = False
        logger.info("Registry shut down")
