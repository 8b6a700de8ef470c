import time

from storyreel import metrics
from storyreel.events import EventBridge, EventHub
from storyreel.ledger import JobLedger
from storyreel.pipeline.models import JobKind, JobStatus
from storyreel.queue import QueueSet
from storyreel.worker_pool import DEFAULT_CONCURRENCY, WorkerPool, concurrency_for

KIND = JobKind.SCRIPT_GENERATION


def _setup(redis_client, processor, services=None, max_attempts=3, **queue_options):
    queues = QueueSet(redis_client, backoff_base_ms=0, max_attempts=max_attempts, **queue_options)
    hub = EventHub()
    ledger = JobLedger(redis_client)
    EventBridge(hub, ledger).attach()
    pool = WorkerPool(KIND, processor, queues, hub, services, concurrency=1, poll_interval=0.01)
    return queues, ledger, pool


def _enqueue(queues, job_id="job-1", payload=None):
    queues.enqueue(KIND, job_id, "p1", payload or {"type": "plot", "prompt": "a heist"})


def test_run_once_empty_queue(redis_client):
    _, _, pool = _setup(redis_client, lambda job, services: {})
    assert pool.run_once() is False


def test_success_reports_completion(redis_client):
    seen = {}

    def processor(job, services):
        seen["payload_type"] = job.payload.type
        seen["attempt"] = job.attempt
        job.update_progress(50)
        seen["mid_status"] = ledger.get(job.id).status
        return {"content": "outline"}

    queues, ledger, pool = _setup(redis_client, processor)
    _enqueue(queues)

    assert pool.run_once() is True
    assert seen == {"payload_type": "plot", "attempt": 1, "mid_status": JobStatus.PROCESSING}

    record = ledger.get("job-1")
    assert record.status == JobStatus.COMPLETED
    assert record.output_data == {"content": "outline"}
    assert record.project_id == "p1"
    assert queues.counts(KIND).completed == 1
    assert metrics.get_snapshot()["counters"]["completed.script-generation"] == 1


def test_failure_is_retried_before_ledger_fails(redis_client):
    attempts = []

    def processor(job, services):
        attempts.append(job.attempt)
        if len(attempts) < 2:
            raise RuntimeError("model overloaded")
        return "FADE IN:"

    queues, ledger, pool = _setup(redis_client, processor)
    _enqueue(queues)

    pool.run_once()
    assert ledger.get("job-1").status == JobStatus.PROCESSING
    assert queues.counts(KIND).delayed == 1

    pool.run_once()
    assert attempts == [1, 2]
    record = ledger.get("job-1")
    assert record.status == JobStatus.COMPLETED
    assert record.output_data == {"result": "FADE IN:"}
    assert metrics.get_snapshot()["counters"]["retried.script-generation"] == 1


def test_exhausted_attempts_fail_the_job(redis_client):
    def processor(job, services):
        raise RuntimeError("model overloaded")

    queues, ledger, pool = _setup(redis_client, processor, max_attempts=3)
    _enqueue(queues)

    assert pool.drain() == 3
    record = ledger.get("job-1")
    assert record.status == JobStatus.FAILED
    assert record.error_message == "model overloaded"
    assert queues.counts(KIND).failed == 1

    snapshot = metrics.get_snapshot()
    assert snapshot["counters"]["failed.script-generation"] == 1
    assert snapshot["recent_errors"][-1]["final"] is True


def test_invalid_payload_fails_without_running_processor(redis_client):
    calls = []
    queues, ledger, pool = _setup(redis_client, lambda job, services: calls.append(job), max_attempts=1)
    _enqueue(queues, payload={"type": "poem", "prompt": "x"})

    pool.run_once()
    assert calls == []
    record = ledger.get("job-1")
    assert record.status == JobStatus.FAILED
    assert "Invalid input for script-generation" in record.error_message


def test_threads_process_jobs(redis_client):
    queues, ledger, pool = _setup(redis_client, lambda job, services: {"ok": True})
    _enqueue(queues)
    pool.start()
    try:
        deadline = time.time() + 5
        while time.time() < deadline:
            record = ledger.get("job-1")
            if record is not None and record.status == JobStatus.COMPLETED:
                break
            time.sleep(0.02)
    finally:
        pool.stop()
    assert ledger.get("job-1").status == JobStatus.COMPLETED


def test_concurrency_env_override(monkeypatch):
    assert concurrency_for(JobKind.VIDEO_GENERATION) == DEFAULT_CONCURRENCY[JobKind.VIDEO_GENERATION]
    monkeypatch.setenv("WORKER_CONCURRENCY_VIDEO_GENERATION", "7")
    assert concurrency_for(JobKind.VIDEO_GENERATION) == 7


def test_long_job_is_not_reclaimed_by_another_pool(redis_client):
    seen = {}

    def slow_processor(job, services):
        time.sleep(0.5)
        # what a second pool does on start, while this job is still running
        other = WorkerPool(KIND, slow_processor, queues, EventHub(), services, concurrency=1)
        seen["recovered"] = other.queue.recover_stale()
        seen["second_dequeue"] = other.queue.dequeue()
        return {"ok": True}

    queues, ledger, pool = _setup(redis_client, slow_processor, lease_seconds=0.2)
    _enqueue(queues)

    assert pool.run_once() is True
    assert seen == {"recovered": 0, "second_dequeue": None}
    assert ledger.get("job-1").status == JobStatus.COMPLETED
    assert queues.counts(KIND).active == 0
    assert queues.get(KIND).get_job("job-1")["attempts_made"] == "1"
