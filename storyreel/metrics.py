"""
In-process metrics for the worker pools.

Every job kind reports into four buckets:
  counters    started / completed / retried / failed, keyed "<event>.<kind>"
  latency     processing time of successful runs, newest 100 per kind
  series      per-minute counts of every counter over the last hour
  gauges      queue depths, refreshed whenever /metrics is read

Nothing here is persisted; the ledger is the durable record of each job.
"""

import time
import threading
from typing import Deque, Dict, List
from collections import defaultdict, deque

LATENCY_WINDOW = 100
SERIES_MINUTES = 60
ERROR_WINDOW = 50
FAILURE_RATE_MINUTES = 5

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))
_per_minute: Dict[str, Dict[int, int]] = defaultdict(dict)
_errors: Deque[dict] = deque(maxlen=ERROR_WINDOW)


def _minute(ts: float) -> int:
    return int(ts) - int(ts) % 60


# ── Recording ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Bump a counter such as 'started.video-generation' and its minute bucket."""
    bucket = _minute(time.time())
    with _lock:
        _counters[name] += amount
        minutes = _per_minute[name]
        minutes[bucket] = minutes.get(bucket, 0) + amount


def record_latency(kind: str, duration_ms: float):
    with _lock:
        _latency[kind].append(duration_ms)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(kind: str, job_id: str, message: str, final: bool):
    """Keep a failed attempt; `final` marks the one that exhausted its retries."""
    entry = {
        "timestamp": time.time(),
        "kind": kind,
        "job_id": job_id,
        "message": message[:300],
        "final": final,
    }
    with _lock:
        _errors.append(entry)


def reset():
    with _lock:
        for store in (_counters, _gauges, _latency, _per_minute, _errors):
            store.clear()


# ── Reading ──────────────────────────────────────────────────────────────────

def _latency_summary(samples) -> dict:
    ordered = sorted(samples)
    count = len(ordered)
    tail = ordered[int(count * 0.95)] if count >= 20 else ordered[-1]
    return {
        "p50": ordered[count // 2],
        "p95": tail,
        "avg": sum(ordered) / count,
        "count": count,
    }


def _prune_and_render(minutes: Dict[int, int], current: int) -> List[dict]:
    oldest = current - (SERIES_MINUTES - 1) * 60
    for stale in [m for m in minutes if m < oldest]:
        del minutes[stale]
    return [
        {"t": t, "v": minutes.get(t, 0)}
        for t in range(oldest, current + 1, 60)
    ]


def _failure_rate(current: int) -> float:
    """Final failures as a percentage of attempts started in the recent window."""
    since = current - FAILURE_RATE_MINUTES * 60
    totals = {"started": 0, "failed": 0}
    for name, minutes in _per_minute.items():
        event = name.split(".", 1)[0]
        if event in totals:
            totals[event] += sum(v for t, v in minutes.items() if t >= since)
    if not totals["started"]:
        return 0
    return round(totals["failed"] / totals["started"] * 100, 2)


def get_snapshot() -> dict:
    """Everything collected so far, shaped for the /metrics endpoint."""
    now = time.time()
    current = _minute(now)

    with _lock:
        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {
                kind: _latency_summary(samples)
                for kind, samples in _latency.items()
                if samples
            },
            "timeseries": {
                name: _prune_and_render(minutes, current)
                for name, minutes in _per_minute.items()
            },
            "failure_rate_5m": _failure_rate(current),
            "recent_errors": list(_errors)[-10:],
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
