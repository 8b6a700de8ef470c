"""
Kie.ai Veo client for frame video generation.

Submits a generation task, then polls record-info until the task reports
success or failure. Every HTTP call goes through _request_with_backoff,
which retries 429 / 5xx with exponential backoff and jitter.
"""

import os
import time
import random
import logging

import httpx
import requests

from .pipeline.errors import GenerationError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1"

DEFAULT_MODEL = os.environ.get("KIE_VIDEO_MODEL", "veo3_fast")
DEFAULT_ASPECT_RATIO = "16:9"

POLL_INTERVAL = 10      # seconds
MAX_POLL_ATTEMPTS = 90  # 15 minutes max

# ── Retries ──────────────────────────────────────────────────────────────────
RETRY_LIMIT = 5
BACKOFF_SECONDS = 2.0   # 2, 4, 8, 16, 32
JITTER_SECONDS = 1.0
RETRY_ON = frozenset({429, 502, 503, 504})

SUCCESS_STATUSES = {"SUCCESS", "success", "completed"}
FAILED_STATUSES = {"GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail", "failed"}


def _retry_delay(attempt: int, retry_after: str | None = None) -> float:
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    return BACKOFF_SECONDS * 2 ** attempt + random.uniform(0, JITTER_SECONDS)


def _request_with_backoff(method: str, url: str, **kwargs) -> requests.Response:
    """
    Call the Kie.ai API, retrying connection errors and 429/5xx replies.

    The server's Retry-After wins when present; otherwise the wait doubles
    per attempt with up to a second of jitter. Other 4xx replies raise at once.
    """
    headers = {"Authorization": f"Bearer {KIE_API_KEY}", **kwargs.pop("headers", {})}
    kwargs.setdefault("timeout", 30)
    attempts = RETRY_LIMIT + 1

    for attempt in range(attempts):
        last_try = attempt == attempts - 1
        try:
            resp = requests.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as exc:
            if last_try:
                raise
            wait = _retry_delay(attempt)
            logger.warning(f"Kie.ai {method} {url} errored ({exc}); attempt {attempt + 1}/{attempts}, waiting {wait:.1f}s")
            time.sleep(wait)
            continue

        if resp.status_code not in RETRY_ON or last_try:
            resp.raise_for_status()
            return resp

        wait = _retry_delay(attempt, resp.headers.get("Retry-After"))
        logger.warning(f"Kie.ai {method} {url} returned {resp.status_code}; attempt {attempt + 1}/{attempts}, waiting {wait:.1f}s")
        time.sleep(wait)

    raise GenerationError(f"Request to {url} failed after {attempts} attempts")


# ── Submit / Poll ────────────────────────────────────────────────────────────

def submit_video(prompt: str, image_url: str | None = None, options: dict | None = None) -> str:
    """Start a Veo task and return its task id."""
    if not KIE_API_KEY:
        raise GenerationError("KIE_API_KEY not set")
    options = options or {}

    payload = {
        "prompt": prompt,
        "model": options.get("model", DEFAULT_MODEL),
        "aspectRatio": options.get("aspect_ratio", DEFAULT_ASPECT_RATIO),
    }
    if image_url:
        # REFERENCE_2_VIDEO keeps the frame image as the visual anchor
        payload["mode"] = "REFERENCE_2_VIDEO"
        payload["model"] = "veo3_fast"
        payload["imageUrls"] = [image_url]
    if options.get("duration"):
        payload["duration"] = options["duration"]

    logger.info(f"Kie.ai veo request: model={payload['model']}, mode={payload.get('mode', 'TEXT_2_VIDEO')}")
    task_info = _request_with_backoff("POST", f"{KIE_API_BASE}/veo/generate", json=payload).json()

    data = task_info.get("data") or {}
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id")
    task_id = task_id or task_info.get("taskId") or task_info.get("task_id")
    if not task_id:
        raise GenerationError(f"Kie.ai submit failed, no task id: {task_info}")
    return task_id


def get_task_status(task_id: str) -> dict:
    response = _request_with_backoff("GET", f"{KIE_API_BASE}/veo/record-info", params={"taskId": task_id})
    return response.json()


def _video_url(poll_data: dict) -> str | None:
    response = poll_data.get("response") or {}
    urls = response.get("resultUrls") if isinstance(response, dict) else None
    if urls:
        return urls[0]
    results = poll_data.get("results") or poll_data.get("works") or []
    if results and isinstance(results[0], dict):
        first = results[0]
        return first.get("url") or first.get("videoUrl") or first.get("video_url")
    return poll_data.get("videoUrl") or poll_data.get("url") or poll_data.get("video_url")


def wait_for_video(task_id: str, poll_interval: float = POLL_INTERVAL, max_polls: int = MAX_POLL_ATTEMPTS) -> str:
    """Poll a task until it finishes and return the provider's video URL."""
    for attempt in range(max_polls):
        status_data = get_task_status(task_id)
        poll_data = status_data.get("data") if isinstance(status_data, dict) else None
        if not isinstance(poll_data, dict):
            poll_data = {}

        # Veo reports data.successFlag: 0 generating, 1 success, 2/3 failed
        raw_status = poll_data.get("status", "")
        success_flag = poll_data.get("successFlag")
        logger.info(f"Veo poll #{attempt + 1} for {task_id}: status={raw_status or 'n/a'}, flag={success_flag}")

        if raw_status in SUCCESS_STATUSES or success_flag == 1:
            video_url = _video_url(poll_data)
            if not video_url:
                raise GenerationError(f"Veo task {task_id} completed but no video URL in response")
            return video_url

        if raw_status in FAILED_STATUSES or success_flag in (2, 3):
            error_msg = poll_data.get("errorMessage") or poll_data.get("msg") or poll_data.get("failReason")
            raise GenerationError(f"Veo task {task_id} failed: {error_msg or 'Unknown error'}")

        time.sleep(poll_interval)

    raise TimeoutError(f"Veo task {task_id} timed out after {max_polls * poll_interval}s")


def generate_video(prompt: str, image_url: str | None = None, options: dict | None = None) -> str:
    task_id = submit_video(prompt, image_url, options)
    logger.info(f"Veo task submitted: {task_id}")
    return wait_for_video(task_id)


def download(url: str) -> bytes:
    """Download a finished video from the provider CDN."""
    resp = httpx.get(url, follow_redirects=True, timeout=120)
    resp.raise_for_status()
    return resp.content
