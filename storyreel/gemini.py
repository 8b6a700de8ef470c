"""
Gemini integration for text, structured JSON and image generation.

- Text / JSON: Gemini 2.5 Flash via REST (responseMimeType + responseSchema for JSON)
- Images: Gemini image model via REST, with responseModalities IMAGE + TEXT;
  editing sends the source image inline with the instruction
"""

import os
import re
import json
import base64
import logging

import httpx

from .pipeline.errors import GenerationError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

TEXT_MODEL = os.environ.get("GEMINI_TEXT_MODEL", "gemini-2.5-flash")
IMAGE_MODEL = os.environ.get("GEMINI_IMAGE_MODEL", "gemini-2.0-flash-preview-image-generation")
REQUEST_TIMEOUT = 120

IMAGE_GENERATION_PROMPT = "Generate a high-quality, detailed image based on this description: {prompt}"
IMAGE_EDITING_PROMPT = "Edit this image according to the following instructions: {prompt}"


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def _parse_json_response(text: str) -> dict:
    """Decode a JSON reply, tolerating a ```json fenced block around it."""
    candidate = text.strip()
    fenced = _FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"Gemini returned invalid JSON: {text[:200]}") from exc


def _generate_content(model: str, parts: list, config: dict | None = None) -> dict:
    if not GEMINI_API_KEY:
        raise GenerationError("GEMINI_API_KEY not set")

    request = {"contents": [{"role": "user", "parts": parts}]}
    if config:
        request["generationConfig"] = config

    resp = httpx.post(_api_url(model), json=request, timeout=REQUEST_TIMEOUT)
    if resp.status_code != 200:
        raise GenerationError(f"Gemini {model} returned {resp.status_code}: {resp.text[:500]}")
    return resp.json()


def _response_parts(result: dict) -> list:
    candidates = result.get("candidates") or []
    if not candidates:
        feedback = result.get("promptFeedback") or {}
        raise GenerationError(f"Gemini returned no candidates: {feedback.get('blockReason', 'unknown reason')}")
    return (candidates[0].get("content") or {}).get("parts") or []


def _response_text(result: dict) -> str:
    text = "".join(part.get("text", "") for part in _response_parts(result))
    if not text.strip():
        raise GenerationError("No text generated")
    return text


def _with_system(prompt: str, system_prompt: str | None) -> str:
    return f"{system_prompt}\n\nUser: {prompt}" if system_prompt else prompt


# =========================================================================
# Text
# =========================================================================

def generate_text(prompt: str, system_prompt: str | None = None) -> str:
    result = _generate_content(
        model=TEXT_MODEL,
        parts=[{"text": _with_system(prompt, system_prompt)}],
    )
    return _response_text(result)


def generate_structured(prompt: str, schema: dict, system_prompt: str | None = None) -> dict:
    """
    Generate a JSON object matching `schema` (an OpenAPI-style schema dict as
    accepted by Gemini's responseSchema).
    """
    json_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
    result = _generate_content(
        model=TEXT_MODEL,
        parts=[{"text": json_prompt}],
        config={"responseMimeType": "application/json", "responseSchema": schema},
    )
    return _parse_json_response(_response_text(result))


# =========================================================================
# Images
# =========================================================================

def _extract_image(result: dict) -> bytes:
    parts = _response_parts(result)
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return base64.b64decode(inline["data"])

    # Some responses carry the image as base64 inside a JSON text part
    for part in parts:
        text = part.get("text")
        if not text:
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and payload.get("image"):
            return base64.b64decode(payload["image"])

    raise GenerationError("No image data in response")


def generate_image(prompt: str, width: int = 1024, height: int = 1024) -> bytes:
    logger.info(f"Gemini image generation ({width}x{height}): {prompt[:60]}...")
    result = _generate_content(
        model=IMAGE_MODEL,
        parts=[{"text": IMAGE_GENERATION_PROMPT.format(prompt=prompt)}],
        config={"responseModalities": ["IMAGE", "TEXT"]},
    )
    return _extract_image(result)


def edit_image(image_bytes: bytes, edit_prompt: str, mime_type: str = "image/png") -> bytes:
    logger.info(f"Gemini image edit: {edit_prompt[:60]}...")
    result = _generate_content(
        model=IMAGE_MODEL,
        parts=[
            {"text": IMAGE_EDITING_PROMPT.format(prompt=edit_prompt)},
            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(image_bytes).decode()}},
        ],
        config={"responseModalities": ["IMAGE", "TEXT"]},
    )
    return _extract_image(result)
