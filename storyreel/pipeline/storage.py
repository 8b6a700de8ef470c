"""
R2 (S3 API) media storage for generated assets.

Assets are stored under:
  projects/{project_id}/{category}/{filename}

category is one of characters, objects, scenes, frames, videos, images, temp.
"""

import os
import time
import base64
import logging
import secrets
from io import BytesIO
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from PIL import Image

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

CATEGORIES = {"characters", "objects", "scenes", "frames", "videos", "images", "temp"}

CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "mp4": "video/mp4",
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def asset_key(project_id: str, category: str, filename: str) -> str:
    if category not in CATEGORIES:
        raise ValueError(f"Unknown asset category: {category}")
    return f"projects/{project_id}/{category}/{filename}"


def generate_asset_filename(extension: str, prefix: Optional[str] = None) -> str:
    """Unique filename: [{prefix}_]{ms timestamp}_{random}.{extension}"""
    base = f"{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    return f"{prefix}_{base}.{extension}" if prefix else f"{base}.{extension}"


def to_png(image_bytes: bytes) -> bytes:
    """Normalise provider image output (jpeg/webp/png) to PNG."""
    with Image.open(BytesIO(image_bytes)) as img:
        if img.format == "PNG":
            return image_bytes
        out = BytesIO()
        img.convert("RGBA").save(out, format="PNG")
        return out.getvalue()


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """Split a data:image/...;base64 URL into (bytes, mime type)."""
    header, b64data = data_url.split(",", 1)
    mime = header.split(":")[1].split(";")[0]
    return base64.b64decode(b64data), mime


def download_bytes(url: str) -> bytes:
    """Download an asset from a public URL and return raw bytes."""
    resp = httpx.get(url, follow_redirects=True, timeout=60)
    resp.raise_for_status()
    return resp.content


def _r2_client():
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


class MediaStore:
    """Binary asset persistence: save / exists / read / delete."""

    def __init__(self, s3_client=None, bucket: str = R2_BUCKET_NAME, public_url: str = R2_PUBLIC_URL):
        self.s3 = s3_client or _r2_client()
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def url_to_key(self, url: str) -> Optional[str]:
        """Reverse url_for; None for URLs outside this store."""
        prefix = f"{self.public_url}/"
        if self.public_url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def save(self, project_id: str, category: str, filename: str, data: bytes) -> str:
        key = asset_key(project_id, category, filename)
        extension = filename.rsplit(".", 1)[-1].lower()
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=CONTENT_TYPES.get(extension, "application/octet-stream"),
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise
        url = self.url_for(key)
        logger.info(f"Uploaded to R2: {url} ({len(data)} bytes)")
        return url

    def exists(self, project_id: str, category: str, filename: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=asset_key(project_id, category, filename))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def read(self, project_id: str, category: str, filename: str) -> bytes:
        return self.read_key(asset_key(project_id, category, filename))

    def read_key(self, key: str) -> bytes:
        response = self.s3.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def read_url(self, url: str) -> bytes:
        """Read an asset by URL: from the bucket when it is ours, else over HTTP."""
        if url.startswith("data:"):
            return decode_data_url(url)[0]
        key = self.url_to_key(url)
        if key is not None:
            return self.read_key(key)
        return download_bytes(url)

    def delete(self, project_id: str, category: str, filename: str):
        key = asset_key(project_id, category, filename)
        self.s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info(f"Deleted from R2: {key}")
