"""
R2 storage helpers for the pipeline.

Provider result URLs are ephemeral; every output is copied into R2 before a
job is marked complete. Keys:
  generations/{account_id}/{job_id}/{index}_{step}.{ext}   (index = position in outputs)
  identities/{identity_id}.safetensors

Uses httpx for downloads and boto3 against the R2 S3 endpoint for uploads.
"""

import os
import asyncio
import logging
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

from .models import Artifact

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

CONTENT_TYPES = {
    "image": ("image/png", "png"),
    "video": ("video/mp4", "mp4"),
    "model": ("application/octet-stream", "safetensors"),
}

_s3_client = None


def _get_s3():
    """Lazy-init the R2 S3 client."""
    global _s3_client
    if _s3_client is None:
        if not R2_ACCOUNT_ID or not R2_ACCESS_KEY_ID:
            raise RuntimeError("R2_ACCOUNT_ID and R2_ACCESS_KEY_ID must be set")
        _s3_client = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
    return _s3_client


def artifact_key(account_id: str, job_id: str, artifact: Artifact, index: int = 0) -> str:
    """One key per output slot; several outputs can share a step."""
    _, ext = CONTENT_TYPES[artifact.kind]
    return f"generations/{account_id}/{job_id}/{index:02d}_{artifact.step.value.lower()}.{ext}"


def identity_model_key(identity_id: str) -> str:
    return f"identities/{identity_id}.safetensors"


async def download_bytes(url: str, timeout: float = 120) -> bytes:
    """Download a file from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


async def upload_to_r2(key: str, data: bytes, content_type: str = "image/png") -> str:
    """Upload bytes to R2 and return the public URL."""
    s3 = _get_s3()
    try:
        await asyncio.to_thread(
            s3.put_object,
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise

    public_url = f"{R2_PUBLIC_URL.rstrip('/')}/{key}"
    logger.info(f"Uploaded to R2: {public_url}")
    return public_url


async def archive_artifact(
    account_id: str,
    job_id: str,
    artifact: Artifact,
    key: Optional[str] = None,
    index: int = 0,
) -> Artifact:
    """
    Copy an artifact from its provider URL into R2. Already-durable artifacts
    pass through. ``index`` is the artifact's position in the job outputs.
    """
    if artifact.durable:
        return artifact
    content_type, _ = CONTENT_TYPES[artifact.kind]
    data = await download_bytes(artifact.url)
    url = await upload_to_r2(key or artifact_key(account_id, job_id, artifact, index), data, content_type)
    return artifact.model_copy(update={"url": url, "durable": True})
