"""
Capability Gateway — uniform access to external generation providers.

Two call shapes:
  invoke_sync   — blocks until the provider returns (image gen, segmentation,
                  inpainting, upscaling, prompt rewriting).
  invoke_async  — submits to the provider queue with a webhook and returns a
                  CapabilityHandle immediately (video rendering, identity
                  training). The handle is persisted before returning.

Providers:
  FalProvider   — fal.ai REST API (fal.run for sync, queue.fal.run for async)
  GrokProvider  — xAI chat completions for prompt rewriting
"""

import os
import time
import random
import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

import httpx

from .. import metrics
from .errors import CapabilityError
from .models import CallbackPayload, CapabilityHandle, PipelineStep, utcnow
from .store import JobStore

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FAL_KEY = os.getenv("FAL_KEY", "")
FAL_RUN_BASE = "https://fal.run"
FAL_QUEUE_BASE = "https://queue.fal.run"

XAI_API_KEY = os.getenv("XAI_API_KEY", "")
XAI_API_URL = "https://api.x.ai/v1/chat/completions"
XAI_MODEL = os.getenv("XAI_MODEL", "grok-beta")

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
CALLBACK_SECRET = os.getenv("CALLBACK_SECRET", "")

VIDEO_CALLBACK_TIMEOUT = int(os.getenv("VIDEO_CALLBACK_TIMEOUT_SECONDS", "1800"))
TRAINING_CALLBACK_TIMEOUT = int(os.getenv("TRAINING_CALLBACK_TIMEOUT_SECONDS", "7200"))

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class Capability(str, Enum):
    REWRITE_PROMPT = "rewrite_prompt"
    GENERATE_IMAGE = "generate_image"
    SEGMENT_CLOTHING = "segment_clothing"
    INPAINT = "inpaint"
    UPSCALE = "upscale"
    RENDER_VIDEO = "render_video"
    ANIMATE_VIDEO = "animate_video"
    TRAIN_IDENTITY = "train_identity"


ASYNC_TIMEOUTS = {
    Capability.RENDER_VIDEO: VIDEO_CALLBACK_TIMEOUT,
    Capability.ANIMATE_VIDEO: VIDEO_CALLBACK_TIMEOUT,
    Capability.TRAIN_IDENTITY: TRAINING_CALLBACK_TIMEOUT,
}


# ── Result helpers ───────────────────────────────────────────────────────────

def extract_image_url(result: dict) -> Optional[str]:
    """Find the first image URL in a provider result."""
    images = result.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict) and first.get("url"):
            return first["url"]
    image = result.get("image")
    if isinstance(image, dict) and image.get("url"):
        return image["url"]
    return result.get("url") or result.get("image_url")


def extract_mask_url(result: dict) -> Optional[str]:
    masks = result.get("masks")
    if isinstance(masks, list) and masks:
        first = masks[0]
        if isinstance(first, dict):
            return first.get("url") or first.get("mask_url")
    return result.get("mask_url") or result.get("url")


def extract_video_url(result: dict) -> Optional[str]:
    for key in ("video", "file"):
        value = result.get(key)
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
    return result.get("video_url") or result.get("url")


def extract_model_url(result: dict) -> Optional[str]:
    for key in ("diffusers_lora_file", "lora_file", "file"):
        value = result.get(key)
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
    return None


def callback_url(provider: str) -> str:
    base = PUBLIC_BASE_URL.rstrip("/")
    url = f"{base}/callbacks/{provider}"
    if CALLBACK_SECRET:
        url += f"?token={CALLBACK_SECRET}"
    return url


# ═════════════════════════════════════════════════════════════════════════════
# Providers
# ═════════════════════════════════════════════════════════════════════════════

class CapabilityProvider:
    """Contract a provider adapter implements."""

    name = "provider"

    async def run(self, capability: Capability, input_data: dict) -> dict:
        raise NotImplementedError

    async def submit(self, capability: Capability, input_data: dict, webhook_url: str) -> str:
        """Queue a request; returns the provider's request id."""
        raise NotImplementedError

    async def status(self, capability: Capability, request_id: str) -> Optional[CallbackPayload]:
        """Final result of a queued request, or None while it is still running."""
        raise NotImplementedError


async def _request_with_retry(
    method: str,
    url: str,
    provider: str,
    headers: dict,
    json: Optional[dict] = None,
    params: Optional[dict] = None,
    timeout: float = 60,
) -> dict:
    """Send a request, retrying 429/5xx and transport errors with backoff + jitter."""
    for attempt in range(MAX_RETRIES + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.HTTPError as e:
            if attempt < MAX_RETRIES:
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(f"[{provider}] {method} error attempt {attempt + 1}: {e} — retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue
            raise CapabilityError(f"{provider} request failed: {e}", provider, retryable=True)

        if resp.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(f"[{provider}] {resp.status_code} on attempt {attempt + 1} — retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            continue

        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("detail") or body.get("message") or body
            except ValueError:
                detail = resp.text[:300]
            raise CapabilityError(
                f"{provider} error {resp.status_code}: {detail}",
                provider,
                retryable=resp.status_code in RETRYABLE_STATUS_CODES,
            )
        return resp.json()

    raise CapabilityError(f"{provider} retries exhausted", provider, retryable=True)


class FalProvider(CapabilityProvider):
    """fal.ai adapter: sync via fal.run, async via the queue + webhook."""

    name = "fal"

    ENDPOINTS = {
        Capability.GENERATE_IMAGE: "fal-ai/z-image/turbo/lora",
        Capability.INPAINT: "fal-ai/z-image/turbo/inpaint",
        Capability.SEGMENT_CLOTHING: "fal-ai/sam-3/image",
        Capability.UPSCALE: "fal-ai/seedvr/upscale/image",
        Capability.RENDER_VIDEO: "fal-ai/ltx-video/v2",
        Capability.ANIMATE_VIDEO: "fal-ai/wan/v2.2-14b/animate/move",
        Capability.TRAIN_IDENTITY: "fal-ai/z-image-trainer",
    }

    def __init__(self, api_key: str = FAL_KEY):
        self.api_key = api_key

    def _headers(self) -> dict:
        if not self.api_key:
            raise CapabilityError("FAL_KEY not set", self.name)
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _endpoint(self, capability: Capability) -> str:
        endpoint = self.ENDPOINTS.get(capability)
        if not endpoint:
            raise CapabilityError(f"fal has no endpoint for {capability.value}", self.name)
        return endpoint

    async def run(self, capability: Capability, input_data: dict) -> dict:
        url = f"{FAL_RUN_BASE}/{self._endpoint(capability)}"
        return await _request_with_retry("POST", url, self.name, self._headers(), json=input_data, timeout=120)

    async def submit(self, capability: Capability, input_data: dict, webhook_url: str) -> str:
        url = f"{FAL_QUEUE_BASE}/{self._endpoint(capability)}"
        data = await _request_with_retry(
            "POST", url, self.name, self._headers(),
            json=input_data, params={"fal_webhook": webhook_url}, timeout=30,
        )
        request_id = data.get("request_id")
        if not request_id:
            raise CapabilityError(f"fal submit returned no request_id: {data}", self.name)
        return request_id

    async def status(self, capability: Capability, request_id: str) -> Optional[CallbackPayload]:
        endpoint = self._endpoint(capability)
        base = f"{FAL_QUEUE_BASE}/{endpoint}/requests/{request_id}"
        data = await _request_with_retry("GET", f"{base}/status", self.name, self._headers(), timeout=15)
        status = data.get("status", "")

        if status == "COMPLETED":
            try:
                result = await _request_with_retry("GET", base, self.name, self._headers(), timeout=30)
            except CapabilityError as e:
                return CallbackPayload(external_request_id=request_id, status="FAILED", error=e.message)
            return CallbackPayload(external_request_id=request_id, status="COMPLETED", payload=result)
        if status in ("FAILED", "ERROR"):
            return CallbackPayload(
                external_request_id=request_id,
                status="FAILED",
                error=data.get("error") or "Provider reported failure",
            )
        # IN_QUEUE or IN_PROGRESS
        return None


class GrokProvider(CapabilityProvider):
    """xAI chat completions used to expand a user prompt."""

    name = "xai"

    SAFE_SYSTEM = (
        "You are a creative prompt engineer. Create a detailed, high-quality "
        "image generation prompt. Respond with the prompt only."
    )
    EXPLICIT_SYSTEM = (
        "You are a prompt engineer for an adult-content studio. Create a detailed "
        "image generation prompt suitable for explicit content. Respond with the prompt only."
    )

    def __init__(self, api_key: str = XAI_API_KEY):
        self.api_key = api_key

    async def run(self, capability: Capability, input_data: dict) -> dict:
        if capability != Capability.REWRITE_PROMPT:
            raise CapabilityError(f"xai cannot serve {capability.value}", self.name)

        prompt = input_data["prompt"]
        name = input_data.get("identity_name", "")
        aspect_ratio = input_data.get("aspect_ratio", "1:1")
        explicit = bool(input_data.get("is_explicit"))

        if not self.api_key:
            # Development without a key
            return {"prompt": f"{prompt}, featuring {name}, high quality, {aspect_ratio}"}

        body = {
            "model": XAI_MODEL,
            "stream": False,
            "temperature": 0.7,
            "messages": [
                {"role": "system", "content": self.EXPLICIT_SYSTEM if explicit else self.SAFE_SYSTEM},
                {"role": "user", "content": f"Create a prompt for {name}: {prompt}. Aspect Ratio: {aspect_ratio}."},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = await _request_with_retry("POST", XAI_API_URL, self.name, headers, json=body, timeout=30)
        try:
            text = data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, AttributeError):
            raise CapabilityError(f"xai returned no completion: {data}", self.name)
        return {"prompt": text}


# ═════════════════════════════════════════════════════════════════════════════
# Gateway
# ═════════════════════════════════════════════════════════════════════════════

class CapabilityGateway:
    """Routes capabilities to providers and persists async handles."""

    def __init__(self, store: JobStore, providers: dict[Capability, CapabilityProvider]):
        self._store = store
        self._providers = providers

    @classmethod
    def default(cls, store: JobStore) -> "CapabilityGateway":
        fal = FalProvider()
        providers: dict[Capability, CapabilityProvider] = {c: fal for c in FalProvider.ENDPOINTS}
        providers[Capability.REWRITE_PROMPT] = GrokProvider()
        return cls(store, providers)

    def provider_for(self, capability: Capability) -> CapabilityProvider:
        provider = self._providers.get(capability)
        if provider is None:
            raise CapabilityError(f"No provider configured for {capability.value}")
        return provider

    async def invoke_sync(self, capability: Capability, input_data: dict) -> dict:
        provider = self.provider_for(capability)
        start = time.time()
        metrics.inc_counter(f"capability.{capability.value}")
        try:
            result = await provider.run(capability, input_data)
        except CapabilityError:
            metrics.inc_counter(f"errors.capability.{capability.value}")
            raise
        except Exception as e:
            metrics.inc_counter(f"errors.capability.{capability.value}")
            raise CapabilityError(f"{provider.name} {capability.value} failed: {e}", provider.name) from e
        finally:
            metrics.record_latency(f"capability.{capability.value}", (time.time() - start) * 1000)
        return result

    async def invoke_async(
        self,
        capability: Capability,
        input_data: dict,
        job_id: str,
        step: PipelineStep,
    ) -> CapabilityHandle:
        """Submit, then persist the handle before returning it."""
        provider = self.provider_for(capability)
        metrics.inc_counter(f"capability.{capability.value}")
        try:
            request_id = await provider.submit(capability, input_data, callback_url(provider.name))
        except CapabilityError:
            metrics.inc_counter(f"errors.capability.{capability.value}")
            raise
        except Exception as e:
            metrics.inc_counter(f"errors.capability.{capability.value}")
            raise CapabilityError(f"{provider.name} {capability.value} submit failed: {e}", provider.name) from e

        issued = utcnow()
        handle = CapabilityHandle(
            provider=provider.name,
            capability=capability.value,
            external_request_id=request_id,
            job_id=job_id,
            step=step,
            issued_at=issued,
            deadline=issued + timedelta(seconds=ASYNC_TIMEOUTS.get(capability, VIDEO_CALLBACK_TIMEOUT)),
        )
        self._store.save_handle(handle)
        logger.info(f"[{job_id}] {capability.value} submitted to {provider.name}: request_id={request_id}")
        return handle

    async def poll(self, handle: CapabilityHandle) -> Optional[CallbackPayload]:
        """Ask the provider for the result of an outstanding handle."""
        capability = Capability(handle.capability)
        provider = self.provider_for(capability)
        return await provider.status(capability, handle.external_request_id)
