"""Shared fixtures: in-memory store, fake provider and a wired pipeline."""

from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from genworker.main import app
from genworker.pipeline.errors import CapabilityError
from genworker.pipeline.gateway import Capability, CapabilityGateway, CapabilityProvider
from genworker.pipeline.locks import JobLocks
from genworker.pipeline.models import (
    AnimationJobConfig,
    Artifact,
    CallbackPayload,
    Identity,
    ImageJobConfig,
    Tier,
    TrainingJobConfig,
)
from genworker.pipeline.routes import PipelineServices, get_services
from genworker.pipeline.store import MemoryStore

ACCOUNT = "acct-1"
IDENTITY = "ident-1"


class FakeProvider(CapabilityProvider):
    """Scriptable stand-in for fal/xai."""

    name = "fal"

    def __init__(self):
        self.calls: list[tuple[Capability, dict]] = []
        self.failures: dict[Capability, Exception] = {}
        self.statuses: dict[str, CallbackPayload] = {}
        self.submitted: list[str] = []
        self.results = {
            Capability.REWRITE_PROMPT: {"prompt": "luna_v3 on a rooftop at golden hour, cinematic"},
            Capability.GENERATE_IMAGE: {"images": [{"url": "https://fal.test/base.png"}]},
            Capability.SEGMENT_CLOTHING: {"masks": [{"url": "https://fal.test/mask.png"}]},
            Capability.INPAINT: {"images": [{"url": "https://fal.test/swapped.png"}]},
            Capability.UPSCALE: {"image": {"url": "https://fal.test/upscaled.png"}},
        }

    def called(self, capability: Capability) -> list[dict]:
        return [data for cap, data in self.calls if cap == capability]

    async def run(self, capability: Capability, input_data: dict) -> dict:
        self.calls.append((capability, input_data))
        if capability in self.failures:
            raise self.failures[capability]
        result = self.results[capability]
        # A callable result sees the request, e.g. to vary URLs per call
        return result(input_data) if callable(result) else result

    async def submit(self, capability: Capability, input_data: dict, webhook_url: str) -> str:
        self.calls.append((capability, input_data))
        if capability in self.failures:
            raise self.failures[capability]
        request_id = f"req-{len(self.submitted) + 1}"
        self.submitted.append(request_id)
        return request_id

    async def status(self, capability: Capability, request_id: str) -> Optional[CallbackPayload]:
        return self.statuses.get(request_id)


async def fake_archive(
    account_id: str, job_id: str, artifact: Artifact, key: Optional[str] = None, index: int = 0,
) -> Artifact:
    if artifact.durable:
        return artifact
    name = key or f"generations/{account_id}/{job_id}/{index:02d}_{artifact.step.value.lower()}"
    return artifact.model_copy(update={"url": f"https://r2.test/{name}", "durable": True})


def image_config(**overrides) -> ImageJobConfig:
    values = {"identity_id": IDENTITY, "prompt": "on a rooftop at golden hour"}
    values.update(overrides)
    return ImageJobConfig(**values)


def training_config(**overrides) -> TrainingJobConfig:
    values = {
        "identity_id": "ident-new",
        "trigger_word": "nova_v1",
        "image_urls": [f"https://cdn.test/selfie-{i}.jpg" for i in range(5)],
    }
    values.update(overrides)
    return TrainingJobConfig(**values)


def animation_config(**overrides) -> AnimationJobConfig:
    values = {
        "identity_id": IDENTITY,
        "prompt": "dancing on a rooftop",
        "asset_url": "https://cdn.test/still.png",
        "motion_video_url": "https://cdn.test/moves.mp4",
    }
    values.update(overrides)
    return AnimationJobConfig(**values)


def video_done(request_id: str) -> CallbackPayload:
    return CallbackPayload(
        external_request_id=request_id,
        status="COMPLETED",
        payload={"video": {"url": "https://fal.test/render.mp4"}},
    )


def training_done(request_id: str) -> CallbackPayload:
    return CallbackPayload(
        external_request_id=request_id,
        status="COMPLETED",
        payload={"diffusers_lora_file": {"url": "https://fal.test/lora.safetensors"}},
    )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    store = MemoryStore()
    store.seed_account(ACCOUNT, credits=100, tier=Tier.BASE)
    store.save_identity(Identity(
        id=IDENTITY,
        account_id=ACCOUNT,
        name="Luna",
        trigger_word="luna_v3",
        model_url="https://r2.test/identities/ident-1.safetensors",
        status="ready",
    ))
    return store


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(store, provider):
    gateway = CapabilityGateway(store, {capability: provider for capability in Capability})
    return PipelineServices.build(store, gateway=gateway, locks=JobLocks(), archive=fake_archive)


@pytest.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
