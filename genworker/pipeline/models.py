"""
Pydantic models and enums for the generation job pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    AWAITING_CALLBACK = "awaiting_callback"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class JobType(str, Enum):
    IMAGE = "image"
    TRAINING = "training"
    ANIMATION = "animation"


# ── Pipeline Steps ───────────────────────────────────────────────────────────

class PipelineStep(str, Enum):
    BASE_GEN = "BASE_GEN"
    CLOTH_SWAP = "CLOTH_SWAP"
    UPSCALE = "UPSCALE"
    VIDEO_PREP = "VIDEO_PREP"
    VIDEO_GEN = "VIDEO_GEN"
    TRAIN = "TRAIN"
    REFERENCE_GEN = "REFERENCE_GEN"


STEP_SEQUENCES = {
    JobType.IMAGE: [
        PipelineStep.BASE_GEN,
        PipelineStep.CLOTH_SWAP,
        PipelineStep.UPSCALE,
        PipelineStep.VIDEO_PREP,
        PipelineStep.VIDEO_GEN,
    ],
    JobType.TRAINING: [
        PipelineStep.TRAIN,
        PipelineStep.REFERENCE_GEN,
    ],
    JobType.ANIMATION: [
        PipelineStep.BASE_GEN,
        PipelineStep.VIDEO_PREP,
        PipelineStep.VIDEO_GEN,
    ],
}

# Progress a job reports once the step has completed (or been skipped).
STEP_PROGRESS = {
    PipelineStep.BASE_GEN: 20,
    PipelineStep.CLOTH_SWAP: 40,
    PipelineStep.UPSCALE: 60,
    PipelineStep.VIDEO_PREP: 85,
    PipelineStep.VIDEO_GEN: 90,
    PipelineStep.TRAIN: 60,
    PipelineStep.REFERENCE_GEN: 90,
}

REVIEW_PROGRESS = 95
COMPLETE_PROGRESS = 100


# ── Tiers ────────────────────────────────────────────────────────────────────

class Tier(str, Enum):
    BASE = "base"
    MID = "mid"
    TOP = "top"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def from_plan(cls, plan: Optional[str]) -> "Tier":
        """Map a subscription plan name (or tier name) onto a tier."""
        return _PLAN_TIERS.get((plan or "").strip().lower(), cls.BASE)


_TIER_RANK = {Tier.BASE: 1, Tier.MID: 2, Tier.TOP: 3}

_PLAN_TIERS = {
    "base": Tier.BASE,
    "starter": Tier.BASE,
    "operator": Tier.BASE,
    "mid": Tier.MID,
    "pro": Tier.MID,
    "director": Tier.MID,
    "top": Tier.TOP,
    "agency": Tier.TOP,
    "executive": Tier.TOP,
}


# ── Job Configuration ────────────────────────────────────────────────────────

CONFIG_VERSION = 1

AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4", "2:3", "3:2"]
VideoResolution = Literal["720p", "1080p", "1440p", "4K"]
VideoTier = Literal["fast", "pro"]
AnimationResolution = Literal["720p", "1080p"]


class ImageJobConfig(BaseModel):
    """Image (and optional video) generation request."""

    job_type: Literal["image"] = "image"
    version: Literal[1] = CONFIG_VERSION
    identity_id: str
    prompt: str = Field(..., min_length=1, max_length=4000)
    aspect_ratio: AspectRatio = "1:1"
    use_prompt_rewrite: bool = False
    change_clothes: bool = False
    clothes_url: Optional[str] = None
    clothes_prompt: Optional[str] = None
    upscale_factor: int = Field(1, ge=1, le=10)
    generate_video: bool = False
    video_resolution: VideoResolution = "1080p"
    video_duration: int = Field(5, ge=1, le=20)
    video_tier: VideoTier = "fast"
    is_explicit: bool = False
    require_review: bool = False

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _clothes_reference_required(self):
        # clothes_url without change_clothes is accepted and ignored.
        if self.change_clothes and not self.clothes_url:
            raise ValueError("change_clothes requires clothes_url")
        return self

    @property
    def wants_cloth_swap(self) -> bool:
        return self.change_clothes and bool(self.clothes_url)

    @property
    def wants_upscale(self) -> bool:
        return self.upscale_factor > 1


class TrainingJobConfig(BaseModel):
    """Identity-model training request."""

    job_type: Literal["training"] = "training"
    version: Literal[1] = CONFIG_VERSION
    identity_id: str
    trigger_word: str = Field(..., min_length=1, max_length=64)
    image_urls: list[str] = Field(..., min_length=1, max_length=50)
    steps: int = Field(1000, ge=100, le=4000)

    model_config = {"extra": "forbid", "frozen": True}

    @property
    def require_review(self) -> bool:
        return False


class AnimationJobConfig(BaseModel):
    """
    Animate a still asset as the identity: the asset is morphed onto the
    identity (img2img with its LoRA), then driven by a motion reference video.
    """

    job_type: Literal["animation"] = "animation"
    version: Literal[1] = CONFIG_VERSION
    identity_id: str
    prompt: str = Field(..., min_length=1, max_length=4000)
    asset_url: str = Field(..., min_length=1)
    motion_video_url: str = Field(..., min_length=1)
    aspect_ratio: AspectRatio = "1:1"
    resolution: AnimationResolution = "720p"
    is_explicit: bool = False
    require_review: bool = False

    model_config = {"extra": "forbid", "frozen": True}


JobConfig = Annotated[
    Union[ImageJobConfig, TrainingJobConfig, AnimationJobConfig],
    Field(discriminator="job_type"),
]


# ── Artifacts & Handles ──────────────────────────────────────────────────────

class Artifact(BaseModel):
    step: PipelineStep
    url: str
    kind: Literal["image", "video", "model"] = "image"
    durable: bool = False


class CapabilityHandle(BaseModel):
    """Reference to an asynchronous provider request owned by one job step."""

    provider: str
    capability: str
    external_request_id: str
    job_id: str
    step: PipelineStep
    issued_at: datetime = Field(default_factory=utcnow)
    deadline: datetime
    resolved_at: Optional[datetime] = None


# ── Job ──────────────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: str
    account_id: str
    job_type: JobType
    config: JobConfig
    status: JobStatus = JobStatus.QUEUED
    current_step: PipelineStep
    progress: int = 0
    price: int = 0
    reserved: int = 0
    cost_accrued: int = 0
    credits_refunded: int = 0
    charged_steps: list[PipelineStep] = Field(default_factory=list)
    completed_steps: list[PipelineStep] = Field(default_factory=list)
    outputs: list[Artifact] = Field(default_factory=list)
    error: Optional[str] = None
    pending_handle: Optional[CapabilityHandle] = None
    callback_deadline: Optional[datetime] = None
    cancel_requested: bool = False
    effective_prompt: Optional[str] = None
    retry_count: int = 0
    retry_of: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def steps(self) -> list[PipelineStep]:
        return STEP_SEQUENCES[self.job_type]

    @property
    def next_step(self) -> Optional[PipelineStep]:
        """First step in the sequence not yet completed or skipped."""
        for step in self.steps:
            if step not in self.completed_steps:
                return step
        return None

    def latest_artifact(self, kind: Optional[str] = None) -> Optional[Artifact]:
        for artifact in reversed(self.outputs):
            if kind is None or artifact.kind == kind:
                return artifact
        return None


# ── Ledger ───────────────────────────────────────────────────────────────────

class LedgerReason(str, Enum):
    JOB_RESERVE = "job_reserve"
    STEP_SHORTFALL = "step_shortfall"
    JOB_REFUND = "job_refund"
    UNUSED_RESERVATION = "unused_reservation"
    TOP_UP = "top_up"


class LedgerEntry(BaseModel):
    id: str
    account_id: str
    amount: int
    reason: LedgerReason
    job_id: Optional[str] = None
    step: Optional[PipelineStep] = None
    balance_after: int
    created_at: datetime = Field(default_factory=utcnow)


class Identity(BaseModel):
    id: str
    account_id: str
    name: str = ""
    trigger_word: str = ""
    model_url: Optional[str] = None
    status: Literal["training", "ready", "failed"] = "training"


# ── API Models ───────────────────────────────────────────────────────────────

CALLBACK_SUCCESS_STATUSES = {"COMPLETED", "OK", "SUCCESS"}
CALLBACK_FAILURE_STATUSES = {"FAILED", "ERROR"}


class CallbackPayload(BaseModel):
    """Inbound provider notification for an asynchronous request."""

    external_request_id: str = Field(
        ...,
        validation_alias=AliasChoices("externalRequestId", "external_request_id", "request_id"),
    )
    status: str
    payload: Optional[dict] = None
    error: Optional[Union[str, dict]] = None

    model_config = {"extra": "ignore"}

    @property
    def succeeded(self) -> bool:
        return self.status.upper() in CALLBACK_SUCCESS_STATUSES

    @property
    def failed(self) -> bool:
        return self.status.upper() in CALLBACK_FAILURE_STATUSES

    @property
    def is_final(self) -> bool:
        """False for progress notices (IN_QUEUE, IN_PROGRESS, ...)."""
        return self.succeeded or self.failed

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(self.error.get("message") or self.error.get("detail") or self.error)
        return self.error or "Provider reported failure"


class JobResponse(BaseModel):
    id: str
    account_id: str
    job_type: JobType
    status: JobStatus
    current_step: PipelineStep
    progress: int
    price: int
    cost_accrued: int
    credits_refunded: int = 0
    outputs: list[Artifact]
    error: Optional[str] = None
    cancel_requested: bool = False
    retry_count: int = 0
    retry_of: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            account_id=job.account_id,
            job_type=job.job_type,
            status=job.status,
            current_step=job.current_step,
            progress=job.progress,
            price=job.price,
            cost_accrued=job.cost_accrued,
            credits_refunded=job.credits_refunded,
            outputs=job.outputs,
            error=job.error,
            cancel_requested=job.cancel_requested,
            retry_count=job.retry_count,
            retry_of=job.retry_of,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
