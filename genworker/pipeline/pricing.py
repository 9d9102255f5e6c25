"""
Cost Model — credit price of a job configuration.

Pure functions, no I/O. ``step_prices`` splits the total into the
incremental charges the orchestrator takes as each step runs; the split
always sums to ``price``.
"""

from typing import Union

from .models import AnimationJobConfig, ImageJobConfig, PipelineStep, TrainingJobConfig

# ── Price Table ──────────────────────────────────────────────────────────────

IMAGE_BASIC = 1
IMAGE_PREMIUM = 2   # upscale alone, or swap alone
IMAGE_FULL = 3      # swap + upscale, flat
SWAP_SURCHARGE = 1

VIDEO_FAST_720P = 5
VIDEO_FAST_1080P = 8
VIDEO_PRO_1080P = 12
VIDEO_PRO_4K = 40

TRAINING_FAST = 75
TRAINING_HQ = 150
TRAINING_FAST_MAX_STEPS = 1000

ANIMATION_720P = 10
ANIMATION_1080P = 25


def image_stage_price(config: ImageJobConfig) -> int:
    price = IMAGE_BASIC
    if config.wants_cloth_swap:
        price += SWAP_SURCHARGE
    if config.wants_upscale:
        price = max(price, IMAGE_PREMIUM)
        if config.wants_cloth_swap:
            price = IMAGE_FULL
    return price


def video_stage_price(config: ImageJobConfig) -> int:
    if not config.generate_video:
        return 0
    if config.video_resolution == "4K":
        return VIDEO_PRO_4K
    if config.video_tier == "pro":
        return VIDEO_PRO_1080P
    if config.video_resolution == "720p":
        return VIDEO_FAST_720P
    return VIDEO_FAST_1080P


def training_price(config: TrainingJobConfig) -> int:
    if config.steps > TRAINING_FAST_MAX_STEPS:
        return TRAINING_HQ
    return TRAINING_FAST


def animation_price(config: AnimationJobConfig) -> int:
    if config.resolution == "1080p":
        return ANIMATION_1080P
    return ANIMATION_720P


def price(config: Union[ImageJobConfig, TrainingJobConfig, AnimationJobConfig]) -> int:
    """Total credits for a configuration."""
    if isinstance(config, TrainingJobConfig):
        return training_price(config)
    if isinstance(config, AnimationJobConfig):
        return animation_price(config)
    return image_stage_price(config) + video_stage_price(config)


def step_prices(config: Union[ImageJobConfig, TrainingJobConfig, AnimationJobConfig]) -> dict[PipelineStep, int]:
    """Per-step incremental charges. Steps that are not requested cost 0."""
    if isinstance(config, TrainingJobConfig):
        return {
            PipelineStep.TRAIN: training_price(config),
            PipelineStep.REFERENCE_GEN: 0,
        }
    if isinstance(config, AnimationJobConfig):
        # Charged in full when the animation is submitted
        return {
            PipelineStep.BASE_GEN: 0,
            PipelineStep.VIDEO_PREP: 0,
            PipelineStep.VIDEO_GEN: animation_price(config),
        }

    image_total = image_stage_price(config)
    swap = SWAP_SURCHARGE if config.wants_cloth_swap else 0
    return {
        PipelineStep.BASE_GEN: IMAGE_BASIC,
        PipelineStep.CLOTH_SWAP: swap,
        PipelineStep.UPSCALE: image_total - IMAGE_BASIC - swap,
        PipelineStep.VIDEO_PREP: 0,
        PipelineStep.VIDEO_GEN: video_stage_price(config),
    }
