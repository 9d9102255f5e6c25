"""
Entitlement Checker — tier gates on a requested configuration.

Runs strictly before any ledger interaction. A denial names the rule that
failed and the tier that would allow it, so the caller can render an upgrade
prompt.
"""

import logging
from typing import Optional, Union

from pydantic import BaseModel

from .models import AnimationJobConfig, ImageJobConfig, Tier, TrainingJobConfig

logger = logging.getLogger(__name__)

BASE_DURATION_CEILING = 5
MID_DURATION_CEILING = 10


class EntitlementDecision(BaseModel):
    allowed: bool
    rule: Optional[str] = None
    required_tier: Optional[Tier] = None
    reason: Optional[str] = None


ALLOWED = EntitlementDecision(allowed=True)


def _deny(rule: str, required: Tier, reason: str) -> EntitlementDecision:
    logger.info(f"Entitlement denied: rule={rule} required={required.value}")
    return EntitlementDecision(allowed=False, rule=rule, required_tier=required, reason=reason)


def check_entitlement(
    tier: Tier,
    config: Union[ImageJobConfig, TrainingJobConfig, AnimationJobConfig],
) -> EntitlementDecision:
    """
    Check the requested configuration against the account tier.

    Rules:
      - explicit content requires mid tier
      - video longer than 5 units requires mid, longer than 10 requires top
      - 4K video requires top, 1440p requires mid
      - animations are gated on explicit content only
    """
    if isinstance(config, TrainingJobConfig):
        return ALLOWED

    if config.is_explicit and tier.rank < Tier.MID.rank:
        return _deny(
            "explicit_content", Tier.MID,
            "Explicit content generation requires the mid tier or higher.",
        )

    if isinstance(config, AnimationJobConfig):
        return ALLOWED

    if config.generate_video:
        duration = config.video_duration
        if duration > MID_DURATION_CEILING and tier.rank < Tier.TOP.rank:
            return _deny(
                "video_duration", Tier.TOP,
                f"Videos longer than {MID_DURATION_CEILING}s require the top tier.",
            )
        if duration > BASE_DURATION_CEILING and tier.rank < Tier.MID.rank:
            return _deny(
                "video_duration", Tier.MID,
                f"Videos longer than {BASE_DURATION_CEILING}s require the mid tier.",
            )

        if config.video_resolution == "4K" and tier.rank < Tier.TOP.rank:
            return _deny("video_resolution", Tier.TOP, "4K video requires the top tier.")
        if config.video_resolution == "1440p" and tier.rank < Tier.MID.rank:
            return _deny("video_resolution", Tier.MID, "1440p video requires the mid tier.")

    return ALLOWED
