"""
Generation Job Pipeline

Takes a user's generation request through entitlement, pricing and credit
reservation, then drives it step by step through external AI capabilities:
  Image jobs    — BASE_GEN → CLOTH_SWAP → UPSCALE → VIDEO_PREP → VIDEO_GEN
  Training jobs — TRAIN → REFERENCE_GEN
Async steps suspend the job until a provider callback (or the deadline sweep)
resolves it.
"""

from .orchestrator import GenerationPipeline
from .routes import callbacks_router, jobs_router, ops_router, get_services
from .models import JobStatus, PipelineStep

__all__ = [
    "GenerationPipeline",
    "jobs_router",
    "ops_router",
    "callbacks_router",
    "get_services",
    "JobStatus",
    "PipelineStep",
]
