"""
Background maintenance for the pipeline.

  recover_jobs   — startup: pick up jobs a previous process left mid-flight
  sweep_expired  — fail awaiting_callback jobs whose deadline has passed
  run_sweeper    — recurring sweep loop started from the app lifespan

The sweep asks the provider once before timing a job out, so a result whose
callback was lost is still applied.
"""

import os
import asyncio
import logging
from datetime import datetime
from typing import Optional

from .. import metrics
from .callbacks import CallbackOutcome, CallbackReceiver
from .errors import PipelineError
from .gateway import CapabilityGateway
from .models import JobStatus, utcnow
from .orchestrator import GenerationPipeline
from .store import JobStore

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────────
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SWEEP_BATCH_SIZE = 200


async def sweep_expired(
    store: JobStore,
    pipeline: GenerationPipeline,
    gateway: CapabilityGateway,
    receiver: CallbackReceiver,
    now: Optional[datetime] = None,
) -> dict:
    """
    Time out awaiting_callback jobs past their deadline.

    Returns counts: {"checked", "timed_out", "recovered"}.
    """
    now = now or utcnow()
    counts = {"checked": 0, "timed_out": 0, "recovered": 0}

    for job in store.list_jobs(statuses=[JobStatus.AWAITING_CALLBACK], limit=SWEEP_BATCH_SIZE):
        if job.callback_deadline is None or job.callback_deadline > now:
            continue
        counts["checked"] += 1
        handle = job.pending_handle

        # Last chance: the provider may have finished without reaching us
        if handle is not None:
            try:
                payload = await gateway.poll(handle)
            except PipelineError as e:
                logger.warning(f"[{job.id}] Status poll before timeout failed: {e}")
                payload = None
            if payload is not None:
                outcome = await receiver.handle(handle.provider, payload)
                if outcome in (CallbackOutcome.RESUMED, CallbackOutcome.FAILED):
                    counts["recovered"] += 1
                    continue

        if await _time_out(store, pipeline, job.id, now):
            counts["timed_out"] += 1

    if counts["checked"]:
        logger.info(f"Deadline sweep: {counts}")
    metrics.inc_counter("sweep.runs")
    metrics.inc_counter("jobs.timed_out", counts["timed_out"])
    return counts


async def _time_out(store: JobStore, pipeline: GenerationPipeline, job_id: str, now: datetime) -> bool:
    async with pipeline.locks.hold(job_id):
        job = store.get_job(job_id)
        # A callback may have landed while we were polling
        if (
            job is None
            or job.status != JobStatus.AWAITING_CALLBACK
            or job.callback_deadline is None
            or job.callback_deadline > now
        ):
            return False

        handle = job.pending_handle
        if handle is not None:
            # Any callback that still turns up is ignored
            store.resolve_handle(handle.external_request_id)
        step = handle.step if handle else job.current_step
        logger.warning(f"[{job.id}] {step.value} timed out waiting for callback")
        await pipeline.fail(job, "timeout", failed_step=step)
        return True


async def recover_jobs(store: JobStore, pipeline: GenerationPipeline) -> int:
    """
    Restart recovery.

    queued            → started
    processing        → adopt an unresolved handle for the in-flight step if
                        one was persisted, otherwise re-run from the last
                        persisted step
    awaiting_callback → left for the callback or the sweep
    """
    recovered = 0
    for job in store.list_jobs(statuses=[JobStatus.QUEUED, JobStatus.PROCESSING], limit=1000):
        if job.status == JobStatus.PROCESSING and await _adopt_open_handle(store, pipeline, job.id):
            recovered += 1
            continue
        pipeline.start(job.id)
        recovered += 1

    if recovered:
        logger.info(f"Recovered {recovered} job(s) from a previous session")
    return recovered


async def _adopt_open_handle(store: JobStore, pipeline: GenerationPipeline, job_id: str) -> bool:
    """Crash between handle persist and job suspend: finish the suspend."""
    async with pipeline.locks.hold(job_id):
        job = store.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False
        handle = store.open_handle(job.id, job.current_step)
        if handle is None:
            return False
        job.pending_handle = handle
        job.callback_deadline = handle.deadline
        job.status = JobStatus.AWAITING_CALLBACK
        store.save_job(job, expected_status=JobStatus.PROCESSING)
        logger.info(f"[{job.id}] Adopted outstanding request {handle.external_request_id}")
        return True


async def run_sweeper(
    store: JobStore,
    pipeline: GenerationPipeline,
    gateway: CapabilityGateway,
    receiver: CallbackReceiver,
    interval: int = SWEEP_INTERVAL_SECONDS,
) -> None:
    """Recurring deadline sweep. Cancelled by the app lifespan on shutdown."""
    logger.info(f"Deadline sweeper started (every {interval}s)")
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_expired(store, pipeline, gateway, receiver)
        except Exception as e:
            logger.exception(f"Deadline sweep failed: {e}")
            metrics.record_error("sweep", type(e).__name__, str(e))
