"""
Callback Receiver — provider completion notices for async steps.

  1. Look up the handle by external request id (unknown, wrong provider
     or not yet final → ignored)
  2. Under the job lock: skip terminal jobs, stale handles and duplicates
  3. Apply the result (success resumes, failure fails + refunds)
  4. Drive the remaining steps inline

Always safe to call more than once for the same request id.
"""

import logging
from enum import Enum

from .. import metrics
from .models import CallbackPayload, CapabilityHandle, JobStatus
from .orchestrator import GenerationPipeline
from .store import JobStore

logger = logging.getLogger(__name__)


class CallbackOutcome(str, Enum):
    IGNORED_UNKNOWN = "ignored_unknown"
    IGNORED_TERMINAL = "ignored_terminal"
    IGNORED_PENDING = "ignored_pending"
    RESUMED = "resumed"
    FAILED = "failed"


class CallbackReceiver:
    def __init__(self, store: JobStore, pipeline: GenerationPipeline):
        self._store = store
        self._pipeline = pipeline

    async def handle(self, provider: str, payload: CallbackPayload) -> CallbackOutcome:
        request_id = payload.external_request_id
        metrics.inc_counter(f"callbacks.{provider}")

        handle = self._store.get_handle(request_id)
        if handle is None:
            logger.warning(f"Callback from {provider} for unknown request {request_id}, ignoring")
            return CallbackOutcome.IGNORED_UNKNOWN
        if handle.provider != provider:
            logger.warning(
                f"[{handle.job_id}] Callback for {request_id} arrived on /{provider}, "
                f"handle belongs to {handle.provider}, ignoring"
            )
            return CallbackOutcome.IGNORED_UNKNOWN
        if not payload.is_final:
            logger.info(f"[{handle.job_id}] {payload.status} notice for {request_id}, still waiting")
            return CallbackOutcome.IGNORED_PENDING

        outcome = await self.resolve(handle, payload)
        if outcome == CallbackOutcome.RESUMED:
            await self._pipeline.drive(handle.job_id)
        return outcome

    async def resolve(self, handle: CapabilityHandle, payload: CallbackPayload) -> CallbackOutcome:
        """Apply ``payload`` to the job waiting on ``handle``. Does not drive the job on."""
        async with self._pipeline.locks.hold(handle.job_id):
            job = self._store.get_job(handle.job_id)
            if job is None or job.is_terminal:
                logger.info(f"[{handle.job_id}] Late callback for {handle.external_request_id}, job already final")
                return CallbackOutcome.IGNORED_TERMINAL

            pending = job.pending_handle
            if (
                job.status != JobStatus.AWAITING_CALLBACK
                or pending is None
                or pending.external_request_id != handle.external_request_id
            ):
                logger.info(f"[{job.id}] Stale callback for {handle.external_request_id}, ignoring")
                return CallbackOutcome.IGNORED_TERMINAL

            if not self._store.resolve_handle(handle.external_request_id):
                logger.info(f"[{job.id}] Duplicate callback for {handle.external_request_id}, ignoring")
                return CallbackOutcome.IGNORED_TERMINAL

            if await self._pipeline.apply_result(job, handle, payload):
                return CallbackOutcome.RESUMED
            return CallbackOutcome.FAILED
