"""
Job Service — submission, queries and ops actions.

Submission (POST /jobs):
  1. Entitlement check against the account's tier (nothing charged on denial)
  2. Price the config
  3. Reserve + debit the full price (no job on insufficient funds)
  4. Create the Job (queued) and hand it to the pipeline

Every operation takes the caller's account id explicitly; reads and user
actions are scoped to jobs that account owns.
"""

import logging
from typing import Optional
from uuid import uuid4

from .. import metrics
from .entitlements import check_entitlement
from .errors import EntitlementDenied, InsufficientCredits, InvalidJobState, JobNotFound, PipelineError
from .ledger import Ledger, LedgerResult
from .models import (
    COMPLETE_PROGRESS,
    STEP_SEQUENCES,
    AnimationJobConfig,
    Identity,
    ImageJobConfig,
    Job,
    JobConfig,
    JobStatus,
    JobType,
    LedgerReason,
    TrainingJobConfig,
)
from .orchestrator import GenerationPipeline
from .pricing import price
from .store import JobStore

logger = logging.getLogger(__name__)


class JobService:
    def __init__(self, store: JobStore, ledger: Ledger, pipeline: GenerationPipeline):
        self._store = store
        self._ledger = ledger
        self._pipeline = pipeline

    # ═════════════════════════════════════════════════════════════════════
    # Submission
    # ═════════════════════════════════════════════════════════════════════

    async def submit_job(
        self,
        account_id: str,
        config: JobConfig,
        retry_of: Optional[Job] = None,
    ) -> Job:
        """
        Entitlement → price → debit → create → start.

        Raises EntitlementDenied (nothing charged), InsufficientCredits (no job,
        no ledger entry) or PipelineError for an unusable identity.
        """
        metrics.inc_counter("requests.submit")

        tier = self._store.get_tier(account_id)
        decision = check_entitlement(tier, config)
        if not decision.allowed:
            metrics.inc_counter("jobs.entitlement_denied")
            raise EntitlementDenied(decision.reason, decision.rule, decision.required_tier.value)

        self._check_identity(account_id, config)

        cost = price(config)
        job_id = str(uuid4())
        if self._ledger.reserve_and_debit(account_id, cost, LedgerReason.JOB_RESERVE, job_id) != LedgerResult.OK:
            metrics.inc_counter("jobs.insufficient_funds")
            raise InsufficientCredits(cost, self._ledger.balance(account_id))

        job_type = JobType(config.job_type)
        job = Job(
            id=job_id,
            account_id=account_id,
            job_type=job_type,
            config=config,
            status=JobStatus.QUEUED,
            current_step=STEP_SEQUENCES[job_type][0],
            price=cost,
            reserved=cost,
            retry_count=retry_of.retry_count + 1 if retry_of else 0,
            retry_of=retry_of.id if retry_of else None,
        )
        try:
            self._store.create_job(job)
        except Exception:
            logger.exception(f"[{job_id}] Job create failed after debit, refunding {cost}")
            self._ledger.refund(account_id, job_id, cost, LedgerReason.JOB_REFUND)
            raise

        if isinstance(config, TrainingJobConfig):
            self._mark_training(account_id, config)

        logger.info(
            f"[{job.id}] Submitted {job_type.value} job for account {account_id} "
            f"({cost} credits, tier {tier.value})"
        )
        metrics.inc_counter(f"jobs.submitted.{job_type.value}")
        self._pipeline.start(job.id)
        return job

    def _check_identity(self, account_id: str, config: JobConfig) -> None:
        identity = self._store.get_identity(config.identity_id)
        if identity is not None and identity.account_id != account_id:
            identity = None

        if isinstance(config, (ImageJobConfig, AnimationJobConfig)) and identity is None:
            raise PipelineError(f"Identity {config.identity_id} not found", code="identity_not_found")
        if isinstance(config, TrainingJobConfig) and identity is not None and identity.status == "training":
            raise InvalidJobState(f"Identity {config.identity_id} is already training")

    def _mark_training(self, account_id: str, config: TrainingJobConfig) -> None:
        identity = self._store.get_identity(config.identity_id)
        if identity is None:
            identity = Identity(id=config.identity_id, account_id=account_id, name=config.trigger_word)
        self._store.save_identity(identity.model_copy(update={
            "trigger_word": config.trigger_word,
            "status": "training",
        }))

    # ═════════════════════════════════════════════════════════════════════
    # Queries
    # ═════════════════════════════════════════════════════════════════════

    def get_job(self, account_id: str, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        # Someone else's job is indistinguishable from a missing one
        if job is None or job.account_id != account_id:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_jobs(self, account_id: str, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        statuses = [status] if status else None
        return self._store.list_jobs(account_id=account_id, statuses=statuses, limit=limit)

    def balance(self, account_id: str) -> int:
        return self._ledger.balance(account_id)

    # ═════════════════════════════════════════════════════════════════════
    # User actions
    # ═════════════════════════════════════════════════════════════════════

    async def cancel_job(self, account_id: str, job_id: str) -> Job:
        """
        Request cancellation.

        Queued jobs are failed and refunded immediately. Jobs with a step in
        flight keep the request and are failed when that step resolves.
        """
        job = self.get_job(account_id, job_id)
        if job.is_terminal or job.status == JobStatus.REVIEW:
            raise InvalidJobState(f"Job {job_id} is {job.status.value} and cannot be cancelled")

        if not self._store.request_cancel(job_id):
            raise InvalidJobState(f"Job {job_id} finished before it could be cancelled")
        logger.info(f"[{job_id}] Cancellation requested ({job.status.value})")

        if job.status == JobStatus.QUEUED:
            async with self._pipeline.locks.hold(job_id):
                job = self._store.get_job(job_id)
                if job.status == JobStatus.QUEUED:
                    await self._pipeline.fail(job, "cancelled")

        return self._store.get_job(job_id)

    async def retry_job(self, account_id: str, job_id: str) -> Job:
        """Resubmit a failed job's config as a new job."""
        job = self.get_job(account_id, job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobState(f"Only failed jobs can be retried (job is {job.status.value})")
        logger.info(f"[{job_id}] Retry requested (attempt {job.retry_count + 1})")
        return await self.submit_job(account_id, job.config, retry_of=job)

    # ═════════════════════════════════════════════════════════════════════
    # Ops review
    # ═════════════════════════════════════════════════════════════════════

    async def approve_review(self, job_id: str) -> Job:
        return await self._close_review(job_id, approve=True)

    async def reject_review(self, job_id: str, reason: Optional[str] = None) -> Job:
        return await self._close_review(job_id, approve=False, reason=reason)

    async def _close_review(self, job_id: str, approve: bool, reason: Optional[str] = None) -> Job:
        async with self._pipeline.locks.hold(job_id):
            job = self._store.get_job(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if job.status != JobStatus.REVIEW:
                raise InvalidJobState(f"Job {job_id} is {job.status.value}, not in review")

            if approve:
                job.status = JobStatus.COMPLETED
                job.progress = COMPLETE_PROGRESS
            else:
                # Outputs were delivered and paid for; rejection does not refund
                job.status = JobStatus.FAILED
                job.error = f"rejected_in_review: {reason}" if reason else "rejected_in_review"
            self._store.save_job(job, expected_status=JobStatus.REVIEW)

        metrics.inc_counter(f"jobs.review.{'approved' if approve else 'rejected'}")
        logger.info(f"[{job_id}] Review {'approved' if approve else 'rejected'}")
        self._pipeline.notifier.notify(job)
        return job
