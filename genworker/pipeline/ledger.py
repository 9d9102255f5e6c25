"""
Credit Ledger.

Submission reserves a job's full price with a single debit. As the pipeline
runs, each step consumes its share of that reservation exactly once. When a
job fails, or finishes cheaper than priced (skipped best-effort steps), what
is still held is returned with a compensating credit entry. A step that was
charged but failed to deliver is returned with it. Entries are never mutated
or deleted.
"""

import logging
from enum import Enum
from typing import Optional

from .errors import InsufficientCredits
from .models import Job, LedgerEntry, LedgerReason, PipelineStep
from .pricing import step_prices
from .store import JobStore

logger = logging.getLogger(__name__)


class LedgerResult(str, Enum):
    OK = "ok"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class Ledger:
    def __init__(self, store: JobStore):
        self._store = store

    def balance(self, account_id: str) -> int:
        return self._store.get_balance(account_id)

    def entries(self, account_id: str, job_id: Optional[str] = None) -> list[LedgerEntry]:
        return self._store.ledger_entries(account_id, job_id)

    def reserve_and_debit(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.JOB_RESERVE,
        job_id: Optional[str] = None,
    ) -> LedgerResult:
        """Debit ``amount`` if the balance covers it. Fails closed otherwise."""
        if amount <= 0:
            return LedgerResult.OK

        entry = self._store.apply_credit_movement(account_id, -amount, reason, job_id=job_id)
        if entry is None:
            logger.info(f"Debit of {amount} refused for account {account_id}: insufficient funds")
            return LedgerResult.INSUFFICIENT_FUNDS

        logger.info(
            f"Debited {amount} from account {account_id} for job {job_id} "
            f"(balance {entry.balance_after})"
        )
        return LedgerResult.OK

    def refund(
        self,
        account_id: str,
        job_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.JOB_REFUND,
    ) -> Optional[LedgerEntry]:
        """Append a compensating credit for a job."""
        if amount <= 0:
            return None
        entry = self._store.apply_credit_movement(account_id, amount, reason, job_id=job_id)
        logger.info(f"[{job_id}] Refunded {amount} credits ({reason.value})")
        return entry

    def top_up(self, account_id: str, amount: int) -> Optional[LedgerEntry]:
        if amount <= 0:
            return None
        return self._store.apply_credit_movement(account_id, amount, LedgerReason.TOP_UP)

    def charge_step(self, job: Job, step: PipelineStep, amount: int) -> bool:
        """
        Consume ``amount`` of the job's reservation for ``step``.

        Returns False (and charges nothing) if the step was already charged.
        Anything beyond the remaining reservation is debited from the account;
        raises InsufficientCredits when the account cannot cover it. Mutates
        ``job.reserved`` / ``job.cost_accrued`` / ``job.charged_steps``; the
        caller persists the job.
        """
        if amount <= 0 or step in job.charged_steps:
            return False
        if not self._store.record_step_charge(job.id, step, amount):
            # Charge recorded before a crash, but the job row never caught up
            logger.warning(f"[{job.id}] Step {step.value} already charged, reconciling job")
            self._consume(job, step, amount)
            return False

        shortfall = max(0, amount - job.reserved)
        if shortfall:
            entry = self._store.apply_credit_movement(
                job.account_id, -shortfall, LedgerReason.STEP_SHORTFALL,
                job_id=job.id, step=step,
            )
            if entry is None:
                raise InsufficientCredits(shortfall, self.balance(job.account_id))
            job.reserved += shortfall

        self._consume(job, step, amount)
        logger.info(f"[{job.id}] Charged {amount} for {step.value} (accrued {job.cost_accrued}, held {job.reserved})")
        return True

    @staticmethod
    def _consume(job: Job, step: PipelineStep, amount: int) -> None:
        job.reserved = max(0, job.reserved - amount)
        job.cost_accrued += amount
        job.charged_steps.append(step)

    @staticmethod
    def settle(job: Job, failed_step: Optional[PipelineStep] = None) -> int:
        """
        Close out the job's reservation and return the amount owed back.

        Whatever is still held is owed; when ``failed_step`` was charged but
        never delivered, its charge is owed too. Mutates the job only: persist
        it, then pass the amount to ``refund`` so a crash in between can never
        pay the refund twice.
        """
        amount = job.reserved
        if failed_step is not None and failed_step in job.charged_steps:
            amount += step_prices(job.config).get(failed_step, 0)
        job.reserved = 0
        job.credits_refunded += amount
        return amount
