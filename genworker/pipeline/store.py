"""
Job Store — durable state for jobs, capability handles, credits and identities.

Two backends share one interface:
  SupabaseStore — production; Supabase service-role client (bypasses RLS).
  MemoryStore   — in-process fallback when Supabase is not configured, and
                  the backend the test suite runs against.

Tables:
  generation_jobs      — one row per Job (config/outputs/handle as JSON)
  capability_handles   — outstanding async provider requests
  profiles             — account credit_balance + plan tier
  credit_transactions  — append-only ledger
  step_charges         — (job_id, step) de-duplication for step charging
  identities           — trained identity models

Methods are synchronous, matching the supabase-py client.
"""

import os
import copy
import logging
import threading
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

from supabase import Client, create_client

from .errors import StoreConflict
from .models import (
    CapabilityHandle,
    Identity,
    Job,
    JobStatus,
    LedgerEntry,
    LedgerReason,
    PipelineStep,
    TERMINAL_STATUSES,
    Tier,
    utcnow,
)

logger = logging.getLogger(__name__)

class JobStore:
    """Interface shared by the store backends."""

    # Jobs
    def create_job(self, job: Job) -> Job:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def save_job(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        """Persist the job. Raises StoreConflict if the stored status moved."""
        raise NotImplementedError

    def list_jobs(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100,
    ) -> list[Job]:
        raise NotImplementedError

    def request_cancel(self, job_id: str) -> bool:
        """Set the sticky cancel flag on a non-terminal job. Returns False if terminal or missing."""
        raise NotImplementedError

    # Capability handles
    def save_handle(self, handle: CapabilityHandle) -> None:
        raise NotImplementedError

    def get_handle(self, external_request_id: str) -> Optional[CapabilityHandle]:
        raise NotImplementedError

    def resolve_handle(self, external_request_id: str) -> bool:
        """Mark a handle resolved. Returns False if it already was."""
        raise NotImplementedError

    def open_handle(self, job_id: str, step: PipelineStep) -> Optional[CapabilityHandle]:
        """Unresolved handle issued for (job, step), if any."""
        raise NotImplementedError

    # Credits
    def get_balance(self, account_id: str) -> int:
        raise NotImplementedError

    def get_tier(self, account_id: str) -> Tier:
        raise NotImplementedError

    def apply_credit_movement(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason,
        job_id: Optional[str] = None,
        step: Optional[PipelineStep] = None,
    ) -> Optional[LedgerEntry]:
        """
        Atomically move the balance by ``amount`` and append the ledger entry.
        Returns None (and writes nothing) when a debit exceeds the balance.
        """
        raise NotImplementedError

    def ledger_entries(self, account_id: str, job_id: Optional[str] = None) -> list[LedgerEntry]:
        raise NotImplementedError

    def record_step_charge(self, job_id: str, step: PipelineStep, amount: int) -> bool:
        """Record that (job, step) was charged. Returns False if already recorded."""
        raise NotImplementedError

    # Identities
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        raise NotImplementedError

    def save_identity(self, identity: Identity) -> None:
        raise NotImplementedError

    # Notifications
    def insert_notification(self, account_id: str, payload: dict) -> None:
        raise NotImplementedError


def _new_entry(
    account_id: str,
    amount: int,
    reason: LedgerReason,
    balance_after: int,
    job_id: Optional[str],
    step: Optional[PipelineStep],
) -> LedgerEntry:
    return LedgerEntry(
        id=str(uuid4()),
        account_id=account_id,
        amount=amount,
        reason=reason,
        job_id=job_id,
        step=step,
        balance_after=balance_after,
    )


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class MemoryStore(JobStore):
    """
    Thread-safe in-memory store.

    State is lost on restart; use only for development and tests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._handles: dict[str, CapabilityHandle] = {}
        self._balances: dict[str, int] = {}
        self._tiers: dict[str, Tier] = {}
        self._entries: list[LedgerEntry] = []
        self._step_charges: set[tuple[str, PipelineStep]] = set()
        self._identities: dict[str, Identity] = {}
        self.notifications: list[dict] = []

    # ── Seeding (collaborator data) ──────────────────────────────────────

    def seed_account(self, account_id: str, credits: int = 0, tier: Tier = Tier.BASE):
        with self._lock:
            self._balances[account_id] = credits
            self._tiers[account_id] = tier

    # ── Jobs ─────────────────────────────────────────────────────────────

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise StoreConflict(f"Job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def save_job(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise StoreConflict(f"Job {job.id} does not exist")
            if expected_status is not None and stored.status != expected_status:
                raise StoreConflict(
                    f"Job {job.id} is {stored.status.value}, expected {expected_status.value}"
                )
            # cancel_requested is never cleared by a save
            job.cancel_requested = job.cancel_requested or stored.cancel_requested
            job.updated_at = utcnow()
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            stored = self._jobs.get(job_id)
            if stored is None or stored.is_terminal:
                return False
            stored.cancel_requested = True
            stored.updated_at = utcnow()
            return True

    def list_jobs(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100,
    ) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            jobs = [
                j.model_copy(deep=True)
                for j in self._jobs.values()
                if (account_id is None or j.account_id == account_id)
                and (wanted is None or j.status in wanted)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    # ── Handles ──────────────────────────────────────────────────────────

    def save_handle(self, handle: CapabilityHandle) -> None:
        with self._lock:
            self._handles[handle.external_request_id] = handle.model_copy(deep=True)

    def get_handle(self, external_request_id: str) -> Optional[CapabilityHandle]:
        with self._lock:
            handle = self._handles.get(external_request_id)
            return handle.model_copy(deep=True) if handle else None

    def resolve_handle(self, external_request_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(external_request_id)
            if handle is None or handle.resolved_at is not None:
                return False
            handle.resolved_at = utcnow()
            return True

    def open_handle(self, job_id: str, step: PipelineStep) -> Optional[CapabilityHandle]:
        with self._lock:
            for handle in self._handles.values():
                if handle.job_id == job_id and handle.step == step and handle.resolved_at is None:
                    return handle.model_copy(deep=True)
        return None

    # ── Credits ──────────────────────────────────────────────────────────

    def get_balance(self, account_id: str) -> int:
        with self._lock:
            return self._balances.get(account_id, 0)

    def get_tier(self, account_id: str) -> Tier:
        with self._lock:
            return self._tiers.get(account_id, Tier.BASE)

    def apply_credit_movement(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason,
        job_id: Optional[str] = None,
        step: Optional[PipelineStep] = None,
    ) -> Optional[LedgerEntry]:
        with self._lock:
            balance = self._balances.get(account_id, 0)
            new_balance = balance + amount
            if amount < 0 and new_balance < 0:
                return None
            self._balances[account_id] = new_balance
            entry = _new_entry(account_id, amount, reason, new_balance, job_id, step)
            self._entries.append(entry)
            return entry.model_copy()

    def ledger_entries(self, account_id: str, job_id: Optional[str] = None) -> list[LedgerEntry]:
        with self._lock:
            return [
                e.model_copy()
                for e in self._entries
                if e.account_id == account_id and (job_id is None or e.job_id == job_id)
            ]

    def record_step_charge(self, job_id: str, step: PipelineStep, amount: int) -> bool:
        key = (job_id, step)
        with self._lock:
            if key in self._step_charges:
                return False
            self._step_charges.add(key)
            return True

    # ── Identities ───────────────────────────────────────────────────────

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            identity = self._identities.get(identity_id)
            return identity.model_copy() if identity else None

    def save_identity(self, identity: Identity) -> None:
        with self._lock:
            self._identities[identity.id] = identity.model_copy()

    def insert_notification(self, account_id: str, payload: dict) -> None:
        with self._lock:
            self.notifications.append({"account_id": account_id, **copy.deepcopy(payload)})


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

def _job_to_row(job: Job, for_update: bool = False) -> dict:
    row = job.model_dump(mode="json")
    if for_update and not job.cancel_requested:
        # cancel_requested is never cleared by a save
        row.pop("cancel_requested")
    return row


def _iso(value: datetime) -> str:
    return value.isoformat()


def _entry_from_row(row: dict) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        account_id=row["user_id"],
        amount=row["amount"],
        reason=row["reason"],
        job_id=row.get("job_id"),
        step=row.get("step"),
        balance_after=row["balance_after"],
        created_at=row["created_at"],
    )


class SupabaseStore(JobStore):
    """
    Supabase-backed store. Balance moves go through the
    ``apply_credit_movement`` Postgres function, which updates the profile
    balance and appends the ledger row in one transaction.
    """

    def __init__(self, client: Client):
        self._sb = client

    # ── Jobs ─────────────────────────────────────────────────────────────

    def create_job(self, job: Job) -> Job:
        self._sb.table("generation_jobs").insert(_job_to_row(job)).execute()
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        result = (
            self._sb.table("generation_jobs")
            .select("*")
            .eq("id", job_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return Job.model_validate(result.data[0])

    def save_job(self, job: Job, expected_status: Optional[JobStatus] = None) -> Job:
        job.updated_at = utcnow()
        query = self._sb.table("generation_jobs").update(_job_to_row(job, for_update=True)).eq("id", job.id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        result = query.execute()
        if not result.data:
            raise StoreConflict(f"Job {job.id} changed concurrently (expected {expected_status})")
        job.cancel_requested = bool(result.data[0].get("cancel_requested"))
        return job

    def request_cancel(self, job_id: str) -> bool:
        terminal = [s.value for s in TERMINAL_STATUSES]
        result = (
            self._sb.table("generation_jobs")
            .update({"cancel_requested": True, "updated_at": _iso(utcnow())})
            .eq("id", job_id)
            .not_.in_("status", terminal)
            .execute()
        )
        return bool(result.data)

    def list_jobs(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100,
    ) -> list[Job]:
        query = self._sb.table("generation_jobs").select("*")
        if account_id is not None:
            query = query.eq("account_id", account_id)
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [Job.model_validate(row) for row in result.data]

    # ── Handles ──────────────────────────────────────────────────────────

    def save_handle(self, handle: CapabilityHandle) -> None:
        self._sb.table("capability_handles").upsert(
            handle.model_dump(mode="json"), on_conflict="external_request_id"
        ).execute()

    def get_handle(self, external_request_id: str) -> Optional[CapabilityHandle]:
        result = (
            self._sb.table("capability_handles")
            .select("*")
            .eq("external_request_id", external_request_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return CapabilityHandle.model_validate(result.data[0])

    def resolve_handle(self, external_request_id: str) -> bool:
        result = (
            self._sb.table("capability_handles")
            .update({"resolved_at": _iso(utcnow())})
            .eq("external_request_id", external_request_id)
            .is_("resolved_at", "null")
            .execute()
        )
        return bool(result.data)

    def open_handle(self, job_id: str, step: PipelineStep) -> Optional[CapabilityHandle]:
        result = (
            self._sb.table("capability_handles")
            .select("*")
            .eq("job_id", job_id)
            .eq("step", step.value)
            .is_("resolved_at", "null")
            .order("issued_at", desc=True)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return CapabilityHandle.model_validate(result.data[0])

    # ── Credits ──────────────────────────────────────────────────────────

    def _profile(self, account_id: str) -> dict:
        result = (
            self._sb.table("profiles")
            .select("credit_balance, tier")
            .eq("id", account_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else {}

    def get_balance(self, account_id: str) -> int:
        return int(self._profile(account_id).get("credit_balance") or 0)

    def get_tier(self, account_id: str) -> Tier:
        return Tier.from_plan(self._profile(account_id).get("tier"))

    def apply_credit_movement(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason,
        job_id: Optional[str] = None,
        step: Optional[PipelineStep] = None,
    ) -> Optional[LedgerEntry]:
        # Balance update and ledger insert commit together or not at all;
        # no row back means the debit would have overdrawn the account
        result = self._sb.rpc("apply_credit_movement", {
            "p_entry_id": str(uuid4()),
            "p_user_id": account_id,
            "p_amount": amount,
            "p_reason": reason.value,
            "p_job_id": job_id,
            "p_step": step.value if step else None,
        }).execute()

        row = result.data
        if isinstance(row, list):
            row = row[0] if row else None
        if not row or row.get("id") is None:
            return None
        return _entry_from_row(row)

    def ledger_entries(self, account_id: str, job_id: Optional[str] = None) -> list[LedgerEntry]:
        query = self._sb.table("credit_transactions").select("*").eq("user_id", account_id)
        if job_id is not None:
            query = query.eq("job_id", job_id)
        result = query.order("created_at").execute()
        return [_entry_from_row(row) for row in result.data]

    def record_step_charge(self, job_id: str, step: PipelineStep, amount: int) -> bool:
        # Primary key (job_id, step); a duplicate insert is ignored and returns no rows
        result = self._sb.table("step_charges").upsert(
            {
                "job_id": job_id,
                "step": step.value,
                "amount": amount,
                "created_at": _iso(utcnow()),
            },
            on_conflict="job_id,step",
            ignore_duplicates=True,
        ).execute()
        return bool(result.data)

    # ── Identities ───────────────────────────────────────────────────────

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        result = (
            self._sb.table("identities")
            .select("*")
            .eq("id", identity_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return Identity.model_validate(result.data[0])

    def save_identity(self, identity: Identity) -> None:
        self._sb.table("identities").upsert(identity.model_dump(mode="json")).execute()

    def insert_notification(self, account_id: str, payload: dict) -> None:
        self._sb.table("notifications").insert({"user_id": account_id, **payload}).execute()


# ── Store Singleton ──────────────────────────────────────────────────────────

_store: Optional[JobStore] = None


def get_store() -> JobStore:
    """Lazy-init the store: Supabase when configured, in-memory otherwise."""
    global _store
    if _store is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if url and key:
            _store = SupabaseStore(create_client(url, key))
            logger.info("Job store: Supabase")
        else:
            logger.warning("SUPABASE_URL not set — using in-memory job store (state is not durable)")
            _store = MemoryStore()
    return _store
