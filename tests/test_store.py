"""SupabaseStore credit movements against an in-process stand-in for PostgREST."""

from types import SimpleNamespace

import pytest

from genworker.pipeline.ledger import Ledger, LedgerResult
from genworker.pipeline.models import LedgerReason, PipelineStep
from genworker.pipeline.store import SupabaseStore

ACCOUNT = "acct-sb"


class _Call:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return SimpleNamespace(data=self._fn())


class FakeSupabase:
    """
    Holds one balance and the credit_transactions rows. ``rpc`` mirrors the
    apply_credit_movement function: all-or-nothing, empty set on overdraw.
    """

    def __init__(self, balance: int):
        self.balance = balance
        self.rows: list[dict] = []
        self.rpc_calls: list[tuple[str, dict]] = []
        self.fail_insert = False

    def rpc(self, name: str, params: dict) -> _Call:
        self.rpc_calls.append((name, params))
        return _Call(lambda: self._apply(params))

    def _apply(self, params: dict) -> list[dict]:
        after = self.balance + params["p_amount"]
        if params["p_amount"] < 0 and after < 0:
            return []
        if self.fail_insert:
            # Transaction aborts; the balance update rolls back with it
            raise RuntimeError("insert into credit_transactions failed")
        row = {
            "id": params["p_entry_id"],
            "user_id": params["p_user_id"],
            "amount": params["p_amount"],
            "balance_after": after,
            "reason": params["p_reason"],
            "job_id": params["p_job_id"],
            "step": params["p_step"],
            "created_at": "2026-03-01T12:00:00+00:00",
        }
        self.balance = after
        self.rows.append(row)
        return [row]


@pytest.fixture
def supabase():
    return FakeSupabase(balance=10)


def test_debit_goes_through_a_single_rpc(supabase):
    ledger = Ledger(SupabaseStore(supabase))

    assert ledger.reserve_and_debit(ACCOUNT, 3, job_id="job-1") == LedgerResult.OK

    [(name, params)] = supabase.rpc_calls
    assert name == "apply_credit_movement"
    assert params["p_amount"] == -3
    assert params["p_reason"] == LedgerReason.JOB_RESERVE.value
    assert supabase.balance == 7
    [row] = supabase.rows
    assert row["balance_after"] == 7


def test_failed_insert_leaves_balance_untouched(supabase):
    supabase.fail_insert = True
    ledger = Ledger(SupabaseStore(supabase))

    with pytest.raises(RuntimeError):
        ledger.reserve_and_debit(ACCOUNT, 3, job_id="job-1")

    assert supabase.balance == 10
    assert supabase.rows == []


def test_overdraw_returns_insufficient_funds(supabase):
    ledger = Ledger(SupabaseStore(supabase))

    assert ledger.reserve_and_debit(ACCOUNT, 11) == LedgerResult.INSUFFICIENT_FUNDS
    assert supabase.balance == 10
    assert supabase.rows == []


def test_entry_maps_back_from_row(supabase):
    store = SupabaseStore(supabase)

    entry = store.apply_credit_movement(
        ACCOUNT, -4, LedgerReason.STEP_SHORTFALL, job_id="job-2", step=PipelineStep.UPSCALE,
    )

    assert entry.amount == -4
    assert entry.balance_after == 6
    assert entry.step == PipelineStep.UPSCALE
    assert entry.job_id == "job-2"
    assert supabase.rpc_calls[0][1]["p_step"] == PipelineStep.UPSCALE.value


def test_null_composite_is_read_as_refusal(supabase):
    # A scalar-returning function yields a row of NULLs instead of an empty set
    supabase.rpc = lambda name, params: _Call(lambda: {"id": None, "balance_after": None})
    store = SupabaseStore(supabase)

    assert store.apply_credit_movement(ACCOUNT, -1, LedgerReason.JOB_RESERVE) is None
