"""Credit ledger: atomic reservations and idempotent settlement."""

import asyncio
from unittest.mock import MagicMock

import pytest

from videogen.credits import CreditAccount, InMemoryCreditLedger, SupabaseCreditLedger
from videogen.errors import LedgerError, LedgerUnavailableError, SettlementConflictError


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reserve_holds_credits():
    ledger = InMemoryCreditLedger(balances={"u": 100})

    assert await ledger.reserve("u", 80, "job-1")
    assert await ledger.balance("u") == 20
    assert ledger.holds() == {"job-1": ("u", 80)}


@pytest.mark.asyncio
async def test_reserve_refuses_overdraft():
    ledger = InMemoryCreditLedger(balances={"u": 50})

    assert not await ledger.reserve("u", 80, "job-1")
    assert await ledger.balance("u") == 50


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw():
    ledger = InMemoryCreditLedger(balances={"u": 100})

    results = await asyncio.gather(*(ledger.reserve("u", 30, f"job-{i}") for i in range(6)))

    assert sum(results) == 3
    assert await ledger.balance("u") == 10


@pytest.mark.asyncio
async def test_reserve_same_id_twice_is_one_hold():
    ledger = InMemoryCreditLedger(balances={"u": 100})

    assert await ledger.reserve("u", 80, "job-1")
    assert await ledger.reserve("u", 80, "job-1")
    assert await ledger.balance("u") == 20


@pytest.mark.asyncio
async def test_commit_is_idempotent():
    ledger = InMemoryCreditLedger(balances={"u": 100})
    await ledger.reserve("u", 80, "job-1")

    await ledger.commit("u", 80, "job-1")
    await ledger.commit("u", 80, "job-1")

    assert ledger.settlements == [("commit", "u", 80, "job-1")]
    assert await ledger.balance("u") == 20


@pytest.mark.asyncio
async def test_release_refunds_once():
    ledger = InMemoryCreditLedger(balances={"u": 100})
    await ledger.reserve("u", 80, "job-1")

    await ledger.release("u", 80, "job-1")
    await ledger.release("u", 80, "job-1")

    assert ledger.settlements == [("release", "u", 80, "job-1")]
    assert await ledger.balance("u") == 100


@pytest.mark.asyncio
async def test_release_after_commit_is_refused():
    ledger = InMemoryCreditLedger(balances={"u": 100})
    await ledger.reserve("u", 80, "job-1")
    await ledger.commit("u", 80, "job-1")

    with pytest.raises(SettlementConflictError) as exc:
        await ledger.release("u", 80, "job-1")

    assert exc.value.previous == "commit"
    assert ledger.settlements == [("commit", "u", 80, "job-1")]
    assert await ledger.balance("u") == 20


@pytest.mark.asyncio
async def test_settled_reservation_cannot_be_reserved_again():
    ledger = InMemoryCreditLedger(balances={"u": 100})
    await ledger.reserve("u", 80, "job-1")
    await ledger.release("u", 80, "job-1")

    assert not await ledger.reserve("u", 80, "job-1")


@pytest.mark.asyncio
async def test_unknown_reservation_raises():
    ledger = InMemoryCreditLedger(balances={"u": 100})

    with pytest.raises(LedgerError):
        await ledger.commit("u", 80, "missing")


@pytest.mark.asyncio
async def test_settlement_amount_mismatch_raises():
    ledger = InMemoryCreditLedger(balances={"u": 100})
    await ledger.reserve("u", 80, "job-1")

    with pytest.raises(LedgerError):
        await ledger.commit("u", 50, "job-1")
    assert ledger.holds() == {"job-1": ("u", 80)}


@pytest.mark.asyncio
async def test_default_balance_for_unknown_users():
    ledger = InMemoryCreditLedger(default_balance=200)

    assert await ledger.balance("new-user") == 200
    assert await ledger.reserve("new-user", 150, "job-1")


# ---------------------------------------------------------------------------
# Supabase ledger
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_supabase_reserve_calls_rpc():
    sb = MagicMock()
    sb.rpc.return_value.execute.return_value.data = True

    assert await SupabaseCreditLedger(sb).reserve("u", 80, "job-1")
    sb.rpc.assert_called_once_with(
        "reserve_credits", {"p_user_id": "u", "p_amount": 80, "p_reservation_id": "job-1"}
    )


@pytest.mark.asyncio
async def test_supabase_reserve_false_when_function_refuses():
    sb = MagicMock()
    sb.rpc.return_value.execute.return_value.data = False

    assert not await SupabaseCreditLedger(sb).reserve("u", 80, "job-1")


@pytest.mark.asyncio
async def test_supabase_commit_and_release_use_their_functions():
    sb = MagicMock()
    ledger = SupabaseCreditLedger(sb)

    sb.rpc.return_value.execute.return_value.data = "commit"
    await ledger.commit("u", 80, "job-1")
    sb.rpc.return_value.execute.return_value.data = "release"
    await ledger.release("u", 80, "job-2")

    assert [c.args[0] for c in sb.rpc.call_args_list] == ["commit_credits", "release_credits"]


@pytest.mark.asyncio
async def test_supabase_transport_error_is_unavailable():
    sb = MagicMock()
    sb.rpc.return_value.execute.side_effect = ConnectionError("boom")

    with pytest.raises(LedgerUnavailableError):
        await SupabaseCreditLedger(sb).commit("u", 80, "job-1")


@pytest.mark.asyncio
async def test_supabase_balance_reads_profile():
    sb = MagicMock()
    chain = sb.table.return_value.select.return_value.eq.return_value.limit.return_value
    chain.execute.return_value.data = [{"credit_balance": 42}]

    assert await SupabaseCreditLedger(sb).balance("u") == 42
    sb.table.assert_called_once_with("profiles")


@pytest.mark.asyncio
async def test_supabase_release_of_committed_reservation_conflicts():
    sb = MagicMock()
    sb.rpc.return_value.execute.return_value.data = "commit"

    with pytest.raises(SettlementConflictError) as exc:
        await SupabaseCreditLedger(sb).release("u", 80, "job-1")

    assert exc.value.previous == "commit"


@pytest.mark.asyncio
async def test_supabase_account_reads_recharged_flag():
    sb = MagicMock()
    chain = sb.table.return_value.select.return_value.eq.return_value.limit.return_value
    chain.execute.return_value.data = [{"credit_balance": 300, "is_recharged": True}]

    assert await SupabaseCreditLedger(sb).account("u") == CreditAccount(300, True)
    sb.table.return_value.select.assert_called_once_with("credit_balance, is_recharged")


@pytest.mark.asyncio
async def test_in_memory_account_reports_recharged_users():
    ledger = InMemoryCreditLedger(balances={"payer": 150, "trial": 150}, recharged={"payer"})

    assert await ledger.account("payer") == CreditAccount(150, True)
    assert await ledger.account("trial") == CreditAccount(150, False)
