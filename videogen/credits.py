"""
Credit ledger clients.

The orchestrator needs four operations (balance, reserve, commit, release)
and relies on three properties:
  - reserve is atomic: concurrent reservations never overdraw a balance
  - commit/release are idempotent per reservation id, so a settlement that is
    replayed after a crash does not charge or refund twice
  - settling a reservation the other way raises SettlementConflictError with
    the operation that won, so a caller can tell a lost commit response from
    a failed commit

InMemoryCreditLedger   — asyncio-locked dict, for a single worker and tests
SupabaseCreditLedger   — Postgres functions behind Supabase RPC
"""

import asyncio
import logging
from collections import defaultdict
from typing import Iterable, NamedTuple, Optional, Protocol

from supabase import Client

from .errors import LedgerError, LedgerUnavailableError, SettlementConflictError

logger = logging.getLogger(__name__)


class CreditAccount(NamedTuple):
    balance: int
    is_recharged: bool = False    # has ever paid; drives the rate-limit tier


class CreditLedger(Protocol):
    async def account(self, user_id: str) -> CreditAccount: ...

    async def balance(self, user_id: str) -> int: ...

    async def reserve(self, user_id: str, amount: int, reservation_id: str) -> bool: ...

    async def commit(self, user_id: str, amount: int, reservation_id: str) -> None: ...

    async def release(self, user_id: str, amount: int, reservation_id: str) -> None: ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory ledger
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryCreditLedger:
    """
    Spendable balance per user plus open holds per reservation.

    `settlements` records every effective commit/release as
    (operation, user_id, amount, reservation_id). Replays are not recorded.
    """

    def __init__(
        self,
        balances: Optional[dict[str, int]] = None,
        default_balance: int = 0,
        recharged: Iterable[str] = (),
    ):
        self._balances: dict[str, int] = defaultdict(lambda: default_balance)
        self._balances.update(balances or {})
        self._recharged = set(recharged)
        self._holds: dict[str, tuple[str, int]] = {}
        self._settled: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.settlements: list[tuple[str, str, int, str]] = []

    async def account(self, user_id: str) -> CreditAccount:
        async with self._lock:
            return CreditAccount(self._balances[user_id], user_id in self._recharged)

    async def balance(self, user_id: str) -> int:
        return (await self.account(user_id)).balance

    async def reserve(self, user_id: str, amount: int, reservation_id: str) -> bool:
        async with self._lock:
            if reservation_id in self._holds:
                return True
            if reservation_id in self._settled:
                return False
            if self._balances[user_id] < amount:
                return False
            self._balances[user_id] -= amount
            self._holds[reservation_id] = (user_id, amount)
            logger.info(f"Reserved {amount} credits for {user_id} ({reservation_id})")
            return True

    async def commit(self, user_id: str, amount: int, reservation_id: str) -> None:
        await self._settle("commit", user_id, amount, reservation_id)

    async def release(self, user_id: str, amount: int, reservation_id: str) -> None:
        await self._settle("release", user_id, amount, reservation_id)

    async def _settle(self, operation: str, user_id: str, amount: int, reservation_id: str) -> None:
        async with self._lock:
            hold = self._holds.get(reservation_id)

            if hold is None:
                previous = self._settled.get(reservation_id)
                if previous == operation:
                    logger.info(f"Reservation {reservation_id} already settled by {operation}, ignoring replay")
                    return
                if previous is not None:
                    raise SettlementConflictError(reservation_id, previous)
                raise LedgerError(f"Unknown reservation {reservation_id}")

            held_user, held_amount = hold
            if held_user != user_id or held_amount != amount:
                raise LedgerError(
                    f"Settlement mismatch for {reservation_id}: held {held_amount} for {held_user}, "
                    f"got {amount} for {user_id}"
                )

            del self._holds[reservation_id]
            self._settled[reservation_id] = operation
            if operation == "release":
                self._balances[user_id] += amount
            self.settlements.append((operation, user_id, amount, reservation_id))
            logger.info(f"{operation.capitalize()} {amount} credits for {user_id} ({reservation_id})")

    def holds(self) -> dict[str, tuple[str, int]]:
        return dict(self._holds)


# ═════════════════════════════════════════════════════════════════════════════
# Supabase ledger
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseCreditLedger:
    """
    Balance lives in `profiles.credit_balance`. Reservation bookkeeping is
    done by Postgres functions so each call is a single transaction:

      reserve_credits(p_user_id, p_amount, p_reservation_id) → boolean
      commit_credits(p_user_id, p_amount, p_reservation_id)  → text
      release_credits(p_user_id, p_amount, p_reservation_id) → text

    Commit/release return the operation that settled the reservation
    ('commit' or 'release'). Repeating the same one is a no-op.
    """

    def __init__(self, client: Client):
        self.sb = client

    async def account(self, user_id: str) -> CreditAccount:
        try:
            result = (
                self.sb.table("profiles")
                .select("credit_balance, is_recharged")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise LedgerUnavailableError(f"Balance lookup failed for {user_id}: {e}") from e
        if not result.data:
            return CreditAccount(0)
        row = result.data[0]
        return CreditAccount(int(row.get("credit_balance") or 0), bool(row.get("is_recharged")))

    async def balance(self, user_id: str) -> int:
        return (await self.account(user_id)).balance

    async def reserve(self, user_id: str, amount: int, reservation_id: str) -> bool:
        data = self._rpc("reserve_credits", user_id, amount, reservation_id)
        return bool(data)

    async def commit(self, user_id: str, amount: int, reservation_id: str) -> None:
        self._settle("commit", user_id, amount, reservation_id)
        logger.info(f"Committed {amount} credits for {user_id} ({reservation_id})")

    async def release(self, user_id: str, amount: int, reservation_id: str) -> None:
        self._settle("release", user_id, amount, reservation_id)
        logger.info(f"Released {amount} credits for {user_id} ({reservation_id})")

    def _settle(self, operation: str, user_id: str, amount: int, reservation_id: str):
        settled_by = self._rpc(f"{operation}_credits", user_id, amount, reservation_id)
        if settled_by and settled_by != operation:
            raise SettlementConflictError(reservation_id, settled_by)

    def _rpc(self, fn: str, user_id: str, amount: int, reservation_id: str):
        try:
            result = self.sb.rpc(fn, {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_reservation_id": reservation_id,
            }).execute()
        except Exception as e:
            raise LedgerUnavailableError(f"{fn} failed for {reservation_id}: {e}") from e
        return result.data
