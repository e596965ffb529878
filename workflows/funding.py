"""
Funding Aggregator

Keeps Startup.current_funding equal to the sum of the startup's investments.

Recording an investment touches two records (the investment and the
startup), which the document backend cannot update atomically. It is run as
a saga:

1) Insert the Investment, unless one already exists for the same
   transaction reference (a replay of an earlier call)
2) Increment the startup's current_funding by the amount

If step 2 fails, or the call is a replay, the startup is reconciled: its
funding is recomputed from the investments and written back. Recompute is
idempotent, so any number of replays converges on the same total.

The unique transaction reference makes step 1 race-free across processes.
Within one aggregator, calls for the same reference run one at a time so a
replay never reconciles between another call's insert and increment.

Usage:
    aggregator = FundingAggregator(store)
    result = await aggregator.record_investment(
        investor_id, startup_id, 1.5, "0xabc..."
    )
    reports = await aggregator.reconcile_all()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from storage.base import LedgerStore
from storage.models import EntityId, Investment, NewInvestment, Startup
from utils.errors import Conflict, ConflictReason, Mismatch, NotFound

logger = logging.getLogger(__name__)

# Float totals within this distance are considered equal
DRIFT_TOLERANCE = 1e-9


@dataclass
class FundingResult:
    """Outcome of record_investment."""
    investment: Investment
    startup: Startup
    replayed: bool = False
    reconciled: bool = False


@dataclass
class FundingReport:
    """Stored vs recomputed funding for one startup."""
    startup_id: EntityId
    stored: float
    computed: float
    repaired: bool = False

    @property
    def drift(self) -> float:
        return self.computed - self.stored

    @property
    def has_drift(self) -> bool:
        return abs(self.drift) > DRIFT_TOLERANCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startup_id": self.startup_id,
            "stored": self.stored,
            "computed": self.computed,
            "drift": self.drift,
            "repaired": self.repaired,
        }


class FundingAggregator:
    """Records investments and repairs funding totals."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self._ref_locks: Dict[str, asyncio.Lock] = {}
        self._ref_waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, transaction_ref: str) -> AsyncIterator[None]:
        """Run calls for the same transaction reference one at a time."""
        lock = self._ref_locks.get(transaction_ref)
        if lock is None:
            lock = self._ref_locks[transaction_ref] = asyncio.Lock()
        self._ref_waiters[transaction_ref] = self._ref_waiters.get(transaction_ref, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._ref_waiters[transaction_ref] -= 1
            if not self._ref_waiters[transaction_ref]:
                del self._ref_waiters[transaction_ref]
                del self._ref_locks[transaction_ref]

    async def record_investment(
        self,
        investor_id: EntityId,
        startup_id: EntityId,
        amount: float,
        transaction_ref: str,
    ) -> FundingResult:
        """
        Record an investment and credit it to the startup.

        Safe to call again with the same transaction_ref: the second call
        records nothing new and reconciles the startup instead. Concurrent
        calls for one reference are serialized; a call that loses the insert
        race to another process reports a replay and leaves the increment to
        the winner.

        Raises:
            InvalidInput: amount is not positive or the reference is empty
            NotFound: investor or startup does not exist
            Mismatch: transaction_ref is already recorded for another
                investor or startup
        """
        payload = NewInvestment(
            investor_id=investor_id,
            startup_id=startup_id,
            amount=amount,
            transaction_hash=transaction_ref,
        )

        async with self._serialized(transaction_ref):
            existing = await self.store.find_investment_by_transaction(transaction_ref)
            if existing is not None:
                await self._check_replay(existing, payload)
                logger.info(
                    f"Transaction {transaction_ref} already recorded as investment "
                    f"{existing.id}; reconciling startup {existing.startup_id}"
                )
                startup = await self.store.reconcile_startup_funding(existing.startup_id)
                return FundingResult(
                    investment=existing, startup=startup, replayed=True, reconciled=True
                )

            try:
                investment = await self.store.create_investment(payload)
            except Conflict as e:
                if e.reason != ConflictReason.TRANSACTION:
                    raise
                return await self._lost_insert_race(payload)

            try:
                startup = await self.store.update_startup_funding(
                    investment.startup_id, investment.amount
                )
            except Exception as e:
                logger.warning(
                    f"Funding increment failed for startup {investment.startup_id} "
                    f"after investment {investment.id}: {e}; reconciling"
                )
                startup = await self.store.reconcile_startup_funding(investment.startup_id)
                return FundingResult(investment=investment, startup=startup, reconciled=True)

        logger.info(
            f"Investment {investment.id}: {investment.amount} into startup "
            f"{startup.id} (funding now {startup.current_funding})"
        )
        return FundingResult(investment=investment, startup=startup)

    async def _lost_insert_race(self, payload: NewInvestment) -> FundingResult:
        """Another writer inserted this reference first; its increment is still pending."""
        existing = await self.store.find_investment_by_transaction(payload.transaction_hash)
        if existing is None:
            raise Conflict(
                ConflictReason.TRANSACTION,
                f"Transaction {payload.transaction_hash} collided but is not readable",
            )
        await self._check_replay(existing, payload)
        startup = await self._require_startup(existing.startup_id)
        logger.info(
            f"Transaction {payload.transaction_hash} was recorded concurrently as "
            f"investment {existing.id}"
        )
        return FundingResult(investment=existing, startup=startup, replayed=True)

    async def _check_replay(self, existing: Investment, payload: NewInvestment) -> None:
        """A replay must name the same investor and startup as the original."""
        investor = await self.store.get_user(payload.investor_id)
        startup = await self.store.get_startup(payload.startup_id)
        if (
            investor is None
            or startup is None
            or investor.id != existing.investor_id
            or startup.id != existing.startup_id
        ):
            raise Mismatch(
                f"Transaction {payload.transaction_hash} is already recorded "
                f"for a different investment ({existing.id})"
            )

    async def audit(self, startup_id: EntityId) -> FundingReport:
        """Compare stored and recomputed funding without writing."""
        startup = await self._require_startup(startup_id)
        computed = await self.store.sum_startup_investments(startup.id)
        return FundingReport(
            startup_id=startup.id, stored=startup.current_funding, computed=computed
        )

    async def reconcile(self, startup_id: EntityId) -> FundingReport:
        """Recompute a startup's funding from its investments and persist it."""
        report = await self.audit(startup_id)
        reconciled = await self.store.reconcile_startup_funding(report.startup_id)
        report.computed = reconciled.current_funding
        report.repaired = report.has_drift

        if report.repaired:
            logger.warning(
                f"Startup {report.startup_id} funding drifted by {report.drift}; "
                f"reset to {report.computed}"
            )
        return report

    async def reconcile_all(self) -> List[FundingReport]:
        """Reconcile every startup; returns only the reports that had drift."""
        drifted = []
        for startup in await self.store.list_startups():
            try:
                report = await self.reconcile(startup.id)
            except NotFound:
                # Deleted since the listing
                continue
            if report.repaired:
                drifted.append(report)

        logger.info(f"Reconciled funding: {len(drifted)} startups repaired")
        return drifted

    async def _require_startup(self, startup_id: EntityId) -> Startup:
        startup: Optional[Startup] = await self.store.get_startup(startup_id)
        if startup is None:
            raise NotFound("Startup", startup_id)
        return startup
