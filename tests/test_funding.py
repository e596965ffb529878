"""
Tests for FundingAggregator (record-investment saga and reconciliation).
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import make_startup, make_user
from storage.models import UserRole
from utils.errors import InvalidInput, Mismatch, NotFound
from workflows.funding import FundingAggregator, FundingReport


@pytest.fixture
async def funded(ledger_store):
    """A store with one investor and one startup."""
    investor = await make_user(ledger_store, "ivy")
    founder = await make_user(ledger_store, "ada", role=UserRole.STARTUP)
    startup = await make_startup(ledger_store, founder.id)
    return ledger_store, investor, startup


class TestRecordInvestment:

    async def test_records_and_increments(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)

        result = await aggregator.record_investment(investor.id, startup.id, 2.5, "0xaaa")

        assert result.replayed is False
        assert result.reconciled is False
        assert result.investment.amount == 2.5
        assert result.startup.current_funding == 2.5

    async def test_sum_invariant(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)
        amounts = [0.5, 1.25, 3.0, 0.25]

        for i, amount in enumerate(amounts):
            await aggregator.record_investment(investor.id, startup.id, amount, f"0x{i}")

        stored = await store.get_startup(startup.id)
        assert stored.current_funding == pytest.approx(sum(amounts))
        assert (await aggregator.audit(startup.id)).has_drift is False

    async def test_replay_is_idempotent(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)

        first = await aggregator.record_investment(investor.id, startup.id, 1.0, "0xdup")
        second = await aggregator.record_investment(investor.id, startup.id, 1.0, "0xdup")

        assert second.replayed is True
        assert second.investment.id == first.investment.id
        assert second.startup.current_funding == 1.0
        assert len(await store.list_startup_investments(startup.id)) == 1

    async def test_replay_for_other_startup_rejected(self, funded):
        store, investor, startup = funded
        other_founder = await make_user(store, "bob", role=UserRole.STARTUP)
        other = await make_startup(store, other_founder.id, name="Other")
        aggregator = FundingAggregator(store)

        await aggregator.record_investment(investor.id, startup.id, 1.0, "0xdup")
        with pytest.raises(Mismatch):
            await aggregator.record_investment(investor.id, other.id, 1.0, "0xdup")

    async def test_concurrent_investments(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)

        await asyncio.gather(*(
            aggregator.record_investment(investor.id, startup.id, 1.0, f"0x{i}")
            for i in range(10)
        ))

        assert (await store.get_startup(startup.id)).current_funding == 10.0

    async def test_concurrent_calls_for_one_transaction(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)

        results = await asyncio.gather(*(
            aggregator.record_investment(investor.id, startup.id, 5.0, "0xsame")
            for _ in range(4)
        ))

        assert sorted(r.replayed for r in results) == [False, True, True, True]
        assert len({r.investment.id for r in results}) == 1
        assert len(await store.list_startup_investments(startup.id)) == 1
        assert (await store.get_startup(startup.id)).current_funding == 5.0
        assert aggregator._ref_locks == {}

    async def test_insert_race_lost_to_another_writer(self, funded):
        store, investor, startup = funded
        winner = FundingAggregator(store)
        await winner.record_investment(investor.id, startup.id, 5.0, "0xraced")

        # Second writer checked before the first one inserted
        original = store.find_investment_by_transaction
        recorded = await original("0xraced")
        store.find_investment_by_transaction = AsyncMock(side_effect=[None, recorded])
        try:
            result = await FundingAggregator(store).record_investment(
                investor.id, startup.id, 5.0, "0xraced"
            )
        finally:
            store.find_investment_by_transaction = original

        assert result.replayed is True
        assert result.reconciled is False
        assert len(await store.list_startup_investments(startup.id)) == 1
        assert (await store.get_startup(startup.id)).current_funding == 5.0

    async def test_lost_insert_race_with_other_investor_mismatches(self, funded):
        store, investor, startup = funded
        other = await make_user(store, "ian")
        await FundingAggregator(store).record_investment(investor.id, startup.id, 5.0, "0xraced")

        original = store.find_investment_by_transaction
        recorded = await original("0xraced")
        store.find_investment_by_transaction = AsyncMock(side_effect=[None, recorded])
        try:
            with pytest.raises(Mismatch):
                await FundingAggregator(store).record_investment(
                    other.id, startup.id, 5.0, "0xraced"
                )
        finally:
            store.find_investment_by_transaction = original

    async def test_increment_failure_reconciles(self, funded):
        store, investor, startup = funded
        original = store.update_startup_funding
        store.update_startup_funding = AsyncMock(side_effect=RuntimeError("connection reset"))
        aggregator = FundingAggregator(store)

        try:
            result = await aggregator.record_investment(investor.id, startup.id, 4.0, "0xbbb")
        finally:
            store.update_startup_funding = original

        assert result.reconciled is True
        assert result.startup.current_funding == 4.0

    async def test_invalid_amount(self, funded):
        store, investor, startup = funded
        with pytest.raises(InvalidInput):
            await FundingAggregator(store).record_investment(investor.id, startup.id, 0, "0x1")

    async def test_missing_startup(self, funded):
        store, investor, startup = funded
        await store.delete_user(startup.user_id)
        with pytest.raises(NotFound):
            await FundingAggregator(store).record_investment(investor.id, startup.id, 1, "0x1")


class TestReconcile:

    async def test_audit_reports_without_writing(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)
        await aggregator.record_investment(investor.id, startup.id, 3.0, "0x1")
        await store.update_startup_funding(startup.id, 5.0)

        report = await aggregator.audit(startup.id)

        assert report.stored == 8.0
        assert report.computed == 3.0
        assert report.drift == -5.0
        assert report.has_drift is True
        assert (await store.get_startup(startup.id)).current_funding == 8.0

    async def test_reconcile_repairs(self, funded):
        store, investor, startup = funded
        aggregator = FundingAggregator(store)
        await aggregator.record_investment(investor.id, startup.id, 3.0, "0x1")
        await store.update_startup_funding(startup.id, 5.0)

        report = await aggregator.reconcile(startup.id)

        assert report.repaired is True
        assert (await store.get_startup(startup.id)).current_funding == 3.0

    async def test_reconcile_all_returns_drifted_only(self, funded):
        store, investor, startup = funded
        clean_founder = await make_user(store, "bob", role=UserRole.STARTUP)
        await make_startup(store, clean_founder.id, name="Clean")
        await store.update_startup_funding(startup.id, 2.0)

        reports = await FundingAggregator(store).reconcile_all()

        assert [r.startup_id for r in reports] == [startup.id]
        assert reports[0].to_dict()["drift"] == -2.0

    async def test_audit_missing_startup(self, funded):
        store, investor, startup = funded
        await store.delete_user(startup.user_id)
        with pytest.raises(NotFound):
            await FundingAggregator(store).audit(startup.id)


def test_report_tolerance():
    assert FundingReport("1", stored=0.3, computed=0.1 + 0.2).has_drift is False
    assert FundingReport("1", stored=1.0, computed=1.5).drift == 0.5
