"""
Tests for LedgerService role and ownership checks.
"""

from datetime import datetime, timezone

import pytest

from conftest import make_startup, make_user
from services.ledger_service import Caller, LedgerService
from storage.models import NewStartup, UserRole
from utils.errors import Conflict, Forbidden, NotFound

WALLET = "0x" + "ab" * 20


def profile(**overrides):
    fields = dict(
        user_id="ignored",
        name="Acme",
        description="d",
        category="fintech",
        funding_stage="seed",
        funding_goal=50.0,
        logo="logo",
    )
    fields.update(overrides)
    return NewStartup(**fields)


@pytest.fixture
async def parties(sqlite_store):
    founder = await make_user(sqlite_store, "ada", role=UserRole.STARTUP)
    investor = await make_user(sqlite_store, "ivy", role=UserRole.INVESTOR)
    return LedgerService(sqlite_store), Caller.from_user(founder), Caller.from_user(investor)


class TestStartups:

    async def test_founder_creates_own_startup(self, parties):
        service, founder, _ = parties
        startup = await service.create_startup(founder, profile(user_id="someone-else"))
        assert startup.user_id == founder.caller_id
        assert (await service.get_user_startup(founder.caller_id)).id == startup.id

    async def test_investor_cannot_create_startup(self, parties):
        service, _, investor = parties
        with pytest.raises(Forbidden):
            await service.create_startup(investor, profile())

    async def test_second_startup_conflicts(self, parties):
        service, founder, _ = parties
        await service.create_startup(founder, profile())
        with pytest.raises(Conflict):
            await service.create_startup(founder, profile(name="Again"))

    async def test_public_reads(self, parties):
        service, founder, _ = parties
        startup = await service.create_startup(founder, profile())
        assert [s.id for s in await service.list_startups()] == [startup.id]
        assert (await service.get_startup(startup.id)).name == "Acme"


class TestInvestments:

    async def test_investor_records_investment(self, parties):
        service, founder, investor = parties
        startup = await service.create_startup(founder, profile())

        result = await service.record_investment(investor, startup.id, 2.0, "0xabc")

        assert result.investment.investor_id == investor.caller_id
        assert result.startup.current_funding == 2.0
        assert len(await service.list_startup_investments(startup.id)) == 1

    async def test_startup_cannot_invest(self, parties):
        service, founder, _ = parties
        startup = await service.create_startup(founder, profile())
        with pytest.raises(Forbidden):
            await service.record_investment(founder, startup.id, 2.0, "0xabc")

    async def test_own_investments_only(self, parties):
        service, founder, investor = parties
        startup = await service.create_startup(founder, profile())
        await service.record_investment(investor, startup.id, 2.0, "0xabc")

        mine = await service.list_user_investments(investor, investor.caller_id)
        assert len(mine) == 1

        with pytest.raises(Forbidden):
            await service.list_user_investments(founder, investor.caller_id)

    async def test_unknown_user_investments_forbidden(self, parties):
        service, _, investor = parties
        with pytest.raises(Forbidden):
            await service.list_user_investments(investor, "999")


class TestUpdatesAndMilestones:

    async def test_post_update(self, parties):
        service, founder, _ = parties
        startup = await service.create_startup(founder, profile())

        update = await service.post_update(founder, "Launched", "We are live")

        assert update.startup_id == startup.id
        assert [u.id for u in await service.list_startup_updates(startup.id)] == [update.id]

    async def test_investor_cannot_post_update(self, parties):
        service, _, investor = parties
        with pytest.raises(Forbidden):
            await service.post_update(investor, "t", "c")

    async def test_update_without_startup(self, parties):
        service, founder, _ = parties
        with pytest.raises(NotFound):
            await service.post_update(founder, "t", "c")

    async def test_milestones(self, parties):
        service, founder, _ = parties
        startup = await service.create_startup(founder, profile())
        target = datetime(2032, 1, 1, tzinfo=timezone.utc)

        milestone = await service.add_milestone(founder, "Beta", target_date=target)
        done = await service.set_milestone_status(founder, milestone.id, True)

        assert done.completed is True
        assert (await service.list_startup_milestones(startup.id))[0].target_date == target

    async def test_cannot_touch_other_startups_milestone(self, parties, sqlite_store):
        service, founder, _ = parties
        await service.create_startup(founder, profile())
        milestone = await service.add_milestone(founder, "Beta")

        rival_user = await make_user(sqlite_store, "rival", role=UserRole.STARTUP)
        await make_startup(sqlite_store, rival_user.id, name="Rival")
        rival = Caller.from_user(rival_user)

        with pytest.raises(Forbidden):
            await service.set_milestone_status(rival, milestone.id, True)


class TestAccount:

    async def test_wallet_update_and_confirm(self, parties):
        service, _, investor = parties
        await service.update_wallet(investor, WALLET)
        user = await service.confirm_wallet(investor, WALLET)
        assert user.wallet_confirmed is True

    async def test_delete_account(self, parties, sqlite_store):
        service, founder, _ = parties
        await service.create_startup(founder, profile())

        await service.delete_account(founder)

        assert await sqlite_store.get_user(founder.caller_id) is None
        assert await service.list_startups() == []
