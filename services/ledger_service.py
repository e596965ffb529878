"""
Ledger Service

The seam between the access façade (sessions, HTTP, whatever authenticates
the caller) and the ledger. The façade hands over a Caller; this service
decides whether that caller may perform the operation and then delegates
to the store or the funding aggregator.

Rules:
- Only startup accounts create startup profiles, post updates and manage
  milestones, and only for the startup they own
- Only investor accounts record investments, always as themselves
- Users read only their own investment history and change only their own
  wallet
- Public reads (startups, their updates, investments and milestones) need
  no caller

Violations raise Forbidden.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from storage.base import LedgerStore
from storage.models import (
    EntityId,
    Investment,
    Milestone,
    NewMilestone,
    NewStartup,
    NewUpdate,
    Startup,
    Update,
    User,
    UserRole,
)
from utils.errors import Forbidden, NotFound
from workflows.funding import FundingAggregator, FundingResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """An authenticated caller as seen by the ledger."""
    caller_id: EntityId
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> Caller:
        return cls(caller_id=user.id, role=user.role)


class LedgerService:
    """Role and ownership checks in front of the ledger store."""

    def __init__(self, store: LedgerStore, aggregator: Optional[FundingAggregator] = None):
        self.store = store
        self.aggregator = aggregator or FundingAggregator(store)

    # =========================================================================
    # CHECKS
    # =========================================================================

    @staticmethod
    def _require_role(caller: Caller, role: UserRole, message: str) -> None:
        if caller.role != role:
            logger.info(f"Forbidden: {caller.role.value} {caller.caller_id}: {message}")
            raise Forbidden(message)

    async def _own_startup(self, caller: Caller) -> Startup:
        startup = await self.store.get_startup_by_user(caller.caller_id)
        if startup is None:
            raise NotFound("Startup", f"owned by user {caller.caller_id}")
        return startup

    async def _require_self(self, caller: Caller, user_id: EntityId) -> User:
        """Resolve user_id and make sure it is the caller."""
        user = await self.store.get_user(user_id)
        if user is None or user.id != caller.caller_id:
            raise Forbidden("Unauthorized")
        return user

    # =========================================================================
    # STARTUPS
    # =========================================================================

    async def create_startup(self, caller: Caller, profile: NewStartup) -> Startup:
        """Create the caller's startup profile. The owner is always the caller."""
        self._require_role(
            caller, UserRole.STARTUP, "Only startup accounts can create startup profiles"
        )
        return await self.store.create_startup(
            dataclasses.replace(profile, user_id=caller.caller_id)
        )

    async def list_startups(self) -> List[Startup]:
        return await self.store.list_startups()

    async def get_startup(self, startup_id: EntityId) -> Optional[Startup]:
        return await self.store.get_startup(startup_id)

    async def get_user_startup(self, user_id: EntityId) -> Optional[Startup]:
        return await self.store.get_startup_by_user(user_id)

    # =========================================================================
    # INVESTMENTS
    # =========================================================================

    async def record_investment(
        self,
        caller: Caller,
        startup_id: EntityId,
        amount: float,
        transaction_ref: str,
    ) -> FundingResult:
        self._require_role(caller, UserRole.INVESTOR, "Only investors can make investments")
        return await self.aggregator.record_investment(
            caller.caller_id, startup_id, amount, transaction_ref
        )

    async def list_user_investments(self, caller: Caller, user_id: EntityId) -> List[Investment]:
        user = await self._require_self(caller, user_id)
        return await self.store.list_user_investments(user.id)

    async def list_startup_investments(self, startup_id: EntityId) -> List[Investment]:
        return await self.store.list_startup_investments(startup_id)

    # =========================================================================
    # UPDATES / MILESTONES
    # =========================================================================

    async def post_update(self, caller: Caller, title: str, content: str) -> Update:
        self._require_role(caller, UserRole.STARTUP, "Only startups can post updates")
        startup = await self._own_startup(caller)
        return await self.store.create_update(
            NewUpdate(startup_id=startup.id, title=title, content=content)
        )

    async def list_startup_updates(self, startup_id: EntityId) -> List[Update]:
        return await self.store.list_startup_updates(startup_id)

    async def add_milestone(
        self,
        caller: Caller,
        title: str,
        description: Optional[str] = None,
        target_date: Optional[datetime] = None,
    ) -> Milestone:
        self._require_role(caller, UserRole.STARTUP, "Only startups can add milestones")
        startup = await self._own_startup(caller)
        return await self.store.create_milestone(
            NewMilestone(
                startup_id=startup.id,
                title=title,
                description=description,
                target_date=target_date,
            )
        )

    async def set_milestone_status(
        self, caller: Caller, milestone_id: EntityId, completed: bool
    ) -> Milestone:
        self._require_role(caller, UserRole.STARTUP, "Only startups can update milestones")
        startup = await self._own_startup(caller)

        milestone = await self.store.get_milestone(milestone_id)
        if milestone is None:
            raise NotFound("Milestone", milestone_id)
        if milestone.startup_id != startup.id:
            raise Forbidden("Milestone belongs to another startup")

        return await self.store.update_milestone_status(milestone.id, completed)

    async def list_startup_milestones(self, startup_id: EntityId) -> List[Milestone]:
        return await self.store.list_startup_milestones(startup_id)

    # =========================================================================
    # ACCOUNT
    # =========================================================================

    async def update_wallet(self, caller: Caller, address: str) -> User:
        return await self.store.update_user_wallet_address(caller.caller_id, address)

    async def confirm_wallet(self, caller: Caller, address: str) -> User:
        return await self.store.confirm_user_wallet_address(caller.caller_id, address)

    async def delete_account(self, caller: Caller) -> None:
        await self.store.delete_user(caller.caller_id)
        logger.info(f"Account {caller.caller_id} deleted at the caller's request")
