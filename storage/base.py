"""
Ledger Store interface.

LedgerStore is the one persistence surface the rest of the ledger talks to.
It has two implementations that must be indistinguishable to callers apart
from what their ids look like:

    SQLiteLedgerStore    (storage.sqlite_store)    integer ids, aiosqlite
    DocumentLedgerStore  (storage.document_store)  24-hex ids, motor/MongoDB

Read semantics: a read that finds nothing returns None or []. Mutations
against a missing key raise NotFound. Uniqueness violations raise Conflict
with a ConflictReason.

Implementations provide the generic operations (get_by_id, list_all,
list_by_foreign_key) plus the business mutations; the named read helpers
below are written once on top of the generic ones.
"""

from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Any, List, Optional

from storage.models import (
    EntityKind,
    FOREIGN_KEYS,
    Investment,
    Milestone,
    NewInvestment,
    NewMilestone,
    NewStartup,
    NewUpdate,
    NewUser,
    Startup,
    Update,
    User,
)
from utils.errors import InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_foreign_key(kind: EntityKind, field_name: str) -> EntityKind:
    """Return the collection field_name points into, or raise InvalidInput."""
    try:
        return FOREIGN_KEYS[kind][field_name]
    except KeyError:
        raise InvalidInput(f"{kind.label} has no foreign key '{field_name}'") from None


class LedgerStore(abc.ABC):
    """Async CRUD and aggregate operations over the five ledger entities."""

    backend_name: str = "abstract"

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Connect and prepare schema / indexes. Call once at start-up."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the backend connection."""

    async def __aenter__(self) -> "LedgerStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # GENERIC OPERATIONS
    # =========================================================================

    @abc.abstractmethod
    async def get_by_id(self, kind: EntityKind, entity_id: Any) -> Optional[Any]:
        """Fetch one entity, or None when it does not exist."""

    @abc.abstractmethod
    async def list_all(self, kind: EntityKind) -> List[Any]:
        """All entities of a kind, in the kind's canonical order."""

    @abc.abstractmethod
    async def list_by_foreign_key(
        self, kind: EntityKind, field_name: str, value: Any
    ) -> List[Any]:
        """Entities whose field_name references value, canonical order."""

    @abc.abstractmethod
    async def count(self, kind: EntityKind) -> int:
        ...

    # =========================================================================
    # USERS
    # =========================================================================

    @abc.abstractmethod
    async def create_user(self, new_user: NewUser) -> User:
        """Insert a user; Conflict on duplicate username, email or wallet."""

    @abc.abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def update_user_wallet_address(self, user_id: Any, address: str) -> User:
        """
        Overwrite a user's wallet address.

        Raises:
            NotFound: unknown user
            Conflict(WALLET_CONFIRMED): wallet already confirmed
            Conflict(WALLET): address bound to another user
        """

    @abc.abstractmethod
    async def confirm_user_wallet_address(self, user_id: Any, address: str) -> User:
        """
        Latch the wallet-confirmed flag.

        Raises:
            NotFound: unknown user
            Mismatch: address differs from the stored one
            Conflict(WALLET_CONFIRMED): already confirmed
        """

    @abc.abstractmethod
    async def delete_user(self, user_id: Any) -> None:
        """
        Remove a user with its startup (plus updates and milestones) and
        every investment the user made. Funding of startups that lose
        investments is recomputed.
        """

    # =========================================================================
    # STARTUPS / INVESTMENTS / UPDATES / MILESTONES
    # =========================================================================

    @abc.abstractmethod
    async def create_startup(self, new_startup: NewStartup) -> Startup:
        ...

    @abc.abstractmethod
    async def update_startup_funding(self, startup_id: Any, delta: float) -> Startup:
        """Atomically add delta to current_funding."""

    @abc.abstractmethod
    async def reconcile_startup_funding(self, startup_id: Any) -> Startup:
        """Set current_funding to the sum of the startup's investments."""

    @abc.abstractmethod
    async def sum_startup_investments(self, startup_id: Any) -> float:
        """Sum of investment amounts recorded against a startup (0 if none)."""

    @abc.abstractmethod
    async def create_investment(self, new_investment: NewInvestment) -> Investment:
        """Insert an investment. Conflict(TRANSACTION) if its transaction_hash is taken."""
        ...

    @abc.abstractmethod
    async def find_investment_by_transaction(
        self, transaction_hash: str
    ) -> Optional[Investment]:
        ...

    @abc.abstractmethod
    async def create_update(self, new_update: NewUpdate) -> Update:
        ...

    @abc.abstractmethod
    async def create_milestone(self, new_milestone: NewMilestone) -> Milestone:
        ...

    @abc.abstractmethod
    async def update_milestone_status(self, milestone_id: Any, completed: bool) -> Milestone:
        ...

    # =========================================================================
    # NAMED READS
    # =========================================================================

    async def get_user(self, user_id: Any) -> Optional[User]:
        return await self.get_by_id(EntityKind.USER, user_id)

    async def list_users(self) -> List[User]:
        return await self.list_all(EntityKind.USER)

    async def get_startup(self, startup_id: Any) -> Optional[Startup]:
        return await self.get_by_id(EntityKind.STARTUP, startup_id)

    async def get_startup_by_user(self, user_id: Any) -> Optional[Startup]:
        startups = await self.list_by_foreign_key(EntityKind.STARTUP, "user_id", user_id)
        return startups[0] if startups else None

    async def list_startups(self) -> List[Startup]:
        return await self.list_all(EntityKind.STARTUP)

    async def get_investment(self, investment_id: Any) -> Optional[Investment]:
        return await self.get_by_id(EntityKind.INVESTMENT, investment_id)

    async def list_investments(self) -> List[Investment]:
        return await self.list_all(EntityKind.INVESTMENT)

    async def list_user_investments(self, user_id: Any) -> List[Investment]:
        return await self.list_by_foreign_key(EntityKind.INVESTMENT, "investor_id", user_id)

    async def list_startup_investments(self, startup_id: Any) -> List[Investment]:
        return await self.list_by_foreign_key(EntityKind.INVESTMENT, "startup_id", startup_id)

    async def get_update(self, update_id: Any) -> Optional[Update]:
        return await self.get_by_id(EntityKind.UPDATE, update_id)

    async def list_updates(self) -> List[Update]:
        return await self.list_all(EntityKind.UPDATE)

    async def list_startup_updates(self, startup_id: Any) -> List[Update]:
        return await self.list_by_foreign_key(EntityKind.UPDATE, "startup_id", startup_id)

    async def get_milestone(self, milestone_id: Any) -> Optional[Milestone]:
        return await self.get_by_id(EntityKind.MILESTONE, milestone_id)

    async def list_milestones(self) -> List[Milestone]:
        return await self.list_all(EntityKind.MILESTONE)

    async def list_startup_milestones(self, startup_id: Any) -> List[Milestone]:
        return await self.list_by_foreign_key(EntityKind.MILESTONE, "startup_id", startup_id)

    async def get_stats(self) -> dict:
        """Row counts per collection."""
        return {kind.value: await self.count(kind) for kind in EntityKind}


def milestone_sort_key(milestone: Milestone) -> tuple:
    """Soonest target date first, undated last, then creation order."""
    return (
        milestone.target_date is None,
        milestone.target_date or milestone.created_at,
        milestone.created_at,
    )
