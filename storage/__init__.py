"""
Storage layer for the crowdfunding ledger.

One async LedgerStore interface over two backends:
- SQLiteLedgerStore: aiosqlite, integer ids, ":memory:" by default
- DocumentLedgerStore: motor/MongoDB, ObjectId ids with prefix lookup

Quick start:
    from storage import open_ledger_store
    from services.settings import LedgerConfig

    async with open_ledger_store(LedgerConfig.from_env()) as store:
        user = await store.create_user(NewUser(...))
        startups = await store.list_startups()
"""

from storage.base import LedgerStore
from storage.document_store import DocumentLedgerStore
from storage.factory import create_ledger_store, open_ledger_store
from storage.identifiers import PrefixPolicy
from storage.models import (
    EntityId,
    EntityKind,
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
    UserRole,
)
from storage.sqlite_store import CURRENT_SCHEMA_VERSION, SQLiteLedgerStore

__all__ = [
    "LedgerStore",
    "SQLiteLedgerStore",
    "DocumentLedgerStore",
    "create_ledger_store",
    "open_ledger_store",
    "PrefixPolicy",
    "EntityId",
    "EntityKind",
    "UserRole",
    "User",
    "Startup",
    "Investment",
    "Update",
    "Milestone",
    "NewUser",
    "NewStartup",
    "NewInvestment",
    "NewUpdate",
    "NewMilestone",
    "CURRENT_SCHEMA_VERSION",
]

__version__ = "1.0.0"
