"""
Backend selection for the ledger store.

The backend is picked once, from LedgerConfig.backend, when the store is
opened. Nothing else in the codebase looks at which backend is live.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator

from storage.base import LedgerStore
from storage.document_store import DocumentLedgerStore
from storage.sqlite_store import SQLiteLedgerStore

if TYPE_CHECKING:
    from services.settings import LedgerConfig

logger = logging.getLogger(__name__)

SQLITE_BACKEND = "sqlite"
MONGODB_BACKEND = "mongodb"


def create_ledger_store(config: LedgerConfig) -> LedgerStore:
    """Build (but do not initialize) the store the config asks for."""
    if config.backend == MONGODB_BACKEND:
        from motor.motor_asyncio import AsyncIOMotorClient

        client = AsyncIOMotorClient(config.mongodb_uri, tz_aware=True)
        return DocumentLedgerStore(
            client[config.mongodb_database],
            client=client,
            prefix_policy=config.prefix_policy,
        )

    if config.backend == SQLITE_BACKEND:
        return SQLiteLedgerStore(config.db_path)

    raise ValueError(f"Unknown ledger backend: {config.backend!r}")


@asynccontextmanager
async def open_ledger_store(config: LedgerConfig) -> AsyncIterator[LedgerStore]:
    """
    Context manager that selects, initializes and closes the ledger store.

    Usage:
        async with open_ledger_store(LedgerConfig.from_env()) as store:
            await store.list_startups()
    """
    store = create_ledger_store(config)
    logger.info(f"Ledger backend selected: {store.backend_name}")
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()
