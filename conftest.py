"""
Root-level pytest configuration for the crowdfunding ledger.

Configures:
- pytest-asyncio for async test support
- Custom markers
- Store fixtures shared by storage/tests, wallet/tests and tests/
"""

import uuid

import pytest

from storage.document_store import DocumentLedgerStore
from storage.identifiers import PrefixPolicy
from storage.models import NewStartup, NewUser, UserRole
from storage.sqlite_store import SQLiteLedgerStore


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may require a running MongoDB)"
    )
    config.addinivalue_line(
        "markers",
        "asyncio: marks tests as async (automatically handled by pytest-asyncio)"
    )


pytest_plugins = ["pytest_asyncio"]


@pytest.fixture(scope="session")
def event_loop_policy():
    """
    Set event loop policy for the test session.

    This ensures consistent async behavior across all tests.
    """
    import asyncio
    return asyncio.get_event_loop_policy()


# =============================================================================
# STORES
# =============================================================================

def make_document_store(policy: PrefixPolicy = PrefixPolicy.REJECT) -> DocumentLedgerStore:
    """DocumentLedgerStore on an in-process mongomock database."""
    from mongomock_motor import AsyncMongoMockClient

    client = AsyncMongoMockClient()
    return DocumentLedgerStore(client[f"ledger_{uuid.uuid4().hex}"], prefix_policy=policy)


@pytest.fixture(params=["sqlite", "mongodb"])
async def ledger_store(request):
    """An initialized store, once per backend."""
    if request.param == "sqlite":
        store = SQLiteLedgerStore(":memory:")
    else:
        store = make_document_store()
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store():
    store = SQLiteLedgerStore(":memory:")
    await store.initialize()
    yield store
    await store.close()


# =============================================================================
# ENTITY HELPERS
# =============================================================================

async def make_user(store, username, role=UserRole.INVESTOR, wallet_address=None):
    return await store.create_user(NewUser(
        username=username,
        password="hashed-secret",
        email=f"{username}@example.com",
        role=role,
        wallet_address=wallet_address,
    ))


async def make_startup(store, owner_id, name="Acme", funding_goal=100.0):
    return await store.create_startup(NewStartup(
        user_id=owner_id,
        name=name,
        description=f"{name} builds things",
        category="fintech",
        funding_stage="seed",
        funding_goal=funding_goal,
        logo="data:image/png;base64,AAAA",
    ))

