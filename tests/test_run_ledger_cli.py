"""Tests for run_ledger.py CLI commands."""
import pytest

from conftest import make_startup, make_user
from run_ledger import cmd_delete_user, cmd_reconcile, cmd_resolve, cmd_stats, create_parser
from storage.models import UserRole
from storage.sqlite_store import SQLiteLedgerStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.delenv("LEDGER_BACKEND", raising=False)
    return str(tmp_path / "ledger.db")


@pytest.fixture
async def seeded(db_path):
    """File-backed ledger with a founder, a startup and a drifted total."""
    store = SQLiteLedgerStore(db_path)
    await store.initialize()
    founder = await make_user(store, "ada", role=UserRole.STARTUP)
    startup = await make_startup(store, founder.id)
    await store.update_startup_funding(startup.id, 9.0)
    await store.close()
    return db_path, founder, startup


def parse(*argv):
    return create_parser().parse_args(list(argv))


class TestParser:

    def test_commands(self):
        assert parse("stats").command == "stats"
        assert parse("reconcile", "--startup", "3", "--dry-run").startup == "3"
        assert parse("resolve", "startups", "abc").kind == "startups"
        assert parse("delete-user", "7", "--yes").yes is True

    def test_global_overrides(self):
        args = parse("--backend", "mongodb", "--prefix-policy", "first", "stats")
        assert args.backend == "mongodb"
        assert args.prefix_policy == "first"

    def test_resolve_rejects_unknown_kind(self):
        with pytest.raises(SystemExit):
            parse("resolve", "widgets", "1")


class TestCommands:

    async def test_stats(self, seeded, capsys):
        db_path, _, _ = seeded
        assert await cmd_stats(parse("--db-path", db_path, "stats")) == 0
        out = capsys.readouterr().out
        assert "users: 1" in out
        assert "startups: 1" in out

    async def test_reconcile_dry_run_then_repair(self, seeded):
        db_path, _, startup = seeded

        await cmd_reconcile(parse("--db-path", db_path, "reconcile", "--dry-run"))
        store = SQLiteLedgerStore(db_path)
        async with store:
            assert (await store.get_startup(startup.id)).current_funding == 9.0

        await cmd_reconcile(parse("--db-path", db_path, "reconcile", "--startup", startup.id))
        async with SQLiteLedgerStore(db_path) as store:
            assert (await store.get_startup(startup.id)).current_funding == 0.0

    async def test_resolve(self, seeded, capsys):
        db_path, _, startup = seeded
        assert await cmd_resolve(parse("--db-path", db_path, "resolve", "startups", startup.id)) == 0
        assert '"name": "Acme"' in capsys.readouterr().out

        assert await cmd_resolve(parse("--db-path", db_path, "resolve", "startups", "999")) == 1

    async def test_delete_user_needs_yes(self, seeded):
        db_path, founder, _ = seeded

        await cmd_delete_user(parse("--db-path", db_path, "delete-user", founder.id))
        async with SQLiteLedgerStore(db_path) as store:
            assert await store.get_user(founder.id) is not None

        await cmd_delete_user(parse("--db-path", db_path, "delete-user", founder.id, "--yes"))
        async with SQLiteLedgerStore(db_path) as store:
            assert await store.get_user(founder.id) is None
            assert await store.list_startups() == []
