"""
Ledger configuration.

Everything is read from the environment (a .env file is loaded by the CLI
entry point). Backend choice is explicit: LEDGER_BACKEND=sqlite|mongodb.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from storage.identifiers import PrefixPolicy

logger = logging.getLogger(__name__)


class LedgerBackend(str, Enum):
    SQLITE = "sqlite"
    MONGODB = "mongodb"


@dataclass
class LedgerConfig:
    """Configuration for the ledger and the wallet client"""

    # Storage
    backend: LedgerBackend = LedgerBackend.SQLITE
    db_path: str = ":memory:"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "crowdfund"
    prefix_policy: PrefixPolicy = PrefixPolicy.REJECT

    # Wallet
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 30
    gas_limit: int = 21000
    rpc_url: Optional[str] = None
    rpc_timeout_seconds: float = 30.0

    def __post_init__(self):
        self.backend = LedgerBackend(self.backend)
        self.prefix_policy = PrefixPolicy(self.prefix_policy)
        if self.poll_interval_seconds < 0:
            raise ValueError(
                f"poll_interval_seconds must be >= 0, got {self.poll_interval_seconds}"
            )
        if self.poll_max_attempts < 1:
            raise ValueError(f"poll_max_attempts must be >= 1, got {self.poll_max_attempts}")
        if self.gas_limit <= 0:
            raise ValueError(f"gas_limit must be > 0, got {self.gas_limit}")
        if self.rpc_timeout_seconds <= 0:
            raise ValueError(
                f"rpc_timeout_seconds must be > 0, got {self.rpc_timeout_seconds}"
            )

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables"""
        return cls(
            backend=os.getenv("LEDGER_BACKEND", "sqlite").strip().lower(),
            db_path=os.getenv("LEDGER_DB_PATH", ":memory:"),
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "crowdfund"),
            prefix_policy=os.getenv("LEDGER_PREFIX_POLICY", "reject").strip().lower(),
            poll_interval_seconds=float(os.getenv("WALLET_POLL_INTERVAL_SECONDS", "2")),
            poll_max_attempts=int(os.getenv("WALLET_POLL_MAX_ATTEMPTS", "30")),
            gas_limit=int(os.getenv("WALLET_GAS_LIMIT", "21000")),
            rpc_url=os.getenv("WALLET_RPC_URL") or None,
            rpc_timeout_seconds=float(os.getenv("WALLET_RPC_TIMEOUT_SECONDS", "30")),
        )
