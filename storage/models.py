"""
Entity model for the crowdfunding ledger.

Five entities: User, Startup, Investment, Update, Milestone. Every id that
crosses the store boundary is an opaque string (EntityId); the backend that
produced it decides what it looks like.

Insert payloads (NewUser, NewStartup, ...) only carry caller-supplied fields.
Server-side defaults such as current_funding=0 or completed=False have no
field on the payload, so callers cannot set them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from utils.errors import InvalidInput

EntityId = str

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    """Account type."""
    INVESTOR = "investor"
    STARTUP = "startup"


class EntityKind(str, Enum):
    """The five ledger collections."""
    USER = "users"
    STARTUP = "startups"
    INVESTMENT = "investments"
    UPDATE = "updates"
    MILESTONE = "milestones"

    @property
    def label(self) -> str:
        return self.name.capitalize()


# Foreign-key fields each collection may be listed by, and the collection
# they point into.
FOREIGN_KEYS: Dict[EntityKind, Dict[str, EntityKind]] = {
    EntityKind.USER: {},
    EntityKind.STARTUP: {"user_id": EntityKind.USER},
    EntityKind.INVESTMENT: {
        "investor_id": EntityKind.USER,
        "startup_id": EntityKind.STARTUP,
    },
    EntityKind.UPDATE: {"startup_id": EntityKind.STARTUP},
    EntityKind.MILESTONE: {"startup_id": EntityKind.STARTUP},
}


def normalize_wallet_address(address: str) -> str:
    """Validate a 0x-prefixed 20-byte hex address and lower-case it."""
    if not isinstance(address, str) or not WALLET_ADDRESS_PATTERN.match(address.strip()):
        raise InvalidInput(f"Invalid wallet address: {address!r}")
    return address.strip().lower()


def require_positive(value: float, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be a number, got {value!r}") from None
    if not number > 0:
        raise InvalidInput(f"{name} must be greater than zero, got {value!r}")
    return number


# =============================================================================
# ENTITIES
# =============================================================================

@dataclass
class User:
    """A ledger account (investor or startup founder)."""
    id: EntityId
    username: str
    password: str  # credential as handed over by the access layer (already hashed)
    email: str
    role: UserRole
    created_at: datetime
    wallet_address: Optional[str] = None
    wallet_confirmed: bool = False


@dataclass
class Startup:
    """A startup profile owned by one user."""
    id: EntityId
    user_id: EntityId
    name: str
    description: str
    category: str
    funding_stage: str
    funding_goal: float
    logo: str
    created_at: datetime
    current_funding: float = 0.0
    location: Optional[str] = None
    photo: Optional[str] = None
    video: Optional[str] = None
    upi_id: Optional[str] = None
    upi_qr: Optional[str] = None
    pitch_deck: Optional[str] = None
    investment_terms: Optional[str] = None
    technical_whitepaper: Optional[str] = None
    funding_end_date: Optional[datetime] = None
    active: bool = True

    @property
    def funding_progress(self) -> float:
        """Fraction of the goal raised so far (can exceed 1.0)."""
        if self.funding_goal <= 0:
            return 0.0
        return self.current_funding / self.funding_goal


@dataclass(frozen=True)
class Investment:
    """A recorded investment. Immutable."""
    id: EntityId
    investor_id: EntityId
    startup_id: EntityId
    amount: float
    transaction_hash: str
    created_at: datetime


@dataclass(frozen=True)
class Update:
    """A news post from a startup to its investors. Immutable."""
    id: EntityId
    startup_id: EntityId
    title: str
    content: str
    created_at: datetime


@dataclass
class Milestone:
    id: EntityId
    startup_id: EntityId
    title: str
    created_at: datetime
    description: Optional[str] = None
    target_date: Optional[datetime] = None
    completed: bool = False


# =============================================================================
# INSERT PAYLOADS
# =============================================================================

@dataclass
class NewUser:
    username: str
    password: str
    email: str
    role: UserRole
    wallet_address: Optional[str] = None

    def __post_init__(self):
        try:
            self.role = UserRole(self.role)
        except ValueError:
            raise InvalidInput(f"Unknown role: {self.role!r}") from None
        if self.wallet_address:
            self.wallet_address = normalize_wallet_address(self.wallet_address)
        else:
            self.wallet_address = None


@dataclass
class NewStartup:
    user_id: EntityId
    name: str
    description: str
    category: str
    funding_stage: str
    funding_goal: float
    logo: str
    location: Optional[str] = None
    photo: Optional[str] = None
    video: Optional[str] = None
    upi_id: Optional[str] = None
    upi_qr: Optional[str] = None
    pitch_deck: Optional[str] = None
    investment_terms: Optional[str] = None
    technical_whitepaper: Optional[str] = None
    funding_end_date: Optional[datetime] = None
    active: bool = True

    def __post_init__(self):
        self.funding_goal = require_positive(self.funding_goal, "funding_goal")
        if not self.logo:
            raise InvalidInput("Logo is required")


@dataclass
class NewInvestment:
    investor_id: EntityId
    startup_id: EntityId
    amount: float
    transaction_hash: str

    def __post_init__(self):
        self.amount = require_positive(self.amount, "amount")
        if not self.transaction_hash:
            raise InvalidInput("transaction_hash is required")


@dataclass
class NewUpdate:
    startup_id: EntityId
    title: str
    content: str


@dataclass
class NewMilestone:
    startup_id: EntityId
    title: str
    description: Optional[str] = None
    target_date: Optional[datetime] = None
