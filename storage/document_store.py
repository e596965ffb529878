"""
Document Ledger Store

MongoDB implementation of LedgerStore on motor. Ids are ObjectIds, exposed
to callers as 24-character hex strings. Shorter hex strings are accepted as
prefixes (see storage.identifiers).

Collections:
  - users        unique: username, email; unique+sparse: wallet_address
  - startups     unique: user_id
  - investments  unique: transaction_hash; indexed: investor_id, startup_id
  - updates      indexed: startup_id
  - milestones   indexed: startup_id

Atomicity:
  - Single-document mutations use the server's atomic primitives ($inc,
    conditional find_one_and_update). Unique indexes back the uniqueness
    checks, so a race between two creates still ends in Conflict.
  - delete_user spans collections and is not transactional. It runs as an
    ordered saga: the startups that need their funding recomputed are
    journaled on the user document first, children are removed next, and
    the user document is deleted last. Re-running delete_user after a crash
    finishes the job; NotFound on re-run means it already completed.

Usage:
    client = AsyncIOMotorClient("mongodb://localhost:27017")
    store = DocumentLedgerStore(client["crowdfund"], client=client)
    await store.initialize()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from storage.base import LedgerStore, check_foreign_key, milestone_sort_key, utcnow
from storage.identifiers import ObjectIdResolver, PrefixPolicy
from storage.models import (
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
    normalize_wallet_address,
)
from utils.errors import (
    Conflict,
    ConflictReason,
    InvalidInput,
    Mismatch,
    NotFound,
)

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]

SORT_ORDER = {
    EntityKind.USER: [("_id", ASCENDING)],
    EntityKind.STARTUP: NEWEST_FIRST,
    EntityKind.INVESTMENT: NEWEST_FIRST,
    EntityKind.UPDATE: NEWEST_FIRST,
    EntityKind.MILESTONE: [("_id", ASCENDING)],  # re-sorted in Python, nulls last
}

INDEXES = {
    EntityKind.USER: [
        ("username", {"unique": True}),
        ("email", {"unique": True}),
        ("wallet_address", {"unique": True, "sparse": True}),
    ],
    EntityKind.STARTUP: [
        ("user_id", {"unique": True}),
        ("created_at", {}),
    ],
    EntityKind.INVESTMENT: [
        ("investor_id", {}),
        ("startup_id", {}),
        ("transaction_hash", {"unique": True}),
    ],
    EntityKind.UPDATE: [("startup_id", {})],
    EntityKind.MILESTONE: [("startup_id", {})],
}

# Field name in a DuplicateKeyError -> reason reported to the caller
DUPLICATE_REASONS = {
    "username": ConflictReason.USERNAME,
    "email": ConflictReason.EMAIL,
    "wallet_address": ConflictReason.WALLET,
    "user_id": ConflictReason.STARTUP_OWNER,
    "transaction_hash": ConflictReason.TRANSACTION,
}

PENDING_RECONCILE_FIELD = "pending_reconcile"
RECOMPUTE_MAX_ATTEMPTS = 5


# =============================================================================
# DOCUMENT MAPPING
# =============================================================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB hands back naive UTC datetimes; make them explicit."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ref(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _doc_to_user(doc: Dict[str, Any]) -> User:
    return User(
        id=str(doc["_id"]),
        username=doc["username"],
        password=doc["password"],
        email=doc["email"],
        role=UserRole(doc["role"]),
        created_at=_aware(doc["created_at"]),
        wallet_address=doc.get("wallet_address"),
        wallet_confirmed=bool(doc.get("wallet_confirmed", False)),
    )


def _doc_to_startup(doc: Dict[str, Any]) -> Startup:
    return Startup(
        id=str(doc["_id"]),
        user_id=_ref(doc["user_id"]),
        name=doc["name"],
        description=doc["description"],
        category=doc["category"],
        funding_stage=doc["funding_stage"],
        funding_goal=float(doc["funding_goal"]),
        logo=doc["logo"],
        created_at=_aware(doc["created_at"]),
        current_funding=float(doc.get("current_funding", 0.0)),
        location=doc.get("location"),
        photo=doc.get("photo"),
        video=doc.get("video"),
        upi_id=doc.get("upi_id"),
        upi_qr=doc.get("upi_qr"),
        pitch_deck=doc.get("pitch_deck"),
        investment_terms=doc.get("investment_terms"),
        technical_whitepaper=doc.get("technical_whitepaper"),
        funding_end_date=_aware(doc.get("funding_end_date")),
        active=bool(doc.get("active", True)),
    )


def _doc_to_investment(doc: Dict[str, Any]) -> Investment:
    return Investment(
        id=str(doc["_id"]),
        investor_id=_ref(doc["investor_id"]),
        startup_id=_ref(doc["startup_id"]),
        amount=float(doc["amount"]),
        transaction_hash=doc["transaction_hash"],
        created_at=_aware(doc["created_at"]),
    )


def _doc_to_update(doc: Dict[str, Any]) -> Update:
    return Update(
        id=str(doc["_id"]),
        startup_id=_ref(doc["startup_id"]),
        title=doc["title"],
        content=doc["content"],
        created_at=_aware(doc["created_at"]),
    )


def _doc_to_milestone(doc: Dict[str, Any]) -> Milestone:
    return Milestone(
        id=str(doc["_id"]),
        startup_id=_ref(doc["startup_id"]),
        title=doc["title"],
        created_at=_aware(doc["created_at"]),
        description=doc.get("description"),
        target_date=_aware(doc.get("target_date")),
        completed=bool(doc.get("completed", False)),
    )


DOC_MAPPERS = {
    EntityKind.USER: _doc_to_user,
    EntityKind.STARTUP: _doc_to_startup,
    EntityKind.INVESTMENT: _doc_to_investment,
    EntityKind.UPDATE: _doc_to_update,
    EntityKind.MILESTONE: _doc_to_milestone,
}


def _duplicate_reason(error: DuplicateKeyError) -> ConflictReason:
    """Work out which unique index a DuplicateKeyError tripped."""
    details = error.details or {}
    fields = list((details.get("keyPattern") or {}).keys())
    message = str(error)
    for field_name, reason in DUPLICATE_REASONS.items():
        if field_name in fields or field_name in message:
            return reason
    return ConflictReason.DUPLICATE


class _StaleFunding(Exception):
    """current_funding changed between read and write."""


# =============================================================================
# DOCUMENT LEDGER STORE
# =============================================================================

class DocumentLedgerStore(LedgerStore):
    """
    Async MongoDB storage for the ledger.

    Features:
    - Unique indexes mirroring the SQLite constraints
    - Atomic funding increments via $inc
    - Prefix-tolerant id resolution with an explicit collision policy
    - Retry-safe cascading delete
    """

    backend_name = "mongodb"

    def __init__(
        self,
        database: Any,
        client: Any = None,
        prefix_policy: PrefixPolicy = PrefixPolicy.REJECT,
    ):
        """
        Initialize ledger store.

        Args:
            database: motor database handle (AsyncIOMotorDatabase or compatible)
            client: owning client, closed by close() when given
            prefix_policy: collision policy for shortened ids
        """
        self.database = database
        self.ids = ObjectIdResolver(prefix_policy)
        self._client = client
        self._initialized = False

    def _collection(self, kind: EntityKind) -> Any:
        if not self._initialized:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self.database[kind.value]

    async def initialize(self) -> None:
        """Create indexes. Safe to call against an existing database."""
        for kind, indexes in INDEXES.items():
            collection = self.database[kind.value]
            for field_name, options in indexes:
                await collection.create_index([(field_name, ASCENDING)], **options)

        self._initialized = True
        logger.info("DocumentLedgerStore initialized")

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        self._initialized = False

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _resolve(self, kind: EntityKind, raw_id: Any, must_exist: bool = True) -> ObjectId:
        try:
            return await self.ids.resolve(self._collection(kind), raw_id, must_exist)
        except NotFound:
            raise NotFound(kind.label, raw_id) from None

    async def _require(self, kind: EntityKind, raw_id: Any) -> Dict[str, Any]:
        oid = await self._resolve(kind, raw_id, must_exist=False)
        doc = await self._collection(kind).find_one({"_id": oid})
        if doc is None:
            raise NotFound(kind.label, raw_id)
        return doc

    async def _find(self, kind: EntityKind, query: Dict[str, Any]) -> List[Any]:
        cursor = self._collection(kind).find(query, sort=SORT_ORDER[kind])
        docs = await cursor.to_list(length=None)
        entities = [DOC_MAPPERS[kind](doc) for doc in docs]
        if kind == EntityKind.MILESTONE:
            entities.sort(key=milestone_sort_key)
        return entities

    async def _sum_investments(self, startup_oid: ObjectId) -> float:
        cursor = self._collection(EntityKind.INVESTMENT).find(
            {"startup_id": startup_oid}, {"amount": 1}
        )
        return float(sum(doc["amount"] for doc in await cursor.to_list(length=None)))

    async def _recompute_funding(self, startup_oid: ObjectId) -> Optional[Dict[str, Any]]:
        """
        Set current_funding to the sum of the startup's investments.

        The write only lands if current_funding still holds the value read
        before summing; an $inc that slipped in between forces a re-read.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(RECOMPUTE_MAX_ATTEMPTS),
                retry=retry_if_exception_type(_StaleFunding),
                reraise=True,
            ):
                with attempt:
                    return await self._compare_and_set_funding(startup_oid)
        except _StaleFunding:
            raise Conflict(
                ConflictReason.FUNDING_CHANGED,
                f"Funding of startup {startup_oid} kept changing during reconciliation",
            ) from None

    async def _compare_and_set_funding(self, startup_oid: ObjectId) -> Optional[Dict[str, Any]]:
        startups = self._collection(EntityKind.STARTUP)
        current = await startups.find_one({"_id": startup_oid}, {"current_funding": 1})
        if current is None:
            return None

        observed = current.get("current_funding")
        total = await self._sum_investments(startup_oid)
        doc = await startups.find_one_and_update(
            {"_id": startup_oid, "current_funding": observed},
            {"$set": {"current_funding": total}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.debug(f"Startup {startup_oid} funding moved during recompute; retrying")
            raise _StaleFunding(startup_oid)
        return doc

    # =========================================================================
    # GENERIC OPERATIONS
    # =========================================================================

    async def get_by_id(self, kind: EntityKind, entity_id: Any) -> Optional[Any]:
        try:
            doc = await self._require(kind, entity_id)
        except NotFound:
            return None
        return DOC_MAPPERS[kind](doc)

    async def list_all(self, kind: EntityKind) -> List[Any]:
        return await self._find(kind, {})

    async def list_by_foreign_key(
        self, kind: EntityKind, field_name: str, value: Any
    ) -> List[Any]:
        target = check_foreign_key(kind, field_name)
        try:
            oid = await self._resolve(target, value, must_exist=False)
        except NotFound:
            return []
        return await self._find(kind, {field_name: oid})

    async def count(self, kind: EntityKind) -> int:
        return await self._collection(kind).count_documents({})

    # =========================================================================
    # USERS
    # =========================================================================

    async def create_user(self, new_user: NewUser) -> User:
        users = self._collection(EntityKind.USER)

        if await users.find_one({"username": new_user.username}, {"_id": 1}):
            raise Conflict(ConflictReason.USERNAME, "Username already exists")

        if await users.find_one({"email": new_user.email}, {"_id": 1}):
            raise Conflict(ConflictReason.EMAIL, "Email already exists")

        if new_user.wallet_address and await users.find_one(
            {"wallet_address": new_user.wallet_address}, {"_id": 1}
        ):
            raise Conflict(
                ConflictReason.WALLET, "Wallet address already in use by another account"
            )

        doc: Dict[str, Any] = {
            "username": new_user.username,
            "password": new_user.password,
            "email": new_user.email,
            "wallet_confirmed": False,
            "role": new_user.role.value,
            "created_at": utcnow(),
        }
        # Left out entirely when unset so the sparse unique index ignores it
        if new_user.wallet_address:
            doc["wallet_address"] = new_user.wallet_address

        try:
            result = await users.insert_one(doc)
        except DuplicateKeyError as e:
            raise Conflict(_duplicate_reason(e)) from e

        logger.debug(f"Created user {result.inserted_id} ({new_user.role.value})")
        return _doc_to_user(await self._require(EntityKind.USER, result.inserted_id))

    async def get_user_by_username(self, username: str) -> Optional[User]:
        doc = await self._collection(EntityKind.USER).find_one({"username": username})
        return _doc_to_user(doc) if doc else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        doc = await self._collection(EntityKind.USER).find_one({"email": email})
        return _doc_to_user(doc) if doc else None

    async def update_user_wallet_address(self, user_id: Any, address: str) -> User:
        address = normalize_wallet_address(address)
        users = self._collection(EntityKind.USER)
        user = await self._require(EntityKind.USER, user_id)

        if user.get("wallet_confirmed"):
            raise Conflict(
                ConflictReason.WALLET_CONFIRMED,
                "Wallet address has already been confirmed and cannot be changed",
            )

        if await users.find_one(
            {"wallet_address": address, "_id": {"$ne": user["_id"]}}, {"_id": 1}
        ):
            raise Conflict(
                ConflictReason.WALLET, "Wallet address already in use by another account"
            )

        try:
            doc = await users.find_one_and_update(
                {"_id": user["_id"], "wallet_confirmed": {"$ne": True}},
                {"$set": {"wallet_address": address}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise Conflict(ConflictReason.WALLET) from e

        if doc is None:
            # Confirmed (or deleted) between the read and the write
            await self._require(EntityKind.USER, user["_id"])
            raise Conflict(ConflictReason.WALLET_CONFIRMED)

        logger.info(f"Wallet address updated for user {doc['_id']}")
        return _doc_to_user(doc)

    async def confirm_user_wallet_address(self, user_id: Any, address: str) -> User:
        address = normalize_wallet_address(address)
        user = await self._require(EntityKind.USER, user_id)

        if user.get("wallet_address") != address:
            raise Mismatch("Wallet address does not match the stored address")

        if user.get("wallet_confirmed"):
            raise Conflict(
                ConflictReason.WALLET_CONFIRMED, "Wallet address has already been confirmed"
            )

        doc = await self._collection(EntityKind.USER).find_one_and_update(
            {"_id": user["_id"], "wallet_address": address, "wallet_confirmed": {"$ne": True}},
            {"$set": {"wallet_confirmed": True}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            # Lost a race with another update/confirm; report the current state
            current = await self._require(EntityKind.USER, user["_id"])
            if current.get("wallet_address") != address:
                raise Mismatch("Wallet address does not match the stored address")
            raise Conflict(ConflictReason.WALLET_CONFIRMED)

        logger.info(f"Wallet address confirmed for user {doc['_id']}")
        return _doc_to_user(doc)

    async def delete_user(self, user_id: Any) -> None:
        users = self._collection(EntityKind.USER)
        startups = self._collection(EntityKind.STARTUP)
        investments = self._collection(EntityKind.INVESTMENT)

        user = await self._require(EntityKind.USER, user_id)
        uid = user["_id"]

        # Step 1: journal every startup whose funding this delete will touch
        cursor = investments.find({"investor_id": uid}, {"startup_id": 1})
        funded = {doc["startup_id"] for doc in await cursor.to_list(length=None)}
        funded.update(user.get(PENDING_RECONCILE_FIELD, []))
        if funded:
            await users.update_one(
                {"_id": uid},
                {"$addToSet": {PENDING_RECONCILE_FIELD: {"$each": sorted(funded)}}},
            )

        # Step 2: owned startup and its children
        owned = await startups.find_one({"user_id": uid}, {"_id": 1})
        if owned is not None:
            sid = owned["_id"]
            await self._collection(EntityKind.UPDATE).delete_many({"startup_id": sid})
            await self._collection(EntityKind.MILESTONE).delete_many({"startup_id": sid})
            await startups.delete_one({"_id": sid})
            funded.discard(sid)

        # Step 3: investments made by the user, then recompute what they funded
        await investments.delete_many({"investor_id": uid})
        for sid in funded:
            await self._recompute_funding(sid)

        # Step 4: the user document is the commit marker
        await users.delete_one({"_id": uid})

        logger.info(
            f"Deleted user {uid} (startup={'yes' if owned else 'no'}, "
            f"reconciled {len(funded)} funded startups)"
        )

    # =========================================================================
    # STARTUPS
    # =========================================================================

    async def create_startup(self, new_startup: NewStartup) -> Startup:
        owner_id = await self._resolve(EntityKind.USER, new_startup.user_id)
        startups = self._collection(EntityKind.STARTUP)

        if await startups.find_one({"user_id": owner_id}, {"_id": 1}):
            raise Conflict(ConflictReason.STARTUP_OWNER, "User already owns a startup profile")

        doc: Dict[str, Any] = {
            "user_id": owner_id,
            "name": new_startup.name,
            "description": new_startup.description,
            "category": new_startup.category,
            "funding_stage": new_startup.funding_stage,
            "location": new_startup.location,
            "funding_goal": float(new_startup.funding_goal),
            "current_funding": 0.0,
            "logo": new_startup.logo,
            "photo": new_startup.photo,
            "video": new_startup.video,
            "upi_id": new_startup.upi_id,
            "upi_qr": new_startup.upi_qr,
            "pitch_deck": new_startup.pitch_deck,
            "investment_terms": new_startup.investment_terms,
            "technical_whitepaper": new_startup.technical_whitepaper,
            "funding_end_date": new_startup.funding_end_date,
            "active": bool(new_startup.active),
            "created_at": utcnow(),
        }

        try:
            result = await startups.insert_one(doc)
        except DuplicateKeyError as e:
            raise Conflict(ConflictReason.STARTUP_OWNER) from e

        logger.debug(f"Created startup {result.inserted_id} for user {owner_id}")
        return _doc_to_startup(await self._require(EntityKind.STARTUP, result.inserted_id))

    async def update_startup_funding(self, startup_id: Any, delta: float) -> Startup:
        oid = await self._resolve(EntityKind.STARTUP, startup_id, must_exist=False)

        query: Dict[str, Any] = {"_id": oid}
        if delta < 0:
            query["current_funding"] = {"$gte": -delta}

        doc = await self._collection(EntityKind.STARTUP).find_one_and_update(
            query,
            {"$inc": {"current_funding": float(delta)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            await self._require(EntityKind.STARTUP, oid)
            raise InvalidInput(f"Funding of startup {oid} cannot go below zero")

        logger.debug(f"Startup {oid} funding += {delta} -> {doc['current_funding']}")
        return _doc_to_startup(doc)

    async def reconcile_startup_funding(self, startup_id: Any) -> Startup:
        oid = await self._resolve(EntityKind.STARTUP, startup_id)
        doc = await self._recompute_funding(oid)
        if doc is None:
            raise NotFound(EntityKind.STARTUP.label, startup_id)
        return _doc_to_startup(doc)

    async def sum_startup_investments(self, startup_id: Any) -> float:
        try:
            oid = await self._resolve(EntityKind.STARTUP, startup_id, must_exist=False)
        except NotFound:
            return 0.0
        return await self._sum_investments(oid)

    # =========================================================================
    # INVESTMENTS
    # =========================================================================

    async def create_investment(self, new_investment: NewInvestment) -> Investment:
        investor_id = await self._resolve(EntityKind.USER, new_investment.investor_id)
        startup_id = await self._resolve(EntityKind.STARTUP, new_investment.startup_id)
        investments = self._collection(EntityKind.INVESTMENT)
        duplicate = Conflict(
            ConflictReason.TRANSACTION,
            f"Transaction {new_investment.transaction_hash} is already recorded",
        )

        if await investments.find_one(
            {"transaction_hash": new_investment.transaction_hash}, {"_id": 1}
        ):
            raise duplicate

        try:
            result = await investments.insert_one({
                "investor_id": investor_id,
                "startup_id": startup_id,
                "amount": float(new_investment.amount),
                "transaction_hash": new_investment.transaction_hash,
                "created_at": utcnow(),
            })
        except DuplicateKeyError as e:
            raise duplicate from e

        logger.debug(
            f"Recorded investment {result.inserted_id}: {new_investment.amount} "
            f"from user {investor_id} into startup {startup_id}"
        )
        return _doc_to_investment(
            await self._require(EntityKind.INVESTMENT, result.inserted_id)
        )

    async def find_investment_by_transaction(
        self, transaction_hash: str
    ) -> Optional[Investment]:
        doc = await self._collection(EntityKind.INVESTMENT).find_one(
            {"transaction_hash": transaction_hash}, sort=[("_id", ASCENDING)]
        )
        return _doc_to_investment(doc) if doc else None

    # =========================================================================
    # UPDATES / MILESTONES
    # =========================================================================

    async def create_update(self, new_update: NewUpdate) -> Update:
        startup_id = await self._resolve(EntityKind.STARTUP, new_update.startup_id)
        result = await self._collection(EntityKind.UPDATE).insert_one({
            "startup_id": startup_id,
            "title": new_update.title,
            "content": new_update.content,
            "created_at": utcnow(),
        })
        return _doc_to_update(await self._require(EntityKind.UPDATE, result.inserted_id))

    async def create_milestone(self, new_milestone: NewMilestone) -> Milestone:
        startup_id = await self._resolve(EntityKind.STARTUP, new_milestone.startup_id)
        result = await self._collection(EntityKind.MILESTONE).insert_one({
            "startup_id": startup_id,
            "title": new_milestone.title,
            "description": new_milestone.description,
            "target_date": new_milestone.target_date,
            "completed": False,
            "created_at": utcnow(),
        })
        return _doc_to_milestone(
            await self._require(EntityKind.MILESTONE, result.inserted_id)
        )

    async def update_milestone_status(self, milestone_id: Any, completed: bool) -> Milestone:
        oid = await self._resolve(EntityKind.MILESTONE, milestone_id, must_exist=False)
        doc = await self._collection(EntityKind.MILESTONE).find_one_and_update(
            {"_id": oid},
            {"$set": {"completed": bool(completed)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound(EntityKind.MILESTONE.label, milestone_id)
        return _doc_to_milestone(doc)
