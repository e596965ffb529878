"""
Identifier resolution for the ledger backends.

Callers only ever see string ids. Each backend turns them back into its
native key here:

- SQLite backend: decimal strings <-> INTEGER primary keys.
- Document backend: 24-hex strings <-> ObjectId. Shorter hex strings are
  treated as prefixes of an existing id. That tolerance exists for ids that
  were truncated upstream (e.g. split URL paths); it is a compatibility
  shim, O(n) in the collection size, and never an authorization check.

Prefix collisions follow an explicit PrefixPolicy:
    REJECT: more than one match raises AmbiguousIdentifier (default)
    FIRST:  the lowest matching id wins
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Iterable, List, Union

from bson import ObjectId
from bson.errors import InvalidId

from utils.errors import AmbiguousIdentifier, InvalidInput, NotFound

logger = logging.getLogger(__name__)

OBJECT_ID_LENGTH = 24

_DECIMAL_RE = re.compile(r"^\d+$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

RawId = Union[str, int, ObjectId]


class PrefixPolicy(str, Enum):
    """What to do when an id prefix matches several rows."""
    REJECT = "reject"
    FIRST = "first"


# =============================================================================
# INTEGER IDS
# =============================================================================

class IntegerIdResolver:
    """Maps opaque ids onto SQLite INTEGER keys."""

    def resolve(self, raw: RawId) -> int:
        if isinstance(raw, bool):
            raise InvalidInput(f"Invalid identifier: {raw!r}")
        if isinstance(raw, int):
            if raw <= 0:
                raise InvalidInput(f"Invalid identifier: {raw!r}")
            return raw
        text = str(raw).strip() if raw is not None else ""
        if not _DECIMAL_RE.match(text) or int(text) <= 0:
            raise InvalidInput(f"Invalid identifier: {raw!r}")
        return int(text)

    @staticmethod
    def format(native: int) -> str:
        return str(native)


# =============================================================================
# OBJECT IDS
# =============================================================================

def match_prefix(prefix: str, ids: Iterable[str], policy: PrefixPolicy) -> str:
    """
    Pick the id that starts with prefix.

    Raises:
        NotFound: nothing starts with prefix
        AmbiguousIdentifier: several ids match and policy is REJECT
    """
    prefix = prefix.lower()
    matches: List[str] = sorted(i for i in ids if i.lower().startswith(prefix))

    if not matches:
        raise NotFound("Identifier", prefix)

    if len(matches) > 1:
        if policy == PrefixPolicy.REJECT:
            raise AmbiguousIdentifier(prefix, matches)
        logger.warning(
            f"Prefix '{prefix}' matched {len(matches)} ids; using {matches[0]}"
        )

    return matches[0]


class ObjectIdResolver:
    """Maps opaque ids onto MongoDB ObjectIds, with prefix lookup."""

    def __init__(self, policy: PrefixPolicy = PrefixPolicy.REJECT):
        self.policy = PrefixPolicy(policy)

    @staticmethod
    def parse(raw: RawId) -> Union[ObjectId, str]:
        """
        Classify a raw id without touching the database.

        Returns an ObjectId for a full id, or the lower-cased prefix string
        when the input is a shorter hex string.
        """
        if isinstance(raw, ObjectId):
            return raw
        if raw is None or isinstance(raw, bool):
            raise InvalidInput(f"Invalid identifier: {raw!r}")

        text = str(raw).strip()
        if not text or len(text) > OBJECT_ID_LENGTH or not _HEX_RE.match(text):
            raise InvalidInput(f"Invalid identifier: {raw!r}")

        if len(text) == OBJECT_ID_LENGTH:
            try:
                return ObjectId(text.lower())
            except InvalidId:
                raise InvalidInput(f"Invalid identifier: {raw!r}") from None

        return text.lower()

    async def resolve(
        self, collection: Any, raw: RawId, must_exist: bool = True
    ) -> ObjectId:
        """
        Resolve raw to an ObjectId in collection.

        Full ids are looked up directly (skipped when must_exist is False);
        prefixes always scan the collection's ids.
        """
        parsed = self.parse(raw)

        if isinstance(parsed, ObjectId):
            if must_exist:
                found = await collection.find_one({"_id": parsed}, {"_id": 1})
                if found is None:
                    raise NotFound("Identifier", str(parsed))
            return parsed

        docs = await collection.find({}, {"_id": 1}).to_list(length=None)
        ids = [str(doc["_id"]) for doc in docs]
        chosen = match_prefix(parsed, ids, self.policy)
        logger.debug(f"Resolved prefix '{parsed}' to {chosen}")
        return ObjectId(chosen)

    @staticmethod
    def format(native: ObjectId) -> str:
        return str(native)
