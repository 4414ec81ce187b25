"""
Hash chain primitives for the audit trail.

Each audit record's hash covers its own payload plus the hash of the record
before it, so rewriting any record breaks every link after it unless the
whole suffix is re-derived.

Properties relied on by the verifier:
1. Determinism: canonical JSON (sorted keys, compact separators, UTF-8)
2. Reproducibility: the timestamp hashed at write time is stored verbatim
   and reused, never re-captured
3. Storage fidelity: snapshot values are normalised to plain JSON before
   both hashing and persisting, so what is stored is what was hashed
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# previous_hash of the first record ever written
GENESIS_HASH = "GENESIS"

HASH_ALGORITHM = "sha256"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _parse_float(text: str) -> float | int:
    # PostgreSQL JSONB prints 1e+20 as 100000000000000000000, which reads back
    # as an int; store such values as ints so the hash input survives a round trip
    value = float(text)
    if "e" in text.lower() and value.is_integer():
        return int(value)
    return value


def normalize_snapshot(values: dict[str, Any] | None) -> dict[str, Any] | None:
    """Convert a before/after snapshot to plain JSON types.

    Datetimes, decimals, UUIDs and enums become strings so the value read
    back from a JSON column is identical to the value that was hashed.
    Whole floats large enough to print in exponent form become ints.
    NaN and infinity are rejected because JSON columns cannot store them.
    """
    if values is None:
        return None
    return json.loads(
        json.dumps(values, default=_json_default, allow_nan=False),
        parse_float=_parse_float,
    )


def canonical_json(data: dict[str, Any]) -> str:
    """Serialize to canonical JSON: sorted keys, no whitespace."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def format_hash_timestamp(moment: datetime) -> str:
    """Render the write-time timestamp used as hash input.

    ISO-8601 UTC with millisecond precision and a Z suffix,
    e.g. 2026-04-01T09:30:00.125Z.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def build_hash_payload(
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str | None,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
    previous_hash: str,
    timestamp: str,
) -> dict[str, Any]:
    """Assemble the exact field set covered by record_hash."""
    return {
        "action": action,
        "entityId": entity_id,
        "entityType": entity_type,
        "userId": user_id,
        "oldValues": old_values,
        "newValues": new_values,
        "previousHash": previous_hash,
        "timestamp": timestamp,
    }


def compute_record_hash(
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str | None,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
    previous_hash: str,
    timestamp: str,
) -> str:
    """Compute the SHA-256 hex digest linking a record into the chain."""
    payload = build_hash_payload(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        old_values=old_values,
        new_values=new_values,
        previous_hash=previous_hash,
        timestamp=timestamp,
    )
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
