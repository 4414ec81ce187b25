"""
Unit tests for audit hash chain primitives.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from empanelment.audit.hashing import (
    GENESIS_HASH,
    build_hash_payload,
    canonical_json,
    compute_record_hash,
    format_hash_timestamp,
    normalize_snapshot,
)


def _hash(**overrides):
    fields = {
        "action": "APPLICATION_SUBMITTED",
        "entity_type": "Application",
        "entity_id": "app-1",
        "user_id": "user-1",
        "old_values": None,
        "new_values": {"status": "SUBMITTED"},
        "previous_hash": GENESIS_HASH,
        "timestamp": "2026-04-01T09:30:00.125Z",
    }
    fields.update(overrides)
    return compute_record_hash(**fields)


class TestCanonicalJson:
    """Tests for canonical JSON serialization."""

    def test_sorted_keys(self):
        """Test that keys are sorted for deterministic output."""
        assert canonical_json({"z": 1, "a": 2, "m": 3}) == '{"a":2,"m":3,"z":1}'

    def test_nested_sorting(self):
        """Test that nested dicts have sorted keys."""
        result = canonical_json({"outer": {"z": 1, "a": 2}})
        assert result == '{"outer":{"a":2,"z":1}}'

    def test_non_ascii_kept_verbatim(self):
        """Test that non-ASCII text is emitted as UTF-8, not escaped."""
        assert canonical_json({"name": "उद्योग"}) == '{"name":"उद्योग"}'

    def test_null_emitted(self):
        """Test that None values are kept as JSON null."""
        assert canonical_json({"userId": None}) == '{"userId":null}'


class TestFormatHashTimestamp:
    """Tests for the write-time timestamp rendering."""

    def test_millisecond_precision_with_z(self):
        moment = datetime(2026, 4, 1, 9, 30, 0, 125999, tzinfo=timezone.utc)
        assert format_hash_timestamp(moment) == "2026-04-01T09:30:00.125Z"

    def test_converts_to_utc(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        moment = datetime(2026, 4, 1, 15, 0, 0, tzinfo=ist)
        assert format_hash_timestamp(moment) == "2026-04-01T09:30:00.000Z"

    def test_naive_treated_as_utc(self):
        assert format_hash_timestamp(datetime(2026, 1, 2, 3, 4, 5)) == "2026-01-02T03:04:05.000Z"


class TestNormalizeSnapshot:
    """Tests for snapshot normalisation before hashing and storage."""

    def test_none_passthrough(self):
        assert normalize_snapshot(None) is None

    def test_rich_types_become_strings(self):
        snapshot = {
            "amount": Decimal("1500.50"),
            "submitted_at": datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc),
        }
        assert normalize_snapshot(snapshot) == {
            "amount": "1500.50",
            "submitted_at": "2026-01-15T12:00:00+00:00",
        }

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            normalize_snapshot({"score": float("nan")})

    def test_exponent_floats_stored_as_ints(self):
        """Test that large whole floats are hashed the way JSONB reads them back."""
        stored = normalize_snapshot({"turnover": 1e20, "rate": 0.18, "tiny": 1.5e-10, "count": 2.0})

        assert stored == {"turnover": 100000000000000000000, "rate": 0.18, "tiny": 1.5e-10, "count": 2.0}
        assert isinstance(stored["turnover"], int)
        assert isinstance(stored["count"], float)
        assert '"turnover":100000000000000000000' in canonical_json(stored)


class TestComputeRecordHash:
    """Tests for the record hash."""

    def test_matches_sha256_of_canonical_payload(self):
        """Test the digest is SHA-256 over the canonical payload."""
        payload = build_hash_payload(
            action="APPLICATION_SUBMITTED",
            entity_type="Application",
            entity_id="app-1",
            user_id="user-1",
            old_values=None,
            new_values={"status": "SUBMITTED"},
            previous_hash=GENESIS_HASH,
            timestamp="2026-04-01T09:30:00.125Z",
        )
        expected = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
        assert _hash() == expected
        assert len(expected) == 64

    def test_payload_field_names(self):
        payload = build_hash_payload(
            action="A",
            entity_type="T",
            entity_id="1",
            user_id=None,
            old_values=None,
            new_values=None,
            previous_hash=GENESIS_HASH,
            timestamp="t",
        )
        assert set(payload) == {
            "action", "entityId", "entityType", "userId",
            "oldValues", "newValues", "previousHash", "timestamp",
        }

    def test_deterministic(self):
        assert _hash() == _hash()

    def test_key_order_of_snapshot_irrelevant(self):
        assert _hash(new_values={"a": 1, "b": 2}) == _hash(new_values={"b": 2, "a": 1})

    @pytest.mark.parametrize(
        "field,value",
        [
            ("action", "APPLICATION_APPROVED"),
            ("entity_type", "Payment"),
            ("entity_id", "app-2"),
            ("user_id", None),
            ("old_values", {"status": "DRAFT"}),
            ("new_values", {"status": "APPROVED"}),
            ("previous_hash", "a" * 64),
            ("timestamp", "2026-04-01T09:30:00.126Z"),
        ],
    )
    def test_every_field_is_covered(self, field, value):
        """Test that changing any covered field changes the hash."""
        assert _hash(**{field: value}) != _hash()
