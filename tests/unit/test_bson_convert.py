"""Unit tests for BSON conversion helpers."""

import json
from datetime import datetime, timezone
from decimal import Decimal

from bson import Decimal128, ObjectId, Timestamp

from mongo_cdc.core.utils.bson_convert import bson_safe, parse_document_id
from mongo_cdc.reconciliation import DiffKind


def test_bson_safe_is_json_serializable():
    doc = {
        "_id": ObjectId("65a1b2c3d4e5f60718293a4b"),
        "created": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "ts": Timestamp(1_700_000_000, 3),
        "price": Decimal128(Decimal("9.99")),
        "raw": b"\x00\x01",
        "kind": DiffKind.VALUE_MISMATCH,
        "nested": [{"tags": ("a", "b")}],
    }
    safe = bson_safe(doc)
    json.dumps(safe)
    assert safe["_id"] == "65a1b2c3d4e5f60718293a4b"
    assert safe["created"] == "2024-01-01T00:00:00+00:00"
    assert safe["ts"] == {"t": 1_700_000_000, "i": 3}
    assert safe["price"] == "9.99"
    assert safe["raw"] == "AAE="
    assert safe["kind"] == "value-mismatch"
    assert safe["nested"] == [{"tags": ["a", "b"]}]


def test_parse_document_id():
    assert parse_document_id("65a1b2c3d4e5f60718293a4b") == ObjectId("65a1b2c3d4e5f60718293a4b")
    assert parse_document_id("42") == 42
    assert parse_document_id("user-42") == "user-42"
    assert parse_document_id("zzzzzzzzzzzzzzzzzzzzzzzz") == "zzzzzzzzzzzzzzzzzzzzzzzz"
