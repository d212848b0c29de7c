"""
BSON to JSON-serializable converter utility.

Converts MongoDB BSON types to JSON-serializable Python types, and parses
document identities typed on the command line.
"""

from bson import ObjectId, Decimal128, Timestamp
from bson.errors import InvalidId
from datetime import datetime
from enum import Enum
import base64
from typing import Any


def bson_safe(value: Any) -> Any:
    """
    Recursively convert BSON types to JSON-serializable Python types.

    Handles:
    - ObjectId -> str
    - datetime -> ISO string
    - Timestamp -> {"t": seconds, "i": increment}
    - Decimal128 -> str
    - bytes -> base64 string
    - Nested dicts and lists

    Args:
        value: Value to convert (can be any BSON type)

    Returns:
        JSON-serializable Python value

    Example:
        >>> from bson import ObjectId
        >>> doc = {"_id": ObjectId(), "name": "test"}
        >>> safe = bson_safe(doc)
        >>> isinstance(safe["_id"], str)
        True
    """
    if value is None:
        return None

    if isinstance(value, ObjectId):
        return str(value)

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, Timestamp):
        return {"t": value.time, "i": value.inc}

    if isinstance(value, Decimal128):
        return str(value)

    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')

    if isinstance(value, dict):
        return {str(k): bson_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [bson_safe(v) for v in value]

    if isinstance(value, Enum):
        return value.value

    return value


def parse_document_id(raw: str) -> Any:
    """
    Interpret a document identity given as text.

    24-character hex strings become ObjectId, integer literals become int,
    anything else is kept as a string.

    Example:
        >>> parse_document_id("42")
        42
    """
    text = raw.strip()
    if len(text) == 24:
        try:
            return ObjectId(text)
        except InvalidId:
            pass
    try:
        return int(text)
    except ValueError:
        return text
