"""
Data model shared by the change stream, batching, apply and checkpoint layers.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import bson
from bson import Timestamp, json_util
from bson.json_util import JSONOptions, JSONMode


_CHECKPOINT_JSON_OPTIONS = JSONOptions(json_mode=JSONMode.CANONICAL, tz_aware=True, tzinfo=timezone.utc)


class OperationType(str, Enum):
    """Change stream operation types the engine distinguishes."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "OperationType":
        try:
            return cls(raw)
        except ValueError:
            return cls.OTHER


REPLICATED_OPERATIONS = (OperationType.INSERT, OperationType.UPDATE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_to_json(token: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Resume token as plain JSON (canonical extended JSON for BSON types)."""
    if token is None:
        return None
    return json.loads(json_util.dumps(token, json_options=_CHECKPOINT_JSON_OPTIONS))


def token_from_json(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Inverse of token_to_json."""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise TypeError("resume token must be an object or null")
    return json_util.loads(json.dumps(data), json_options=_CHECKPOINT_JSON_OPTIONS)


@dataclass(frozen=True)
class ChangeEvent:
    """
    One change stream event.

    position_token is the event's resume token (the change document's _id).
    """
    operation_type: OperationType
    document_key: Dict[str, Any]
    full_document: Optional[Dict[str, Any]]
    position_token: Optional[Dict[str, Any]]
    cluster_time: Optional[Timestamp] = None
    observed_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a raw change stream document."""
        cluster_time = change.get("clusterTime")
        observed_at = change.get("wallTime")
        if observed_at is None and isinstance(cluster_time, Timestamp):
            observed_at = cluster_time.as_datetime()
        if observed_at is None:
            observed_at = _utcnow()
        elif observed_at.tzinfo is None:
            observed_at = observed_at.replace(tzinfo=timezone.utc)

        return cls(
            operation_type=OperationType.parse(change.get("operationType")),
            document_key=dict(change.get("documentKey") or {}),
            full_document=change.get("fullDocument"),
            position_token=change.get("_id"),
            cluster_time=cluster_time,
            observed_at=observed_at,
        )

    @property
    def document_id(self) -> Any:
        if "_id" in self.document_key:
            return self.document_key["_id"]
        if self.full_document is not None:
            return self.full_document.get("_id")
        return None

    @property
    def identity(self) -> bytes:
        """Hashable identity of the affected document, stable for compound ids."""
        return bson.encode({"_id": self.document_id})


@dataclass(frozen=True)
class Checkpoint:
    """Last confirmed replay position."""
    resume_token: Optional[Dict[str, Any]]
    timestamp: datetime

    @classmethod
    def now(cls, resume_token: Optional[Dict[str, Any]] = None) -> "Checkpoint":
        return cls(resume_token=resume_token, timestamp=_utcnow())

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to the checkpoint file format.

        Resume tokens are written as canonical extended JSON so BSON types
        inside them survive the round trip.
        """
        return {
            "resumeToken": token_to_json(self.resume_token),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        """
        Parse the checkpoint file format.

        Raises:
            ValueError: If the timestamp is missing or malformed
            TypeError: If the resume token is not an object
        """
        token = token_from_json(data.get("resumeToken"))
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(resume_token=token, timestamp=timestamp)


@dataclass
class Batch:
    """Events taken from the accumulator for one flush, in arrival order."""
    events: List[ChangeEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[ChangeEvent]:
        return iter(self.events)

    @property
    def last_token(self) -> Optional[Dict[str, Any]]:
        for event in reversed(self.events):
            if event.position_token is not None:
                return event.position_token
        return None

    def collapsed(self) -> Dict[bytes, ChangeEvent]:
        """
        Latest event per document.

        Events from one feed arrive in position order, so the last one seen
        for an identity carries its highest position token. Only that final
        state may be written: the bulk write is unordered.
        """
        latest: Dict[bytes, ChangeEvent] = {}
        for event in self.events:
            if event.operation_type not in REPLICATED_OPERATIONS:
                continue
            identity = event.identity
            # re-insert so dict order follows each document's last change
            latest.pop(identity, None)
            latest[identity] = event
        return latest


@dataclass
class ApplyStats:
    """Counters for one applied batch, or running totals."""
    inserts: int = 0
    updates: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserts + self.updates

    def merge(self, other: "ApplyStats") -> None:
        self.inserts += other.inserts
        self.updates += other.updates
        self.errors += other.errors
        self.skipped += other.skipped

    def __add__(self, other: "ApplyStats") -> "ApplyStats":
        return ApplyStats(
            inserts=self.inserts + other.inserts,
            updates=self.updates + other.updates,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "inserts": self.inserts,
            "updates": self.updates,
            "errors": self.errors,
            "skipped": self.skipped,
        }
