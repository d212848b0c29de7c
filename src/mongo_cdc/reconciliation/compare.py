"""
Out-of-band comparison of source and target documents.

Runs on its own connections and never touches the checkpoint or the live
replication loop. Candidate documents for a time window come from the
source oplog (local.oplog.rs), not from the change stream.
"""

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
import logging

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..config.settings import Settings
from ..connectors.cdc.mongo_changestream import to_end_timestamp, to_timestamp
from ..exceptions import ConnectionFailedError, ReconciliationError
from ..mongodb.connection import MongoConnections, connect as connect_clusters

logger = logging.getLogger(__name__)

IDENTITY_FIELD = "_id"
NOT_FOUND_IN_SOURCE = "Document not found in source"
NOT_FOUND_IN_TARGET = "Document not found in target"


class CamelModel(BaseModel):
    """JSON output uses camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiffKind(str, Enum):
    MISSING_IN_SOURCE = "missing-in-source"
    MISSING_IN_TARGET = "missing-in-target"
    VALUE_MISMATCH = "value-mismatch"


class DiffEntry(CamelModel):
    """One field that differs between source and target."""
    field: str
    source_value: Any = None
    target_value: Any = None
    kind: DiffKind


class Existence(CamelModel):
    source: bool
    target: bool


class DocumentComparison(CamelModel):
    """Result of comparing one document."""
    document_id: Any
    exists: Existence
    differences: List[DiffEntry] = Field(default_factory=list)
    message: Optional[str] = None
    source_document: Optional[Dict[str, Any]] = None
    target_document: Optional[Dict[str, Any]] = None

    @property
    def has_differences(self) -> bool:
        if not self.exists.source and not self.exists.target:
            return False
        if self.exists.source != self.exists.target:
            return True
        return bool(self.differences)


class WindowComparison(CamelModel):
    """Result of comparing every document modified inside a time window."""
    start_time: datetime
    end_time: datetime
    limit: int
    total_documents_compared: int
    documents_with_differences: int
    details: List[DocumentComparison] = Field(default_factory=list)


def values_equal(left: Any, right: Any) -> bool:
    """
    Deep structural equality.

    Dict key order is ignored, list order is not, and booleans never equal
    numbers (True == 1 in Python but not in BSON).
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left.keys()) != set(right.keys()):
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (Mapping, list, tuple)) or isinstance(right, (Mapping, list, tuple)):
        return False
    return left == right


def find_differences(source: Mapping[str, Any], target: Mapping[str, Any]) -> List[DiffEntry]:
    """Field-by-field diff of two documents, ignoring the identity field."""
    differences: List[DiffEntry] = []
    keys = list(source.keys()) + [key for key in target.keys() if key not in source]

    for key in keys:
        if key == IDENTITY_FIELD:
            continue
        if key not in source:
            differences.append(DiffEntry(
                field=key, source_value=None, target_value=target[key],
                kind=DiffKind.MISSING_IN_SOURCE
            ))
        elif key not in target:
            differences.append(DiffEntry(
                field=key, source_value=source[key], target_value=None,
                kind=DiffKind.MISSING_IN_TARGET
            ))
        elif not values_equal(source[key], target[key]):
            differences.append(DiffEntry(
                field=key, source_value=source[key], target_value=target[key],
                kind=DiffKind.VALUE_MISMATCH
            ))
    return differences


class Reconciler:
    """
    Compare documents between source and target.

    Example:
        >>> with open_reconciler(settings) as reconciler:
        ...     result = reconciler.compare_document(ObjectId("..."))
    """

    def __init__(
        self,
        source_collection: Collection,
        target_collection: Collection,
        oplog_collection: Collection,
        namespace: str
    ):
        self.source_collection = source_collection
        self.target_collection = target_collection
        self.oplog_collection = oplog_collection
        self.namespace = namespace

    @classmethod
    def from_connections(cls, connections: MongoConnections, settings: Settings) -> "Reconciler":
        return cls(
            source_collection=connections.source_collection,
            target_collection=connections.target_collection,
            oplog_collection=connections.oplog_collection,
            namespace=settings.source.namespace
        )

    def compare_document(self, document_id: Any) -> DocumentComparison:
        """
        Compare one document by identity.

        Raises:
            ReconciliationError: If either store cannot be queried
        """
        try:
            source_doc = self.source_collection.find_one({IDENTITY_FIELD: document_id})
            target_doc = self.target_collection.find_one({IDENTITY_FIELD: document_id})
        except PyMongoError as e:
            logger.error(
                f"Document comparison failed: {e}",
                extra={"document_id": str(document_id)}
            )
            raise ReconciliationError(f"Document comparison failed for {document_id!r}: {e}") from e

        if source_doc is None:
            return DocumentComparison(
                document_id=document_id,
                exists=Existence(source=False, target=target_doc is not None),
                message=NOT_FOUND_IN_SOURCE,
                target_document=target_doc
            )

        if target_doc is None:
            return DocumentComparison(
                document_id=document_id,
                exists=Existence(source=True, target=False),
                message=NOT_FOUND_IN_TARGET,
                source_document=source_doc
            )

        return DocumentComparison(
            document_id=document_id,
            exists=Existence(source=True, target=True),
            differences=find_differences(source_doc, target_doc),
            source_document=source_doc,
            target_document=target_doc
        )

    def candidate_ids(self, start_time: datetime, end_time: datetime, limit: int) -> List[Any]:
        """
        Distinct ids inserted or updated in [start_time, end_time], oldest first, at most limit.

        Writes committed inside multi-document transactions appear in the
        oplog as a single `applyOps` command entry; its inner operations on
        this namespace are candidates too.

        Raises:
            ReconciliationError: If the oplog cannot be queried
        """
        write_ops = {"$in": ["i", "u"]}
        query = {
            "ts": {"$gte": to_timestamp(start_time), "$lte": to_end_timestamp(end_time)},
            "$or": [
                {"ns": self.namespace, "op": write_ops},
                {"op": "c", "o.applyOps": {"$elemMatch": {"ns": self.namespace, "op": write_ops}}},
            ],
        }
        ids: List[Any] = []
        seen = set()
        try:
            cursor = self.oplog_collection.find(
                query,
                projection={"op": 1, "ns": 1, "o._id": 1, "o2._id": 1, "o.applyOps": 1}
            ).sort("$natural", 1)
            for entry in cursor:
                for document_id in self._entry_ids(entry):
                    key = repr(document_id)
                    if key in seen:
                        continue
                    seen.add(key)
                    ids.append(document_id)
                    if len(ids) >= limit:
                        return ids
        except PyMongoError as e:
            logger.error(
                f"Oplog query failed: {e}",
                extra={"namespace": self.namespace}
            )
            raise ReconciliationError(f"Oplog query failed: {e}") from e
        return ids

    def _entry_ids(self, entry: Mapping[str, Any]) -> Iterator[Any]:
        op = entry.get("op")
        if op == "c":
            for inner in (entry.get("o") or {}).get("applyOps") or []:
                if inner.get("ns") == self.namespace:
                    yield from self._entry_ids(inner)
            return
        if op == "i":
            document_id = (entry.get("o") or {}).get(IDENTITY_FIELD)
        elif op == "u":
            document_id = (entry.get("o2") or {}).get(IDENTITY_FIELD)
        else:
            return
        if document_id is not None:
            yield document_id

    def compare_window(self, start_time: datetime, end_time: datetime, limit: int = 100) -> WindowComparison:
        """
        Compare every document modified in the window, up to limit distinct documents.

        Raises:
            ValueError: If limit is not positive or the window is inverted
            ReconciliationError: If a store cannot be queried
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        if end_time < start_time:
            raise ValueError("end_time must not precede start_time")

        details = [
            self.compare_document(document_id)
            for document_id in self.candidate_ids(start_time, end_time, limit)
        ]
        result = WindowComparison(
            start_time=start_time,
            end_time=end_time,
            limit=limit,
            total_documents_compared=len(details),
            documents_with_differences=sum(1 for d in details if d.has_differences),
            details=details
        )
        logger.info(
            f"Compared {result.total_documents_compared} documents, "
            f"{result.documents_with_differences} with differences",
            extra={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()}
        )
        return result


@contextmanager
def open_reconciler(
    settings: Settings,
    connect: Callable[[Settings], MongoConnections] = connect_clusters
) -> Iterator[Reconciler]:
    """
    Reconciler on dedicated connections, closed on exit.

    Raises:
        ReconciliationError: If the clusters cannot be reached
    """
    try:
        connections = connect(settings)
    except ConnectionFailedError as e:
        raise ReconciliationError(str(e)) from e
    try:
        yield Reconciler.from_connections(connections, settings)
    finally:
        connections.close()
