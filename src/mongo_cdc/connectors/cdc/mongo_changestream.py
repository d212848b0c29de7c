"""
MongoDB change stream source.

Opens a resumable change stream filtered to inserts and updates and exposes
it as a sequence of ChangeEvent. A ChangeFeed is single use: after it closes
or fails, call ChangeFeedSource.open() again with the last confirmed
resume token.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
import logging

from bson import Timestamp
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .models import ChangeEvent, REPLICATED_OPERATIONS
from ...exceptions import StreamError
from ...monitoring.metrics import cdc_events_received, cdc_errors_total

logger = logging.getLogger(__name__)


def to_timestamp(value: datetime) -> Timestamp:
    """Cluster time for a wall-clock instant (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return Timestamp(int(value.timestamp()), 0)


def to_end_timestamp(value: datetime) -> Timestamp:
    """Last cluster time inside the second of value (inclusive upper bound)."""
    return Timestamp(to_timestamp(value).time, 2 ** 32 - 1)


def build_pipeline(
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Change stream pipeline: inserts and updates only, optionally bounded in time.

    Raises:
        ValueError: If end_time is given without start_time, or precedes it
    """
    match: Dict[str, Any] = {
        "operationType": {"$in": [op.value for op in REPLICATED_OPERATIONS]}
    }
    if end_time is not None and start_time is None:
        raise ValueError("end_time requires start_time")
    if start_time is not None:
        cluster_time: Dict[str, Any] = {"$gte": to_timestamp(start_time)}
        if end_time is not None:
            if end_time < start_time:
                raise ValueError("end_time must not precede start_time")
            cluster_time["$lte"] = to_end_timestamp(end_time)
        match["clusterTime"] = cluster_time
    return [{"$match": match}]


class ChangeFeed:
    """
    One open change stream.

    try_next() waits at most max_await_time_ms for an event and returns None
    when nothing arrived; iteration blocks until the next event. Transport
    failures raise StreamError. Events of types other than insert/update
    are dropped here and never returned.
    """

    def __init__(self, stream, collection_name: str):
        self._stream = stream
        self.collection_name = collection_name
        self._closed = False

    @property
    def resume_token(self) -> Optional[Dict[str, Any]]:
        """Post-batch resume token of the underlying stream."""
        return getattr(self._stream, 'resume_token', None)

    @property
    def closed(self) -> bool:
        return self._closed

    def try_next(self) -> Optional[ChangeEvent]:
        """
        Next event, or None if none arrived within the await window.

        Raises:
            StreamError: If the stream was closed or failed
        """
        if self._closed:
            raise StreamError("Change stream already closed")
        if not self._stream.alive:
            self._closed = True
            raise StreamError("Change stream is no longer alive")

        try:
            change = self._stream.try_next()
        except PyMongoError as e:
            cdc_errors_total.labels(
                collection=self.collection_name,
                error_type=type(e).__name__
            ).inc()
            logger.error(
                f"Change stream error: {e}",
                extra={"collection": self.collection_name, "error_type": type(e).__name__}
            )
            self.close()
            raise StreamError(f"Change stream failed: {e}") from e

        if change is None:
            return None

        event = ChangeEvent.from_change(change)
        cdc_events_received.labels(
            collection=self.collection_name,
            operation=event.operation_type.value
        ).inc()

        if event.operation_type not in REPLICATED_OPERATIONS:
            logger.debug(
                f"Dropping {event.operation_type.value} event",
                extra={"collection": self.collection_name}
            )
            return None
        return event

    def __iter__(self) -> Iterator[ChangeEvent]:
        while not self._closed:
            event = self.try_next()
            if event is not None:
                yield event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(
                f"Error closing change stream: {e}",
                extra={"collection": self.collection_name}
            )

    def __enter__(self) -> "ChangeFeed":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ChangeFeedSource:
    """
    Opens change streams on the source collection.

    Example:
        >>> source = ChangeFeedSource(db['users'], max_await_time_ms=1000)
        >>> with source.open(resume_token=checkpoint.resume_token) as feed:
        ...     for event in feed:
        ...         handle(event)
    """

    def __init__(self, collection: Collection, max_await_time_ms: int = 1000, batch_size: int = 100):
        self.collection = collection
        self.collection_name = collection.name
        self.max_await_time_ms = max_await_time_ms
        self.batch_size = batch_size

    def open(
        self,
        resume_token: Optional[Dict[str, Any]] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> ChangeFeed:
        """
        Open a change stream.

        A resume token takes precedence over start_time as the starting
        position; start_time/end_time still bound which events match.

        Raises:
            StreamError: If the stream cannot be opened
            ValueError: If the time bounds are inconsistent
        """
        pipeline = build_pipeline(start_time, end_time)
        stream_options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": self.batch_size,
            "max_await_time_ms": self.max_await_time_ms,
        }
        if resume_token:
            stream_options["resume_after"] = resume_token
        elif start_time is not None:
            stream_options["start_at_operation_time"] = to_timestamp(start_time)

        logger.info(
            f"Opening change stream for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "has_resume_token": resume_token is not None,
                "start_time": start_time.isoformat() if start_time else None,
                "end_time": end_time.isoformat() if end_time else None,
            }
        )

        try:
            stream = self.collection.watch(pipeline=pipeline, **stream_options)
        except PyMongoError as e:
            cdc_errors_total.labels(
                collection=self.collection_name,
                error_type=type(e).__name__
            ).inc()
            raise StreamError(f"Failed to open change stream: {e}") from e

        return ChangeFeed(stream, self.collection_name)
