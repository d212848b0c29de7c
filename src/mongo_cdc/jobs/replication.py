"""
Replication controller: connect, stream, flush, checkpoint, reconnect, drain.

Runs a single-owner loop on the calling thread. Events are pulled from the
change stream with a bounded wait, so the size trigger, the flush interval
and the shutdown flag are all checked by the same loop and only one path
ever flushes. The flush lock additionally serializes the shutdown drain
with any checkpoint write.

The checkpoint only ever advances to the token of the last event of a
batch whose bulk write returned. After a stream or write failure the feed
is reopened from that confirmed position, never from the last event
merely received.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging
import threading
import time

from tenacity import Retrying, retry_if_exception_type, stop_when_event_set, wait_fixed

from .models import ReplicationState
from ..alerts.notifier import AlertSink
from ..config.settings import Settings
from ..connectors.cdc.batch import BatchAccumulator
from ..connectors.cdc.checkpoint_store import CheckpointStore
from ..connectors.cdc.models import ApplyStats, Checkpoint
from ..connectors.cdc.mongo_changestream import ChangeFeed, ChangeFeedSource, build_pipeline
from ..destinations.mongo_applier import TargetApplier
from ..exceptions import ApplyError, CheckpointError, ConnectionFailedError, StreamError
from ..mongodb.connection import MongoConnections, connect as connect_clusters
from ..monitoring.metrics import cdc_batch_duration, cdc_errors_total, cdc_lag_seconds, cdc_state

logger = logging.getLogger(__name__)


class ReplicationController:
    """
    Drive continuous replication for one source collection.

    Thread Safety: run() owns all streaming state. request_shutdown() is the
    only method meant to be called from another thread (or a signal handler).

    Example:
        >>> controller = ReplicationController(settings, store, alerts)
        >>> controller.run()  # blocks until request_shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        checkpoint_store: CheckpointStore,
        alert_sink: AlertSink,
        connect: Callable[[Settings], MongoConnections] = connect_clusters,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        # validates the window before anything connects
        build_pipeline(start_time, end_time)

        self.settings = settings
        self.checkpoint_store = checkpoint_store
        self.alert_sink = alert_sink
        self.start_time = start_time
        self.end_time = end_time
        self.collection_name = settings.source.collection
        self.stats = ApplyStats()

        self._connect_fn = connect
        self._clock = clock
        self._shutdown = threading.Event()
        self._flush_lock = threading.RLock()
        self._state = ReplicationState.STOPPED
        self._confirmed = Checkpoint.now()
        self._last_saved = clock()

        self.accumulator = BatchAccumulator(
            batch_size=settings.batch_size,
            flush_interval=settings.flush_interval_seconds,
            clock=clock
        )
        self._connections: Optional[MongoConnections] = None
        self._feed: Optional[ChangeFeed] = None
        self._applier: Optional[TargetApplier] = None

    @property
    def state(self) -> ReplicationState:
        return self._state

    @property
    def confirmed_checkpoint(self) -> Checkpoint:
        """Position whose preceding events are known to be applied."""
        return self._confirmed

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Ask run() to drain and stop. Cancels any pending retry delay."""
        logger.info(
            f"Shutdown requested for collection {self.collection_name}",
            extra={"collection": self.collection_name, "state": self._state.value}
        )
        self._shutdown.set()

    def run(self) -> ApplyStats:
        """
        Replicate until request_shutdown() is called.

        Returns:
            Running ApplyStats totals
        """
        self._set_state(ReplicationState.STARTING)
        self._confirmed = self._initial_checkpoint()

        try:
            while not self._shutdown.is_set():
                self._set_state(ReplicationState.STARTING)
                connections = self._connect()
                if connections is None:
                    break
                self._connections = connections
                try:
                    self._stream()
                except (StreamError, ApplyError) as e:
                    self._reconnect(e)
        finally:
            self._close()
            self._set_state(ReplicationState.STOPPED)
            logger.info(
                f"Replication stopped. Totals: {self.stats.inserts} inserts, "
                f"{self.stats.updates} updates, {self.stats.errors} errors",
                extra={"collection": self.collection_name, **self.stats.as_dict()}
            )
        return self.stats

    def _initial_checkpoint(self) -> Checkpoint:
        if self.start_time is not None:
            logger.info(
                f"Starting CDC replication from {self.start_time.isoformat()}",
                extra={"collection": self.collection_name}
            )
            return Checkpoint.now()

        try:
            checkpoint = self.checkpoint_store.load()
        except CheckpointError as e:
            logger.warning(
                f"Failed to load checkpoint, starting from latest: {e}",
                extra={"collection": self.collection_name}
            )
            self._alert(
                "Checkpoint Load Failure",
                f"CDC Replication could not read its checkpoint and starts from now.\n\nError: {e}"
            )
            return Checkpoint.now()

        if checkpoint is None:
            logger.info(
                "No checkpoint found, starting from now",
                extra={"collection": self.collection_name}
            )
            return Checkpoint.now()

        logger.info(
            "Starting CDC replication from last checkpoint",
            extra={
                "collection": self.collection_name,
                "checkpoint_time": checkpoint.timestamp.isoformat(),
                "has_resume_token": checkpoint.resume_token is not None
            }
        )
        return checkpoint

    def _connect(self) -> Optional[MongoConnections]:
        """Connect with a fixed retry delay. Returns None if shut down while retrying."""
        if self._shutdown.is_set():
            return None

        retrying = Retrying(
            retry=retry_if_exception_type(ConnectionFailedError),
            wait=wait_fixed(self.settings.startup_retry_delay_seconds),
            stop=stop_when_event_set(self._shutdown),
            sleep=self._shutdown.wait,
            before_sleep=self._on_connect_failure,
            reraise=True
        )
        try:
            return retrying(self._connect_fn, self.settings)
        except ConnectionFailedError as e:
            logger.info(
                f"Gave up connecting after shutdown request: {e}",
                extra={"collection": self.collection_name}
            )
            return None

    def _on_connect_failure(self, retry_state) -> None:
        error = retry_state.outcome.exception()
        cdc_errors_total.labels(
            collection=self.collection_name,
            error_type=type(error).__name__
        ).inc()
        logger.error(
            f"CDC replication failed to start: {error}",
            extra={
                "collection": self.collection_name,
                "attempt": retry_state.attempt_number,
                "delay_seconds": self.settings.startup_retry_delay_seconds
            }
        )
        self._alert(
            "CDC Startup Failure",
            f"CDC Replication failed to start (attempt {retry_state.attempt_number}). "
            f"Retrying in {self.settings.startup_retry_delay_seconds}s.\n\nError: {error}"
        )

    def _stream(self) -> None:
        """Consume the feed until shutdown. Raises StreamError/ApplyError on failure."""
        source = ChangeFeedSource(
            self._connections.source_collection,
            max_await_time_ms=self.settings.max_await_time_ms
        )
        self._applier = TargetApplier(self._connections.target_collection)
        self._feed = source.open(
            resume_token=self._confirmed.resume_token,
            start_time=self.start_time,
            end_time=self.end_time
        )
        if self._confirmed.resume_token is None and self._feed.resume_token is not None:
            # opening position: nothing before it is pending, so a replay can start here
            self._confirmed = Checkpoint.now(self._feed.resume_token)
        self._set_state(ReplicationState.STREAMING)

        while not self._shutdown.is_set():
            event = self._feed.try_next()
            if event is not None:
                self.accumulator.add(event)

            if self.accumulator.should_flush():
                self._flush()
            elif event is None and len(self.accumulator) == 0:
                self._heartbeat()

        self._drain()

    def _flush(self) -> Optional[ApplyStats]:
        """
        Apply everything buffered and advance the checkpoint.

        Raises:
            ApplyError: If the bulk write failed; the checkpoint is unchanged
        """
        with self._flush_lock:
            batch = self.accumulator.drain()
            if not batch:
                return None

            batch_start = time.monotonic()
            try:
                stats = self._applier.apply(batch)
            except ApplyError as e:
                cdc_errors_total.labels(
                    collection=self.collection_name,
                    error_type=type(e).__name__
                ).inc()
                self._alert(
                    "Bulk Write Failure",
                    f"CDC Replication bulk write operation failed. "
                    f"{len(batch)} events will be replayed from the last checkpoint.\n\nError: {e}"
                )
                raise

            self.stats.merge(stats)
            token = batch.last_token
            if token is not None:
                self._confirmed = Checkpoint.now(token)
                self._persist(self._confirmed)

            last = batch.events[-1]
            if last.cluster_time is not None:
                lag = (datetime.now(timezone.utc) - last.cluster_time.as_datetime()).total_seconds()
                cdc_lag_seconds.labels(collection=self.collection_name).set(max(0.0, lag))
            cdc_batch_duration.labels(collection=self.collection_name).observe(time.monotonic() - batch_start)
            return stats

    def _heartbeat(self) -> None:
        """Refresh the checkpoint while idle so its age reflects liveness."""
        if self._clock() - self._last_saved < self.settings.checkpoint_interval_seconds:
            return
        with self._flush_lock:
            if len(self.accumulator) == 0 and self._feed is not None and self._feed.resume_token:
                # every event before the post-batch token has been applied or filtered
                self._confirmed = Checkpoint.now(self._feed.resume_token)
            else:
                self._confirmed = Checkpoint.now(self._confirmed.resume_token)
            self._persist(self._confirmed)

    def _persist(self, checkpoint: Checkpoint) -> None:
        """Best-effort save: failures are alerted and replication continues."""
        self._last_saved = self._clock()
        if checkpoint.resume_token is None:
            # never overwrite a stored position with "no position"
            return
        try:
            self.checkpoint_store.save(checkpoint)
        except CheckpointError as e:
            logger.error(
                f"Failed to save checkpoint: {e}",
                extra={"collection": self.collection_name}
            )
            self._alert(
                "Checkpoint Save Failure",
                "Failed to save CDC checkpoint. This may cause duplication of records on restart."
                f"\n\nError: {e}"
            )

    def _reconnect(self, error: Exception) -> None:
        self._set_state(ReplicationState.RECONNECTING)
        logger.error(
            f"Replication interrupted: {error}",
            extra={"collection": self.collection_name, "error_type": type(error).__name__}
        )

        if isinstance(error, StreamError) and len(self.accumulator) > 0:
            try:
                self._flush()
            except ApplyError as e:
                logger.error(
                    f"Best-effort flush before reconnect failed: {e}",
                    extra={"collection": self.collection_name}
                )

        dropped = self.accumulator.discard()
        if dropped:
            logger.warning(
                f"Discarded {dropped} unapplied events; they will be replayed from the checkpoint",
                extra={"collection": self.collection_name}
            )

        self._close()
        if isinstance(error, StreamError):
            self._alert(
                "Change Stream Error",
                f"CDC change stream encountered an error. Reconnecting in "
                f"{self.settings.reconnect_delay_seconds}s.\n\nError: {error}"
            )

        if self._shutdown.wait(self.settings.reconnect_delay_seconds):
            logger.info(
                "Shutdown requested while waiting to reconnect",
                extra={"collection": self.collection_name}
            )

    def _drain(self) -> None:
        """Flush the buffer and write the final checkpoint, holding the flush lock throughout."""
        self._set_state(ReplicationState.DRAINING)
        with self._flush_lock:
            if len(self.accumulator) > 0:
                logger.info(
                    f"Flushing {len(self.accumulator)} remaining events",
                    extra={"collection": self.collection_name}
                )
                try:
                    self._flush()
                except ApplyError as e:
                    logger.error(
                        f"Error flushing final buffer: {e}",
                        extra={"collection": self.collection_name}
                    )
                    self.accumulator.discard()

            self._persist(Checkpoint.now(self._confirmed.resume_token))
            logger.info("Saved final checkpoint", extra={"collection": self.collection_name})

    def _close(self) -> None:
        if self._feed is not None:
            self._feed.close()
            self._feed = None
        if self._connections is not None:
            self._connections.close()
            self._connections = None
        self._applier = None

    def _alert(self, subject: str, message: str) -> None:
        try:
            self.alert_sink.notify(subject, message)
        except Exception as e:
            # alert delivery never affects replication
            logger.error(f"Failed to send alert: {e}", extra={"subject": subject})

    def _set_state(self, state: ReplicationState) -> None:
        if state != self._state:
            logger.info(
                f"Replication state {self._state.value} -> {state.value}",
                extra={"collection": self.collection_name}
            )
        self._state = state
        for candidate in ReplicationState:
            cdc_state.labels(
                collection=self.collection_name,
                state=candidate.value
            ).set(1 if candidate == state else 0)
