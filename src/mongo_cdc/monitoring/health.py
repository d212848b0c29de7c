"""
Replication health checks.

A check opens its own connections, reads cluster status from both sides and
compares the age of the stored checkpoint against the staleness threshold.
The periodic runner is a schedule.Scheduler driven by one daemon thread
that the service starts and stops.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import logging
import threading

import schedule
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from pymongo.errors import PyMongoError

from ..alerts.notifier import AlertSink
from ..config.settings import Settings
from ..connectors.cdc.checkpoint_store import CheckpointStore
from ..exceptions import CDCError
from ..mongodb.connection import MongoConnections, connect as connect_clusters, server_status
from .metrics import health_seconds_behind, health_status

logger = logging.getLogger(__name__)


class ReplicationLag(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    last_checkpoint: Optional[datetime] = None
    seconds_behind: Optional[float] = None


class HealthReport(BaseModel):
    """Health check output."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    healthy: bool
    source_status: Optional[Dict[str, Any]] = None
    target_status: Optional[Dict[str, Any]] = None
    replication: ReplicationLag = ReplicationLag()
    error: Optional[str] = None


class HealthMonitor:
    """Staleness check against the checkpoint store."""

    def __init__(
        self,
        settings: Settings,
        checkpoint_store: CheckpointStore,
        alert_sink: AlertSink,
        connect: Callable[[Settings], MongoConnections] = connect_clusters
    ):
        self.settings = settings
        self.checkpoint_store = checkpoint_store
        self.alert_sink = alert_sink
        self._connect_fn = connect
        self._scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_stale(self, seconds_behind: float) -> bool:
        return seconds_behind > self.settings.health_stale_threshold_seconds

    def check(self, now: Optional[datetime] = None) -> HealthReport:
        """Run one health check. Never raises; failures produce an unhealthy report."""
        now = now or datetime.now(timezone.utc)
        connections: Optional[MongoConnections] = None
        try:
            connections = self._connect_fn(self.settings)
            source = server_status(connections.source_client)
            target = server_status(connections.target_client)
            checkpoint = self.checkpoint_store.load()
        except (CDCError, PyMongoError) as e:
            logger.error(f"Health check failed: {e}")
            health_status.set(0)
            self._alert(
                "CDC Health Check Error",
                f"CDC Replication health check encountered an error.\n\nError: {e}"
            )
            return HealthReport(healthy=False, error=str(e))
        finally:
            if connections is not None:
                connections.close()

        if checkpoint is None:
            report = HealthReport(
                healthy=False,
                source_status=source,
                target_status=target,
                error="No checkpoint recorded"
            )
            logger.warning("Health check: UNHEALTHY, no checkpoint recorded")
            health_status.set(0)
            self._alert(
                "CDC Health Check Failed",
                "CDC Replication health check failed. No checkpoint has been recorded yet."
            )
            return report

        seconds_behind = (now - checkpoint.timestamp).total_seconds()
        healthy = not self.is_stale(seconds_behind)
        report = HealthReport(
            healthy=healthy,
            source_status=source,
            target_status=target,
            replication=ReplicationLag(
                last_checkpoint=checkpoint.timestamp,
                seconds_behind=seconds_behind
            )
        )

        health_status.set(1 if healthy else 0)
        health_seconds_behind.set(seconds_behind)
        logger.info(
            f"Health check: {'HEALTHY' if healthy else 'UNHEALTHY'}, "
            f"last checkpoint {seconds_behind:.1f} seconds ago"
        )
        if not healthy:
            self._alert(
                "CDC Health Check Failed",
                f"CDC Replication health check failed. Replication appears to be "
                f"{seconds_behind:.0f} seconds behind."
            )
        return report

    def start(self) -> None:
        """Run check() every health_check_interval_seconds on a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._scheduler.every(self.settings.health_check_interval_seconds).seconds.do(self.check)
        self._thread = threading.Thread(target=self._run, name="cdc-health", daemon=True)
        self._thread.start()
        logger.info(
            "Health monitor started",
            extra={"interval_seconds": self.settings.health_check_interval_seconds}
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._scheduler.clear()
        logger.info("Health monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._scheduler.run_pending()
            idle = self._scheduler.idle_seconds
            wait = 1.0 if idle is None else min(max(idle, 0.0), 1.0)
            self._stop_event.wait(wait)

    def _alert(self, subject: str, message: str) -> None:
        try:
            self.alert_sink.notify(subject, message)
        except Exception as e:
            logger.error(f"Failed to send alert: {e}", extra={"subject": subject})
