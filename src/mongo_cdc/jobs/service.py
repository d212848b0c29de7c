"""
Replication service: wires settings, stores, alerts, health and the controller
into one process lifecycle.
"""

from datetime import datetime
from typing import Callable, Optional
import logging
import signal
import threading

from prometheus_client import start_http_server

from .replication import ReplicationController
from ..alerts.notifier import AlertSink, create_alert_sink
from ..config.settings import Settings
from ..connectors.cdc.checkpoint_store import CheckpointStore, create_checkpoint_store
from ..connectors.cdc.models import ApplyStats
from ..mongodb.connection import MongoConnections, connect as connect_clusters
from ..monitoring.health import HealthMonitor

logger = logging.getLogger(__name__)


class ReplicationService:
    """
    Long-running replication process.

    Example:
        >>> service = ReplicationService(load_settings())
        >>> service.run()  # returns after SIGINT/SIGTERM
    """

    def __init__(
        self,
        settings: Settings,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        alert_sink: Optional[AlertSink] = None,
        connect: Callable[[Settings], MongoConnections] = connect_clusters
    ):
        self.settings = settings
        self.alert_sink = alert_sink or create_alert_sink(settings.alert)
        self.checkpoint_store = checkpoint_store or create_checkpoint_store(settings)
        self.controller = ReplicationController(
            settings,
            self.checkpoint_store,
            self.alert_sink,
            connect=connect,
            start_time=start_time,
            end_time=end_time
        )
        self.health_monitor = HealthMonitor(
            settings,
            self.checkpoint_store,
            self.alert_sink,
            connect=connect
        )
        self._metrics_server = None
        self._original_sigterm = None
        self._original_sigint = None

    def run(self) -> ApplyStats:
        """
        Run replication until a shutdown signal or stop().

        Raises:
            CheckpointLockedError: If another process owns the checkpoint
        """
        self._setup_signal_handlers()
        try:
            self.checkpoint_store.acquire()
            try:
                self._start_metrics_server()
                self.health_monitor.start()
                logger.info(
                    f"Starting CDC replication for {self.settings.source.namespace}",
                    extra={
                        "collection": self.settings.source.collection,
                        "target_database": self.settings.target.database,
                        "checkpoint_backend": self.settings.checkpoint.backend,
                    }
                )
                return self.controller.run()
            finally:
                self.health_monitor.stop()
                self._stop_metrics_server()
                self.checkpoint_store.close()
        finally:
            self._restore_signal_handlers()
            self.alert_sink.close()

    def stop(self) -> None:
        self.controller.request_shutdown()

    def _start_metrics_server(self) -> None:
        port = self.settings.metrics_port
        if port is None:
            return
        self._metrics_server, _ = start_http_server(port)
        logger.info(f"Prometheus metrics served on port {port}")

    def _stop_metrics_server(self) -> None:
        if self._metrics_server is not None:
            self._metrics_server.shutdown()
            self._metrics_server = None

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
            self._original_sigterm = None
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None
