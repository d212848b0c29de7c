"""Unit tests for HealthMonitor."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from pymongo.errors import OperationFailure

from mongo_cdc.connectors.cdc.models import Checkpoint
from mongo_cdc.exceptions import CheckpointError, ConnectionFailedError
from mongo_cdc.monitoring.health import HealthMonitor

from conftest import token

CHECKPOINT_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

SERVER_STATUS = {
    "version": "7.0.4",
    "uptime": 86400,
    "connections": {"current": 12, "available": 800},
    "host": "mongo-1",
}


class TestHealthMonitor:
    """Test health evaluation."""

    @pytest.fixture
    def connections(self):
        connections = Mock()
        connections.source_client.admin.command.return_value = SERVER_STATUS
        connections.target_client.admin.command.return_value = SERVER_STATUS
        return connections

    @pytest.fixture
    def monitor(self, settings, mock_checkpoint_store, mock_alert_sink, connections):
        mock_checkpoint_store.load.return_value = Checkpoint(resume_token=token(1), timestamp=CHECKPOINT_TIME)
        return HealthMonitor(
            settings, mock_checkpoint_store, mock_alert_sink, connect=Mock(return_value=connections)
        )

    def test_healthy(self, monitor, mock_alert_sink, connections):
        report = monitor.check(now=CHECKPOINT_TIME + timedelta(seconds=30))

        assert report.healthy
        assert report.replication.seconds_behind == 30
        assert report.replication.last_checkpoint == CHECKPOINT_TIME
        assert report.source_status == {"version": "7.0.4", "uptime": 86400, "connections": 12}
        assert report.target_status["connections"] == 12
        assert report.error is None
        mock_alert_sink.notify.assert_not_called()
        connections.close.assert_called_once()

    def test_threshold_is_exclusive(self, monitor):
        assert monitor.check(now=CHECKPOINT_TIME + timedelta(seconds=300)).healthy
        assert not monitor.check(now=CHECKPOINT_TIME + timedelta(seconds=301)).healthy

    def test_stale_alerts(self, monitor, mock_alert_sink):
        report = monitor.check(now=CHECKPOINT_TIME + timedelta(minutes=20))

        assert not report.healthy
        assert report.replication.seconds_behind == 1200
        subject, message = mock_alert_sink.notify.call_args.args
        assert subject == "CDC Health Check Failed"
        assert "1200 seconds behind" in message

    def test_no_checkpoint_is_unhealthy(self, monitor, mock_checkpoint_store, mock_alert_sink):
        mock_checkpoint_store.load.return_value = None
        report = monitor.check()

        assert not report.healthy
        assert report.replication.last_checkpoint is None
        mock_alert_sink.notify.assert_called_once()

    def test_connection_failure_is_reported(self, settings, mock_checkpoint_store, mock_alert_sink):
        monitor = HealthMonitor(
            settings, mock_checkpoint_store, mock_alert_sink,
            connect=Mock(side_effect=ConnectionFailedError("no primary"))
        )
        report = monitor.check()

        assert not report.healthy
        assert "no primary" in report.error
        assert mock_alert_sink.notify.call_args.args[0] == "CDC Health Check Error"

    def test_server_status_failure(self, monitor, connections):
        connections.target_client.admin.command.side_effect = OperationFailure("unauthorized")
        report = monitor.check()
        assert not report.healthy
        connections.close.assert_called_once()

    def test_checkpoint_failure(self, monitor, mock_checkpoint_store):
        mock_checkpoint_store.load.side_effect = CheckpointError("database unavailable")
        report = monitor.check()
        assert not report.healthy
        assert "database unavailable" in report.error

    def test_alert_failure_does_not_raise(self, monitor, mock_alert_sink):
        mock_alert_sink.notify.side_effect = RuntimeError("smtp executor gone")
        report = monitor.check(now=CHECKPOINT_TIME + timedelta(hours=1))
        assert not report.healthy

    def test_start_and_stop(self, monitor):
        monitor.start()
        try:
            assert monitor._thread is not None
            assert monitor._thread.is_alive()
            assert len(monitor._scheduler.jobs) == 1
        finally:
            monitor.stop()
        assert monitor._thread is None
        assert monitor._scheduler.jobs == []
