"""Unit tests for MongoDB connection setup."""

from unittest.mock import MagicMock, Mock, patch

import pytest
from pymongo.errors import ConfigurationError, ServerSelectionTimeoutError

from mongo_cdc.exceptions import ConnectionFailedError
from mongo_cdc.mongodb.connection import connect

DNS_FAILURE = "The DNS query name does not exist: _mongodb._tcp.cluster0.does-not-exist.invalid."


class TestConnect:
    """Test that every client failure surfaces as ConnectionFailedError."""

    def test_connects_and_pings_both(self, settings):
        source, target = MagicMock(), MagicMock()
        with patch("mongo_cdc.mongodb.connection._get_client", side_effect=[source, target]):
            connections = connect(settings)

        source.admin.command.assert_called_once_with('ping')
        target.admin.command.assert_called_once_with('ping')
        assert connections.source_client is source
        assert connections.target_client is target

    def test_srv_lookup_failure_is_connection_failure(self, settings):
        with patch("mongo_cdc.mongodb.connection._get_client", side_effect=ConfigurationError(DNS_FAILURE)):
            with pytest.raises(ConnectionFailedError, match="DNS query name"):
                connect(settings)

    def test_target_client_failure_closes_source(self, settings):
        source = Mock()
        with patch(
            "mongo_cdc.mongodb.connection._get_client",
            side_effect=[source, ConfigurationError(DNS_FAILURE)]
        ):
            with pytest.raises(ConnectionFailedError):
                connect(settings)

        source.close.assert_called_once()
        source.admin.command.assert_not_called()

    def test_ping_failure_closes_both(self, settings):
        source, target = Mock(), Mock()
        target.admin.command.side_effect = ServerSelectionTimeoutError("no primary")
        with patch("mongo_cdc.mongodb.connection._get_client", side_effect=[source, target]):
            with pytest.raises(ConnectionFailedError):
                connect(settings)

        source.close.assert_called_once()
        target.close.assert_called_once()
