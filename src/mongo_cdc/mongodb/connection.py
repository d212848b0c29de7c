from dataclasses import dataclass
from typing import Any, Dict
import logging

import pymongo
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..config.settings import Settings
from ..exceptions import ConnectionFailedError

logger = logging.getLogger(__name__)


def _get_client(mongo_uri: str, server_selection_timeout_ms: int) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Looking up pymongo.MongoClient at call time allows tests to monkeypatch
    `pymongo.MongoClient` (e.g., with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(mongo_uri, serverSelectionTimeoutMS=server_selection_timeout_ms)


@dataclass
class MongoConnections:
    """Open clients and collections for one source/target pair."""
    source_client: pymongo.MongoClient
    target_client: pymongo.MongoClient
    source_collection: Collection
    target_collection: Collection

    @property
    def oplog_collection(self) -> Collection:
        return self.source_client['local']['oplog.rs']

    def close(self) -> None:
        """Close both clients. Errors are logged, never raised."""
        for name, client in (("source", self.source_client), ("target", self.target_client)):
            try:
                client.close()
            except PyMongoError as e:
                logger.error(f"Failed to close {name} connection: {e}")
        logger.info("MongoDB connections closed")

    def __enter__(self) -> "MongoConnections":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def connect(settings: Settings) -> MongoConnections:
    """Connect to source and target and verify both respond to ping.

    Raises:
        ConnectionFailedError: If either cluster is unreachable, including
            SRV/DNS resolution failures raised while building a client
    """
    source_client = None
    target_client = None
    try:
        source_client = _get_client(settings.source.uri, settings.source.server_selection_timeout_ms)
        target_client = _get_client(settings.target.uri, settings.target.server_selection_timeout_ms)
        source_client.admin.command('ping')
        target_client.admin.command('ping')
    except PyMongoError as e:
        for client in (source_client, target_client):
            if client is not None:
                client.close()
        logger.error(f"Failed to connect to MongoDB: {e}")
        raise ConnectionFailedError(f"Failed to connect to MongoDB clusters: {e}") from e

    logger.info(
        "Connected to source and target MongoDB clusters",
        extra={"source_namespace": settings.source.namespace,
               "target_namespace": f"{settings.target.database}.{settings.target.collection}"}
    )
    return MongoConnections(
        source_client=source_client,
        target_client=target_client,
        source_collection=source_client[settings.source.database][settings.source.collection],
        target_collection=target_client[settings.target.database][settings.target.collection],
    )


def server_status(client: pymongo.MongoClient) -> Dict[str, Any]:
    """Version, uptime and current connection count from serverStatus."""
    status = client.admin.command({'serverStatus': 1})
    return {
        "version": status.get("version"),
        "uptime": status.get("uptime"),
        "connections": (status.get("connections") or {}).get("current"),
    }
