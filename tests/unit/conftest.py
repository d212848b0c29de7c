"""Shared fixtures for unit tests."""

from typing import Any, Callable, Dict, List, Optional
import time

import mongomock
import pytest
from bson import Timestamp
from unittest.mock import Mock

from mongo_cdc.alerts.notifier import AlertSink
from mongo_cdc.config.settings import (
    AlertSettings, CheckpointSettings, LogSettings, Settings, SourceSettings, TargetSettings
)
from mongo_cdc.connectors.cdc.checkpoint_store import CheckpointStore

BASE_TIME = 1_700_000_000


def token(n: int) -> Dict[str, str]:
    return {"_data": f"82{n:08d}"}


def make_change(
    n: int,
    operation: str,
    document_id: Any,
    full_document: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Raw change stream document with position n."""
    change = {
        "_id": token(n),
        "operationType": operation,
        "documentKey": {"_id": document_id},
        "clusterTime": Timestamp(BASE_TIME + n, 1),
        "ns": {"db": "AUTH", "coll": "users"},
    }
    if operation in ("insert", "update", "replace"):
        change["fullDocument"] = full_document
    return change


class FakeChangeStream:
    """
    Stand-in for pymongo's ChangeStream.

    items are returned by try_next() in order; an Exception item is raised
    instead. Once exhausted, on_exhausted is called (once) and try_next()
    keeps returning None.
    """

    def __init__(
        self,
        items: List[Any],
        initial_token: Optional[Dict[str, Any]] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
        idle_seconds: float = 0.0
    ):
        self._items = list(items)
        self.resume_token = initial_token
        self.on_exhausted = on_exhausted
        self.idle_seconds = idle_seconds
        self.alive = True
        self.closed = False

    def try_next(self):
        if not self._items:
            if self.on_exhausted is not None:
                callback, self.on_exhausted = self.on_exhausted, None
                callback()
            if self.idle_seconds:
                time.sleep(self.idle_seconds)
            return None

        item = self._items.pop(0)
        if isinstance(item, Exception):
            self.alive = False
            raise item
        if item is None:
            if self.idle_seconds:
                time.sleep(self.idle_seconds)
            return None
        self.resume_token = item["_id"]
        return item

    def close(self):
        self.alive = False
        self.closed = True


class UpsertingCollection:
    """Target collection whose bulk_write replays ReplaceOne upserts on a mongomock collection."""

    def __init__(self, collection):
        self.collection = collection
        self.name = collection.name
        self.bulk_write_calls = 0

    def bulk_write(self, requests, ordered=True):
        self.bulk_write_calls += 1
        for request in requests:
            self.collection.replace_one(request._filter, request._doc, upsert=request._upsert)

    def find_one(self, *args, **kwargs):
        return self.collection.find_one(*args, **kwargs)


@pytest.fixture
def settings(tmp_path):
    """Settings with fast timers and a checkpoint under tmp_path."""
    return Settings(
        batch_size=3,
        flush_interval_seconds=60,
        max_await_time_ms=10,
        reconnect_delay_seconds=0.01,
        startup_retry_delay_seconds=0.01,
        checkpoint_interval_seconds=60,
        health_check_interval_seconds=60,
        health_stale_threshold_seconds=300,
        source=SourceSettings(uri="mongodb://source", database="AUTH", collection="users"),
        target=TargetSettings(uri="mongodb://target", database="REPORT", collection="users"),
        checkpoint=CheckpointSettings(backend="file", path=str(tmp_path / "checkpoint.json")),
        alert=AlertSettings(enabled=False),
        log=LogSettings(file=None, json_format=False),
    )


@pytest.fixture
def mock_checkpoint_store():
    store = Mock(spec=CheckpointStore)
    store.load.return_value = None
    return store


@pytest.fixture
def mock_alert_sink():
    return Mock(spec=AlertSink)


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def target_collection(mongo_client):
    return mongo_client["REPORT"]["users"]


@pytest.fixture
def source_collection(mongo_client):
    return mongo_client["AUTH"]["users"]
