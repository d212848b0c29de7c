"""Unit tests for source/target reconciliation."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from bson import ObjectId, Timestamp
from pymongo.errors import OperationFailure

from mongo_cdc.exceptions import ConnectionFailedError, ReconciliationError
from mongo_cdc.reconciliation import (
    DiffKind, Reconciler, find_differences, open_reconciler, values_equal
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 1, 1, tzinfo=timezone.utc)


def oplog_with(entries):
    oplog = Mock()
    oplog.find.return_value.sort.return_value = iter(entries)
    return oplog


class TestValuesEqual:
    """Test structural equality rules."""

    def test_key_order_ignored(self):
        assert values_equal({"a": 1, "b": {"x": 1, "y": 2}}, {"b": {"y": 2, "x": 1}, "a": 1})

    def test_list_order_matters(self):
        assert not values_equal([1, 2], [2, 1])

    def test_bool_never_equals_int(self):
        assert not values_equal(True, 1)
        assert not values_equal(0, False)
        assert values_equal(True, True)

    def test_nested_bool_vs_int(self):
        assert not values_equal({"flags": [True]}, {"flags": [1]})

    def test_scalar_vs_container(self):
        assert not values_equal({"a": 1}, "{'a': 1}")
        assert not values_equal([1], 1)

    def test_bson_values(self):
        oid = ObjectId("65a1b2c3d4e5f60718293a4b")
        assert values_equal(oid, ObjectId("65a1b2c3d4e5f60718293a4b"))


class TestFindDifferences:

    def test_identical(self):
        assert find_differences({"_id": 1, "a": 1}, {"_id": 1, "a": 1}) == []

    def test_identity_field_ignored(self):
        assert find_differences({"_id": 1, "a": 1}, {"_id": "1", "a": 1}) == []

    def test_kinds(self):
        diffs = find_differences(
            {"_id": 1, "name": "a", "only_source": 1},
            {"_id": 1, "name": "b", "only_target": 2}
        )
        by_field = {d.field: d for d in diffs}
        assert by_field["name"].kind == DiffKind.VALUE_MISMATCH
        assert by_field["name"].source_value == "a"
        assert by_field["name"].target_value == "b"
        assert by_field["only_source"].kind == DiffKind.MISSING_IN_TARGET
        assert by_field["only_target"].kind == DiffKind.MISSING_IN_SOURCE
        assert [d.field for d in diffs] == ["name", "only_source", "only_target"]


class TestReconciler:
    """Test document and window comparison."""

    @pytest.fixture
    def reconciler(self, source_collection, target_collection):
        return Reconciler(source_collection, target_collection, oplog_with([]), "AUTH.users")

    def test_identical_documents(self, reconciler, source_collection, target_collection):
        source_collection.insert_one({"_id": 1, "name": "a", "tags": ["x"]})
        target_collection.insert_one({"_id": 1, "tags": ["x"], "name": "a"})
        result = reconciler.compare_document(1)
        assert result.exists.source and result.exists.target
        assert result.differences == []
        assert not result.has_differences

    def test_missing_in_target(self, reconciler, source_collection):
        source_collection.insert_one({"_id": 1, "name": "a"})
        result = reconciler.compare_document(1)
        assert (result.exists.source, result.exists.target) == (True, False)
        assert result.message == "Document not found in target"
        assert result.differences == []
        assert result.has_differences

    def test_missing_in_source(self, reconciler, target_collection):
        target_collection.insert_one({"_id": 1, "name": "a"})
        result = reconciler.compare_document(1)
        assert (result.exists.source, result.exists.target) == (False, True)
        assert result.message == "Document not found in source"

    def test_missing_in_both(self, reconciler):
        result = reconciler.compare_document(99)
        assert (result.exists.source, result.exists.target) == (False, False)
        assert not result.has_differences

    def test_bool_vs_int_is_a_difference(self, reconciler, source_collection, target_collection):
        source_collection.insert_one({"_id": 1, "active": True})
        target_collection.insert_one({"_id": 1, "active": 1})
        result = reconciler.compare_document(1)
        assert [d.field for d in result.differences] == ["active"]

    def test_query_failure(self):
        source = Mock()
        source.find_one.side_effect = OperationFailure("unauthorized")
        reconciler = Reconciler(source, Mock(), Mock(), "AUTH.users")
        with pytest.raises(ReconciliationError, match="unauthorized"):
            reconciler.compare_document(1)

    def test_candidate_ids_query(self):
        oplog = oplog_with([])
        Reconciler(Mock(), Mock(), oplog, "AUTH.users").candidate_ids(START, END, 10)

        query = oplog.find.call_args.args[0]
        direct, transactions = query["$or"]
        assert direct == {"ns": "AUTH.users", "op": {"$in": ["i", "u"]}}
        assert transactions["op"] == "c"
        assert transactions["o.applyOps"]["$elemMatch"]["ns"] == "AUTH.users"
        assert query["ts"]["$gte"] == Timestamp(int(START.timestamp()), 0)
        assert query["ts"]["$lte"].time == int(END.timestamp())
        oplog.find.return_value.sort.assert_called_once_with("$natural", 1)

    def test_candidate_ids_dedupe_and_limit(self):
        oplog = oplog_with([
            {"op": "i", "o": {"_id": "a"}},
            {"op": "u", "o2": {"_id": "a"}},
            {"op": "u", "o2": {"_id": "b"}},
            {"op": "u", "o2": {}},
            {"op": "i", "o": {"_id": "c"}},
            {"op": "i", "o": {"_id": "d"}},
        ])
        ids = Reconciler(Mock(), Mock(), oplog, "AUTH.users").candidate_ids(START, END, 3)
        assert ids == ["a", "b", "c"]

    def test_candidate_ids_include_transaction_writes(self):
        oplog = oplog_with([
            {"op": "i", "o": {"_id": "a"}},
            {"op": "c", "ns": "admin.$cmd", "o": {"applyOps": [
                {"op": "u", "ns": "AUTH.users", "o2": {"_id": "b"}},
                {"op": "i", "ns": "AUTH.sessions", "o": {"_id": "s1"}},
                {"op": "d", "ns": "AUTH.users", "o": {"_id": "c"}},
                {"op": "i", "ns": "AUTH.users", "o": {"_id": "a"}},
                {"op": "i", "ns": "AUTH.users", "o": {"_id": "d"}},
            ]}},
        ])
        ids = Reconciler(Mock(), Mock(), oplog, "AUTH.users").candidate_ids(START, END, 10)
        assert ids == ["a", "b", "d"]

    def test_compare_window(self, source_collection, target_collection):
        source_collection.insert_many([{"_id": "a", "v": 1}, {"_id": "b", "v": 2}])
        target_collection.insert_many([{"_id": "a", "v": 1}, {"_id": "b", "v": 3}])
        oplog = oplog_with([
            {"op": "i", "o": {"_id": "a"}},
            {"op": "u", "o2": {"_id": "b"}},
            {"op": "u", "o2": {"_id": "a"}},
        ])
        reconciler = Reconciler(source_collection, target_collection, oplog, "AUTH.users")

        result = reconciler.compare_window(START, END, limit=100)

        assert result.total_documents_compared == 2
        assert result.documents_with_differences == 1
        assert [d.document_id for d in result.details] == ["a", "b"]
        assert result.details[1].differences[0].field == "v"

    def test_compare_window_validates_arguments(self, reconciler):
        with pytest.raises(ValueError, match="limit"):
            reconciler.compare_window(START, END, limit=0)
        with pytest.raises(ValueError, match="must not precede"):
            reconciler.compare_window(END, START)

    def test_oplog_failure(self):
        oplog = Mock()
        oplog.find.side_effect = OperationFailure("not authorized on local")
        with pytest.raises(ReconciliationError):
            Reconciler(Mock(), Mock(), oplog, "AUTH.users").compare_window(START, END)


class TestOpenReconciler:

    def test_closes_connections(self, settings, source_collection, target_collection):
        connections = Mock()
        connections.source_collection = source_collection
        connections.target_collection = target_collection
        connections.oplog_collection = oplog_with([])

        with open_reconciler(settings, connect=Mock(return_value=connections)) as reconciler:
            assert reconciler.namespace == "AUTH.users"
        connections.close.assert_called_once()

    def test_connection_failure(self, settings):
        connect = Mock(side_effect=ConnectionFailedError("unreachable"))
        with pytest.raises(ReconciliationError, match="unreachable"):
            with open_reconciler(settings, connect=connect):
                pass
