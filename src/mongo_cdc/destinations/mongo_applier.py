"""
Idempotent apply of collapsed batches to the target collection.
"""

from typing import List
import logging

from pymongo import ReplaceOne
from pymongo.collection import Collection
from pymongo.errors import BulkWriteError, PyMongoError

from ..connectors.cdc.models import ApplyStats, Batch, ChangeEvent, OperationType
from ..exceptions import ApplyError
from ..monitoring.metrics import cdc_apply_results, cdc_errors_total

logger = logging.getLogger(__name__)


class TargetApplier:
    """
    Write batches to the target as unordered bulk upserts.

    Every collapsed entry becomes one ReplaceOne keyed by _id with
    upsert=True, so inserts and updates are the same write and replaying an
    event leaves the target unchanged.
    """

    def __init__(self, collection: Collection):
        self.collection = collection
        self.collection_name = collection.name

    def apply(self, batch: Batch) -> ApplyStats:
        """
        Apply a batch.

        Args:
            batch: Events drained from the accumulator

        Returns:
            ApplyStats for this batch

        Raises:
            ApplyError: If the bulk write fails as a whole (nothing confirmed)
        """
        stats = ApplyStats()
        entries: List[ChangeEvent] = []
        operations: List[ReplaceOne] = []

        for event in batch.collapsed().values():
            if event.full_document is None:
                stats.skipped += 1
                logger.warning(
                    "Skipping change without full document",
                    extra={
                        "collection": self.collection_name,
                        "document_id": str(event.document_id),
                        "operation_type": event.operation_type.value,
                    }
                )
                continue
            entries.append(event)
            operations.append(
                ReplaceOne({"_id": event.document_id}, event.full_document, upsert=True)
            )

        if not operations:
            return stats

        failed = set()
        try:
            self.collection.bulk_write(operations, ordered=False)
        except BulkWriteError as e:
            for write_error in e.details.get("writeErrors", []):
                index = write_error.get("index")
                if index is None or index >= len(entries):
                    continue
                failed.add(index)
                event = entries[index]
                cdc_errors_total.labels(
                    collection=self.collection_name,
                    error_type="WriteError"
                ).inc()
                logger.error(
                    f"Upsert failed: {write_error.get('errmsg')}",
                    extra={
                        "collection": self.collection_name,
                        "document_id": str(event.document_id),
                        "operation_type": event.operation_type.value,
                        "code": write_error.get("code"),
                    }
                )
            for concern_error in e.details.get("writeConcernErrors", []):
                cdc_errors_total.labels(
                    collection=self.collection_name,
                    error_type="WriteConcernError"
                ).inc()
                logger.error(
                    f"Write concern error: {concern_error.get('errmsg')}",
                    extra={
                        "collection": self.collection_name,
                        "code": concern_error.get("code"),
                        "operations": len(operations),
                    }
                )
            if not failed:
                # write concern errors only: nothing is known to be applied
                raise ApplyError(f"Bulk write failed: {e}") from e
        except PyMongoError as e:
            cdc_errors_total.labels(
                collection=self.collection_name,
                error_type=type(e).__name__
            ).inc()
            logger.error(
                f"Bulk write operation failed: {e}",
                extra={"collection": self.collection_name, "operations": len(operations)}
            )
            raise ApplyError(f"Bulk write failed: {e}") from e

        for index, event in enumerate(entries):
            if index in failed:
                stats.errors += 1
            elif event.operation_type == OperationType.INSERT:
                stats.inserts += 1
            else:
                stats.updates += 1

        cdc_apply_results.labels(collection=self.collection_name, result="insert").inc(stats.inserts)
        cdc_apply_results.labels(collection=self.collection_name, result="update").inc(stats.updates)
        cdc_apply_results.labels(collection=self.collection_name, result="error").inc(stats.errors)

        logger.info(
            f"Processed batch: {stats.inserts} inserts, {stats.updates} updates, {stats.errors} errors",
            extra={
                "collection": self.collection_name,
                "events": len(batch),
                "upserts": len(operations),
                "skipped": stats.skipped,
            }
        )
        return stats
