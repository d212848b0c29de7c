"""
CDC (Change Data Capture) module for MongoDB change stream processing.
"""

from .batch import BatchAccumulator
from .checkpoint_store import (
    CheckpointStore, FileCheckpointStore, SQLCheckpointStore, CDCCheckpoint, create_checkpoint_store
)
from .models import ApplyStats, Batch, ChangeEvent, Checkpoint, OperationType
from .mongo_changestream import ChangeFeed, ChangeFeedSource, build_pipeline

__all__ = [
    "BatchAccumulator",
    "CheckpointStore",
    "FileCheckpointStore",
    "SQLCheckpointStore",
    "CDCCheckpoint",
    "create_checkpoint_store",
    "ApplyStats",
    "Batch",
    "ChangeEvent",
    "Checkpoint",
    "OperationType",
    "ChangeFeed",
    "ChangeFeedSource",
    "build_pipeline",
]
