"""
Reconciliation between source and target collections.

Usage:
    from mongo_cdc.reconciliation import open_reconciler

    with open_reconciler(settings) as reconciler:
        reconciler.compare_document(document_id)
        reconciler.compare_window(start, end, limit=100)
"""

from .compare import (
    DiffEntry,
    DiffKind,
    DocumentComparison,
    Existence,
    Reconciler,
    WindowComparison,
    find_differences,
    open_reconciler,
    values_equal,
)

__all__ = [
    "DiffEntry",
    "DiffKind",
    "DocumentComparison",
    "Existence",
    "Reconciler",
    "WindowComparison",
    "find_differences",
    "open_reconciler",
    "values_equal",
]
