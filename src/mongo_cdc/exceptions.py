"""
Exception hierarchy for the replication engine.
"""


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class ConnectionFailedError(CDCError):
    """Source or target store unreachable."""
    pass


class StreamError(CDCError):
    """Change stream terminated with an error."""
    pass


class ApplyError(CDCError):
    """Bulk write to the target failed as a whole."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading checkpoint."""
    pass


class CheckpointLockedError(CheckpointError):
    """Another consumer already owns the checkpoint."""
    pass


class ReconciliationError(CDCError):
    """Comparison between source and target could not be completed."""
    pass
