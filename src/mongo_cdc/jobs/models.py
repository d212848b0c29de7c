"""
Replication job states.
"""

from enum import Enum


class ReplicationState(str, Enum):
    """Controller lifecycle.

    STARTING -> STREAMING -> RECONNECTING -> STREAMING ... -> DRAINING -> STOPPED
    """
    STARTING = "starting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    DRAINING = "draining"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ReplicationState.DRAINING, ReplicationState.STOPPED)
