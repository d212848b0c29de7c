from .models import ReplicationState
from .replication import ReplicationController
from .service import ReplicationService

__all__ = [
    "ReplicationState",
    "ReplicationController",
    "ReplicationService",
]
