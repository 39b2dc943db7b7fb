from .client import CoordinationClient, HttpCoordinationClient, NullCoordinationClient, idempotency_key
from .tracker import ExecutionTracker

__all__ = [
    "CoordinationClient",
    "ExecutionTracker",
    "HttpCoordinationClient",
    "NullCoordinationClient",
    "idempotency_key",
]
