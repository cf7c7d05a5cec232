"""Live progress broadcasting for long-running operations.

Observers join an operation and receive every snapshot published for it.
Late joiners get the current snapshot first; terminal snapshots stay
available for a retention period after the last observer leaves.
"""

from .models import ProgressEvent, ProgressSnapshot
from .transport import Transport, TransportError, QueueTransport, NullTransport
from .hub import BroadcastHub, HubStats

__all__ = [
    "ProgressEvent",
    "ProgressSnapshot",
    "Transport",
    "TransportError",
    "QueueTransport",
    "NullTransport",
    "BroadcastHub",
    "HubStats",
]
