"""Worker processes and the message bus connecting them to the primary."""

from .channel import Channel, ConnectionClosed
from .child import WorkerChannel
from .manager import Supervisor, WorkerHandle, WorkerState
from .protocol import Event, Invoke, Online, Reply, Shutdown

__all__ = [
    "Channel",
    "ConnectionClosed",
    "Event",
    "Invoke",
    "Online",
    "Reply",
    "Shutdown",
    "Supervisor",
    "WorkerChannel",
    "WorkerHandle",
    "WorkerState",
]
