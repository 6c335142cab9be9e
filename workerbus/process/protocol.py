"""Messages exchanged between the primary and its workers.

The protocol is closed: a channel only ever carries the variants below.
Receivers dispatch with an ``isinstance`` chain and treat anything else as a
protocol violation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Online:
    """Worker -> primary: the worker is ready to serve traffic."""

    pid: int


@dataclass(frozen=True)
class Invoke:
    """Worker -> primary: run ``command`` and answer with one :class:`Reply`."""

    command: str
    txid: str
    payload: Any
    pid: Optional[int] = None


@dataclass(frozen=True)
class Reply:
    """Primary -> worker: outcome of the :class:`Invoke` with the same ``txid``."""

    txid: str
    error: Optional[Dict[str, Any]] = None
    value: Any = None
    pid: Optional[int] = None


@dataclass(frozen=True)
class Event:
    """Primary -> worker: fire-and-forget notification, never answered."""

    txid: str
    command: str
    payload: Any = None


@dataclass(frozen=True)
class Shutdown:
    """Primary -> worker: stop serving and exit with status 0."""

    reason: str = "shutdown"


WorkerMessage = Union[Online, Invoke]
PrimaryMessage = Union[Reply, Event, Shutdown]
Message = Union[Online, Invoke, Reply, Event, Shutdown]
MESSAGE_TYPES = (Online, Invoke, Reply, Event, Shutdown)
