"""Worker pool supervisor and primary/worker command bus."""

from .commands import CommandRegistry, build_registry
from .config import Config, load_config
from .environment import Environment
from .errors import CommandError, ConfigError, WorkerBusError
from .process import Supervisor, WorkerChannel, WorkerHandle, WorkerState
from .throttle import BROADCAST_THROTTLE_WINDOW, BroadcastThrottler, Throttle
from .transactions import TransactionTracker

__version__ = "0.1.0"

__all__ = [
    "BROADCAST_THROTTLE_WINDOW",
    "BroadcastThrottler",
    "CommandError",
    "CommandRegistry",
    "Config",
    "ConfigError",
    "Environment",
    "Supervisor",
    "Throttle",
    "TransactionTracker",
    "WorkerBusError",
    "WorkerChannel",
    "WorkerHandle",
    "WorkerState",
    "build_registry",
    "load_config",
]
