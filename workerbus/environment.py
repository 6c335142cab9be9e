"""Primary-owned shared state and the snapshots handed to workers.

Workers never see the live :class:`Environment`. They receive the plain dict
returned by :meth:`Environment.snapshot` at spawn time and again on every
``ENV_UPDATE`` broadcast, so their copy may lag behind between broadcasts.
All mutation goes through the setter methods below.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .config import Config


class Signal:
    """A list of listeners fired together; one failing listener does not stop the rest."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[..., Any]] = []
        self._logger = logging.getLogger(__name__)

    def reg(self, listener: Callable[..., Any]) -> None:
        self._listeners.append(listener)

    def unreg(self, listener: Callable[..., Any]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def fire(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                self._logger.exception("Listener for %s failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)


def _new_fresh_key() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class Environment:
    config: Config
    limits: Dict[str, Any] = field(default_factory=dict)
    fresh_key: str = field(default_factory=_new_fresh_key)
    version: int = 0
    bytes_written: int = 0
    env_updated: Signal = field(default_factory=lambda: Signal("env_updated"))
    cache_flushed: Signal = field(default_factory=lambda: Signal("cache_flushed"))

    @property
    def offline_mode(self) -> bool:
        return self.config.offline_mode

    @property
    def max_workers(self) -> int:
        return self.config.max_workers

    def update(self, **changes: Any) -> None:
        """Apply ``changes`` to known runtime fields and notify listeners."""

        for key, value in changes.items():
            if key not in ("limits", "fresh_key"):
                raise AttributeError(f"Environment field {key!r} cannot be updated")
            setattr(self, key, copy.deepcopy(value))
        self.version += 1
        self.env_updated.fire()

    def touch(self) -> None:
        """Announce a change made elsewhere (e.g. by an admin decree)."""

        self.version += 1
        self.env_updated.fire()

    def flush_cache(self) -> str:
        self.fresh_key = _new_fresh_key()
        self.cache_flushed.fire()
        return self.fresh_key

    def add_bytes_written(self, count: int) -> int:
        self.bytes_written += int(count)
        return self.bytes_written

    def snapshot(self) -> Dict[str, Any]:
        """Return a detached, picklable copy of the state workers may read."""

        return {
            "version": self.version,
            "fresh_key": self.fresh_key,
            "config": self.config.to_dict(),
            "limits": copy.deepcopy(self.limits),
            "flags": {
                "offline_mode": self.config.offline_mode,
                "websocket_path": self.config.websocket_path,
                "max_workers": self.config.max_workers,
            },
        }
