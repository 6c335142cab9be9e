"""Default worker entry point.

Request handling itself lives outside this package; the default worker keeps
the bus-facing state every HTTP worker needs: the environment copy, a local
cache keyed by the primary's fresh key, and forwarding of its log lines.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from .process.child import WorkerChannel

logger = logging.getLogger(__name__)


class WorkerCache:
    """Per-worker cache that is dropped whenever the fresh key changes."""

    def __init__(self, fresh_key: Any) -> None:
        self.fresh_key = fresh_key
        self._entries: Dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def flush(self, fresh_key: Any) -> None:
        self.fresh_key = fresh_key
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def http_worker_main(channel: WorkerChannel) -> None:
    cache = WorkerCache(channel.environment.get("fresh_key"))

    def on_flush(fresh_key: Any) -> None:
        cache.flush(fresh_key)
        logger.debug("Worker %s flushed its cache (%s)", channel.pid, fresh_key)

    def on_env_update(snapshot: Dict[str, Any]) -> None:
        logger.debug(
            "Worker %s received environment version %s",
            channel.pid,
            snapshot.get("version"),
        )

    channel.on_event("FLUSH_CACHE", on_flush)
    channel.on_event("ENV_UPDATE", on_env_update)
    await channel.notify_online()
    await channel.invoke(
        "LOG", {"level": "debug", "tag": "HTTP_WORKER_ONLINE", "info": {"pid": channel.pid}}
    )
