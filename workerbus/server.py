"""Startup sequence of the primary process."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any, Callable, Mapping, Optional

from .commands import CommandRegistry, QuotaUpdater, build_registry
from .config import Config
from .environment import Environment
from .errors import ConfigError
from .log import get_event_log
from .plugins import PluginHost, import_object, load_plugins
from .process import Supervisor
from .process.child import WorkerEntry
from .quota import update_cached_limits
from .throttle import BroadcastThrottler

RECOMMENDED_PYTHON = (3, 11)

log = get_event_log(__name__)


class Primary:
    """Everything the primary process owns, wired together.

    Construction validates the configuration and builds the command registry;
    :meth:`start` launches the worker pool.
    """

    def __init__(
        self,
        config: Config,
        *,
        plugins: Optional[Mapping[str, Any]] = None,
        entry: Optional[WorkerEntry] = None,
        quota_updater: QuotaUpdater = update_cached_limits,
    ) -> None:
        self.config = config
        self.origin = config.validate_origin()
        self.env = Environment(config)
        if plugins is None:
            plugins = load_plugins(config.plugins)
        self.plugins = PluginHost(plugins)
        self.plugins.initialize(self.env, "main")
        self.registry: CommandRegistry = build_registry(
            self.env, self.plugins, quota_updater=quota_updater
        )
        if entry is None and config.worker_entry:
            try:
                entry = import_object(config.worker_entry)
            except (ImportError, AttributeError) as exc:
                raise ConfigError(
                    f"Cannot import worker entry {config.worker_entry!r}: {exc}"
                ) from exc
            if not callable(entry):
                raise ConfigError(f"Worker entry {config.worker_entry!r} is not callable")
        self.entry = entry
        self.quota_updater = quota_updater
        self.supervisor: Optional[Supervisor] = None
        self.throttler: Optional[BroadcastThrottler] = None

    async def start(self, limit: Optional[int] = None) -> Supervisor:
        log.info("WEBSERVER_LISTENING", {"origin": self.origin})
        if not os.path.isdir(self.config.customize_dir):
            log.info(
                "NO_CUSTOMIZE_FOLDER",
                {"message": f"Create {self.config.customize_dir!r} to customize workers"},
            )
        try:
            await self.quota_updater(self.env)
        except Exception as exc:
            log.warn("UPDATE_QUOTA_ERR", repr(exc))
        self.supervisor = Supervisor(
            self.registry,
            self.env,
            self.plugins,
            entry=self.entry,
            reply_to_unknown_commands=self.config.reply_to_unknown_commands,
            relaunch_delay=self.config.relaunch_delay,
        )
        self.throttler = BroadcastThrottler(self.supervisor, self.env)
        self.throttler.register()
        if limit is None:
            limit = self.config.max_workers
        handles = await self.supervisor.start(limit)
        log.info("HTTP_WORKERS_ONLINE", {"count": len(handles)})
        if sys.version_info[:2] < RECOMMENDED_PYTHON:
            log.warn(
                "PYTHON_OLD_VERSION",
                {
                    "message": "Python %s or later is recommended"
                    % ".".join(map(str, RECOMMENDED_PYTHON)),
                    "currentVersion": sys.version.split()[0],
                },
            )
        return self.supervisor

    def broadcast(self, command: str, payload: Any = None) -> list:
        if self.supervisor is None:
            return []
        return self.supervisor.broadcast(command, payload)

    async def aclose(self) -> None:
        if self.throttler is not None:
            self.throttler.unregister()
        if self.supervisor is not None:
            await self.supervisor.aclose()


async def run_primary(
    config: Config,
    *,
    limit: Optional[int] = None,
    stop: Optional[asyncio.Event] = None,
    on_started: Optional[Callable[[Primary], Any]] = None,
) -> None:
    """Run until ``stop`` is set or SIGINT/SIGTERM arrives."""

    primary = Primary(config)
    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        await primary.start(limit)
        if on_started is not None:
            on_started(primary)
        await stop.wait()
        log.info("SHUTTING_DOWN", {})
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await primary.aclose()
