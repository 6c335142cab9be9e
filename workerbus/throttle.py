"""Leading+trailing edge throttling of broadcast triggers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional, Tuple

from .log import get_event_log

if TYPE_CHECKING:
    from .environment import Environment
    from .process.manager import Supervisor

# The admin decree flow waits one window before reading back worker state,
# so it assumes this exact value.
BROADCAST_THROTTLE_WINDOW = 0.25


class Throttle:
    """Run ``action`` at most once per ``window`` seconds.

    The first :meth:`trigger` in an idle period fires immediately. Further
    triggers inside the window are coalesced into one firing at the end of the
    window, with the arguments of the latest trigger.
    """

    def __init__(
        self,
        action: Callable[..., Any],
        window: float = BROADCAST_THROTTLE_WINDOW,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        name: Optional[str] = None,
    ) -> None:
        self._action = action
        self.window = window
        self._loop = loop
        self.name = name or getattr(action, "__name__", "throttle")
        self._last_fire: Optional[float] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._pending_args: Tuple[Any, ...] = ()
        self._logger = logging.getLogger(__name__)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def trigger(self, *args: Any) -> None:
        self._pending_args = args
        if self._pending is not None:
            return
        now = self.loop.time()
        if self._last_fire is None or now - self._last_fire >= self.window:
            self._fire()
            return
        delay = self.window - (now - self._last_fire)
        self._pending = self.loop.call_later(delay, self._fire_trailing)

    __call__ = trigger

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _fire_trailing(self) -> None:
        self._pending = None
        self._fire()

    def _fire(self) -> None:
        self._last_fire = self.loop.time()
        args, self._pending_args = self._pending_args, ()
        try:
            self._action(*args)
        except Exception:
            self._logger.exception("Throttled action %s failed", self.name)


class BroadcastThrottler:
    """The ``ENV_UPDATE`` and ``FLUSH_CACHE`` broadcast triggers."""

    def __init__(
        self,
        supervisor: "Supervisor",
        env: "Environment",
        *,
        window: float = BROADCAST_THROTTLE_WINDOW,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._supervisor = supervisor
        self._env = env
        self._log = get_event_log(__name__)
        self.env_changed = Throttle(
            self._broadcast_env, window, loop=loop, name="env_changed"
        )
        self.cache_flushed = Throttle(
            self._broadcast_cache_flush, window, loop=loop, name="cache_flushed"
        )
        self._registered = False

    def register(self) -> None:
        """Hook both triggers onto the environment's change signals."""

        if self._registered:
            return
        self._env.env_updated.reg(self.env_changed.trigger)
        self._env.cache_flushed.reg(self.cache_flushed.trigger)
        self._registered = True

    def unregister(self) -> None:
        if not self._registered:
            return
        self._env.env_updated.unreg(self.env_changed.trigger)
        self._env.cache_flushed.unreg(self.cache_flushed.trigger)
        self.env_changed.cancel()
        self.cache_flushed.cancel()
        self._registered = False

    def force_env_broadcast(self) -> None:
        """Admin side channel: push the current environment to every worker."""

        self.env_changed.trigger()

    def _broadcast_env(self) -> None:
        self._log.info("WORKER_ENV_UPDATE", "Updating HTTP workers with latest state")
        self._supervisor.broadcast("ENV_UPDATE", self._env.snapshot())

    def _broadcast_cache_flush(self) -> None:
        self._log.info("WORKER_CACHE_FLUSH", "Instructing HTTP workers to flush cache")
        self._supervisor.broadcast("FLUSH_CACHE", self._env.fresh_key)
