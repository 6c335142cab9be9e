"""Primary-side command registry and the built-in commands."""

from __future__ import annotations

import logging
import re
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    Mapping,
    Optional,
)

from .log import get_event_log, level_for
from .plugins import PluginHost
from .quota import update_cached_limits

if TYPE_CHECKING:
    from .environment import Environment

Reply = Callable[..., None]
Handler = Callable[[Mapping[str, Any], Reply], Any]
QuotaUpdater = Callable[["Environment"], Awaitable[None]]

COMMAND_NAME = re.compile(r"[A-Z][A-Z0-9_]*")


def is_command_name(name: Any) -> bool:
    return isinstance(name, str) and COMMAND_NAME.fullmatch(name) is not None


class CommandRegistry:
    """Command name -> handler; the first registration of a name wins."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._frozen = False
        self._logger = logging.getLogger(__name__)

    def register(self, name: Any, handler: Any) -> bool:
        if self._frozen:
            raise RuntimeError("Command registry is frozen")
        if not is_command_name(name):
            self._logger.debug("Ignoring command with invalid name %r", name)
            return False
        if not callable(handler):
            self._logger.debug("Ignoring non-callable handler for %s", name)
            return False
        if name in self._handlers:
            self._logger.debug("Ignoring redefinition of command %s", name)
            return False
        self._handlers[name] = handler
        return True

    def update(self, commands: Any) -> int:
        """Register every entry of a mapping; returns how many were accepted."""

        if not isinstance(commands, Mapping):
            return 0
        return sum(1 for name, handler in commands.items() if self.register(name, handler))

    def lookup(self, name: Any) -> Optional[Handler]:
        if not isinstance(name, str):
            return None
        return self._handlers.get(name)

    def freeze(self) -> "CommandRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> Iterator[str]:
        return iter(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def builtin_commands(
    env: "Environment", quota_updater: QuotaUpdater = update_cached_limits
) -> Dict[str, Handler]:
    log = get_event_log("workerbus.commands")

    def LOG(msg: Mapping[str, Any], reply: Reply) -> None:
        tag = str(msg.get("tag", "WORKER_LOG"))
        log.log(level_for(msg.get("level")), tag, msg.get("info"))
        reply()

    async def UPDATE_QUOTA(msg: Mapping[str, Any], reply: Reply) -> None:
        try:
            await quota_updater(env)
        except Exception as exc:
            log.warn("UPDATE_QUOTA_ERR", repr(exc))
            reply(exc)
            return
        log.info("QUOTA_UPDATED", {})
        reply()

    def GET_PROFILING_DATA(msg: Mapping[str, Any], reply: Reply) -> None:
        reply(None, env.bytes_written)

    return {
        "LOG": LOG,
        "UPDATE_QUOTA": UPDATE_QUOTA,
        "GET_PROFILING_DATA": GET_PROFILING_DATA,
    }


def build_registry(
    env: "Environment",
    plugins: Optional[PluginHost] = None,
    *,
    quota_updater: QuotaUpdater = update_cached_limits,
) -> CommandRegistry:
    """Built-ins first, then plugin commands in plugin order; frozen on return."""

    registry = CommandRegistry()
    registry.update(builtin_commands(env, quota_updater))
    if plugins is not None:
        for result in plugins.add_main_commands(env):
            if result.ok:
                registry.update(result.value)
    return registry.freeze()
