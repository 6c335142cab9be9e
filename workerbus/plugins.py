"""Plugin hook dispatch with per-plugin fault isolation.

A plugin is any object; it may provide ``initialize(env, phase)``,
``add_main_commands(env)`` and ``on_worker_closed(kind, pid)``. Every call
goes through :meth:`PluginHost.call_hook`, which reports per plugin whether
the hook was present and what it returned or raised, and never propagates.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

HOOKS = ("initialize", "add_main_commands", "on_worker_closed")


@dataclass(frozen=True)
class HookResult:
    plugin: str
    present: bool
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.present and self.error is None


class PluginHost:
    def __init__(self, plugins: Optional[Mapping[str, Any]] = None) -> None:
        self._plugins: Dict[str, Any] = dict(plugins or {})
        self._logger = logging.getLogger(__name__)

    def __iter__(self) -> Iterator[str]:
        return iter(self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._plugins)

    def call_hook(self, hook: str, *args: Any) -> List[HookResult]:
        if hook not in HOOKS:
            raise ValueError(f"Unknown plugin hook {hook!r}")
        results = []
        for name, plugin in self._plugins.items():
            method = getattr(plugin, hook, None)
            if not callable(method):
                results.append(HookResult(name, present=False))
                continue
            try:
                value = method(*args)
            except Exception as exc:
                self._logger.debug(
                    "PLUGIN_HOOK_ERROR %s.%s: %r", name, hook, exc, exc_info=True
                )
                results.append(HookResult(name, present=True, error=exc))
            else:
                results.append(HookResult(name, present=True, value=value))
        return results

    def initialize(self, env: Any, phase: str) -> List[HookResult]:
        return self.call_hook("initialize", env, phase)

    def add_main_commands(self, env: Any) -> List[HookResult]:
        return self.call_hook("add_main_commands", env)

    def on_worker_closed(self, kind: str, pid: Optional[int]) -> List[HookResult]:
        return self.call_hook("on_worker_closed", kind, pid)


def import_object(path: str) -> Any:
    """Import ``package.module`` or ``package.module:attribute``."""

    module_name, _, attribute = path.partition(":")
    obj = importlib.import_module(module_name)
    for part in filter(None, attribute.split(".")):
        obj = getattr(obj, part)
    return obj


def load_plugins(spec: Mapping[str, str]) -> Dict[str, Any]:
    """Resolve configured plugin import paths; broken plugins are skipped."""

    logger = logging.getLogger(__name__)
    plugins: Dict[str, Any] = {}
    for name, path in spec.items():
        try:
            plugins[name] = import_object(path)
        except Exception:
            logger.warning("PLUGIN_LOAD_ERROR %s (%s)", name, path, exc_info=True)
    return plugins
