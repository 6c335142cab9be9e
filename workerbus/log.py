"""Tagged event logging on top of the standard :mod:`logging` module."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Optional, TextIO

_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def level_for(name: Any) -> int:
    """Map a level name such as ``"warn"`` to a :mod:`logging` level."""

    if isinstance(name, str):
        return _LEVELS.get(name.lower(), logging.INFO)
    return logging.INFO


def _render(info: Any) -> str:
    if isinstance(info, str):
        return info
    try:
        return json.dumps(info, default=repr, sort_keys=True)
    except (TypeError, ValueError):
        return repr(info)


class EventLog:
    """Emit ``TAG {info}`` records with ``tag`` and ``info`` attached."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def log(self, level: int, tag: str, info: Any = None) -> None:
        if not self.logger.isEnabledFor(level):
            return
        if info is None:
            self.logger.log(level, "%s", tag, extra={"tag": tag, "info": None})
        else:
            self.logger.log(
                level, "%s %s", tag, _render(info), extra={"tag": tag, "info": info}
            )

    def debug(self, tag: str, info: Any = None) -> None:
        self.log(logging.DEBUG, tag, info)

    verbose = debug

    def info(self, tag: str, info: Any = None) -> None:
        self.log(logging.INFO, tag, info)

    def warn(self, tag: str, info: Any = None) -> None:
        self.log(logging.WARNING, tag, info)

    def error(self, tag: str, info: Any = None) -> None:
        self.log(logging.ERROR, tag, info)


def get_event_log(name: str) -> EventLog:
    return EventLog(logging.getLogger(name))


def configure_logging(
    level: str = "info", *, stream: Optional[TextIO] = None, quiet: bool = False
) -> None:
    """Install a root handler for command-line use."""

    root = logging.getLogger()
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s")
    )
    root.handlers[:] = [handler]
    root.setLevel(logging.ERROR if quiet else level_for(level))
