"""Exception types and transport-safe error serialization."""

from __future__ import annotations

import traceback
from typing import Any, Dict, Mapping, Optional


class WorkerBusError(RuntimeError):
    """Base class for workerbus failures."""


class ConfigError(WorkerBusError):
    """Raised when the primary configuration is unusable."""


class InvalidOrigin(ConfigError):
    """``httpUnsafeOrigin`` is missing or not an absolute URL."""


class ProcessError(WorkerBusError):
    """Raised for worker process lifecycle failures."""


class DuplicateTransaction(WorkerBusError):
    """Raised when a transaction id is registered while still outstanding."""


class UnknownCommand(WorkerBusError):
    """Reported to a worker that invoked a command nobody handles."""

    code = "EUNKNOWNCOMMAND"

    def __init__(self, command: str) -> None:
        super().__init__(f"Unhandled command {command!r}")
        self.command = command


class CommandError(WorkerBusError):
    """Raised in a worker when the primary replied with an error."""

    def __init__(
        self,
        message: str,
        *,
        name: Optional[str] = None,
        code: Any = None,
        stack: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.name = name
        self.code = code
        self.stack = stack

    @classmethod
    def from_serialized(cls, error: Mapping[str, Any]) -> "CommandError":
        return cls(
            str(error.get("message", "")),
            name=error.get("name"),
            code=error.get("code"),
            stack=error.get("stack"),
        )


def serialize_error(err: Any) -> Optional[Dict[str, Any]]:
    """Convert ``err`` into a plain dict that survives pickling.

    ``None`` stays ``None``. Exceptions keep their class name, message,
    ``code`` (or ``errno``) attribute and formatted traceback. Anything else
    is reported by its string form.
    """

    if err is None:
        return None
    if isinstance(err, BaseException):
        code = getattr(err, "code", None)
        if code is None:
            code = getattr(err, "errno", None)
        if code is not None and not isinstance(code, (str, int, float, bool)):
            code = str(code)
        stack = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        return {
            "name": type(err).__name__,
            "message": str(err),
            "code": code,
            "stack": stack,
        }
    if isinstance(err, Mapping):
        return {
            "name": str(err.get("name", "Error")),
            "message": str(err.get("message", "")),
            "code": err.get("code"),
            "stack": err.get("stack"),
        }
    return {"name": "Error", "message": str(err), "code": None, "stack": None}
