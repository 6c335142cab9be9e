"""Primary configuration, loaded from YAML."""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import yaml

from .errors import ConfigError, InvalidOrigin

CONFIG_ENV = "WORKERBUS_CONFIG"
DEFAULT_CONFIG_FILE = "workerbus.yaml"


@dataclass
class Config:
    http_unsafe_origin: Optional[str] = None
    http_address: str = "localhost"
    http_port: int = 3000
    http_safe_port: Optional[int] = None
    max_workers: int = 0
    log_level: str = "info"
    plugins: Dict[str, str] = field(default_factory=dict)
    worker_entry: str = "workerbus.worker:http_worker_main"
    reply_to_unknown_commands: bool = True
    relaunch_delay: float = 0.0
    offline_mode: bool = False
    websocket_path: Optional[str] = None
    custom_limits: Dict[str, Any] = field(default_factory=dict)
    default_storage_limit: int = 50 * 1024 * 1024
    customize_dir: str = "customize"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _snake_case(str(key))
            if name not in known:
                raise ConfigError(f"Unknown configuration key {key!r}")
            kwargs[name] = value
        config = cls(**kwargs)
        config.check_types()
        return config

    def check_types(self) -> None:
        try:
            self.max_workers = int(self.max_workers or 0)
            self.http_port = int(self.http_port)
            self.relaunch_delay = float(self.relaunch_delay or 0.0)
            self.default_storage_limit = int(self.default_storage_limit)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid numeric configuration value: {exc}") from exc
        if self.max_workers < 0:
            raise ConfigError("max_workers must be >= 0")
        if self.relaunch_delay < 0:
            raise ConfigError("relaunch_delay must be >= 0")
        if not isinstance(self.plugins, Mapping):
            raise ConfigError("plugins must be a mapping of name to import path")
        if not isinstance(self.custom_limits, Mapping):
            raise ConfigError("custom_limits must be a mapping")

    def validate_origin(self) -> str:
        """Return the normalized origin, or raise :class:`InvalidOrigin`."""

        origin = self.http_unsafe_origin
        if not isinstance(origin, str) or not origin.strip():
            raise InvalidOrigin("No 'httpUnsafeOrigin' provided")
        parts = urlsplit(origin.strip())
        if not parts.scheme or not parts.netloc:
            raise InvalidOrigin(f"Invalid 'httpUnsafeOrigin': {origin!r}")
        return f"{parts.scheme}://{parts.netloc}/"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def load_config(path: Optional[str] = None) -> Config:
    """Read ``path`` (or ``$WORKERBUS_CONFIG``, or ``workerbus.yaml``)."""

    path = path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file {path!r} not found") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {path!r}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path!r} must contain a mapping")
    return Config.from_mapping(data)
