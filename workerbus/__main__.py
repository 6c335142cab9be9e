"""Run the workerbus primary process: ``python -m workerbus``."""

from __future__ import annotations

import argparse
import asyncio
import sys

from . import __version__
from .config import load_config
from .errors import ConfigError, InvalidOrigin
from .log import configure_logging, get_event_log


def _worker_limit(value: str) -> int:
    limit = int(value)
    if limit < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return limit


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="workerbus", description=__doc__)
    parser.add_argument(
        "-c",
        "--config",
        help="YAML configuration file (default: $WORKERBUS_CONFIG or workerbus.yaml)",
    )
    parser.add_argument(
        "-w",
        "--workers",
        type=_worker_limit,
        default=None,
        help="Worker limit, overrides max_workers (0 means one per CPU)",
    )
    parser.add_argument(
        "-q", "--quiet", dest="quiet", help="Quiet mode", action="store_true"
    )
    parser.add_argument("--version", action="version", version=__version__)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    from .server import run_primary

    args = _parse_args(argv)
    log = get_event_log("workerbus")
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        configure_logging(quiet=args.quiet)
        log.error("INVALID_CONFIG", str(exc))
        return 1
    configure_logging(config.log_level, quiet=args.quiet)
    try:
        asyncio.run(run_primary(config, limit=args.workers))
    except InvalidOrigin as exc:
        log.error(
            "INVALID_ORIGIN",
            {"httpUnsafeOrigin": config.http_unsafe_origin, "error": str(exc)},
        )
        return 1
    except ConfigError as exc:
        log.error("INVALID_CONFIG", str(exc))
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
