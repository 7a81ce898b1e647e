"""CLI entry point for ephemeral_redis.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``ephemeral-redis = "ephemeral_redis.cli:main"``.
Loads an optional YAML config file, applies command-line and environment
overrides, starts a supervised redis-server, prints its port and keeps it
running until interrupted.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys
import threading
from typing import Any

import yaml

from ephemeral_redis.errors import EphemeralRedisError, StartupError
from ephemeral_redis.models import ReadinessSpec, ServerConfig, apply_env_overrides
from ephemeral_redis.supervisor import ProcessSupervisor, configure_logging


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser``.
    """
    parser = argparse.ArgumentParser(
        prog="ephemeral-redis",
        description="Run a disposable redis-server that is cleaned up on exit.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional ServerConfig YAML file.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="TCP port (0 picks a free port).",
    )
    parser.add_argument(
        "--arg",
        dest="args",
        action="append",
        default=None,
        metavar="ARG",
        help="Extra redis-server argument, e.g. '--appendonly yes'. Repeatable.",
    )
    parser.add_argument(
        "--keep-dirs",
        action="store_true",
        help="Do not delete temporary directories on exit.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the server to become ready.",
    )
    return parser


def _load_yaml(path: str) -> dict[str, Any]:
    """Load a YAML config file as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)
    return data


def build_config(args: argparse.Namespace) -> ServerConfig:
    """Merge the YAML file, command-line flags and environment into a config."""
    data: dict[str, Any] = _load_yaml(args.config) if args.config is not None else {}
    if args.port is not None:
        data["port"] = args.port
    if args.args:
        data["args"] = [*data.get("args", []), *args.args]
    if args.keep_dirs:
        data["delete_on_shutdown"] = False
    return apply_env_overrides(ServerConfig(**data))


def _print_startup_summary(supervisor: ProcessSupervisor) -> None:
    sep = "=" * 60
    print(sep)
    print("ephemeral-redis")
    print(sep)
    print(f"  Port:        {supervisor.get_port()}")
    print(f"  PID:         {supervisor.pid}")
    print(f"  Data dir:    {supervisor.directories.data}")
    print(f"  Socket:      {supervisor.config.socket}")
    print(f"  Cleanup:     {'yes' if supervisor.config.delete_on_shutdown else 'no'}")
    print(sep, flush=True)


def main(argv: list[str] | None = None, stop_event: threading.Event | None = None) -> int:
    """Entry point for the ephemeral-redis CLI.

    Args:
        argv: Arguments to parse, or ``None`` for ``sys.argv``.
        stop_event: Event that ends the run when set; by default the run
            lasts until Ctrl-C.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
        configure_logging(config)
        readiness = ReadinessSpec(timeout_seconds=args.timeout) if args.timeout else None
        supervisor = ProcessSupervisor.create(config, readiness)
        supervisor.start()
    except StartupError as exc:
        print(f"Startup error: {exc}", file=sys.stderr)
        print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1
    except (EphemeralRedisError, OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _print_startup_summary(supervisor)
    event = stop_event if stop_event is not None else threading.Event()
    try:
        while not event.wait(0.5):
            if not supervisor.is_alive():
                print("redis-server exited unexpectedly", file=sys.stderr)
                return 1
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
