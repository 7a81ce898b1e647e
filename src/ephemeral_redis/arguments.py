"""Launch argument construction for redis-server.

Built-in flags are convenience defaults; explicit user arguments always
win. A built-in is dropped when a user argument names it, so
``--logfile=/x`` and ``--logfile /x`` both suppress ``--logfile``. The
flags in ``RESERVED_FLAGS`` are rejected by ``ServerConfig`` instead.
"""

from __future__ import annotations

import os
import shlex
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ephemeral_redis.models import DirectorySet, ServerConfig

RDB_FILENAME = "dump.rdb"

RESERVED_FLAGS = ("--daemonize", "--port", "--dir")
"""Flags the supervisor depends on; user arguments may not set them."""


def names_flag(arg: str, name: str) -> bool:
    """Return whether *arg* sets the flag *name*.

    The name must be followed by the end of the argument, whitespace or
    ``=``, so ``--bind-source-addr`` does not name ``--bind``.
    """
    stripped = arg.strip()
    if not stripped.startswith(name):
        return False
    rest = stripped[len(name) :]
    return not rest or rest[0] == "=" or rest[0].isspace()


def has_argument(args: tuple[str, ...] | list[str], name: str) -> bool:
    """Return whether any of *args* sets the flag *name*."""
    return any(names_flag(arg, name) for arg in args)


def builtin_arguments(config: ServerConfig, directories: DirectorySet) -> list[tuple[str, str]]:
    """Return the default ``(flag, value)`` pairs in launch order.

    ``--daemonize no`` is always first; the server must stay attached so
    its output can be scanned for readiness.
    """
    pairs: list[tuple[str, str]] = [
        ("--daemonize", "no"),
        ("--appendonly", "no"),
        ("--protected-mode", "yes"),
        # Empty logfile means stdout.
        ("--logfile", ""),
        ("--dir", str(directories.data)),
        ("--port", str(config.port)),
        ("--bind", "127.0.0.1"),
    ]
    if os.name != "nt" and config.socket:
        pairs.append(("--unixsocket", os.path.abspath(config.socket)))
    if config.init_rdb_file is not None:
        pairs.append(("--dbfilename", RDB_FILENAME))
    return pairs


def build_arguments(config: ServerConfig, directories: DirectorySet) -> list[str]:
    """Build the argv tail (without the executable) for redis-server.

    Args:
        config: Resolved server configuration.
        directories: Prepared directories; ``data`` becomes ``--dir``.

    Returns:
        Flat argument list: surviving built-ins, then the user arguments
        in their original order, each split shell-style.
    """
    argv: list[str] = []
    for flag, value in builtin_arguments(config, directories):
        if flag not in RESERVED_FLAGS and has_argument(config.args, flag):
            continue
        argv.extend([flag, value])
    for arg in config.args:
        argv.extend(shlex.split(arg, posix=os.name != "nt"))
    return argv
