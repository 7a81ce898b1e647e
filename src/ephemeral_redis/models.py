"""Core data models for ephemeral_redis.

Defines the immutable configuration record consumed by the supervisor,
the readiness specification, the resolved directory set, and the
supervisor state enumeration. All models are frozen Pydantic models;
"changing" a configuration means building a copy.
"""

from __future__ import annotations

from enum import StrEnum
import os
from pathlib import Path
import shutil
import socket
import sys
import tempfile
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ephemeral_redis.arguments import RESERVED_FLAGS, names_flag

DEFAULT_READY_MARKER = "Ready to accept connections tcp"
"""Line fragment redis-server logs once it accepts TCP connections."""

_APP_DIR_NAME = "ephemeral_redis"

_RESERVED_HINTS = {
    "--daemonize": "the server always runs in the foreground",
    "--port": "set the port field instead",
    "--dir": "set the data_dir field instead",
}


def temp_root() -> Path:
    """Return the platform's canonical temporary-files root as an absolute path."""
    return Path(os.path.abspath(tempfile.gettempdir()))


def is_ephemeral(path: str | os.PathLike[str]) -> bool:
    """Return whether *path* lies strictly below the platform temp root.

    A pure comparison of absolute path components, with no filesystem
    access: ``/tmpfoo`` is not under ``/tmp``, and the temp root itself is
    never ephemeral. This is the only signal used to allow destructive
    cleanup.
    """
    candidate = Path(os.path.abspath(path))
    return temp_root() in candidate.parents


def detect_free_port() -> int:
    """Ask the OS for a free TCP port on the loopback interface.

    The port is released before returning, so another process could in
    principle grab it first; this is acceptable for test fixtures.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


class SupervisorState(StrEnum):
    """Lifecycle state of a ``ProcessSupervisor``.

    Transitions only move forward: not_started -> starting -> running ->
    stopped, or starting -> stopped when startup fails.
    """

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class ReadinessSpec(BaseModel):
    """What to wait for after spawning the server.

    Attributes:
        marker: Substring expected in one output line once the server is ready.
        timeout_seconds: Maximum wall-clock seconds to wait for the marker.
    """

    model_config = ConfigDict(frozen=True)

    marker: str = DEFAULT_READY_MARKER
    timeout_seconds: float = 30.0

    @field_validator("marker")
    @classmethod
    def _marker_not_empty(cls, v: str) -> str:
        if not v:
            msg = "Readiness marker must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "timeout_seconds must be > 0"
            raise ValueError(msg)
        return v


DirectoryName = Literal["base", "data", "temp", "library"]


class DirectorySet(BaseModel):
    """Resolved absolute directories used by one supervisor instance.

    Created once before spawn and never modified afterwards. ``library``
    is ``None`` when no shared-library directory is configured.

    Attributes:
        base: Directory holding the server binaries.
        data: Working directory of the server (``--dir``).
        temp: Scratch directory for temporary files.
        library: Optional directory added to the library search path.
    """

    model_config = ConfigDict(frozen=True)

    base: Path
    data: Path
    temp: Path
    library: Path | None = None

    def ephemeral(self, name: DirectoryName) -> bool:
        """Return whether the named directory lives under the temp root."""
        path = getattr(self, name)
        return path is not None and is_ephemeral(path)

    def cleanup_order(self) -> list[tuple[DirectoryName, Path]]:
        """Return the configured directories in teardown order.

        The data directory goes first because it holds the server's live
        state; the base directory goes last because the others may be
        nested inside it.
        """
        names: tuple[DirectoryName, ...] = ("data", "temp", "library", "base")
        return [(n, getattr(self, n)) for n in names if getattr(self, n) is not None]


class ServerConfig(BaseModel):
    """Immutable configuration for one ephemeral redis-server.

    A port of ``0`` and unset directory/socket fields are placeholders that
    ``resolved()`` fills in. Every path default lives under the temp root,
    so all default directories are ephemeral.

    Attributes:
        port: TCP port, or 0 to pick a free port.
        socket: Unix socket path (ignored on Windows).
        base_dir: Directory where the server binaries are looked up.
        data_dir: Server working directory.
        temp_dir: Scratch directory.
        library_dir: Optional shared-library directory for the server.
        args: Extra server arguments; each entry may hold a name and value.
        delete_on_shutdown: Delete ephemeral directories at process exit.
        server_executable: Explicit path to ``redis-server``.
        client_executable: Explicit path to ``redis-cli``.
        init_rdb_file: RDB snapshot copied into the data dir before start.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    port: int = 0
    socket: str | None = None
    base_dir: Path = Field(default_factory=lambda: temp_root() / _APP_DIR_NAME / "base")
    data_dir: Path | None = None
    temp_dir: Path | None = None
    library_dir: Path | None = None
    args: tuple[str, ...] = ()
    delete_on_shutdown: bool = True
    server_executable: Path | None = None
    client_executable: Path | None = None
    init_rdb_file: Path | None = None
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("port")
    @classmethod
    def _port_in_range(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            msg = f"port must be between 0 and 65535, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v

    @model_validator(mode="after")
    def _no_reserved_args(self) -> ServerConfig:
        """Reject arguments that would desynchronise the supervisor from the server."""
        for arg in self.args:
            for flag in RESERVED_FLAGS:
                if names_flag(arg, flag):
                    msg = f"{flag} cannot be overridden through args; {_RESERVED_HINTS[flag]}"
                    raise ValueError(msg)
        return self

    def resolved(self) -> ServerConfig:
        """Return a copy with port, socket and directory defaults filled in."""
        port = self.port or detect_free_port()
        root = temp_root()
        update: dict[str, Any] = {"port": port}
        if self.socket is None:
            update["socket"] = str(root / f"{_APP_DIR_NAME}.{port}.sock")
        if self.data_dir is None:
            update["data_dir"] = root / _APP_DIR_NAME / "data" / str(port)
        if self.temp_dir is None:
            update["temp_dir"] = root / _APP_DIR_NAME / "tmp" / str(port)
        return self.model_copy(update=update)

    def server_path(self) -> Path:
        """Resolve the ``redis-server`` executable path."""
        return _resolve_executable(self.server_executable, self.base_dir, "redis-server")

    def client_path(self) -> Path:
        """Resolve the ``redis-cli`` executable path."""
        return _resolve_executable(self.client_executable, self.base_dir, "redis-cli")


def _resolve_executable(explicit: Path | None, base_dir: Path, name: str) -> Path:
    if explicit is not None:
        return explicit
    if sys.platform == "win32":
        name = f"{name}.exe"
    bundled = base_dir / name
    if bundled.is_file():
        return bundled
    found = shutil.which(name)
    if found is not None:
        return Path(found)
    # Let the spawn fail with a clear startup error.
    return bundled


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "EPHEMERAL_REDIS_PORT": "port",
    "EPHEMERAL_REDIS_SERVER": "server_executable",
    "EPHEMERAL_REDIS_CLIENT": "client_executable",
    "EPHEMERAL_REDIS_LOG_LEVEL": "log_level",
}
"""Maps environment variable names to ServerConfig field names."""


def apply_env_overrides(config: ServerConfig) -> ServerConfig:
    """Apply ``EPHEMERAL_REDIS_*`` environment overrides to a config.

    Environment variables override **default** field values only; a field
    whose value differs from the ``ServerConfig`` default is considered
    explicitly set and is left alone. Values that fail validation are
    ignored.

    Args:
        config: The configuration to apply overrides to.

    Returns:
        A new ``ServerConfig`` with overrides applied.
    """
    defaults = ServerConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        if getattr(config, field_name) != getattr(defaults, field_name):
            continue
        overrides[field_name] = env_value

    if not overrides:
        return config

    data = config.model_dump()
    for field_name, value in overrides.items():
        candidate = {**data, field_name: value}
        try:
            ServerConfig(**candidate)
        except ValueError:
            continue
        data = candidate
    return ServerConfig(**data)
