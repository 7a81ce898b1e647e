"""Supervision of one ephemeral redis-server process.

``ProcessSupervisor`` owns the start/stop state machine: it spawns the
server with deterministic arguments, blocks until the readiness marker
appears in the server's output, arms a ``ShutdownGuard`` so the process
and its temporary directories are cleaned up at interpreter exit, and
stops the process on request. ``start()`` and ``stop()`` share one
reentrant lock; ``stop()`` is idempotent because both application code
and the exit guard call it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import subprocess
import sys
import threading
from typing import TYPE_CHECKING, Any

from ephemeral_redis.arguments import RDB_FILENAME, build_arguments
from ephemeral_redis.directories import prepare_directories
from ephemeral_redis.errors import (
    CommandError,
    IllegalStateError,
    StartupError,
    StartupTimeoutError,
)
from ephemeral_redis.models import (
    DirectorySet,
    ReadinessSpec,
    ServerConfig,
    SupervisorState,
)
from ephemeral_redis.process import ProcessHandle
from ephemeral_redis.shutdown import ExitHooks, ShutdownGuard

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(config: ServerConfig) -> None:
    """Configure Python logging for the ``ephemeral_redis`` logger.

    Adds a console handler and, when ``config.log_file`` is set, a file
    handler. Repeated calls do not duplicate handlers.

    Args:
        config: Configuration providing ``log_level`` and ``log_file``.
    """
    pkg_logger = logging.getLogger("ephemeral_redis")
    pkg_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in pkg_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        pkg_logger.addHandler(console)

    if config.log_file is not None:
        target = str(Path(config.log_file).resolve())
        already = any(
            isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == target
            for h in pkg_logger.handlers
        )
        if not already:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pkg_logger.addHandler(file_handler)


def library_path_variable() -> str:
    """Name of the environment variable holding the shared-library search path."""
    if sys.platform == "win32":
        return "PATH"
    if sys.platform == "darwin":
        return "DYLD_FALLBACK_LIBRARY_PATH"
    return "LD_LIBRARY_PATH"


def build_environment(directories: DirectorySet) -> dict[str, str]:
    """Return a copy of the current environment for the server and client.

    When a library directory is configured it is prepended to the
    platform's library search path variable.
    """
    env = dict(os.environ)
    if directories.library is not None:
        var = library_path_variable()
        existing = env.get(var)
        env[var] = (
            f"{directories.library}{os.pathsep}{existing}" if existing else str(directories.library)
        )
    return env


class ProcessSupervisor:
    """Start, watch and stop one redis-server.

    A supervisor is single-use: once stopped it cannot be restarted. Use
    ``create()`` to resolve the configuration and prepare directories in
    one step.

    Args:
        config: Resolved configuration (non-zero port).
        directories: Prepared directories for this run.
        readiness: Marker and timeout for startup; defaults to redis-server's.
        hooks: Exit-hook registry for the shutdown guard.
    """

    def __init__(
        self,
        config: ServerConfig,
        directories: DirectorySet,
        readiness: ReadinessSpec | None = None,
        *,
        hooks: ExitHooks | None = None,
    ) -> None:
        if config.port == 0:
            msg = "config must be resolved before use; call ServerConfig.resolved()"
            raise ValueError(msg)
        self._config = config
        self._directories = directories
        self._readiness = readiness if readiness is not None else ReadinessSpec()
        self._hooks = hooks
        self._env = build_environment(directories)
        self._lock = threading.RLock()
        self._state = SupervisorState.NOT_STARTED
        self._handle: ProcessHandle | None = None
        self._guard = ShutdownGuard(
            process=lambda: self._handle,
            directories=lambda: self._directories,
            stop=self.stop,
            delete_on_shutdown=config.delete_on_shutdown,
        )

    @classmethod
    def create(
        cls,
        config: ServerConfig | None = None,
        readiness: ReadinessSpec | None = None,
        *,
        hooks: ExitHooks | None = None,
    ) -> ProcessSupervisor:
        """Resolve *config*, prepare its directories and build a supervisor.

        Raises:
            DirectoryError: If a directory cannot be prepared.
        """
        resolved = (config if config is not None else ServerConfig()).resolved()
        directories = prepare_directories(resolved)
        return cls(resolved, directories, readiness, hooks=hooks)

    # -- accessors ---------------------------------------------------------

    @property
    def config(self) -> ServerConfig:
        """The resolved configuration."""
        return self._config

    @property
    def directories(self) -> DirectorySet:
        """The prepared directories."""
        return self._directories

    @property
    def guard(self) -> ShutdownGuard:
        """The exit-time guard for this supervisor."""
        return self._guard

    @property
    def state(self) -> SupervisorState:
        """Current state; a running server that has died reads as stopped."""
        handle = self._handle
        if self._state is SupervisorState.RUNNING and handle is not None and not handle.is_alive():
            logger.warning(
                "redis-server (pid %d) exited unexpectedly with status %s",
                handle.pid,
                handle.returncode,
            )
            self._state = SupervisorState.STOPPED
        return self._state

    @property
    def pid(self) -> int | None:
        """Process id of the server, or ``None`` before spawn."""
        handle = self._handle
        return handle.pid if handle is not None else None

    def get_port(self) -> int:
        """TCP port the server listens on."""
        return self._config.port

    def is_alive(self) -> bool:
        """Non-blocking liveness check, safe in any state."""
        handle = self._handle
        return handle is not None and handle.is_alive()

    def output_tail(self) -> list[str]:
        """Most recent lines of server output."""
        handle = self._handle
        return handle.tail() if handle is not None else []

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Spawn the server and block until it reports readiness.

        Raises:
            IllegalStateError: If called more than once.
            StartupError: If the server cannot be spawned or exits early.
            StartupTimeoutError: If the marker is not seen in time.
        """
        with self._lock:
            if self._state is not SupervisorState.NOT_STARTED:
                msg = (
                    f"start() called in state {self._state}; "
                    "a supervisor cannot be reused, create a new one"
                )
                raise IllegalStateError(msg)
            self._state = SupervisorState.STARTING
            logger.info("Starting redis-server on port %d", self._config.port)

            self._guard.arm(self._hooks)
            argv = [str(self._config.server_path()), *build_arguments(self._config, self._directories)]
            try:
                self._copy_init_rdb_file()
                self._handle = ProcessHandle.spawn(
                    argv,
                    cwd=self._directories.data,
                    env=self._env,
                    marker=self._readiness.marker,
                )
            except OSError as exc:
                self._state = SupervisorState.STOPPED
                logger.error("Failed to start redis-server: %s", exc)
                msg = f"An error occurred while starting {argv[0]}: {exc}"
                raise StartupError(msg, diagnostics={"argv": argv}) from exc

            ready = self._handle.wait_until_ready(self._readiness.timeout_seconds)
            if not ready:
                self._fail_startup(argv)

            self._state = SupervisorState.RUNNING
            logger.info(
                "redis-server ready on port %d (pid %d)", self._config.port, self._handle.pid
            )

    def _fail_startup(self, argv: list[str]) -> None:
        handle = self._handle
        if handle is None:
            msg = "redis-server startup failed before a process was spawned"
            raise StartupError(msg, diagnostics={"argv": argv})
        # End of output means the child is exiting even if not yet reapable.
        timed_out = not handle.output_closed and handle.is_alive()
        if timed_out:
            handle.kill()
        else:
            handle.terminate()
        self._state = SupervisorState.STOPPED

        tail = handle.tail()
        marker = self._readiness.marker
        timeout = self._readiness.timeout_seconds
        diagnostics: dict[str, Any] = {
            "argv": argv,
            "marker": marker,
            "timeout_seconds": timeout,
            "returncode": handle.returncode,
            "output_tail": tail,
        }
        output = "\n".join(tail)
        if timed_out:
            msg = (
                f"redis-server did not start correctly: marker {marker!r} "
                f"not seen within {timeout}s. Last output:\n{output}"
            )
            logger.error("redis-server startup timed out after %ss", timeout)
            raise StartupTimeoutError(msg, diagnostics=diagnostics)
        msg = (
            f"redis-server exited with status {handle.returncode} before printing "
            f"marker {marker!r} (timeout {timeout}s). Last output:\n{output}"
        )
        logger.error("redis-server exited during startup with status %s", handle.returncode)
        raise StartupError(msg, diagnostics=diagnostics)

    def _copy_init_rdb_file(self) -> None:
        source = self._config.init_rdb_file
        if source is None:
            return
        target = self._directories.data / RDB_FILENAME
        shutil.copyfile(source, target)
        logger.info("Copied initial RDB file %s to %s", source, target)

    def stop(self) -> None:
        """Terminate the server and wait for it to exit.

        A no-op when the server is already stopped or was never started.
        """
        with self._lock:
            handle = self._handle
            if handle is None:
                logger.debug("redis-server was never started")
                return
            if self._state is SupervisorState.STOPPED:
                # Reaps a child that exited on its own; no-op otherwise.
                handle.kill()
                return
            if handle.is_alive():
                logger.debug("Stopping redis-server (pid %d)...", handle.pid)
                status = handle.terminate()
                logger.info("redis-server stopped (exit status %s)", status)
            else:
                handle.kill()
                logger.debug("redis-server had already exited")
            self._state = SupervisorState.STOPPED

    def close(self) -> None:
        """Alias for ``stop()``."""
        self.stop()

    def __enter__(self) -> ProcessSupervisor:
        if self._state is SupervisorState.NOT_STARTED:
            self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    # -- client ------------------------------------------------------------

    def run_command(self, command: str) -> str:
        """Run ``redis-cli -p <port> <command...>`` and return its stdout.

        *command* is split on whitespace, e.g. ``"SET K V"``.

        Raises:
            IllegalStateError: If the server is not running.
            CommandError: If the client exits with a non-zero status.
        """
        if self.state is not SupervisorState.RUNNING:
            msg = f"run_command() requires a running server, state is {self.state}"
            raise IllegalStateError(msg)

        argv = [str(self._config.client_path()), "-p", str(self._config.port), *command.split()]
        logger.debug("Running client command: %s", " ".join(argv))
        try:
            result = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                env=self._env,
                check=False,
            )
        except OSError as exc:
            msg = f"Could not run {argv[0]}: {exc}"
            raise CommandError(msg, returncode=-1, stdout="", stderr=str(exc)) from exc
        if result.returncode != 0:
            msg = f"{argv[0]} exited with status {result.returncode}: {result.stderr.strip()}"
            raise CommandError(
                msg,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout
