"""Handle on a spawned child process and its combined output stream.

A daemon reader thread drains stdout (stderr is merged into it) line by
line into a bounded ring buffer and signals an event when the readiness
marker shows up. Termination signals the whole process group, escalating
from SIGTERM to SIGKILL after a grace period.
"""

from __future__ import annotations

from collections import deque
import contextlib
import logging
import os
import signal
import subprocess
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 100
_SIGKILL_GRACE_SECONDS = 5.0
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ProcessHandle:
    """A running child process with output capture.

    Use ``spawn()`` to create one. The handle is owned by a single
    supervisor; only ``is_alive()`` and ``tail()`` are meant to be called
    from other threads.

    Attributes:
        argv: Full command line, executable first.
        marker: Readiness substring scanned for in each output line.
    """

    def __init__(
        self,
        proc: subprocess.Popen[str],
        argv: Sequence[str],
        marker: str,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self._proc = proc
        self.argv = list(argv)
        self.marker = marker
        self._lines: deque[str] = deque(maxlen=tail_lines)
        self._lines_lock = threading.Lock()
        self._ready = threading.Event()
        self._settled = threading.Event()
        self._eof = threading.Event()
        self._reader = threading.Thread(
            target=self._read_output,
            name=f"ephemeral-redis-output-{proc.pid}",
            daemon=True,
        )
        self._reader.start()

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: str | Path,
        env: dict[str, str],
        marker: str,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> ProcessHandle:
        """Start *argv* in its own process group and begin reading its output.

        Raises:
            OSError: If the executable cannot be started.
        """
        kwargs: dict[str, object] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        proc = subprocess.Popen(  # noqa: S603
            list(argv),
            cwd=str(cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            **kwargs,  # type: ignore[arg-type]
        )
        logger.debug("Spawned pid %d: %s", proc.pid, " ".join(argv))
        return cls(proc, argv, marker, tail_lines)

    @property
    def pid(self) -> int:
        """OS process identifier."""
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status, or ``None`` while running."""
        return self._proc.poll()

    def is_alive(self) -> bool:
        """Non-blocking liveness check."""
        return self._proc.poll() is None

    @property
    def output_closed(self) -> bool:
        """Whether the child's output stream has reached end of file."""
        return self._eof.is_set()

    def tail(self) -> list[str]:
        """Return a copy of the most recent output lines."""
        with self._lines_lock:
            return list(self._lines)

    def _read_output(self) -> None:
        stream = self._proc.stdout
        if stream is None:
            self._settled.set()
            return
        try:
            for raw in stream:
                line = raw.rstrip("\r\n")
                with self._lines_lock:
                    self._lines.append(line)
                logger.debug("[redis-server %d] %s", self._proc.pid, line)
                if not self._ready.is_set() and self.marker in line:
                    self._ready.set()
                    self._settled.set()
        except ValueError:
            # Stream closed under us during termination.
            pass
        finally:
            self._eof.set()
            self._settled.set()

    def wait_until_ready(self, timeout: float) -> bool:
        """Block until the marker is seen, output ends, or *timeout* elapses.

        Returns:
            True if the marker was observed.
        """
        self._settled.wait(timeout)
        return self._ready.is_set()

    def terminate(self, grace_seconds: float = _SIGKILL_GRACE_SECONDS) -> int | None:
        """Stop the process group: SIGTERM, then SIGKILL after *grace_seconds*.

        Blocks until the process has exited. Safe to call on a process that
        already exited.

        Returns:
            The process exit status.
        """
        if self.is_alive():
            self._send(signal.SIGTERM)
            try:
                self._proc.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "pid %d did not exit within %.1fs; killing", self.pid, grace_seconds
                )
                self._send(_SIGKILL)
        return self._reap()

    def kill(self) -> int | None:
        """Kill the process group immediately and reap the process."""
        if self.is_alive():
            self._send(_SIGKILL)
        return self._reap()

    def _reap(self) -> int | None:
        self._proc.wait()
        self._reader.join(timeout=1.0)
        if self._proc.stdout is not None:
            with contextlib.suppress(OSError):
                self._proc.stdout.close()
        return self._proc.returncode

    def _send(self, sig: int) -> None:
        if os.name == "nt":
            with contextlib.suppress(OSError):
                if sig == signal.SIGTERM:
                    self._proc.terminate()
                else:
                    self._proc.kill()
            return
        try:
            pgid = os.getpgid(self._proc.pid)
        except (OSError, ProcessLookupError):
            return
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, sig)
