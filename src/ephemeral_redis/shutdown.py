"""Exit-time teardown: the callback registry, the guard, and the tree delete.

Code in this module runs while the interpreter is shutting down, possibly
from a signal handler and concurrently with an explicit ``stop()`` from
application code. It therefore uses only ``os``/``stat`` primitives for
deletion (no ``shutil.rmtree``) and re-checks every piece of state at
invocation time instead of trusting what was true when it was armed.
"""

from __future__ import annotations

import atexit
import errno
import logging
import os
import signal
import threading
from typing import TYPE_CHECKING, Any

from ephemeral_redis.errors import CleanupError
from ephemeral_redis.filesystem import FileSystemOps, default_filesystem
from ephemeral_redis.models import is_ephemeral

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import FrameType

    from ephemeral_redis.models import DirectorySet

logger = logging.getLogger(__name__)

_DEFAULT_FS = default_filesystem()


# ---------------------------------------------------------------------------
# Recursive delete
# ---------------------------------------------------------------------------


def delete_tree(path: str | os.PathLike[str], fs: FileSystemOps | None = None) -> None:
    """Delete *path* and everything below it, depth-first and post-order.

    Write protection is cleared on every entry before it is removed, and
    symlinks are unlinked without being followed. A failure to delete one
    entry is recorded and the walk carries on with its siblings; a
    directory that is not empty once its children were processed is left
    in place and recorded too. A failure to *list* a directory aborts that
    subtree: below the top level it is recorded against the top-level
    child containing it, at the top level it propagates as ``OSError``.

    A missing *path* is a no-op, so calling this twice never raises.

    Args:
        path: File or directory to delete.
        fs: Platform backend, or ``None`` for the running platform's.

    Raises:
        CleanupError: If any entry could not be deleted. Raised only after
            the whole walk has completed.
        OSError: If the top-level directory itself cannot be listed.
    """
    ops = fs if fs is not None else _DEFAULT_FS
    root = os.fspath(path)
    if not os.path.lexists(root):
        return

    errors: list[OSError] = []
    if not ops.is_directory(root):
        _delete_file(root, ops, errors)
    else:
        for child in _open_directory(root, ops, errors):
            try:
                _delete_entry(child, ops, errors)
            except OSError as exc:
                errors.append(exc)
        _remove_if_empty(root, errors)

    if errors:
        msg = f"Could not completely delete {root}"
        raise CleanupError(msg, errors=errors)


def _delete_entry(path: str, ops: FileSystemOps, errors: list[OSError]) -> None:
    if not ops.is_directory(path):
        _delete_file(path, ops, errors)
        return
    for child in _open_directory(path, ops, errors):
        _delete_entry(child, ops, errors)
    _remove_if_empty(path, errors)


def _open_directory(path: str, ops: FileSystemOps, errors: list[OSError]) -> list[str]:
    """Make *path* listable and writable, then return its entries.

    Listing errors propagate.
    """
    try:
        ops.clear_write_protection(path)
    except FileNotFoundError:
        return []
    except OSError as exc:
        errors.append(exc)
    with os.scandir(path) as it:
        return [entry.path for entry in it]


def _delete_file(path: str, ops: FileSystemOps, errors: list[OSError]) -> None:
    protect_error: OSError | None = None
    try:
        ops.clear_write_protection(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        protect_error = exc
    try:
        if os.name == "nt" and os.path.isdir(path):
            # Directory symlink or junction: rmdir removes the link only.
            os.rmdir(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        if protect_error is not None:
            errors.append(protect_error)
        errors.append(exc)


def _remove_if_empty(path: str, errors: list[OSError]) -> None:
    try:
        with os.scandir(path) as it:
            empty = next(it, None) is None
    except FileNotFoundError:
        return
    if not empty:
        errors.append(OSError(errno.ENOTEMPTY, os.strerror(errno.ENOTEMPTY), path))
        return
    try:
        os.rmdir(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        errors.append(exc)


# ---------------------------------------------------------------------------
# Teardown callback registry
# ---------------------------------------------------------------------------


class ExitHooks:
    """Callbacks to run once when the host process terminates.

    ``install()`` wires ``run()`` to ``atexit`` and, when called from the
    main thread, to SIGTERM and SIGHUP if their handlers are still the
    default ones. After running the callbacks the signal handler restores
    the default disposition and re-delivers the signal, so the process
    still dies with the expected status.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        # Reentrant: the signal handler may interrupt register() on the same thread.
        self._lock = threading.RLock()
        self._installed = False

    def register(self, callback: Callable[[], None]) -> None:
        """Add *callback*; it runs at most once, on the next ``run()``."""
        with self._lock:
            self._callbacks.append(callback)

    def pending(self) -> int:
        """Return the number of callbacks that have not run yet."""
        with self._lock:
            return len(self._callbacks)

    def run(self) -> None:
        """Run and drop all pending callbacks, most recent first.

        Exceptions are logged and do not stop the remaining callbacks.
        """
        with self._lock:
            callbacks = list(reversed(self._callbacks))
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Exit hook %r failed", callback)

    def install(self) -> None:
        """Hook ``run()`` into interpreter exit and termination signals."""
        with self._lock:
            if self._installed:
                return
            self._installed = True
        atexit.register(self.run)
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not installing signal handlers outside the main thread")
            return
        for name in ("SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            if signal.getsignal(signum) == signal.SIG_DFL:
                signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.warning("Received signal %d; running exit hooks", signum)
        self.run()
        signal.signal(signum, signal.SIG_DFL)
        os.kill(os.getpid(), signum)


exit_hooks = ExitHooks()
"""Process-wide default registry used when none is injected."""


# ---------------------------------------------------------------------------
# Shutdown guard
# ---------------------------------------------------------------------------


class ShutdownGuard:
    """Stops the server and deletes its temporary directories at exit.

    The process handle and the directory set are read through accessors
    at invocation time, since the supervisor fills them in after the
    guard is created. ``run()`` executes its body at most once no matter
    how many times or from how many threads it is called.

    Args:
        process: Returns the current process handle, or ``None``.
        directories: Returns the directory set, or ``None``.
        stop: Stops the supervised process; must be idempotent.
        delete_on_shutdown: Whether ephemeral directories may be deleted.
        fs: Platform backend for the delete walk.
    """

    def __init__(
        self,
        *,
        process: Callable[[], Any],
        directories: Callable[[], DirectorySet | None],
        stop: Callable[[], None],
        delete_on_shutdown: bool,
        fs: FileSystemOps | None = None,
    ) -> None:
        self._process = process
        self._directories = directories
        self._stop = stop
        self._delete_on_shutdown = delete_on_shutdown
        self._fs = fs
        self._lock = threading.Lock()
        self._armed = False
        self._ran = False

    @property
    def has_run(self) -> bool:
        """Whether ``run()`` has executed."""
        return self._ran

    def arm(self, hooks: ExitHooks | None = None) -> None:
        """Register with *hooks* (default: ``exit_hooks``); later calls are no-ops."""
        registry = hooks if hooks is not None else exit_hooks
        with self._lock:
            if self._armed:
                return
            self._armed = True
        registry.install()
        registry.register(self.run)

    def run(self) -> None:
        """Stop the process if alive, then delete eligible directories."""
        with self._lock:
            if self._ran:
                return
            self._ran = True

        handle = self._process()
        try:
            if handle is not None and handle.is_alive():
                logger.info("Exit hook stopping redis-server (pid %s)", handle.pid)
                self._stop()
        except Exception:
            logger.warning("Exit hook: error while stopping redis-server", exc_info=True)

        directories = self._directories()
        if directories is None:
            return
        for name, path in directories.cleanup_order():
            if not is_ephemeral(path):
                logger.debug("Keeping non-temporary %s directory %s", name, path)
                continue
            if not self._delete_on_shutdown:
                logger.debug("Keeping temporary %s directory %s (deletion disabled)", name, path)
                continue
            if not os.path.lexists(path):
                continue
            logger.info("Exit hook deleting temporary %s directory %s", name, path)
            try:
                delete_tree(path, self._fs)
            except (CleanupError, OSError) as exc:
                logger.warning("Exit hook could not fully delete %s: %s", path, exc)
