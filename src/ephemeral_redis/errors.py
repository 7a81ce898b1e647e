"""Exception hierarchy for ephemeral_redis.

Every error raised by the package derives from ``EphemeralRedisError`` so
callers can catch the whole family with a single ``except`` clause.
"""

from __future__ import annotations

from typing import Any


class EphemeralRedisError(Exception):
    """Base class for all ephemeral_redis errors."""


class DirectoryError(EphemeralRedisError):
    """A required directory could not be created or validated.

    Raised before any process is spawned.
    """


class IllegalStateError(EphemeralRedisError):
    """The supervisor was used in a state that does not allow the call."""


class StartupError(EphemeralRedisError):
    """The server process could not be started.

    The ``diagnostics`` dict carries structured context (executable,
    readiness marker, timeout, last output lines) for debugging.

    Attributes:
        diagnostics: Structured diagnostic information about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context, or ``None`` for an empty dict.
        """
        super().__init__(message)
        self.diagnostics = diagnostics if diagnostics is not None else {}


class StartupTimeoutError(StartupError):
    """The readiness marker was not observed before the timeout expired."""


class CommandError(EphemeralRedisError):
    """An auxiliary client command exited with a non-zero status.

    Attributes:
        returncode: Exit status of the client process.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(self, message: str, *, returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CleanupError(EphemeralRedisError):
    """One or more filesystem entries could not be deleted during teardown.

    Aggregates every failure seen during a recursive delete. The walk
    always completes before this is raised.

    Attributes:
        errors: The individual failures, in the order they were recorded.
    """

    def __init__(self, message: str, *, errors: list[OSError]) -> None:
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        details = "; ".join(str(e) for e in self.errors)
        return f"{base} ({len(self.errors)} failures: {details})"
