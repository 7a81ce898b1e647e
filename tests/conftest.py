"""Shared fixtures for the ephemeral_redis test suite."""

from __future__ import annotations

import os
from pathlib import Path
import stat
import sys
import tempfile
from typing import TYPE_CHECKING, Any

from ephemeral_redis.models import ReadinessSpec, ServerConfig
from ephemeral_redis.shutdown import ExitHooks
from ephemeral_redis.supervisor import ProcessSupervisor
import pytest

if TYPE_CHECKING:
    from collections.abc import Iterator

pytest_plugins = ["pytester"]

FAKES_DIR = Path(__file__).parent / "fakes"

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX process and permission semantics")


def pytest_configure(config: pytest.Config) -> None:
    # Entry-point plugins are registered under the entry point name.
    if not config.pluginmanager.has_plugin("ephemeral_redis"):
        config.pluginmanager.import_plugin("ephemeral_redis.pytest_plugin")


# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(**overrides: Any) -> ServerConfig:
    """Build a valid ServerConfig with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ServerConfig instance.
    """
    defaults: dict[str, Any] = {}
    defaults.update(overrides)
    return ServerConfig(**defaults)


def make_supervisor(
    hooks: ExitHooks,
    readiness: ReadinessSpec | None = None,
    **overrides: Any,
) -> ProcessSupervisor:
    """Build an unstarted supervisor whose guard registers with *hooks*."""
    return ProcessSupervisor.create(make_config(**overrides), readiness, hooks=hooks)


def write_executable(path: Path, source: str) -> Path:
    """Write a Python script runnable directly through its shebang."""
    path.write_text(f"#!{sys.executable}\n{source}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def temp_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the platform temp root at a private directory for this test.

    Paths under the returned directory are ephemeral; ``tmp_path /
    "outside"`` is not.
    """
    root = tmp_path / "tmproot"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture()
def outside_dir(tmp_path: Path, temp_root: Path) -> Path:
    """A directory that is *not* below the patched temp root."""
    outside = tmp_path / "outside"
    outside.mkdir()
    return outside


@pytest.fixture()
def hooks() -> Iterator[ExitHooks]:
    """A fresh exit-hook registry that is never installed process-wide.

    Callbacks still pending at teardown are run so no child process
    outlives the test.
    """
    registry = ExitHooks()
    registry.install = lambda: None  # type: ignore[method-assign]
    yield registry
    registry.run()


@pytest.fixture(scope="session")
def fake_executables(tmp_path_factory: pytest.TempPathFactory) -> dict[str, Path]:
    """Executable fake ``redis-server`` and ``redis-cli`` scripts."""
    bin_dir = tmp_path_factory.mktemp("bin")
    server = write_executable(
        bin_dir / "redis-server",
        (FAKES_DIR / "fake_redis_server.py").read_text(encoding="utf-8"),
    )
    client = write_executable(
        bin_dir / "redis-cli",
        (FAKES_DIR / "fake_redis_cli.py").read_text(encoding="utf-8"),
    )
    return {"server": server, "client": client}


@pytest.fixture()
def fake_config(fake_executables: dict[str, Path], temp_root: Path) -> dict[str, Any]:
    """ServerConfig overrides wiring in the fake executables under the patched temp root."""
    return {
        "server_executable": fake_executables["server"],
        "client_executable": fake_executables["client"],
        "base_dir": temp_root / "ephemeral_redis" / "base",
    }
