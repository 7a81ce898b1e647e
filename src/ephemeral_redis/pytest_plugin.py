"""pytest plugin providing ephemeral redis-server fixtures.

Registered through the ``pytest11`` entry point, so installing the package
makes these fixtures available to any test suite:

- ``redis_server``: one server shared by the whole session; its port is
  exported as ``REDIS_PORT`` for code that reads the environment.
- ``redis_server_factory``: builds extra servers on demand, each stopped
  at the end of the requesting test.

Executables can be pointed at explicitly with ``--redis-server`` and
``--redis-cli``; otherwise they come from the environment or ``PATH``.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest

from ephemeral_redis.models import ServerConfig, apply_env_overrides
from ephemeral_redis.supervisor import ProcessSupervisor

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

PORT_ENV_VAR = "REDIS_PORT"


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("ephemeral-redis")
    group.addoption(
        "--redis-server",
        default=None,
        help="Path to the redis-server executable used by the redis fixtures.",
    )
    group.addoption(
        "--redis-cli",
        default=None,
        help="Path to the redis-cli executable used by the redis fixtures.",
    )


def _base_config(config: pytest.Config, **overrides: Any) -> ServerConfig:
    data: dict[str, Any] = {}
    server = config.getoption("--redis-server", default=None)
    client = config.getoption("--redis-cli", default=None)
    if server:
        data["server_executable"] = server
    if client:
        data["client_executable"] = client
    data.update(overrides)
    return apply_env_overrides(ServerConfig(**data))


@pytest.fixture(scope="session")
def redis_server(pytestconfig: pytest.Config) -> Iterator[ProcessSupervisor]:
    """A running redis-server shared by the whole test session."""
    supervisor = ProcessSupervisor.create(_base_config(pytestconfig))
    supervisor.start()
    previous = os.environ.get(PORT_ENV_VAR)
    os.environ[PORT_ENV_VAR] = str(supervisor.get_port())
    try:
        yield supervisor
    finally:
        supervisor.stop()
        if previous is None:
            os.environ.pop(PORT_ENV_VAR, None)
        else:
            os.environ[PORT_ENV_VAR] = previous


@pytest.fixture()
def redis_server_factory(
    pytestconfig: pytest.Config,
) -> Iterator[Callable[..., ProcessSupervisor]]:
    """Return a function that starts a new redis-server per call.

    Keyword arguments are ``ServerConfig`` field overrides. Every server
    started through the factory is stopped when the test finishes.
    """
    started: list[ProcessSupervisor] = []

    def _make(**overrides: Any) -> ProcessSupervisor:
        supervisor = ProcessSupervisor.create(_base_config(pytestconfig, **overrides))
        started.append(supervisor)
        supervisor.start()
        return supervisor

    try:
        yield _make
    finally:
        for supervisor in reversed(started):
            supervisor.stop()
