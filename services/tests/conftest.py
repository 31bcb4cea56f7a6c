"""
Top-level test configuration for Waypost.

Fixtures shared by the job, runner and exec tests live here.
"""

import os
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio

# Ensure test-friendly defaults
os.environ.setdefault("WAYPOST_CONFIG_FILE", "/nonexistent/waypost.yaml")
os.environ.setdefault("WAYPOST_JSON_LOGS", "false")
os.environ.setdefault("WAYPOST_LOG_LEVEL", "DEBUG")

from waypost.config_vars import ConfigVarStore  # noqa: E402
from waypost.jobs.queue import JobQueue  # noqa: E402
from waypost.protocol.entities import Runner  # noqa: E402
from waypost.protocol.jobs import Job, Noop  # noqa: E402
from waypost.protocol.refs import ApplicationRef, RunnerRef, WorkspaceRef  # noqa: E402
from waypost.runners.registry import RunnerRegistry  # noqa: E402
from waypost.streams import MemoryStream  # noqa: E402


@pytest.fixture
def make_job() -> Callable[..., Job]:
    """Build a valid no-op job for web/shop. Keyword arguments override fields."""

    def make(**kwargs) -> Job:
        fields = {
            "application": ApplicationRef(application="web", project="shop"),
            "workspace": WorkspaceRef(workspace="default"),
            "target_runner": RunnerRef.any_runner(),
            "operation": Noop(),
        }
        fields.update(kwargs)
        return Job(**fields)

    return make


@pytest.fixture
def runners() -> RunnerRegistry:
    """A registry with runner r1 online."""
    registry = RunnerRegistry()
    registry.register(Runner(id="r1"))
    return registry


@pytest_asyncio.fixture
async def queue(runners: RunnerRegistry) -> AsyncGenerator[JobQueue]:
    q = JobQueue(runners, waiting_timeout=120)
    yield q
    await q.close()


@pytest.fixture
def config_vars() -> ConfigVarStore:
    return ConfigVarStore()


class FailingStream(MemoryStream):
    """A stream end that raises any exception instance it receives."""

    async def recv(self):
        item = await super().recv()
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def failing_pair() -> Callable[[], tuple[MemoryStream, MemoryStream]]:
    """Connected stream ends whose recv raises exceptions sent by the peer."""
    return FailingStream.pair
