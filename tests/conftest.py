"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from pathlib import Path

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from aigenda.config import SyncSettings
from aigenda.sync import (
    ChangeNotifier,
    ConnectivityMonitor,
    DataSyncService,
    MemoryStorage,
    MutationLog,
    SyncTransport,
)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 10_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FakeTransport(SyncTransport):
    """Records calls and returns canned responses or raises canned errors.

    ``pull_result``/``push_result`` may be a dict, an exception instance, or
    a callable receiving the call argument.
    """

    def __init__(self):
        self.calls = []
        self.pull_result = {}
        self.push_result = {}
        self.auth_token = None
        self.closed = False

    def _answer(self, result, arg):
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(arg)
        return result

    @property
    def pull_calls(self):
        return [arg for name, arg in self.calls if name == "pull"]

    @property
    def push_calls(self):
        return [arg for name, arg in self.calls if name == "push"]

    async def pull(self, since):
        self.calls.append(("pull", since))
        return self._answer(self.pull_result, since)

    async def push(self, changes):
        self.calls.append(("push", changes))
        return self._answer(self.push_result, changes)

    def set_auth_token(self, auth_token):
        self.auth_token = auth_token

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def mutation_log(storage, clock):
    return MutationLog(storage, clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(data_dir=str(tmp_path), request_timeout_seconds=5)


@pytest.fixture
def service(transport, storage, settings, connectivity, notifier, clock):
    return DataSyncService(
        transport,
        storage=storage,
        settings=settings,
        connectivity=connectivity,
        notifier=notifier,
        clock=clock,
        auth_token="test-token",
    )
