"""
Test configuration and fixtures for pytest.

Fixtures include: settings tuned for fast tests, a scriptable in-memory
managed system, a recording backoff sleep, and a running controller.
"""

import sys
import os
import asyncio
from pathlib import Path
from typing import Dict, List

import pytest

# Add the controller directory to sys.path
controller_dir = Path(__file__).parent.parent
sys.path.insert(0, str(controller_dir))

from converge.config import Settings
from converge.models import ResourceId
from converge.services.backends.memory import InMemoryManagedSystem


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables before settings are first read
    os.environ["CONVERGE_BACKEND"] = "memory"
    os.environ["CONVERGE_LOG_LEVEL"] = "DEBUG"
    os.environ["CONVERGE_RESYNC_PERIOD_SECONDS"] = "3600"
    os.environ["CONVERGE_POLL_INTERVAL_SECONDS"] = "3600"

    # Import and clear settings cache after env vars are set
    from converge.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as requiring the kubernetes client")


class ScriptedManagedSystem(InMemoryManagedSystem):
    """
    In-memory managed system with scripted failures and a gate.

    - fail(name, *outcomes): the next actions on that resource return (or
      raise) the given outcomes before falling through to the real apply
    - gate: when set to an unset asyncio.Event, every apply waits on it
    - on_apply: optional callback (sync or async) run before each apply
    """

    def __init__(self):
        super().__init__()
        self.failures: Dict[str, List] = {}
        self.gate = None
        self.on_apply = None
        self.poll_error = None
        self.calls = []
        self.polls = 0
        self.active = 0
        self.max_active = 0
        self.active_by_resource: Dict[ResourceId, int] = {}
        self.max_active_by_resource: Dict[ResourceId, int] = {}

    def fail(self, name: str, *outcomes) -> None:
        self.failures.setdefault(name, []).extend(outcomes)

    async def apply_action(self, resource_id, action):
        self.calls.append((resource_id, action))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        per_resource = self.active_by_resource.get(resource_id, 0) + 1
        self.active_by_resource[resource_id] = per_resource
        self.max_active_by_resource[resource_id] = max(
            self.max_active_by_resource.get(resource_id, 0), per_resource
        )
        try:
            if self.on_apply is not None:
                hook = self.on_apply(resource_id, action)
                if asyncio.iscoroutine(hook):
                    await hook
            if self.gate is not None:
                await self.gate.wait()

            scripted = self.failures.get(resource_id.name)
            if scripted:
                outcome = scripted.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
            return await super().apply_action(resource_id, action)
        finally:
            self.active -= 1
            self.active_by_resource[resource_id] -= 1

    async def poll_status(self, resource_id):
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return await super().poll_status(resource_id)


@pytest.fixture
def settings():
    """Settings with long timers so only the tests drive reconciliation."""
    return Settings(
        backend="memory",
        worker_count=4,
        resync_period_seconds=3600.0,
        poll_interval_seconds=3600.0,
        poll_failure_threshold=3,
        backoff_base_seconds=1.0,
        backoff_cap_seconds=60.0,
        backoff_jitter=0.2,
        max_transient_attempts=None,
    )


@pytest.fixture
def managed_system():
    return ScriptedManagedSystem()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the reconciler, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Backoff sleep that records the delay instead of waiting."""
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
async def controller(managed_system, settings, fake_sleep):
    """A running controller against the scripted managed system."""
    from converge.services.controller import Controller

    ctrl = Controller(
        managed_system=managed_system,
        settings=settings,
        sleep=fake_sleep,
        enable_poller=False,
    )
    await ctrl.start()
    yield ctrl
    await ctrl.stop()


@pytest.fixture
def eventually():
    """Wait (briefly) until a condition holds."""
    async def _eventually(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.001)
    return _eventually


def web_spec(**overrides):
    """A typical Deployment spec as a plain mapping."""
    spec = {
        "name": "web",
        "namespace": "default",
        "kind": "Deployment",
        "replicas": 3,
        "image": "nginx:1.25",
        "labels": {"app": "web"},
        "env": {"MODE": "prod"},
        "limits": {"cpu": "500m", "memory": "256Mi"},
    }
    spec.update(overrides)
    return spec


@pytest.fixture
def make_spec():
    return web_spec
