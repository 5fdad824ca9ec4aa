import os
import sys
import asyncio
import inspect

import pytest

# Ensure project root is on sys.path so `import onboarding` works in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from onboarding.config import Settings
from onboarding.obs.metrics import reset_metrics
from onboarding.session.cache import InMemorySessionCache
from onboarding.session.manager import OnboardingSessionManager
from onboarding.session.scheduler import SessionScheduler
from onboarding.steps.catalog import StaticStepCatalog
from onboarding.steps.models import parse_steps


def pytest_pyfunc_call(pyfuncitem):
    """Allow running async tests without pytest-asyncio.

    If the test function is a coroutine, run it in a fresh event loop.
    """
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        funcargs = pyfuncitem.funcargs
        sig = inspect.signature(testfunction)
        # Filter only the parameters that the test function expects
        allowed = {name: funcargs[name] for name in sig.parameters.keys() if name in funcargs}
        asyncio.run(testfunction(**allowed))
        return True
    return None


class FakeClock:
    """Manually advanced epoch clock shared by manager, cache and scheduler."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


THREE_STEPS = [
    {
        "step_number": 1,
        "step_name": "profile",
        "fields": [{"name": "name", "type": "text", "label": "Name", "required": True}],
        "hints": ["Tell us your name"],
        "estimated_time_minutes": 2,
    },
    {
        "step_number": 2,
        "step_name": "contact",
        "fields": [
            {"name": "email", "type": "email", "label": "Email", "required": True},
            {"name": "age", "type": "number", "label": "Age", "min": 18, "max": 120},
        ],
        "estimated_time_minutes": 3,
    },
    {
        "step_number": 3,
        "step_name": "notes",
        "fields": [{"name": "notes", "type": "textarea"}],
    },
]


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        ONBOARDING_SESSION_TTL_SECONDS=7200,
        ONBOARDING_CACHE_TTL_SECONDS=86400,
        AUTO_SAVE_INTERVAL_SECONDS=30,
        CACHE_RETRY_ATTEMPTS=3,
        CACHE_RETRY_BACKOFF_SECONDS=0,
        SESSION_HISTORY_LIMIT=50,
    )


@pytest.fixture
def three_step_catalog():
    return StaticStepCatalog(parse_steps(THREE_STEPS))


@pytest.fixture
def memory_cache(clock):
    return InMemorySessionCache(clock=clock)


@pytest.fixture
def scheduler(clock):
    return SessionScheduler(tick_seconds=0.01, clock=clock)


@pytest.fixture
def manager(memory_cache, three_step_catalog, scheduler, test_settings, clock):
    return OnboardingSessionManager(
        cache=memory_cache,
        catalog=three_step_catalog,
        scheduler=scheduler,
        settings=test_settings,
        clock=clock,
    )
