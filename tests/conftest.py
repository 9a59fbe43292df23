"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from studyloop.config import Settings  # noqa: E402
from studyloop.gateway.capabilities import Capability  # noqa: E402
from studyloop.service import build_studyloop  # noqa: E402
from studyloop.store import InMemoryRepository, ProficiencyStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite file, full engine)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns at once and records delays."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


# =============================================================================
# Capabilities
# =============================================================================

DIAGNOSIS = {"estimate": 0.62, "rationale": "Grasps the rule, unsure of edge cases", "correct": True}


def default_generate(payload):
    if "estimate" in payload["prompt"]:
        return {"text": "Verdict: " + json.dumps(DIAGNOSIS)}
    return {"text": f"Generated for: {payload['prompt'].splitlines()[0]}"}


DEFAULT_RESPONSES = {
    Capability.GENERATE_TEXT.value: default_generate,
    Capability.EXTRACT_TEXT.value: {"text": "What is 2 + 2?", "per_block_confidence": [0.9, 0.8]},
    Capability.SEARCH_INDEX.value: {
        "results": [
            {"title": "Spacing effect", "url": "https://example.org/a", "snippet": "Reviews spread out"},
            {"title": "Testing effect", "snippet": "Retrieval strengthens memory"},
        ]
    },
    Capability.RENDER_JOB.value: {"job_id": "job-1"},
    Capability.CLASSIFY_TOPIC.value: {"topic_id": "algebra"},
}


class FakeCapabilities:
    """
    Scripted capability handlers.

    ``script(capability, *outcomes)`` queues outcomes for successive calls; an
    outcome is a response, an exception instance to raise, or a callable taking
    the payload. Once the queue is empty the capability's default applies.
    """

    def __init__(self):
        self.calls = []
        self._queues: dict[str, list] = {}
        self._defaults = dict(DEFAULT_RESPONSES)

    def script(self, capability, *outcomes) -> None:
        self._queues.setdefault(str(capability), []).extend(outcomes)

    def always(self, capability, outcome) -> None:
        self._defaults[str(capability)] = outcome

    def calls_to(self, capability) -> list:
        return [c for c in self.calls if c.capability == str(capability)]

    def handlers(self) -> dict:
        return {capability.value: self._handle for capability in Capability}

    async def _handle(self, call):
        self.calls.append(call)
        queue = self._queues.get(call.capability)
        outcome = queue.pop(0) if queue else self._defaults[call.capability]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome = outcome(dict(call.payload))
            if hasattr(outcome, "__await__"):
                outcome = await outcome
        return outcome


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings():
    """Settings isolated from the environment: in-memory store, fast timeouts."""
    return Settings(
        _env_file=None,
        database_url=None,
        capability_timeout_seconds=5.0,
        render_timeout_seconds=5.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def fake_capabilities():
    return FakeCapabilities()


@pytest.fixture
def store(settings):
    return ProficiencyStore(InMemoryRepository(), settings)


@pytest_asyncio.fixture
async def engine(settings, fake_capabilities, sleep):
    """Fully wired StudyLoop over fake capabilities and an in-memory store."""
    loop = build_studyloop(
        settings,
        handlers=fake_capabilities.handlers(),
        repository=InMemoryRepository(),
        sleep=sleep,
    )
    yield loop
    await loop.aclose()
