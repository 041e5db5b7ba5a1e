# tests/conftest.py
from datetime import datetime

import pytest
import pytest_asyncio

from exception_rules.data.memory_repository import InMemoryRuleRepository
from exception_rules.data.models import SessionContext
from exception_rules.domain.cache import ExceptionRuleCache
from exception_rules.domain.rule_manager import ExceptionRuleManager
from exception_rules.domain.search import RuleSearchOptimizer
from exception_rules.domain.usage_tracker import RuleUsageTracker
from exception_rules.events.event_interface import EventEmitter

FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0)


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    """Create a fake monotonic clock"""
    return FakeClock()


@pytest_asyncio.fixture
async def repository():
    """Create a connected in-memory repository"""
    repo = InMemoryRuleRepository()
    await repo.connect()
    yield repo
    await repo.disconnect()


@pytest.fixture
def events():
    """Create an isolated event emitter"""
    return EventEmitter()


@pytest.fixture
def tracker(repository):
    """Create a usage tracker with a fixed clock"""
    return RuleUsageTracker(repository, now=lambda: FIXED_NOW)


@pytest.fixture
def manager(repository, clock, events, tracker):
    """Create a rule manager wired to test doubles"""
    return ExceptionRuleManager(
        repository,
        cache=ExceptionRuleCache(default_ttl=300, search_ttl=120, clock=clock),
        search=RuleSearchOptimizer(debounce_delay=0.01),
        tracker=tracker,
        events=events,
        now=lambda: FIXED_NOW
    )


@pytest.fixture
def session_context():
    """Create a session context for a chain"""
    return SessionContext(
        session_id="session-1",
        chain_id="chain-1",
        chain_name="Deep work",
        started_at=datetime(2024, 3, 15, 11, 0, 0),
        elapsed_time=600.0,
        remaining_time=1800.0
    )
