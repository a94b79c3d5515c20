import pytest
from typer.testing import CliRunner
from pathlib import Path
from typing import List

from quotasync.core.batch_processor import BatchProcessor
from quotasync.core.quota_cache import QuotaCache
from quotasync.core.sync_engine import SyncEngine
from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import DomainEvent
from quotasync.domain.models.common import BRONZE, MembershipTier, UserId
from quotasync.domain.models.config import SyncConfig
from quotasync.domain.models.usage import TierLimits
from quotasync.infrastructure.config import settings
from quotasync.infrastructure.persistence.json_file_store import JsonFileStateStore
from quotasync.infrastructure.remote.memory_remote import DEFAULT_TIER_LIMITS, InMemoryRemoteStore
from quotasync.infrastructure.resilience.retry_coordinator import RetryCoordinator
from quotasync import main as quotasync_main

START = 1_700_000_000.0
DAY = 24 * 60 * 60

class FakeClock:
    """Controllable wall clock (epoch seconds)."""

    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

class RecordingSleep:
    """Async sleep replacement that records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()

@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()

@pytest.fixture
def recorded_events(events: EventDispatcher) -> List[DomainEvent]:
    """Every event published on the shared dispatcher."""
    received: List[DomainEvent] = []
    events.subscribe(received.append)
    return received

@pytest.fixture
def tier_limits(clock: FakeClock) -> TierLimits:
    return TierLimits(limits=DEFAULT_TIER_LIMITS, fetched_at=clock())

@pytest.fixture
def quota_cache(tier_limits, clock, events) -> QuotaCache:
    return QuotaCache(tier=BRONZE, tier_limits=tier_limits, clock=clock, events=events)

@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(batch_size=20, max_attempts=5, max_retries=3, jitter_ratio=0.0)

@pytest.fixture
def coordinator(config, events, no_sleep) -> RetryCoordinator:
    """Coordinator without rate limiter or breaker that never really sleeps."""
    return RetryCoordinator(policy=config.retry_policy(), events=events, sleep=no_sleep)

@pytest.fixture
def memory_remote(clock) -> InMemoryRemoteStore:
    return InMemoryRemoteStore(tier=BRONZE, clock=clock)

@pytest.fixture
def make_processor(quota_cache, coordinator, events, config):
    """Builds a BatchProcessor around the shared cache; remote and config may vary."""
    def _make(remote, **overrides) -> BatchProcessor:
        cfg = SyncConfig(**{**config.__dict__, **overrides}) if overrides else config
        return BatchProcessor(
            quota_cache=quota_cache,
            retry_coordinator=coordinator,
            remote_store=remote,
            config=cfg,
            events=events,
        )
    return _make

@pytest.fixture
def state_store(tmp_path: Path) -> JsonFileStateStore:
    return JsonFileStateStore(tmp_path / "state")

@pytest.fixture
def make_engine(config, memory_remote, state_store, coordinator, events, clock):
    """Builds a SyncEngine wired to the in-memory remote and a JSON state store."""
    def _make(remote=None, store=None, tier: MembershipTier = BRONZE, **overrides) -> SyncEngine:
        cfg = SyncConfig(**{**config.__dict__, **overrides}) if overrides else config
        return SyncEngine(
            config=cfg,
            remote_store=remote or memory_remote,
            state_store=store or state_store,
            user_id=UserId("user-1"),
            tier=tier,
            events=events,
            retry_coordinator=coordinator,
            clock=clock,
        )
    return _make

@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()

@pytest.fixture
def cli_config(tmp_path: Path):
    """Points the CLI at a temporary JSON state directory and the in-memory remote."""
    settings.set_config_for_testing({
        'user.id': 'cli-user',
        'user.tier': 'bronze',
        'state.backend': 'json',
        'state.directory': str(tmp_path / "cli-state"),
        'remote.base_url': None,
        'logging.level': 'WARNING',
    })
    quotasync_main.reset_dependencies()
    yield
    settings.clear_test_config()
    quotasync_main.reset_dependencies()
