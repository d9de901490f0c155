"""Pytest configuration and fixtures."""

from collections.abc import Generator
from pathlib import Path

import pytest

from search_gateway.analytics.storage import AnalyticsStorage
from search_gateway.analytics.tracker import SearchTracker
from search_gateway.auth import HeaderIdentityResolver
from search_gateway.cache.memory import InMemoryCache
from search_gateway.cache.multi_layer import MultiLayerCache
from search_gateway.config import Settings
from search_gateway.db.manager import DatabaseManager
from search_gateway.quota.limiter import RateLimiter
from search_gateway.quota.manager import QuotaManager
from search_gateway.search.engine import Document, InMemorySearchEngine
from search_gateway.search.orchestrator import SearchServices


class FakeClock:
    """Manually advanced clock for limiter and cache tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> str:
    """Path for a temporary SQLite database."""
    return str(tmp_path / "quota.db")


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def analytics_storage(tmp_path: Path) -> AnalyticsStorage:
    return AnalyticsStorage(str(tmp_path / "analytics.db"))


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        api_key=None,
        analytics_db_path=str(tmp_path / "analytics.db"),
        analytics_prune_interval_minutes=0,
        user_rate_limit=100,
        user_rate_window_seconds=60,
        org_rate_limit=1000,
        org_rate_window_seconds=60,
        default_plan_tier="free",
        search_timeout_seconds=2.0,
    )


@pytest.fixture
def engine() -> InMemorySearchEngine:
    """Engine with a few documents for org_1 and one for org_2."""
    engine = InMemorySearchEngine()
    engine.add_document("org_1", Document(id="d1", content="test plan for the launch", source_type="meeting"))
    engine.add_document("org_1", Document(id="d2", content="test results and test coverage", source_type="doc"))
    engine.add_document("org_1", Document(id="d3", content="quarterly budget review", source_type="meeting"))
    engine.add_document("org_2", Document(id="x1", content="test secrets of another tenant"))
    return engine


@pytest.fixture
def services(
    engine: InMemorySearchEngine,
    analytics_storage: AnalyticsStorage,
    clock: FakeClock,
) -> SearchServices:
    """In-memory component container for pipeline and API tests."""
    return SearchServices(
        rate_limiter=RateLimiter(time_provider=clock),
        quota_manager=QuotaManager(),
        cache=MultiLayerCache(memory=InMemoryCache(max_size=100), shared=InMemoryCache()),
        tracker=SearchTracker(analytics_storage),
        engine=engine,
        identity_resolver=HeaderIdentityResolver(),
    )


@pytest.fixture
def identity_headers() -> dict[str, str]:
    return {"x-user-id": "u_1", "x-org-id": "org_1"}
