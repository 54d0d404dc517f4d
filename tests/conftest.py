"""
Shared test fixtures for the MenuQR core test suite.
"""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from menuqr.config import DispatchConfig, Settings, SubscriptionConfig
from menuqr.models.plans import ResourceKind
from menuqr.services.archival import InMemoryArchivableSource
from menuqr.services.container import ServiceContainer
from menuqr.services.delivery_service import DeliveryDispatchService
from menuqr.services.downgrade_analyzer import DowngradeAnalyzer
from menuqr.services.downgrade_service import DowngradeService
from menuqr.services.entitlements import EntitlementService
from menuqr.services.plan_catalog import PlanCatalog
from menuqr.services.repositories import (
    InMemoryDeliveryRepository,
    InMemorySubscriptionRepository,
)
from menuqr.services.subscription_service import SubscriptionService
from menuqr.services.usage_service import UsageService


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class Services:
    """Fully wired in-memory services sharing one clock."""

    def __init__(
        self,
        clock: MutableClock,
        config: SubscriptionConfig | None = None,
        dispatch_config: DispatchConfig | None = None,
        publisher=None,
        audit=None,
        notifier=None,
    ):
        self.clock = clock
        self.config = config or SubscriptionConfig()
        self.catalog = PlanCatalog()
        self.subscription_repository = InMemorySubscriptionRepository()
        self.delivery_repository = InMemoryDeliveryRepository()
        self.sources = {
            resource: InMemoryArchivableSource(resource)
            for resource in (ResourceKind.DISHES, ResourceKind.TABLES, ResourceKind.CAMPAIGNS)
        }
        self.entitlements = EntitlementService(
            self.subscription_repository, self.catalog, self.config, now_provider=clock.now
        )
        self.analyzer = DowngradeAnalyzer(
            self.catalog, self.config, sources=self.sources, deliveries=self.delivery_repository
        )
        self.subscriptions = SubscriptionService(
            self.subscription_repository,
            self.catalog,
            self.analyzer,
            self.config,
            cache=self.entitlements.cache,
            notifier=notifier,
            audit=audit,
            now_provider=clock.now,
        )
        self.downgrades = DowngradeService(self.subscriptions, self.analyzer, self.catalog)
        self.usage = UsageService(
            self.subscription_repository,
            self.catalog,
            cache=self.entitlements.cache,
            audit=audit,
            now_provider=clock.now,
        )
        self.dispatch = DeliveryDispatchService(
            self.delivery_repository,
            self.entitlements,
            dispatch_config or DispatchConfig(),
            publisher=publisher,
            audit=audit,
            now_provider=clock.now,
        )

    async def seed_records(self, tenant_id: str, resource: ResourceKind, count: int) -> list[str]:
        """Create ``count`` live records, one minute apart, and set the counter to match."""
        source = self.sources[resource]
        ids = []
        base = self.clock.now() - timedelta(days=30)
        for i in range(count):
            item_id = f"{resource.value}-{i:03d}"
            source.add(tenant_id, item_id, base + timedelta(minutes=i))
            ids.append(item_id)
        await self.usage.set_usage(tenant_id, resource, count)
        return ids


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off any real Supabase project configured in the shell."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    monkeypatch.setenv("USE_IN_MEMORY_STORE", "true")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def services(clock: MutableClock) -> Services:
    return Services(clock)


@pytest.fixture
def make_services(clock: MutableClock) -> Callable[..., Services]:
    """Build services with custom config or collaborators on the shared clock."""

    def _make(**kwargs) -> Services:
        return Services(clock, **kwargs)

    return _make


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """FastAPI TestClient wrapping the main application with in-memory services."""
    # Clear the lru_cache so settings pick up test env vars
    from menuqr.config import get_settings

    get_settings.cache_clear()

    from menuqr.main import app

    container = ServiceContainer(Settings(use_in_memory_store=True))
    container.install(app.state)
    app.state.container = container
    yield TestClient(app)
    app.dependency_overrides.clear()
