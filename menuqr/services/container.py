"""Wiring of repositories and services for one process."""

from datetime import UTC, datetime

import structlog

from menuqr.config import Settings
from menuqr.models.plans import ResourceKind
from menuqr.services.archival import (
    ArchivableResourceSource,
    InMemoryArchivableSource,
    SupabaseArchivableSource,
)
from menuqr.services.delivery_service import DeliveryDispatchService
from menuqr.services.downgrade_analyzer import DowngradeAnalyzer
from menuqr.services.downgrade_service import DowngradeService
from menuqr.services.entitlements import EntitlementService
from menuqr.services.events import (
    AuditSink,
    DeliveryEventPublisher,
    LoggingAuditSink,
    LoggingEventPublisher,
    SubscriptionNotifier,
    SupabaseAuditSink,
)
from menuqr.services.plan_catalog import PlanCatalog
from menuqr.services.repositories import (
    InMemoryDeliveryRepository,
    InMemorySubscriptionRepository,
    SupabaseDeliveryRepository,
    SupabaseSubscriptionRepository,
)
from menuqr.services.subscription_service import SubscriptionService
from menuqr.services.ttl_cache import SubscriptionCache
from menuqr.services.usage_service import UsageService

logger = structlog.get_logger(__name__)

# Tables backing the stock resources that can be archived on downgrade
ARCHIVABLE_TABLES: dict[ResourceKind, str] = {
    ResourceKind.DISHES: "dishes",
    ResourceKind.TABLES: "tables",
    ResourceKind.CAMPAIGNS: "campaigns",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ServiceContainer:
    """Holds the shared services; one instance per application."""

    def __init__(
        self,
        settings: Settings,
        supabase_client=None,
        now_provider=_utcnow,
        publisher: DeliveryEventPublisher | None = None,
        audit: AuditSink | None = None,
        notifier: SubscriptionNotifier | None = None,
        sources: dict[ResourceKind, ArchivableResourceSource] | None = None,
    ) -> None:
        use_supabase = supabase_client is not None and not settings.use_in_memory_store
        tables = settings.tables

        if use_supabase:
            self.subscription_repository = SupabaseSubscriptionRepository(
                supabase_client, tables.subscriptions
            )
            self.delivery_repository = SupabaseDeliveryRepository(supabase_client, tables.deliveries)
            default_sources = {
                resource: SupabaseArchivableSource(supabase_client, table, resource)
                for resource, table in ARCHIVABLE_TABLES.items()
            }
            default_audit: AuditSink = SupabaseAuditSink(supabase_client, tables.audit_log)
            logger.info("storage_configured", backend="supabase")
        else:
            self.subscription_repository = InMemorySubscriptionRepository()
            self.delivery_repository = InMemoryDeliveryRepository()
            default_sources = {
                resource: InMemoryArchivableSource(resource) for resource in ARCHIVABLE_TABLES
            }
            default_audit = LoggingAuditSink()
            logger.warning("storage_in_memory", detail="State is lost on restart")

        self.sources = sources if sources is not None else default_sources
        self.audit = audit or default_audit
        self.catalog = PlanCatalog()
        self.cache = SubscriptionCache(
            maxsize=settings.subscriptions.entitlement_cache_size,
            ttl=settings.subscriptions.entitlement_cache_ttl_seconds,
        )
        self.entitlement_service = EntitlementService(
            self.subscription_repository,
            self.catalog,
            settings.subscriptions,
            cache=self.cache,
            now_provider=now_provider,
        )
        self.analyzer = DowngradeAnalyzer(
            self.catalog,
            settings.subscriptions,
            sources=self.sources,
            deliveries=self.delivery_repository,
        )
        self.subscription_service = SubscriptionService(
            self.subscription_repository,
            self.catalog,
            self.analyzer,
            settings.subscriptions,
            cache=self.cache,
            notifier=notifier,
            audit=self.audit,
            now_provider=now_provider,
        )
        self.downgrade_service = DowngradeService(
            self.subscription_service, self.analyzer, self.catalog
        )
        self.usage_service = UsageService(
            self.subscription_repository,
            self.catalog,
            cache=self.cache,
            audit=self.audit,
            now_provider=now_provider,
        )
        self.dispatch_service = DeliveryDispatchService(
            self.delivery_repository,
            self.entitlement_service,
            settings.dispatch,
            publisher=publisher or LoggingEventPublisher(),
            audit=self.audit,
            now_provider=now_provider,
        )

    def install(self, state) -> None:
        """Expose the services on ``app.state`` for the routers."""
        state.plan_catalog = self.catalog
        state.entitlement_service = self.entitlement_service
        state.subscription_service = self.subscription_service
        state.downgrade_service = self.downgrade_service
        state.usage_service = self.usage_service
        state.dispatch_service = self.dispatch_service
