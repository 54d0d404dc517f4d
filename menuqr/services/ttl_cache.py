"""Process-local read cache for subscriptions.

Only reads go through here; every write path invalidates the tenant entry,
so the cache never holds state that the repository does not.
"""

import time
from collections.abc import Callable

import structlog
from cachetools import TTLCache

from menuqr.models.subscription import Subscription

logger = structlog.get_logger(__name__)


class SubscriptionCache:
    """TTL cache of subscription snapshots keyed by tenant."""

    def __init__(
        self,
        maxsize: int = 1024,
        ttl: float = 300,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"subscription:{tenant_id}"

    def get(self, tenant_id: str) -> Subscription | None:
        cached = self._cache.get(self._key(tenant_id))
        return cached.model_copy(deep=True) if cached else None

    def put(self, subscription: Subscription) -> None:
        self._cache[self._key(subscription.tenant_id)] = subscription.model_copy(deep=True)

    def invalidate(self, tenant_id: str) -> None:
        if self._cache.pop(self._key(tenant_id), None) is not None:
            logger.debug("subscription_cache_invalidated", tenant_id=tenant_id)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
