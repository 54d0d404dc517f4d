"""Soft archival of tenant records that exceed a plan limit.

Archived records are hidden from limited listings but kept, so an upgrade
can restore them.
"""

from datetime import datetime
from typing import Protocol

import structlog
from pydantic import BaseModel

from menuqr.models.plans import ResourceKind

logger = structlog.get_logger(__name__)


class ArchivableItem(BaseModel):
    id: str
    created_at: datetime
    archived: bool = False
    archived_reason: str | None = None


class ArchivableResourceSource(Protocol):
    """Records backing a stock resource (dishes, tables, campaigns)."""

    resource: ResourceKind

    async def list_live(self, tenant_id: str) -> list[ArchivableItem]:
        """Non-archived records."""

    async def list_archived(self, tenant_id: str) -> list[ArchivableItem]:
        """Archived records."""

    async def archive(self, tenant_id: str, ids: list[str], reason: str) -> int:
        """Soft-disable records; returns how many changed."""

    async def restore(self, tenant_id: str, ids: list[str]) -> int:
        """Re-enable archived records; returns how many changed."""


def select_for_archival(items: list[ArchivableItem], keep: int) -> list[str]:
    """Oldest-created records are kept; the newest beyond ``keep`` are archived.

    Ties on ``created_at`` are broken by id so the choice is deterministic.
    """
    ordered = sorted(items, key=lambda item: (item.created_at, item.id))
    return [item.id for item in ordered[max(0, keep):]]


def select_for_restore(items: list[ArchivableItem], room: int | None) -> list[str]:
    """Oldest archived records first, up to ``room`` (None = all)."""
    ordered = sorted(items, key=lambda item: (item.created_at, item.id))
    if room is None:
        return [item.id for item in ordered]
    return [item.id for item in ordered[: max(0, room)]]


class InMemoryArchivableSource:
    """In-memory record store used for tests and local fallback."""

    def __init__(self, resource: ResourceKind) -> None:
        self.resource = resource
        self.items: dict[str, dict[str, ArchivableItem]] = {}

    def add(self, tenant_id: str, item_id: str, created_at: datetime) -> ArchivableItem:
        item = ArchivableItem(id=item_id, created_at=created_at)
        self.items.setdefault(tenant_id, {})[item_id] = item
        return item

    async def list_live(self, tenant_id: str) -> list[ArchivableItem]:
        return [i.model_copy() for i in self.items.get(tenant_id, {}).values() if not i.archived]

    async def list_archived(self, tenant_id: str) -> list[ArchivableItem]:
        return [i.model_copy() for i in self.items.get(tenant_id, {}).values() if i.archived]

    async def archive(self, tenant_id: str, ids: list[str], reason: str) -> int:
        changed = 0
        for item_id in ids:
            item = self.items.get(tenant_id, {}).get(item_id)
            if item is not None and not item.archived:
                item.archived = True
                item.archived_reason = reason
                changed += 1
        return changed

    async def restore(self, tenant_id: str, ids: list[str]) -> int:
        changed = 0
        for item_id in ids:
            item = self.items.get(tenant_id, {}).get(item_id)
            if item is not None and item.archived:
                item.archived = False
                item.archived_reason = None
                changed += 1
        return changed


class SupabaseArchivableSource:
    """Archives rows of a Supabase table through its ``is_archived`` column."""

    def __init__(self, client, table: str, resource: ResourceKind, tenant_column: str = "tenant_id"):
        self.client = client
        self.table = table
        self.resource = resource
        self.tenant_column = tenant_column

    async def _list(self, tenant_id: str, archived: bool) -> list[ArchivableItem]:
        response = (
            await self.client.table(self.table)
            .select("id, created_at, is_archived, archived_reason")
            .eq(self.tenant_column, tenant_id)
            .eq("is_archived", archived)
            .execute()
        )
        return [
            ArchivableItem(
                id=str(row["id"]),
                created_at=row["created_at"],
                archived=row["is_archived"],
                archived_reason=row.get("archived_reason"),
            )
            for row in response.data or []
        ]

    async def list_live(self, tenant_id: str) -> list[ArchivableItem]:
        return await self._list(tenant_id, archived=False)

    async def list_archived(self, tenant_id: str) -> list[ArchivableItem]:
        return await self._list(tenant_id, archived=True)

    async def archive(self, tenant_id: str, ids: list[str], reason: str) -> int:
        if not ids:
            return 0
        response = (
            await self.client.table(self.table)
            .update({"is_archived": True, "archived_reason": reason})
            .eq(self.tenant_column, tenant_id)
            .in_("id", ids)
            .execute()
        )
        changed = len(response.data or [])
        logger.info("records_archived", table=self.table, tenant_id=tenant_id, count=changed)
        return changed

    async def restore(self, tenant_id: str, ids: list[str]) -> int:
        if not ids:
            return 0
        response = (
            await self.client.table(self.table)
            .update({"is_archived": False, "archived_reason": None})
            .eq(self.tenant_column, tenant_id)
            .in_("id", ids)
            .execute()
        )
        return len(response.data or [])
