"""Plan change impact models."""

from enum import Enum

from pydantic import BaseModel, Field, computed_field

from menuqr.models.plans import FeatureKey, PlanChangeKind, ResourceKind


class EffectiveWhen(str, Enum):
    IMMEDIATE = "immediate"
    END_OF_CYCLE = "end_of_cycle"


class BlockReason(str, Enum):
    ACTIVE_DELIVERIES = "active_deliveries"


class ExcessResource(BaseModel):
    resource: ResourceKind
    current_count: int
    new_limit: int
    excess_count: int
    # IDs to archive, oldest records kept first; empty when nothing backs the resource
    affected_ids: list[str] = Field(default_factory=list)
    # Archiving affected_ids brings the resource within the new limit
    resolvable: bool = False


class Blocker(BaseModel):
    reason: BlockReason
    count: int
    message: str


class DowngradeImpact(BaseModel):
    """What a plan change would do to the tenant's data and features."""

    from_plan_slug: str
    to_plan_slug: str
    change_kind: PlanChangeKind
    excess: list[ExcessResource] = Field(default_factory=list)
    lost_features: list[FeatureKey] = Field(default_factory=list)
    blocking: list[Blocker] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def can_proceed(self) -> bool:
        return not self.blocking


class UpgradePreview(BaseModel):
    from_plan_slug: str
    to_plan_slug: str
    change_kind: PlanChangeKind
    gained_features: list[FeatureKey] = Field(default_factory=list)
    new_limits: dict[ResourceKind, int] = Field(default_factory=dict)
    price_difference: int = 0
    currency: str = "EUR"
