"""Read-only plan catalog."""

from menuqr.constants import (
    DEFAULT_TRIAL_DAYS,
    FEATURE_MIN_TIER,
    PLAN_DESCRIPTIONS,
    PLAN_LIMITS,
    PLAN_PRICING,
)
from menuqr.errors import PlanNotFoundError
from menuqr.models.plans import FeatureKey, Plan, PlanChangeKind, Tier


def build_default_plans() -> list[Plan]:
    """Build one plan per tier from the constant tables."""
    plans = []
    for tier in Tier:
        features = frozenset(
            feature for feature, min_tier in FEATURE_MIN_TIER.items() if min_tier.rank <= tier.rank
        )
        plans.append(
            Plan(
                slug=tier.value,
                name=tier.value.capitalize(),
                description=PLAN_DESCRIPTIONS[tier],
                tier=tier,
                enabled_features=features,
                limits=dict(PLAN_LIMITS[tier]),
                pricing=PLAN_PRICING[tier],
                trial_days=0 if tier == Tier.FREE else DEFAULT_TRIAL_DAYS,
                sort_order=tier.rank,
            )
        )
    return plans


def compare_tiers(current: Plan, target: Plan) -> PlanChangeKind:
    if target.tier.rank > current.tier.rank:
        return PlanChangeKind.UPGRADE
    if target.tier.rank < current.tier.rank:
        return PlanChangeKind.DOWNGRADE
    return PlanChangeKind.LATERAL


def features_lost(current: Plan, target: Plan) -> list[FeatureKey]:
    return sorted(current.enabled_features - target.enabled_features, key=_feature_order)


def features_gained(current: Plan, target: Plan) -> list[FeatureKey]:
    return sorted(target.enabled_features - current.enabled_features, key=_feature_order)


def _feature_order(feature: FeatureKey) -> int:
    return list(FeatureKey).index(feature)


class PlanCatalog:
    """Shared, immutable lookup over the available plans."""

    def __init__(self, plans: list[Plan] | None = None) -> None:
        source = plans if plans is not None else build_default_plans()
        self._plans: dict[str, Plan] = {plan.slug: plan for plan in source}

    def get_plan(self, slug: str) -> Plan:
        plan = self._plans.get(slug)
        if plan is None:
            raise PlanNotFoundError(slug)
        return plan

    def get_plan_by_tier(self, tier: Tier) -> Plan:
        for plan in self.list_plans(include_inactive=True):
            if plan.tier == tier:
                return plan
        raise PlanNotFoundError(tier.value)

    def list_plans(self, sorted_by_tier: bool = True, include_inactive: bool = False) -> list[Plan]:
        plans = [p for p in self._plans.values() if include_inactive or p.is_active]
        if sorted_by_tier:
            plans.sort(key=lambda p: (p.tier.rank, p.sort_order, p.slug))
        return plans

    def compare_tiers(self, current_slug: str, target_slug: str) -> PlanChangeKind:
        return compare_tiers(self.get_plan(current_slug), self.get_plan(target_slug))
