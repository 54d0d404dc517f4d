"""Plan catalog models: tiers, feature flags, resource kinds and plans."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Tier(str, Enum):
    """Plan tiers, declared in ascending order."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)


class FeatureKey(str, Enum):
    """Closed set of feature flags a plan can enable."""

    # free
    MENU_MANAGEMENT = "menu_management"
    ORDERS = "orders"
    QR_CODES = "qr_codes"
    BASIC_DASHBOARD = "basic_dashboard"
    BASIC_SETTINGS = "basic_settings"
    # starter
    CUSTOMER_ACCOUNTS = "customer_accounts"
    BASIC_ANALYTICS = "basic_analytics"
    DISH_VARIANTS = "dish_variants"
    DISH_OPTIONS = "dish_options"
    MULTI_LANGUAGE = "multi_language"
    EMAIL_NOTIFICATIONS = "email_notifications"
    ORDER_HISTORY = "order_history"
    # professional
    RESERVATIONS = "reservations"
    REVIEWS = "reviews"
    INVENTORY = "inventory"
    SCHEDULED_ORDERS = "scheduled_orders"
    KDS = "kds"
    SMS_NOTIFICATIONS = "sms_notifications"
    ALLERGEN_INFO = "allergen_info"
    NUTRITION_INFO = "nutrition_info"
    ADVANCED_DASHBOARD = "advanced_dashboard"
    BASIC_EXPORT = "basic_export"
    # business
    LOYALTY_PROGRAM = "loyalty_program"
    SMS_CAMPAIGNS = "sms_campaigns"
    ADVANCED_ANALYTICS = "advanced_analytics"
    DATA_EXPORT = "data_export"
    MULTI_LOCATION = "multi_location"
    API_READ = "api_read"
    WHITE_LABEL = "white_label"
    WEBHOOKS = "webhooks"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_BRANDING = "custom_branding"
    # enterprise
    DELIVERY_MODULE = "delivery_module"
    DRIVER_MANAGEMENT = "driver_management"
    GPS_TRACKING = "gps_tracking"
    ROUTE_OPTIMIZATION = "route_optimization"
    PROOF_OF_DELIVERY = "proof_of_delivery"
    HOTEL_MODULE = "hotel_module"
    TWO_FACTOR_AUTH = "two_factor_auth"
    AUDIT_LOGS = "audit_logs"
    API_WRITE = "api_write"
    CUSTOM_INTEGRATIONS = "custom_integrations"
    DEDICATED_SUPPORT = "dedicated_support"
    SLA_GUARANTEE = "sla_guarantee"


class ResourceKind(str, Enum):
    """Countable resources that plans limit."""

    DISHES = "dishes"
    ORDERS = "orders"
    USERS = "users"
    SMS_CREDITS = "sms_credits"
    STORAGE = "storage"
    TABLES = "tables"
    CAMPAIGNS = "campaigns"
    LOCATIONS = "locations"

    @property
    def is_metered(self) -> bool:
        """Metered resources count consumption per period and reset on rollover."""
        return self in METERED_RESOURCES


METERED_RESOURCES: frozenset[ResourceKind] = frozenset(
    {ResourceKind.ORDERS, ResourceKind.SMS_CREDITS, ResourceKind.CAMPAIGNS}
)

UNLIMITED = -1


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanChangeKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class PlanPricing(BaseModel):
    """Plan prices in cents."""

    model_config = ConfigDict(frozen=True)

    monthly: int = Field(default=0, ge=0)
    yearly: int = Field(default=0, ge=0)
    currency: str = "EUR"

    def for_cycle(self, cycle: BillingCycle) -> int:
        return self.yearly if cycle == BillingCycle.YEARLY else self.monthly


class Plan(BaseModel):
    """Immutable catalog entry."""

    model_config = ConfigDict(frozen=True)

    slug: str
    name: str
    description: str = ""
    tier: Tier
    enabled_features: frozenset[FeatureKey] = frozenset()
    limits: dict[ResourceKind, int]
    pricing: PlanPricing = Field(default_factory=PlanPricing)
    trial_days: int = Field(default=0, ge=0)
    sort_order: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def _check_limits(self) -> "Plan":
        missing = [r.value for r in ResourceKind if r not in self.limits]
        if missing:
            raise ValueError(f"Plan '{self.slug}' is missing limits for {missing}")
        bad = [r.value for r, value in self.limits.items() if value < UNLIMITED]
        if bad:
            raise ValueError(f"Plan '{self.slug}' has negative limits for {bad}")
        return self

    def has_feature(self, feature: FeatureKey) -> bool:
        return feature in self.enabled_features

    def limit_for(self, resource: ResourceKind) -> int:
        return self.limits[resource]

    def is_unlimited(self, resource: ResourceKind) -> bool:
        return self.limits[resource] == UNLIMITED
