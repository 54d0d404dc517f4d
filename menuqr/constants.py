"""
Business constants for the MenuQR core.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(grace windows, timeouts, retry limits), see config.py.
"""

from menuqr.models.plans import FeatureKey, PlanPricing, ResourceKind, Tier

# --- API metadata ---
API_TITLE = "MenuQR Core API"
API_VERSION = "0.1.0"

# --- Minimum tier per feature ---
# Higher tiers inherit every feature of the tiers below them.
FEATURE_MIN_TIER: dict[FeatureKey, Tier] = {
    FeatureKey.MENU_MANAGEMENT: Tier.FREE,
    FeatureKey.ORDERS: Tier.FREE,
    FeatureKey.QR_CODES: Tier.FREE,
    FeatureKey.BASIC_DASHBOARD: Tier.FREE,
    FeatureKey.BASIC_SETTINGS: Tier.FREE,
    FeatureKey.CUSTOMER_ACCOUNTS: Tier.STARTER,
    FeatureKey.BASIC_ANALYTICS: Tier.STARTER,
    FeatureKey.DISH_VARIANTS: Tier.STARTER,
    FeatureKey.DISH_OPTIONS: Tier.STARTER,
    FeatureKey.MULTI_LANGUAGE: Tier.STARTER,
    FeatureKey.EMAIL_NOTIFICATIONS: Tier.STARTER,
    FeatureKey.ORDER_HISTORY: Tier.STARTER,
    FeatureKey.RESERVATIONS: Tier.PROFESSIONAL,
    FeatureKey.REVIEWS: Tier.PROFESSIONAL,
    FeatureKey.INVENTORY: Tier.PROFESSIONAL,
    FeatureKey.SCHEDULED_ORDERS: Tier.PROFESSIONAL,
    FeatureKey.KDS: Tier.PROFESSIONAL,
    FeatureKey.SMS_NOTIFICATIONS: Tier.PROFESSIONAL,
    FeatureKey.ALLERGEN_INFO: Tier.PROFESSIONAL,
    FeatureKey.NUTRITION_INFO: Tier.PROFESSIONAL,
    FeatureKey.ADVANCED_DASHBOARD: Tier.PROFESSIONAL,
    FeatureKey.BASIC_EXPORT: Tier.PROFESSIONAL,
    FeatureKey.LOYALTY_PROGRAM: Tier.BUSINESS,
    FeatureKey.SMS_CAMPAIGNS: Tier.BUSINESS,
    FeatureKey.ADVANCED_ANALYTICS: Tier.BUSINESS,
    FeatureKey.DATA_EXPORT: Tier.BUSINESS,
    FeatureKey.MULTI_LOCATION: Tier.BUSINESS,
    FeatureKey.API_READ: Tier.BUSINESS,
    FeatureKey.WHITE_LABEL: Tier.BUSINESS,
    FeatureKey.WEBHOOKS: Tier.BUSINESS,
    FeatureKey.PRIORITY_SUPPORT: Tier.BUSINESS,
    FeatureKey.CUSTOM_BRANDING: Tier.BUSINESS,
    FeatureKey.DELIVERY_MODULE: Tier.ENTERPRISE,
    FeatureKey.DRIVER_MANAGEMENT: Tier.ENTERPRISE,
    FeatureKey.GPS_TRACKING: Tier.ENTERPRISE,
    FeatureKey.ROUTE_OPTIMIZATION: Tier.ENTERPRISE,
    FeatureKey.PROOF_OF_DELIVERY: Tier.ENTERPRISE,
    FeatureKey.HOTEL_MODULE: Tier.ENTERPRISE,
    FeatureKey.TWO_FACTOR_AUTH: Tier.ENTERPRISE,
    FeatureKey.AUDIT_LOGS: Tier.ENTERPRISE,
    FeatureKey.API_WRITE: Tier.ENTERPRISE,
    FeatureKey.CUSTOM_INTEGRATIONS: Tier.ENTERPRISE,
    FeatureKey.DEDICATED_SUPPORT: Tier.ENTERPRISE,
    FeatureKey.SLA_GUARANTEE: Tier.ENTERPRISE,
}

# --- Feature labels shown in upgrade/downgrade previews ---
FEATURE_LABELS: dict[FeatureKey, str] = {
    feature: feature.value.replace("_", " ").capitalize() for feature in FeatureKey
}
FEATURE_LABELS[FeatureKey.KDS] = "Kitchen display system"
FEATURE_LABELS[FeatureKey.API_READ] = "API (read)"
FEATURE_LABELS[FeatureKey.API_WRITE] = "API (write)"
FEATURE_LABELS[FeatureKey.SLA_GUARANTEE] = "SLA guarantee"

# --- Resource limits per tier (-1 = unlimited, storage in MB) ---
PLAN_LIMITS: dict[Tier, dict[ResourceKind, int]] = {
    Tier.FREE: {
        ResourceKind.DISHES: 15,
        ResourceKind.ORDERS: 50,
        ResourceKind.USERS: 1,
        ResourceKind.SMS_CREDITS: 0,
        ResourceKind.STORAGE: 50,
        ResourceKind.TABLES: 5,
        ResourceKind.CAMPAIGNS: 0,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.STARTER: {
        ResourceKind.DISHES: 50,
        ResourceKind.ORDERS: 500,
        ResourceKind.USERS: 3,
        ResourceKind.SMS_CREDITS: 50,
        ResourceKind.STORAGE: 500,
        ResourceKind.TABLES: 15,
        ResourceKind.CAMPAIGNS: 2,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.PROFESSIONAL: {
        ResourceKind.DISHES: 150,
        ResourceKind.ORDERS: 2000,
        ResourceKind.USERS: 10,
        ResourceKind.SMS_CREDITS: 200,
        ResourceKind.STORAGE: 2048,
        ResourceKind.TABLES: 50,
        ResourceKind.CAMPAIGNS: 10,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.BUSINESS: {
        ResourceKind.DISHES: 500,
        ResourceKind.ORDERS: 10000,
        ResourceKind.USERS: 25,
        ResourceKind.SMS_CREDITS: 1000,
        ResourceKind.STORAGE: 10240,
        ResourceKind.TABLES: -1,
        ResourceKind.CAMPAIGNS: -1,
        ResourceKind.LOCATIONS: 3,
    },
    Tier.ENTERPRISE: {
        ResourceKind.DISHES: -1,
        ResourceKind.ORDERS: -1,
        ResourceKind.USERS: -1,
        ResourceKind.SMS_CREDITS: 10000,
        ResourceKind.STORAGE: 102400,
        ResourceKind.TABLES: -1,
        ResourceKind.CAMPAIGNS: -1,
        ResourceKind.LOCATIONS: -1,
    },
}

# --- Pricing in cents (enterprise is quoted per customer) ---
PLAN_PRICING: dict[Tier, PlanPricing] = {
    Tier.FREE: PlanPricing(monthly=0, yearly=0),
    Tier.STARTER: PlanPricing(monthly=2900, yearly=29000),
    Tier.PROFESSIONAL: PlanPricing(monthly=7900, yearly=79000),
    Tier.BUSINESS: PlanPricing(monthly=14900, yearly=149000),
    Tier.ENTERPRISE: PlanPricing(monthly=0, yearly=0),
}

PLAN_DESCRIPTIONS: dict[Tier, str] = {
    Tier.FREE: "Digital menu and QR ordering for a single small venue",
    Tier.STARTER: "Customer accounts, variants and multi-language menus",
    Tier.PROFESSIONAL: "Reservations, kitchen display and inventory",
    Tier.BUSINESS: "Loyalty, campaigns and multi-location management",
    Tier.ENTERPRISE: "Delivery fleet, hotel module and dedicated support",
}

DEFAULT_TRIAL_DAYS = 14

# --- Downgrade warnings for features that hold live tenant data ---
FEATURE_LOSS_WARNINGS: dict[FeatureKey, str] = {
    FeatureKey.LOYALTY_PROGRAM: "Loyalty points will be frozen until the plan is upgraded again",
    FeatureKey.SMS_CAMPAIGNS: "Scheduled SMS campaigns will be cancelled",
    FeatureKey.RESERVATIONS: "Online reservations will be disabled",
    FeatureKey.DELIVERY_MODULE: "Delivery dispatch will be disabled for new orders",
    FeatureKey.MULTI_LOCATION: "Only the primary location will stay active",
}

# --- Dispatch ---
DELIVERY_NUMBER_PREFIX = "DLV"
OTP_DIGITS = 4
