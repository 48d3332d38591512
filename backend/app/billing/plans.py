from dataclasses import dataclass, field

from app.core.config import settings

UNLIMITED = -1

USAGE_FIELDS = (
    "basic_interactions",
    "premium_interactions",
    "memories_added",
    "memories_searched",
    "voice_chats",
)


@dataclass(frozen=True)
class PlanLimits:
    basic_interactions: int
    premium_interactions: int
    memories_added: int
    memories_searched: int
    voice_chats: int

    def for_field(self, usage_field: str) -> int:
        return getattr(self, usage_field)


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    price: int
    limits: PlanLimits
    can_access_premium_models: bool = True
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def stripe_price_id(self) -> str | None:
        if self.id == "basic":
            return settings.STRIPE_BASIC_PRICE_ID
        if self.id == "pro":
            return settings.STRIPE_PRO_PRICE_ID
        return None


PLANS: dict[str, Plan] = {
    "free": Plan(
        id="free",
        name="Free",
        description="Perfect for getting started",
        price=0,
        limits=PlanLimits(50, 0, 100, 20, 5),
        can_access_premium_models=False,
    ),
    "basic": Plan(
        id="basic",
        name="Starter",
        description="Great for regular users",
        price=20,
        limits=PlanLimits(1000, 200, 5000, 1000, 100),
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        description="Best for power users",
        price=200,
        limits=PlanLimits(UNLIMITED, 500, 10000, 2000, 500),
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        description="Unlimited everything",
        price=0,
        limits=PlanLimits(UNLIMITED, UNLIMITED, UNLIMITED, UNLIMITED, UNLIMITED),
    ),
}

ACTIVE_STATUSES = frozenset({"active", "trialing"})


def get_plan(plan_id: str | None) -> Plan:
    return PLANS.get(plan_id or "free", PLANS["free"])


def get_plan_by_price_id(price_id: str | None) -> Plan:
    if price_id:
        for plan in PLANS.values():
            if plan.stripe_price_id and plan.stripe_price_id == price_id:
                return plan
    return PLANS["free"]


def has_premium_access(plan_id: str | None) -> bool:
    return get_plan(plan_id).can_access_premium_models


def is_over_limit(current: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return False
    return current >= limit


def is_approaching_limit(current: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return False
    if limit <= 0:
        return True
    return current / limit >= 0.8


def calculate_usage_percentage(current: int, limit: int) -> float:
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return min(current / limit * 100, 100.0)


def get_remaining_usage(current: int, limit: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - current)


def format_usage_display(current: int, limit: int) -> str:
    if limit == UNLIMITED:
        return f"{current:,} / Unlimited"
    return f"{current:,} / {limit:,}"


_UPGRADE_MESSAGES = {
    "basic_interactions": (
        "Upgrade to get more basic interactions and access to premium models",
        "Upgrade to get unlimited basic interactions",
    ),
    "premium_interactions": (
        "Upgrade to access premium AI models with advanced reasoning",
        "Upgrade to get more premium interactions",
    ),
    "memories_added": (
        "Upgrade to store more memories and build a larger knowledge base",
        "Upgrade to store even more memories",
    ),
    "memories_searched": (
        "Upgrade to search your memories more frequently",
        "Upgrade to get unlimited memory searches",
    ),
    "voice_chats": (
        "Upgrade to have more voice conversations with AI",
        "Upgrade to get unlimited voice chats",
    ),
}


def get_upgrade_message(usage_field: str, plan_id: str) -> str:
    messages = _UPGRADE_MESSAGES.get(usage_field)
    if not messages:
        return "Upgrade for more features and higher limits"
    return messages[0] if plan_id == "free" else messages[1]


def should_show_upgrade_prompt(usage: dict[str, int], plan_id: str) -> bool:
    if plan_id == "enterprise":
        return False
    limits = get_plan(plan_id).limits
    return any(
        is_over_limit(current, limits.for_field(name))
        or is_approaching_limit(current, limits.for_field(name))
        for name, current in usage.items()
    )
