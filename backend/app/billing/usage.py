import logging
import uuid

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from app.agent.models_catalog import is_premium_model
from app.billing.plans import (
    ACTIVE_STATUSES,
    UNLIMITED,
    USAGE_FIELDS,
    calculate_usage_percentage,
    format_usage_display,
    get_plan,
    get_remaining_usage,
    get_upgrade_message,
    has_premium_access,
    should_show_upgrade_prompt,
)
from app.billing.subscriptions import get_user_subscription
from app.models import Usage, get_datetime_utc

logger = logging.getLogger(__name__)


class UsageStat(BaseModel):
    current: int
    limit: int
    percentage: float


class UsageThresholds(BaseModel):
    basic_interactions: UsageStat
    premium_interactions: UsageStat
    memories_added: UsageStat
    memories_searched: UsageStat
    voice_chats: UsageStat
    plan: str
    should_notify: bool

    def stat(self, usage_field: str) -> UsageStat:
        return getattr(self, usage_field)


class UsageCheck(BaseModel):
    allowed: bool
    reason: str | None = None
    usage: UsageStat | None = None
    should_show_upgrade: bool = False


class ModelAccess(BaseModel):
    allowed: bool
    reason: str | None = None


class UsageWarning(BaseModel):
    type: str
    message: str
    percentage: float
    current: int
    limit: int


class UsageWarnings(BaseModel):
    warnings: list[UsageWarning]
    should_show_upgrade: bool


class UsageLine(BaseModel):
    current: int
    limit: int
    remaining: int
    percentage: float
    display: str
    upgrade_message: str


class UsageOverview(BaseModel):
    month: str
    plan: str
    plan_name: str
    status: str
    usage: dict[str, UsageLine]
    show_upgrade_prompt: bool


def get_current_month() -> str:
    return get_datetime_utc().strftime("%Y-%m")


def get_user_usage(session: Session, user_id: uuid.UUID, month: str | None = None) -> Usage | None:
    month = month or get_current_month()
    return session.exec(
        select(Usage).where(Usage.user_id == user_id, Usage.month == month)
    ).first()


def get_or_create_usage(session: Session, user_id: uuid.UUID, month: str | None = None) -> Usage:
    month = month or get_current_month()
    usage = get_user_usage(session, user_id, month)
    if usage:
        return usage
    usage = Usage(user_id=user_id, month=month)
    session.add(usage)
    try:
        session.commit()
    except IntegrityError:
        # Another request created the row first.
        session.rollback()
        existing = get_user_usage(session, user_id, month)
        if existing is None:
            raise
        return existing
    session.refresh(usage)
    return usage


def increment_usage(
    session: Session, user_id: uuid.UUID, usage_field: str, amount: int = 1
) -> Usage:
    """Add to this month's counter. memories_added is summed across months when checked."""
    if usage_field not in USAGE_FIELDS:
        raise ValueError(f"Unknown usage counter: {usage_field}")
    usage = get_or_create_usage(session, user_id)
    setattr(usage, usage_field, getattr(usage, usage_field) + amount)
    usage.updated_at = get_datetime_utc()
    session.add(usage)
    session.commit()
    session.refresh(usage)
    return usage


def get_total_memories_added(session: Session, user_id: uuid.UUID) -> int:
    total = session.exec(
        select(func.coalesce(func.sum(Usage.memories_added), 0)).where(Usage.user_id == user_id)
    ).one()
    return int(total or 0)


def check_usage_thresholds(session: Session, user_id: uuid.UUID) -> UsageThresholds:
    usage = get_user_usage(session, user_id)
    subscription = get_user_subscription(session, user_id)
    plan = get_plan(subscription.plan)

    current = {
        "basic_interactions": usage.basic_interactions if usage else 0,
        "premium_interactions": usage.premium_interactions if usage else 0,
        "memories_added": get_total_memories_added(session, user_id),
        "memories_searched": usage.memories_searched if usage else 0,
        "voice_chats": usage.voice_chats if usage else 0,
    }
    stats = {}
    for name, value in current.items():
        limit = plan.limits.for_field(name)
        stats[name] = UsageStat(
            current=value, limit=limit, percentage=calculate_usage_percentage(value, limit)
        )
    should_notify = any(s.percentage >= 80 for s in stats.values() if s.limit > 0)
    return UsageThresholds(**stats, plan=plan.id, should_notify=should_notify)


def _check_limit(
    session: Session,
    user_id: uuid.UUID,
    usage_field: str,
    reason: str,
) -> UsageCheck:
    stat = check_usage_thresholds(session, user_id).stat(usage_field)
    if stat.limit == UNLIMITED or stat.current < stat.limit:
        return UsageCheck(
            allowed=True,
            usage=stat,
            should_show_upgrade=stat.percentage >= 80 and stat.limit > 0,
        )
    return UsageCheck(
        allowed=False,
        reason=reason.format(limit=stat.limit),
        usage=stat,
        should_show_upgrade=True,
    )


def check_basic_interaction_limit(session: Session, user_id: uuid.UUID) -> UsageCheck:
    return _check_limit(
        session,
        user_id,
        "basic_interactions",
        "You've reached your monthly limit of {limit} basic interactions. "
        "Please upgrade your plan to continue.",
    )


def check_premium_interaction_limit(session: Session, user_id: uuid.UUID) -> UsageCheck:
    stat = check_usage_thresholds(session, user_id).premium_interactions
    if stat.limit == 0:
        return UsageCheck(
            allowed=False,
            reason=(
                "Premium AI models require a subscription. "
                "Please upgrade your plan to access advanced reasoning models."
            ),
            usage=stat,
            should_show_upgrade=True,
        )
    return _check_limit(
        session,
        user_id,
        "premium_interactions",
        "You've reached your monthly limit of {limit} premium interactions. "
        "Please upgrade your plan to continue.",
    )


def check_memory_add_limit(session: Session, user_id: uuid.UUID) -> UsageCheck:
    return _check_limit(
        session,
        user_id,
        "memories_added",
        "You've reached your storage limit of {limit} memories. "
        "Please upgrade your plan to store more memories.",
    )


def check_memory_search_limit(session: Session, user_id: uuid.UUID) -> UsageCheck:
    return _check_limit(
        session,
        user_id,
        "memories_searched",
        "You've reached your monthly limit of {limit} memory searches. "
        "Please upgrade your plan to continue.",
    )


def check_voice_chat_limit(session: Session, user_id: uuid.UUID) -> UsageCheck:
    return _check_limit(
        session,
        user_id,
        "voice_chats",
        "You've reached your monthly limit of {limit} voice chats. "
        "Please upgrade your plan to continue.",
    )


def check_model_access(session: Session, user_id: uuid.UUID, model_id: str | None) -> ModelAccess:
    if not is_premium_model(model_id):
        return ModelAccess(allowed=True)
    subscription = get_user_subscription(session, user_id)
    if not has_premium_access(subscription.plan):
        return ModelAccess(allowed=False, reason="Premium subscription required for reasoning models")
    if subscription.status not in ACTIVE_STATUSES:
        return ModelAccess(allowed=False, reason="Active subscription required for reasoning models")
    return ModelAccess(allowed=True)


_WARNING_TEXT = {
    "basic_interactions": "of your monthly basic interactions",
    "premium_interactions": "of your monthly premium interactions",
    "memories_added": "of your memory storage capacity",
    "memories_searched": "of your monthly memory searches",
    "voice_chats": "of your monthly voice chats",
}


def get_usage_warnings(session: Session, user_id: uuid.UUID) -> UsageWarnings:
    thresholds = check_usage_thresholds(session, user_id)
    warnings: list[UsageWarning] = []
    for usage_field, suffix in _WARNING_TEXT.items():
        stat = thresholds.stat(usage_field)
        if stat.limit <= 0 or stat.percentage < 80:
            continue
        warnings.append(
            UsageWarning(
                type=usage_field,
                message=f"You've used {stat.percentage:.0f}% {suffix}",
                percentage=stat.percentage,
                current=stat.current,
                limit=stat.limit,
            )
        )
    return UsageWarnings(
        warnings=warnings,
        should_show_upgrade=bool(warnings) and thresholds.plan == "free",
    )


def get_usage_overview(session: Session, user_id: uuid.UUID) -> UsageOverview:
    subscription = get_user_subscription(session, user_id)
    plan = get_plan(subscription.plan)
    thresholds = check_usage_thresholds(session, user_id)
    lines = {
        usage_field: UsageLine(
            current=stat.current,
            limit=stat.limit,
            remaining=get_remaining_usage(stat.current, stat.limit),
            percentage=stat.percentage,
            display=format_usage_display(stat.current, stat.limit),
            upgrade_message=get_upgrade_message(usage_field, plan.id),
        )
        for usage_field in USAGE_FIELDS
        for stat in [thresholds.stat(usage_field)]
    }
    return UsageOverview(
        month=get_current_month(),
        plan=plan.id,
        plan_name=plan.name,
        status=subscription.status,
        usage=lines,
        show_upgrade_prompt=should_show_upgrade_prompt(
            {usage_field: line.current for usage_field, line in lines.items() if line.current},
            plan.id,
        ),
    )
