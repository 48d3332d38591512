import logging
import uuid
from typing import Any

from sqlmodel import Session, select

from app.models import Subscription, User, get_datetime_utc

logger = logging.getLogger(__name__)


def get_user_subscription(session: Session, user_id: uuid.UUID) -> Subscription:
    """Stored subscription row, or an unsaved free-plan default when the user has none."""
    subscription = session.exec(
        select(Subscription).where(Subscription.user_id == user_id)
    ).first()
    if subscription:
        return subscription
    return Subscription(user_id=user_id, status="free", plan="free")


def update_user_subscription(
    session: Session, user_id: uuid.UUID, **fields: Any
) -> Subscription:
    subscription = session.exec(
        select(Subscription).where(Subscription.user_id == user_id)
    ).first()
    if subscription is None:
        subscription = Subscription(user_id=user_id)
    subscription.sqlmodel_update(fields, update={"updated_at": get_datetime_utc()})
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    logger.info(
        "Subscription for user %s is now %s/%s", user_id, subscription.plan, subscription.status
    )
    return subscription


def get_user_by_stripe_customer_id(session: Session, customer_id: str) -> User | None:
    return session.exec(select(User).where(User.stripe_customer_id == customer_id)).first()


def get_user_by_stripe_subscription_id(session: Session, subscription_id: str) -> User | None:
    subscription = session.exec(
        select(Subscription).where(Subscription.stripe_subscription_id == subscription_id)
    ).first()
    if not subscription:
        return None
    return session.get(User, subscription.user_id)
