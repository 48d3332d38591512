import logging
from typing import Any

import stripe
from sqlmodel import Session

from app.core.config import settings
from app.models import User

logger = logging.getLogger(__name__)


def _configure() -> bool:
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY is not set; billing calls are disabled")
        return False
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return True


def ensure_stripe_customer(session: Session, user: User) -> str | None:
    """Return the user's Stripe customer id, creating the customer on first checkout."""
    if user.stripe_customer_id:
        return user.stripe_customer_id
    if not _configure():
        return None
    try:
        customer = stripe.Customer.create(
            email=user.email,
            name=user.full_name or None,
            metadata={"userId": str(user.id)},
        )
    except stripe.StripeError as exc:
        logger.error("Failed to create Stripe customer for %s: %s", user.id, exc)
        return None

    user.stripe_customer_id = customer.id
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Created Stripe customer %s for user %s", customer.id, user.id)
    return customer.id


def create_checkout_session(session: Session, user: User, price_id: str) -> str | None:
    customer_id = ensure_stripe_customer(session, user)
    if not customer_id:
        return None
    try:
        checkout = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{settings.APP_URL}/subscription?success=true",
            cancel_url=f"{settings.APP_URL}/subscription?canceled=true",
            allow_promotion_codes=True,
            billing_address_collection="auto",
            metadata={"userId": str(user.id)},
        )
    except stripe.StripeError as exc:
        logger.error("Failed to create checkout session for %s: %s", user.id, exc)
        return None
    return checkout.url


def create_portal_session(customer_id: str) -> str | None:
    if not _configure():
        return None
    try:
        portal = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=f"{settings.APP_URL}/subscription",
        )
    except stripe.StripeError as exc:
        logger.error("Failed to create billing portal session for %s: %s", customer_id, exc)
        return None
    return portal.url


def to_plain(value: Any) -> Any:
    """Turn Stripe SDK objects into plain dicts and lists."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


def retrieve_subscription(subscription_id: str) -> dict[str, Any] | None:
    if not _configure():
        return None
    try:
        return to_plain(stripe.Subscription.retrieve(subscription_id))
    except stripe.StripeError as exc:
        logger.error("Error retrieving subscription %s: %s", subscription_id, exc)
        return None


def find_active_subscription(customer_id: str) -> dict[str, Any] | None:
    if not _configure():
        return None
    try:
        result = stripe.Subscription.list(customer=customer_id, status="active", limit=1)
    except stripe.StripeError as exc:
        logger.error("Error listing subscriptions for %s: %s", customer_id, exc)
        return None
    data = to_plain(result).get("data") or []
    return data[0] if data else None


def cancel_subscription(subscription_id: str) -> bool:
    if not _configure():
        return False
    try:
        stripe.Subscription.cancel(subscription_id)
    except stripe.StripeError as exc:
        logger.error("Failed to cancel subscription %s: %s", subscription_id, exc)
        return False
    return True
