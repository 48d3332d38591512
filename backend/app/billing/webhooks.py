import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlmodel import Session

from app.billing.plans import get_plan_by_price_id
from app.billing.stripe_client import find_active_subscription, retrieve_subscription, to_plain
from app.billing.subscriptions import (
    get_user_by_stripe_customer_id,
    get_user_by_stripe_subscription_id,
    get_user_subscription,
    update_user_subscription,
)
from app.core.config import settings
from app.models import Subscription, User

logger = logging.getLogger(__name__)


class WebhookError(ValueError):
    pass


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Any) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _resolve_user(session: Session, stripe_object: Any) -> User | None:
    customer_id = stripe_object.get("customer")
    user = get_user_by_stripe_customer_id(session, customer_id) if customer_id else None
    if user:
        return user
    subscription_id = stripe_object.get("subscription")
    if isinstance(subscription_id, str):
        user = get_user_by_stripe_subscription_id(session, subscription_id)
        if user:
            return user
    app_user_id = (stripe_object.get("metadata") or {}).get("userId")
    if app_user_id:
        try:
            return session.get(User, uuid.UUID(app_user_id))
        except ValueError:
            logger.warning("Ignoring malformed userId metadata %r", app_user_id)
    logger.warning("No user found for Stripe customer %s", customer_id)
    return None


def sync_subscription(session: Session, stripe_subscription: Any) -> Subscription | None:
    """Copy a Stripe subscription onto the owning user's subscription row."""
    stripe_subscription = to_plain(stripe_subscription)
    user = _resolve_user(session, stripe_subscription)
    if not user:
        return None

    item = _first_item(stripe_subscription)
    price_id = (item.get("price") or {}).get("id")
    plan = get_plan_by_price_id(price_id)
    # Newer API versions report the billing period on the subscription item.
    period_start = stripe_subscription.get("current_period_start") or item.get("current_period_start")
    period_end = stripe_subscription.get("current_period_end") or item.get("current_period_end")

    return update_user_subscription(
        session,
        user.id,
        stripe_subscription_id=stripe_subscription.get("id"),
        stripe_price_id=price_id,
        status=stripe_subscription.get("status") or "active",
        plan=plan.id,
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(stripe_subscription.get("cancel_at_period_end")),
        trial_start=_timestamp(stripe_subscription.get("trial_start")),
        trial_end=_timestamp(stripe_subscription.get("trial_end")),
    )


def _handle_checkout_completed(session: Session, checkout: Any) -> None:
    subscription_id = checkout.get("subscription")
    if not subscription_id:
        return
    stripe_subscription = retrieve_subscription(subscription_id)
    if stripe_subscription is not None:
        sync_subscription(session, stripe_subscription)


def _handle_subscription_deleted(session: Session, stripe_subscription: Any) -> None:
    user = _resolve_user(session, stripe_subscription)
    if user:
        update_user_subscription(
            session, user.id, status="canceled", plan="free", cancel_at_period_end=False
        )


def _handle_payment_failed(session: Session, invoice: Any) -> None:
    user = _resolve_user(session, invoice)
    if user:
        update_user_subscription(session, user.id, status="past_due")


def _handle_payment_succeeded(session: Session, invoice: Any) -> None:
    user = _resolve_user(session, invoice)
    if user and get_user_subscription(session, user.id).status == "past_due":
        update_user_subscription(session, user.id, status="active")


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": sync_subscription,
    "customer.subscription.updated": sync_subscription,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_failed": _handle_payment_failed,
    "invoice.payment_succeeded": _handle_payment_succeeded,
}


def dispatch_event(session: Session, event: Any) -> bool:
    event = to_plain(event)
    event_type = event.get("type")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled Stripe event %s", event_type)
        return False
    logger.info("Handling Stripe event %s", event_type)
    handler(session, event["data"]["object"])
    return True


def handle_webhook(session: Session, payload: bytes, signature: str | None) -> bool:
    if not signature:
        raise WebhookError("Missing Stripe signature")
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise WebhookError("Webhook secret is not configured")
    try:
        event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as exc:
        raise WebhookError("Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise WebhookError("Invalid signature") from exc
    return dispatch_event(session, event)


def sync_subscription_for_user(session: Session, user: User) -> Subscription:
    """Pull the customer's active subscription from Stripe; no active one means free."""
    if not user.stripe_customer_id:
        raise WebhookError("No Stripe customer ID found")
    stripe_subscription = find_active_subscription(user.stripe_customer_id)
    if stripe_subscription is None:
        return update_user_subscription(session, user.id, status="canceled", plan="free")
    synced = sync_subscription(session, stripe_subscription)
    return synced or get_user_subscription(session, user.id)
