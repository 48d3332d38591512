import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from app.api.deps import CurrentUser, SessionDep
from app.billing.plans import PLANS
from app.billing.stripe_client import (
    cancel_subscription,
    create_checkout_session,
    create_portal_session,
)
from app.billing.subscriptions import get_user_subscription, update_user_subscription
from app.billing.usage import UsageOverview, UsageWarnings, get_usage_overview, get_usage_warnings
from app.billing.webhooks import WebhookError, handle_webhook, sync_subscription_for_user
from app.models import CheckoutRequest, RedirectURL, SubscriptionPublic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class PlanPublic(BaseModel):
    id: str
    name: str
    description: str
    price: int
    can_access_premium_models: bool
    limits: dict[str, int]


@router.get("/", response_model=SubscriptionPublic)
def read_subscription(session: SessionDep, current_user: CurrentUser) -> Any:
    return get_user_subscription(session, current_user.id)


@router.get("/plans", response_model=list[PlanPublic])
def read_plans() -> Any:
    return [
        PlanPublic(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            can_access_premium_models=plan.can_access_premium_models,
            limits=asdict(plan.limits),
        )
        for plan in PLANS.values()
    ]


@router.post("/checkout", response_model=RedirectURL)
def checkout(body: CheckoutRequest, session: SessionDep, current_user: CurrentUser) -> Any:
    known_prices = {p.stripe_price_id for p in PLANS.values() if p.stripe_price_id}
    if body.price_id not in known_prices:
        raise HTTPException(status_code=400, detail="Unknown price")
    url = create_checkout_session(session, current_user, body.price_id)
    if not url:
        raise HTTPException(status_code=502, detail="Failed to create checkout session")
    return RedirectURL(url=url)


@router.post("/portal", response_model=RedirectURL)
def portal(current_user: CurrentUser) -> Any:
    if not current_user.stripe_customer_id:
        raise HTTPException(status_code=400, detail="No Stripe customer ID found")
    url = create_portal_session(current_user.stripe_customer_id)
    if not url:
        raise HTTPException(status_code=502, detail="Failed to create portal session")
    return RedirectURL(url=url)


@router.post("/sync", response_model=SubscriptionPublic)
def sync(session: SessionDep, current_user: CurrentUser) -> Any:
    """Reconcile the stored subscription with Stripe, e.g. after returning from checkout."""
    try:
        return sync_subscription_for_user(session, current_user)
    except WebhookError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/cancel", response_model=SubscriptionPublic)
def cancel(session: SessionDep, current_user: CurrentUser) -> Any:
    subscription = get_user_subscription(session, current_user.id)
    if not subscription.stripe_subscription_id:
        raise HTTPException(status_code=400, detail="No active subscription")
    if not cancel_subscription(subscription.stripe_subscription_id):
        raise HTTPException(status_code=502, detail="Failed to cancel subscription")
    return update_user_subscription(
        session, current_user.id, status="canceled", plan="free", cancel_at_period_end=False
    )


@router.get("/usage", response_model=UsageOverview)
def usage_overview(session: SessionDep, current_user: CurrentUser) -> Any:
    return get_usage_overview(session, current_user.id)


@router.get("/usage/warnings", response_model=UsageWarnings)
def usage_warnings(session: SessionDep, current_user: CurrentUser) -> Any:
    return get_usage_warnings(session, current_user.id)


@router.post("/webhook")
async def stripe_webhook(request: Request, session: SessionDep) -> dict[str, bool]:
    payload = await request.body()
    try:
        handled = handle_webhook(session, payload, request.headers.get("stripe-signature"))
    except WebhookError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"received": True, "handled": handled}
