"""
Subscription plans and host subscriptions.

Subscription.status only moves along ``SUBSCRIPTION_TRANSITIONS``; both the
synchronous API here and the webhook reconciler go through
``set_subscription_status``.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import gateway
from .errors import GatewayError, InvalidState, NotFound
from .models import Host, Payment, PaymentStatus, Subscription, SubscriptionPlan, SubscriptionStatus
from .quota import BASIC_TOUR_LIMIT, active_subscription
from .timeutil import add_months, as_utc, from_timestamp, now

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
FREE_PLAN_MONTHS = 12
BASIC_PLAN_NAME = "Basic"

logger = logging.getLogger(__name__)

SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED, SubscriptionStatus.PAUSED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
}

DEFAULT_SUBSCRIPTION_PLANS: list[dict] = [
    {
        "name": "Basic",
        "description": "Perfect for new hosts starting out",
        "price": 0,
        "duration": 12,
        "tour_limit": 4,
        "can_write_blogs": False,
        "blog_post_limit": 0,
        "features": ["Create up to 4 tours per year", "Basic profile listing", "Customer support"],
    },
    {
        "name": "Standard",
        "description": "For growing hosts who want more exposure",
        "price": 999,
        "duration": 1,
        "tour_limit": 8,
        "can_write_blogs": True,
        "blog_post_limit": 10,
        "features": [
            "Create up to 8 tours per year",
            "Write up to 10 blog posts",
            "Featured in search results",
            "Priority customer support",
            "Analytics dashboard",
        ],
    },
    {
        "name": "Premium",
        "description": "For professional hosts seeking maximum exposure",
        "price": 1999,
        "duration": 1,
        "tour_limit": 12,
        "can_write_blogs": True,
        "blog_post_limit": None,
        "features": [
            "Create up to 12 tours per year",
            "Write unlimited blog posts",
            "Top placement in search results",
            "24/7 priority support",
            "Advanced analytics",
            "Marketing tools",
            "Custom branding",
        ],
    },
]

_PLAN_FIELDS = {
    "name",
    "description",
    "price",
    "duration",
    "tour_limit",
    "can_write_blogs",
    "blog_post_limit",
    "features",
    "is_active",
    "stripe_product_id",
    "stripe_price_id",
}


@dataclass(frozen=True)
class SubscribeResult:
    subscription: Subscription
    message: str
    checkout_url: str | None = None
    session_id: str | None = None


def can_transition(current: str, target: str) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS.get(current, set())


def set_subscription_status(sub: Subscription, target: str, at: datetime | None = None) -> bool:
    """Move ``sub`` to ``target``; returns False (and changes nothing) when the move is not allowed."""
    if sub.status == target or not can_transition(sub.status, target):
        return False
    at = at or now()
    logger.info("Subscription %s %s -> %s", sub.id, sub.status, target)
    sub.status = target
    sub.updated_at = at
    if target == SubscriptionStatus.CANCELLED:
        sub.cancelled_at = at
        sub.auto_renew = False
    return True


def grant_plan_quota(host: Host, sub: Subscription, at: datetime | None = None) -> None:
    host.tour_limit = sub.tour_limit
    host.current_tour_count = 0
    host.subscription_id = sub.id
    host.updated_at = at or now()
    sub.remaining_tours = sub.tour_limit


def downgrade_host(host: Host, *, reset_count: bool, at: datetime | None = None) -> None:
    host.tour_limit = BASIC_TOUR_LIMIT
    host.current_tour_count = 0 if reset_count else min(host.current_tour_count, BASIC_TOUR_LIMIT)
    host.subscription_id = None
    host.updated_at = at or now()


def _host(s: Session, user_id: str) -> Host:
    host = s.execute(select(Host).where(Host.user_id == user_id)).scalar_one_or_none()
    if host is None:
        raise NotFound("Host not found")
    return host


def get_plan(s: Session, plan_id: str) -> SubscriptionPlan:
    plan = s.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFound("Subscription plan not found")
    return plan


def list_plans(
    s: Session,
    *,
    include_inactive: bool = False,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[SubscriptionPlan], dict]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    qry = s.query(SubscriptionPlan)
    if not include_inactive:
        qry = qry.filter(SubscriptionPlan.is_active.is_(True))
    total = qry.count()
    rows = qry.order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.name.asc()).offset((page - 1) * limit).limit(limit).all()
    return rows, {"page": page, "limit": limit, "total": total}


def create_plan(s: Session, **fields) -> SubscriptionPlan:
    ts = now()
    data = {k: v for k, v in fields.items() if k in _PLAN_FIELDS}
    plan = SubscriptionPlan(id=str(uuid4()), created_at=ts, updated_at=ts, **data)
    if plan.features is None:
        plan.features = []
    if plan.is_active is None:
        plan.is_active = True
    s.add(plan)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise InvalidState(f"A plan named {data.get('name')!r} already exists")
    return plan


def update_plan(s: Session, plan_id: str, **fields) -> SubscriptionPlan:
    plan = get_plan(s, plan_id)
    for k, v in fields.items():
        if k in _PLAN_FIELDS:
            setattr(plan, k, v)
    plan.updated_at = now()
    s.add(plan)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise InvalidState(f"A plan named {fields.get('name')!r} already exists")
    return plan


def delete_plan(s: Session, plan_id: str) -> SubscriptionPlan:
    plan = get_plan(s, plan_id)
    in_use = s.execute(
        select(func.count(Subscription.id))
        .where(Subscription.plan_id == plan_id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE)
    ).scalar_one()
    if in_use:
        raise InvalidState("Cannot delete plan with active subscriptions")
    s.delete(plan)
    s.commit()
    return plan


def initialize_default_plans(s: Session) -> dict:
    existing = s.execute(select(func.count(SubscriptionPlan.id))).scalar_one()
    if existing:
        return {"created": [], "message": "Plans already exist"}

    created: list[str] = []
    for preset in DEFAULT_SUBSCRIPTION_PLANS:
        product_id = None
        price_id = None
        if preset["price"] > 0:
            try:
                product = gateway.create_product(
                    preset["name"],
                    preset["description"],
                    {
                        "planType": "subscription",
                        "tourLimit": str(preset["tour_limit"]),
                        "canWriteBlogs": str(preset["can_write_blogs"]).lower(),
                    },
                )
                price = gateway.create_monthly_price(
                    product["id"],
                    preset["price"],
                    "usd",
                    {"planName": preset["name"], "duration": str(preset["duration"])},
                )
                product_id, price_id = product["id"], price["id"]
            except GatewayError as e:
                # Stored without Stripe ids; an admin can attach them later.
                logger.warning("Stripe product setup failed for plan %s: %s", preset["name"], e)

        ts = now()
        s.add(
            SubscriptionPlan(
                id=str(uuid4()),
                is_active=True,
                stripe_product_id=product_id,
                stripe_price_id=price_id,
                created_at=ts,
                updated_at=ts,
                **preset,
            )
        )
        created.append(preset["name"])

    s.commit()
    logger.info("Default subscription plans initialized: %s", ", ".join(created))
    return {"created": created, "message": "Default plans initialized"}


def _snapshot_subscription(host: Host, plan: SubscriptionPlan, status: str, auto_renew: bool) -> Subscription:
    ts = now()
    return Subscription(
        id=str(uuid4()),
        host_id=host.id,
        plan_id=plan.id,
        status=status,
        auto_renew=auto_renew,
        tour_limit=plan.tour_limit,
        remaining_tours=plan.tour_limit,
        blog_posts_allowed=plan.can_write_blogs,
        blog_post_limit=plan.blog_post_limit,
        remaining_blog_posts=plan.blog_post_limit or 0,
        created_at=ts,
        updated_at=ts,
    )


def _cancel_on_gateway(sub: Subscription) -> None:
    if not sub.stripe_subscription_id:
        return
    try:
        gateway.cancel_subscription(sub.stripe_subscription_id)
    except GatewayError as e:
        logger.warning("Stripe cancellation failed for subscription %s: %s", sub.id, e)


def activate_free_subscription(s: Session, host: Host, plan: SubscriptionPlan, auto_renew: bool) -> Subscription:
    ts = now()
    previous = active_subscription(s, host.id)
    if previous is not None:
        _cancel_on_gateway(previous[0])
        set_subscription_status(previous[0], SubscriptionStatus.CANCELLED, at=ts)
        s.add(previous[0])

    sub = _snapshot_subscription(host, plan, SubscriptionStatus.ACTIVE, auto_renew)
    sub.start_date = ts
    sub.end_date = add_months(ts, FREE_PLAN_MONTHS)
    s.add(sub)
    grant_plan_quota(host, sub, at=ts)
    s.add(host)
    s.commit()
    logger.info("Free subscription %s activated for host %s (plan=%s)", sub.id, host.id, plan.name)
    return sub


def _get_or_create_customer(s: Session, host: Host) -> str:
    if host.stripe_customer_id:
        try:
            customer = gateway.retrieve_customer(host.stripe_customer_id)
            if not customer.get("deleted"):
                return customer["id"]
        except GatewayError:
            logger.info("Stripe customer %s not found, creating a new one", host.stripe_customer_id)

    customer = gateway.create_customer(host.email, host.name, {"hostId": host.id, "type": "host"})
    host.stripe_customer_id = customer["id"]
    host.updated_at = now()
    s.add(host)
    s.commit()
    return customer["id"]


def subscribe(s: Session, *, host_user_id: str, plan_id: str, auto_renew: bool = True) -> SubscribeResult:
    host = _host(s, host_user_id)
    plan = get_plan(s, plan_id)
    if not plan.is_active:
        raise InvalidState("This subscription plan is not available")

    if plan.price == 0:
        sub = activate_free_subscription(s, host, plan, auto_renew)
        return SubscribeResult(subscription=sub, message="Free subscription activated successfully")

    if active_subscription(s, host.id) is not None:
        raise InvalidState("You already have an active subscription. Please cancel it first.")
    if not plan.stripe_price_id:
        raise InvalidState("Stripe price not configured for this plan. Please contact support.")

    customer_id = _get_or_create_customer(s, host)

    sub = _snapshot_subscription(host, plan, SubscriptionStatus.PENDING, auto_renew)
    sub.stripe_customer_id = customer_id
    s.add(sub)
    s.flush()

    checkout = gateway.create_checkout_session(
        customer_id,
        plan.stripe_price_id,
        f"{FRONTEND_URL}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        f"{FRONTEND_URL}/subscription/cancel",
        {
            "hostId": host.id,
            "subscriptionId": sub.id,
            "planId": plan.id,
            "planName": plan.name,
            "hostEmail": host.email,
        },
    )
    if checkout.get("subscription"):
        sub.stripe_subscription_id = checkout["subscription"]
    s.commit()
    logger.info("Pending subscription %s created for host %s (checkout=%s)", sub.id, host.id, checkout.get("id"))
    return SubscribeResult(
        subscription=sub,
        message="Redirect to Stripe checkout to complete payment",
        checkout_url=checkout.get("url"),
        session_id=checkout.get("id"),
    )


def current_subscription(s: Session, host_user_id: str) -> dict:
    host = _host(s, host_user_id)
    active = active_subscription(s, host.id)
    if active is None:
        basic = s.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == BASIC_PLAN_NAME)).scalar_one_or_none()
        return {
            "subscription": None,
            "plan": basic,
            "status": "BASIC",
            "is_free": True,
            "is_active": False,
            "tour_limit": host.tour_limit,
            "remaining_tours": max(0, host.tour_limit - host.current_tour_count),
            "can_write_blogs": False,
            "remaining_blog_posts": 0,
            "next_billing_date": None,
            "last_payment": None,
        }

    sub, plan = active
    next_billing = None
    if sub.stripe_subscription_id:
        try:
            remote = gateway.retrieve_subscription(sub.stripe_subscription_id)
            next_billing = from_timestamp(remote.get("current_period_end"))
        except GatewayError as e:
            logger.warning("Could not fetch Stripe subscription %s: %s", sub.stripe_subscription_id, e)

    last_payment = (
        s.query(Payment)
        .filter(Payment.subscription_id == sub.id)
        .filter(Payment.status == PaymentStatus.COMPLETED)
        .order_by(Payment.created_at.desc())
        .first()
    )
    return {
        "subscription": sub,
        "plan": plan,
        "status": sub.status,
        "is_free": plan.price == 0,
        "is_active": True,
        "tour_limit": sub.tour_limit,
        "remaining_tours": max(0, sub.tour_limit - host.current_tour_count),
        "can_write_blogs": plan.can_write_blogs,
        "remaining_blog_posts": sub.remaining_blog_posts if plan.blog_post_limit is not None else None,
        "next_billing_date": next_billing or sub.end_date,
        "last_payment": last_payment,
    }


def customer_portal(s: Session, host_user_id: str) -> dict:
    host = _host(s, host_user_id)
    if not host.stripe_customer_id:
        raise InvalidState("No Stripe customer found. Please subscribe first.")
    portal = gateway.create_billing_portal_session(host.stripe_customer_id, f"{FRONTEND_URL}/host/dashboard")
    return {"portal_url": portal.get("url")}


def cancel_subscription(s: Session, host_user_id: str) -> Subscription:
    host = _host(s, host_user_id)
    active = active_subscription(s, host.id)
    if active is None:
        raise NotFound("No active subscription found")
    sub = active[0]

    _cancel_on_gateway(sub)

    ts = now()
    set_subscription_status(sub, SubscriptionStatus.CANCELLED, at=ts)
    downgrade_host(host, reset_count=False, at=ts)
    s.add(sub)
    s.add(host)
    s.commit()
    return sub


def list_subscriptions(
    s: Session,
    *,
    status: str | None = None,
    host_id: str | None = None,
    plan_id: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[tuple[Subscription, SubscriptionPlan, Host]], dict]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    qry = (
        s.query(Subscription, SubscriptionPlan, Host)
        .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .join(Host, Host.id == Subscription.host_id)
    )
    if status:
        qry = qry.filter(Subscription.status == status)
    if host_id:
        qry = qry.filter(Subscription.host_id == host_id)
    if plan_id:
        qry = qry.filter(Subscription.plan_id == plan_id)
    total = qry.count()
    rows = qry.order_by(Subscription.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return [(r[0], r[1], r[2]) for r in rows], {"page": page, "limit": limit, "total": total}


def subscription_analytics(s: Session, at: datetime | None = None) -> dict:
    at = at or now()

    by_status = dict(
        s.execute(select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)).all()
    )

    paid = (
        s.query(Payment)
        .filter(Payment.status == PaymentStatus.COMPLETED)
        .filter(Payment.subscription_id.isnot(None))
        .all()
    )
    revenue_total = sum(p.amount for p in paid)

    since = at - timedelta(days=365)
    monthly: dict[str, int] = defaultdict(int)
    for p in paid:
        created = as_utc(p.created_at)
        if created >= since:
            monthly[created.strftime("%Y-%m")] += p.amount

    by_plan = s.execute(
        select(SubscriptionPlan.id, SubscriptionPlan.name, SubscriptionPlan.price, func.count(Subscription.id))
        .join(Subscription, Subscription.plan_id == SubscriptionPlan.id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE)
        .group_by(SubscriptionPlan.id, SubscriptionPlan.name, SubscriptionPlan.price)
    ).all()

    recent, _ = list_subscriptions(s, page=1, limit=10)

    return {
        "overview": {
            "total": sum(by_status.values()),
            "active": by_status.get(SubscriptionStatus.ACTIVE, 0),
            "cancelled": by_status.get(SubscriptionStatus.CANCELLED, 0),
            "pending": by_status.get(SubscriptionStatus.PENDING, 0),
            "expired": by_status.get(SubscriptionStatus.EXPIRED, 0),
        },
        "revenue": {
            "total": revenue_total,
            "total_payments": len(paid),
            "average_payment": (revenue_total // len(paid)) if paid else 0,
        },
        "by_plan": [
            {"plan_id": pid, "plan_name": name, "plan_price": price, "subscription_count": count}
            for pid, name, price, count in by_plan
        ],
        "monthly_revenue": [{"month": m, "revenue": v} for m, v in sorted(monthly.items())],
        "recent_subscriptions": [
            {
                "id": sub.id,
                "status": sub.status,
                "created_at": sub.created_at,
                "plan_name": plan.name,
                "plan_price": plan.price,
                "host_name": host.name,
                "host_email": host.email,
            }
            for sub, plan, host in recent
        ],
    }
