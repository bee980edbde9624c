from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Literal

import stripe
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import billing, events, gateway, ledger, payments, quota, reconciler, webhooks
from .db import get_engine, session
from .errors import TourhubError
from .models import SubscriptionStatus
from .security import ROLES, is_admin, issue_token, require_roles

DEV_TOKENS = os.getenv("DEV_TOKENS", "").strip().lower() in {"1", "true", "yes", "on"}

logger = logging.getLogger(__name__)

app = FastAPI(
    title="TourHub Booking & Billing Service",
    version="0.1.0",
    description="Tour bookings with group-size bookkeeping, host tour/blog quotas, subscription plans and Stripe payment reconciliation.",
)


@app.exception_handler(TourhubError)
async def _tourhub_error(_request: Request, exc: TourhubError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message, "data": exc.data})


@app.exception_handler(StarletteHTTPException)
async def _http_error(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "data": None},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": "Validation error", "data": jsonable_encoder(exc.errors())},
    )


def _ok(data: Any = None, message: str | None = None, meta: dict | None = None) -> dict:
    body: dict[str, Any] = {"success": True, "message": message, "data": data}
    if meta is not None:
        body["meta"] = meta
    return body


class _OrmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


def _dump(model: type[_OrmOut], obj: Any) -> dict | None:
    if obj is None:
        return None
    return model.model_validate(obj).model_dump(mode="json")


class BookingOut(_OrmOut):
    id: str
    user_id: str
    tour_id: str
    number_of_people: int
    total_amount: int
    special_requests: str | None
    status: str
    payment_status: str
    is_reviewed: bool
    booking_date: datetime
    created_at: datetime
    updated_at: datetime


class TourOut(_OrmOut):
    id: str
    host_id: str
    title: str
    destination: str
    price: int
    max_group_size: int
    current_group_size: int
    start_date: datetime | None
    end_date: datetime | None
    created_at: datetime


class HostOut(_OrmOut):
    id: str
    user_id: str
    email: str
    name: str
    tour_limit: int
    current_tour_count: int
    subscription_id: str | None


class BlogOut(_OrmOut):
    id: str
    host_id: str
    title: str
    content: str
    created_at: datetime


class PlanOut(_OrmOut):
    id: str
    name: str
    description: str
    price: int
    duration: int
    tour_limit: int
    can_write_blogs: bool
    blog_post_limit: int | None
    features: list
    is_active: bool
    stripe_product_id: str | None
    stripe_price_id: str | None


class SubscriptionOut(_OrmOut):
    id: str
    host_id: str
    plan_id: str
    status: str
    start_date: datetime | None
    end_date: datetime | None
    auto_renew: bool
    tour_limit: int
    remaining_tours: int
    blog_posts_allowed: bool
    blog_post_limit: int | None
    remaining_blog_posts: int
    stripe_subscription_id: str | None
    cancelled_at: datetime | None
    created_at: datetime


class PaymentOut(_OrmOut):
    id: str
    user_id: str
    booking_id: str | None
    subscription_id: str | None
    amount: int
    currency: str
    status: str
    transaction_id: str
    paid_at: datetime | None
    created_at: datetime


class UnreconciledOut(_OrmOut):
    id: str
    event_id: str | None
    event_type: str
    reason: str
    received_at: datetime
    resolved_at: datetime | None
    resolution_note: str | None


def _booking_event(booking) -> dict:
    return {
        "booking_id": booking.id,
        "tour_id": booking.tour_id,
        "user_id": booking.user_id,
        "status": booking.status,
        "number_of_people": booking.number_of_people,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    tour_id: str
    number_of_people: int = Field(ge=1)
    special_requests: str | None = None


class BookingUpdate(BaseModel):
    number_of_people: int | None = Field(default=None, ge=1)
    special_requests: str | None = None


class BookingStatusUpdate(BaseModel):
    status: Literal["PENDING", "CONFIRMED", "CANCELLED", "COMPLETED"]


class BookingFilters(BaseModel):
    status: str | None = None
    payment_status: str | None = None
    tour_id: str | None = None
    page: int = 1
    limit: int = 10


@app.post("/bookings", status_code=201)
async def create_booking(
    payload: BookingCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist")),
):
    with session(engine) as s:
        booking = ledger.create_booking(
            s,
            user_id=principal["sub"],
            tour_id=payload.tour_id,
            number_of_people=payload.number_of_people,
            special_requests=payload.special_requests,
        )
    await events.publish("booking.created", _booking_event(booking))
    return _ok(_dump(BookingOut, booking), "Booking created successfully")


@app.get("/bookings")
def list_bookings(
    filters: BookingFilters = Depends(),
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        rows, meta = ledger.list_bookings(s, **filters.model_dump())
    return _ok([_dump(BookingOut, b) for b in rows], meta=meta)


@app.get("/bookings/my-bookings")
def my_bookings(
    filters: BookingFilters = Depends(),
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist")),
):
    with session(engine) as s:
        rows, meta = ledger.list_user_bookings(s, principal["sub"], **filters.model_dump())
    return _ok([_dump(BookingOut, b) for b in rows], meta=meta)


@app.get("/bookings/host/my-bookings")
def host_bookings(
    filters: BookingFilters = Depends(),
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        rows, meta = ledger.list_host_bookings(s, principal["sub"], **filters.model_dump())
    return _ok([_dump(BookingOut, b) for b in rows], meta=meta)


@app.get("/bookings/host/stats")
def host_booking_stats(
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        host = ledger.host_for_user(s, principal["sub"])
        stats = ledger.host_booking_stats(s, host)
    return _ok(stats)


@app.get("/bookings/user/stats")
def user_booking_stats(
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist")),
):
    with session(engine) as s:
        stats = ledger.user_booking_stats(s, principal["sub"])
    return _ok(stats)


@app.get("/bookings/{booking_id}")
def get_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ROLES)),
):
    with session(engine) as s:
        booking = ledger.get_booking(s, booking_id, actor_id=principal["sub"], is_admin=is_admin(principal))
    return _ok(_dump(BookingOut, booking))


@app.patch("/bookings/{booking_id}")
def update_booking(
    booking_id: str,
    payload: BookingUpdate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist", "admin")),
):
    with session(engine) as s:
        booking = ledger.update_booking(
            s,
            booking_id,
            actor_id=principal["sub"],
            is_admin=is_admin(principal),
            number_of_people=payload.number_of_people,
            special_requests=payload.special_requests,
        )
    return _ok(_dump(BookingOut, booking), "Booking updated successfully")


@app.patch("/bookings/{booking_id}/status")
async def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host", "admin")),
):
    with session(engine) as s:
        booking = ledger.update_booking_status(
            s,
            booking_id,
            actor_id=principal["sub"],
            is_admin=is_admin(principal),
            status=payload.status,
        )
    await events.publish(f"booking.{booking.status.lower()}", _booking_event(booking))
    return _ok(_dump(BookingOut, booking), f"Booking status updated to {booking.status}")


@app.patch("/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist", "admin")),
):
    with session(engine) as s:
        booking = ledger.cancel_booking(s, booking_id, actor_id=principal["sub"], is_admin=is_admin(principal))
    await events.publish("booking.cancelled", _booking_event(booking))
    return _ok(_dump(BookingOut, booking), "Booking cancelled successfully")


@app.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        booking = ledger.delete_booking(s, booking_id)
    await events.publish("booking.deleted", _booking_event(booking))
    return _ok(None, "Booking deleted successfully")


# ---------------------------------------------------------------------------
# Hosts, tours, blogs
# ---------------------------------------------------------------------------


class HostRegister(BaseModel):
    email: str | None = None
    name: str = ""


class TourCreate(BaseModel):
    title: str = Field(min_length=1)
    max_group_size: int = Field(ge=1)
    destination: str = ""
    price: int = Field(default=0, ge=0, description="Amount in cents per person")
    start_date: datetime | None = None
    end_date: datetime | None = None


class BlogCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str = ""


@app.post("/hosts/me")
def register_host(
    payload: HostRegister,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    email = payload.email or principal.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="email is required")
    with session(engine) as s:
        host = quota.register_host(s, user_id=principal["sub"], email=email, name=payload.name or principal.get("name", ""))
    return _ok(_dump(HostOut, host))


@app.get("/hosts/me/quota")
def host_quota(
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        current = billing.current_subscription(s, principal["sub"])
    return _ok(
        {
            "status": current["status"],
            "plan": current["plan"].name if current["plan"] is not None else billing.BASIC_PLAN_NAME,
            "tour_limit": current["tour_limit"],
            "remaining_tours": current["remaining_tours"],
            "can_write_blogs": current["can_write_blogs"],
            "remaining_blog_posts": current["remaining_blog_posts"],
        }
    )


@app.post("/tours", status_code=201)
def create_tour(
    payload: TourCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        allowance = quota.check_tour_creation(s, principal["sub"])
        tour = quota.create_tour(s, allowance, quota.NewTour(**payload.model_dump()))
    return _ok(_dump(TourOut, tour), f"Tour created. {max(0, allowance.remaining_tours - 1)} tours remaining")


@app.get("/tours/{tour_id}")
def get_tour(
    tour_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ROLES)),
):
    with session(engine) as s:
        tour = quota.get_tour(s, tour_id)
    return _ok(_dump(TourOut, tour))


@app.post("/blogs", status_code=201)
def create_blog(
    payload: BlogCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        allowance = quota.check_blog_creation(s, principal["sub"])
        blog = quota.create_blog(s, allowance, title=payload.title, content=payload.content)
    return _ok(_dump(BlogOut, blog), "Blog post created")


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscribeRequest(BaseModel):
    plan_id: str
    auto_renew: bool = True


class PlanCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: int = Field(ge=0, description="Amount in cents per billing period")
    duration: int = Field(default=1, ge=1, description="Months")
    tour_limit: int = Field(ge=0)
    can_write_blogs: bool = False
    blog_post_limit: int | None = Field(default=None, ge=0)
    features: list[str] = Field(default_factory=list)
    is_active: bool = True
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: int | None = Field(default=None, ge=0)
    duration: int | None = Field(default=None, ge=1)
    tour_limit: int | None = Field(default=None, ge=0)
    can_write_blogs: bool | None = None
    blog_post_limit: int | None = Field(default=None, ge=0)
    features: list[str] | None = None
    is_active: bool | None = None
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None


class SubscriptionFilters(BaseModel):
    status: str | None = None
    host_id: str | None = None
    plan_id: str | None = None
    page: int = 1
    limit: int = 10


@app.get("/subscriptions/plans")
def list_plans(page: int = 1, limit: int = 10, engine=Depends(get_engine)):
    with session(engine) as s:
        rows, meta = billing.list_plans(s, page=page, limit=limit)
    return _ok([_dump(PlanOut, p) for p in rows], meta=meta)


@app.get("/subscriptions/plans/{plan_id}")
def get_plan(plan_id: str, engine=Depends(get_engine)):
    with session(engine) as s:
        plan = billing.get_plan(s, plan_id)
    return _ok(_dump(PlanOut, plan))


@app.post("/subscriptions/subscribe")
async def subscribe(
    payload: SubscribeRequest,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        result = billing.subscribe(s, host_user_id=principal["sub"], plan_id=payload.plan_id, auto_renew=payload.auto_renew)
    sub = result.subscription
    if sub.status == SubscriptionStatus.ACTIVE:
        await events.publish("subscription.activated", {"subscription_id": sub.id, "host_id": sub.host_id, "plan_id": sub.plan_id})
    return _ok(
        {
            "subscription_id": sub.id,
            "subscription": _dump(SubscriptionOut, sub),
            "checkout_url": result.checkout_url,
            "session_id": result.session_id,
        },
        result.message,
    )


@app.get("/subscriptions/my-subscription")
def my_subscription(
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        current = billing.current_subscription(s, principal["sub"])
    return _ok(
        {
            **current,
            "subscription": _dump(SubscriptionOut, current["subscription"]),
            "plan": _dump(PlanOut, current["plan"]),
            "last_payment": _dump(PaymentOut, current["last_payment"]),
        }
    )


@app.get("/subscriptions/verify-session/{session_id}")
async def verify_session(
    session_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        result, out = reconciler.verify_checkout_session(s, session_id, principal["sub"])
    await events.publish_all(out)
    return _ok(
        {
            **result,
            "subscription": _dump(SubscriptionOut, result["subscription"]),
            "plan": _dump(PlanOut, result["plan"]),
        },
        "Subscription verified" if result["verified"] else "Payment not completed yet",
    )


@app.get("/subscriptions/customer-portal")
def customer_portal(
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        portal = billing.customer_portal(s, principal["sub"])
    return _ok(portal)


@app.post("/subscriptions/cancel")
async def cancel_subscription(
    engine=Depends(get_engine),
    principal=Depends(require_roles("host")),
):
    with session(engine) as s:
        sub = billing.cancel_subscription(s, principal["sub"])
    await events.publish("subscription.cancelled", {"subscription_id": sub.id, "host_id": sub.host_id})
    return _ok(_dump(SubscriptionOut, sub), "Subscription cancelled. Your account has been downgraded to the Basic plan.")


@app.post("/subscriptions/initialize-plans")
def initialize_plans(
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        result = billing.initialize_default_plans(s)
    return _ok(result, result["message"])


@app.post("/subscriptions/create-plan", status_code=201)
def create_plan(
    payload: PlanCreate,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        plan = billing.create_plan(s, **payload.model_dump())
    return _ok(_dump(PlanOut, plan), "Subscription plan created")


@app.patch("/subscriptions/plans/{plan_id}")
def update_plan(
    plan_id: str,
    payload: PlanUpdate,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        plan = billing.update_plan(s, plan_id, **payload.model_dump(exclude_unset=True))
    return _ok(_dump(PlanOut, plan), "Subscription plan updated")


@app.delete("/subscriptions/plans/{plan_id}")
def delete_plan(
    plan_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        billing.delete_plan(s, plan_id)
    return _ok(None, "Subscription plan deleted")


@app.get("/subscriptions")
def list_subscriptions(
    filters: SubscriptionFilters = Depends(),
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        rows, meta = billing.list_subscriptions(s, **filters.model_dump())
    return _ok(
        [
            {
                **_dump(SubscriptionOut, sub),
                "plan": _dump(PlanOut, plan),
                "host": _dump(HostOut, host),
            }
            for sub, plan, host in rows
        ],
        meta=meta,
    )


@app.get("/subscriptions/analytics")
def subscription_analytics(
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        stats = billing.subscription_analytics(s)
    return _ok(stats)


# ---------------------------------------------------------------------------
# Payments and webhooks
# ---------------------------------------------------------------------------


class PaymentIntentRequest(BaseModel):
    booking_id: str
    currency: str = Field(default="usd", min_length=3, max_length=3)


@app.post("/payments/create-intent", status_code=201)
def create_payment_intent(
    payload: PaymentIntentRequest,
    engine=Depends(get_engine),
    principal=Depends(require_roles("tourist")),
):
    with session(engine) as s:
        payment, client_secret = payments.create_payment_intent(
            s, payload.booking_id, actor_id=principal["sub"], currency=payload.currency
        )
    return _ok(
        {
            "client_secret": client_secret,
            "payment_id": payment.id,
            "payment_intent_id": payment.stripe_payment_intent_id,
        },
        "Payment intent created",
    )


@app.get("/payments/{payment_id}/status")
async def get_payment_status(
    payment_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ROLES)),
):
    with session(engine) as s:
        payment, out = payments.payment_status(s, payment_id, actor_id=principal["sub"], is_admin=is_admin(principal))
    await events.publish_all(out)
    return _ok(_dump(PaymentOut, payment))


@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, engine=Depends(get_engine)):
    payload = await request.body()
    try:
        event = gateway.verify_webhook(payload, request.headers.get("stripe-signature"))
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        return JSONResponse(status_code=400, content={"success": False, "message": f"Webhook Error: {e}", "data": None})

    outcome = webhooks.process_event(engine, event)
    await events.publish_all(outcome.events)
    return _ok({"received": True, "handled": outcome.handled, "processed": outcome.processed})


# ---------------------------------------------------------------------------
# Admin follow-up
# ---------------------------------------------------------------------------


class ResolveRequest(BaseModel):
    note: str | None = None


@app.get("/admin/unreconciled-events")
def list_unreconciled_events(
    include_resolved: bool = False,
    page: int = 1,
    limit: int = 20,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        rows, meta = reconciler.list_unreconciled(s, include_resolved=include_resolved, page=page, limit=limit)
    return _ok([_dump(UnreconciledOut, r) for r in rows], meta=meta)


@app.post("/admin/unreconciled-events/{row_id}/resolve")
def resolve_unreconciled_event(
    row_id: str,
    payload: ResolveRequest,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        row = reconciler.resolve_unreconciled(s, row_id, payload.note)
    return _ok(_dump(UnreconciledOut, row), "Marked as resolved")


# ---------------------------------------------------------------------------
# Dev helpers
# ---------------------------------------------------------------------------


class TokenRequest(BaseModel):
    sub: str = "dev-user"
    role: Literal["tourist", "host", "admin"] = "tourist"
    email: str | None = None
    name: str | None = None


@app.post("/dev/token")
def dev_token(payload: TokenRequest):
    if not DEV_TOKENS:
        raise HTTPException(status_code=404, detail="Not Found")
    extra = {k: v for k, v in {"email": payload.email, "name": payload.name}.items() if v}
    return {"access_token": issue_token(sub=payload.sub, role=payload.role, extra_claims=extra), "token_type": "bearer"}
