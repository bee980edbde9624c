from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BookingStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"

    ALL = (PENDING, CONFIRMED, CANCELLED, COMPLETED)
    ACTIVE = (PENDING, CONFIRMED)
    TERMINAL = (CANCELLED, COMPLETED)


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"

    ALL = (PENDING, COMPLETED, FAILED, REFUNDED, PARTIALLY_REFUNDED)


class SubscriptionStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAUSED = "PAUSED"

    ALL = (PENDING, ACTIVE, CANCELLED, EXPIRED, PAUSED)


class Host(Base):
    __tablename__ = "hosts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)  # token subject
    email: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")

    tour_limit: Mapped[int] = mapped_column(Integer, default=4)
    current_tour_count: Mapped[int] = mapped_column(Integer, default=0)

    subscription_id: Mapped[str | None] = mapped_column(String, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Tour(Base):
    __tablename__ = "tours"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    host_id: Mapped[str] = mapped_column(String, ForeignKey("hosts.id"), index=True)

    title: Mapped[str] = mapped_column(String)
    destination: Mapped[str] = mapped_column(String, default="")
    price: Mapped[int] = mapped_column(Integer, default=0)  # cents per person

    max_group_size: Mapped[int] = mapped_column(Integer)
    # Sum of number_of_people over CONFIRMED bookings; only the ledger writes it.
    current_group_size: Mapped[int] = mapped_column(Integer, default=0)

    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Blog(Base):
    __tablename__ = "blogs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    host_id: Mapped[str] = mapped_column(String, ForeignKey("hosts.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        # At most one PENDING/CONFIRMED booking per (user, tour).
        Index(
            "uq_bookings_active_user_tour",
            "user_id",
            "tour_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    tour_id: Mapped[str] = mapped_column(String, ForeignKey("tours.id"), index=True)

    number_of_people: Mapped[int] = mapped_column(Integer)
    total_amount: Mapped[int] = mapped_column(Integer, default=0)  # cents
    special_requests: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String, index=True)
    payment_status: Mapped[str] = mapped_column(String, index=True)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False)

    booking_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str] = mapped_column(String, default="")

    price: Mapped[int] = mapped_column(Integer, default=0)  # cents per billing period
    duration: Mapped[int] = mapped_column(Integer, default=1)  # months
    tour_limit: Mapped[int] = mapped_column(Integer)
    can_write_blogs: Mapped[bool] = mapped_column(Boolean, default=False)
    blog_post_limit: Mapped[int | None] = mapped_column(Integer)  # None = unlimited
    features: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    stripe_product_id: Mapped[str | None] = mapped_column(String)
    stripe_price_id: Mapped[str | None] = mapped_column(String)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    host_id: Mapped[str] = mapped_column(String, ForeignKey("hosts.id"), index=True)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("subscription_plans.id"), index=True)

    status: Mapped[str] = mapped_column(String, index=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)

    # Quota snapshot taken from the plan at subscribe time.
    tour_limit: Mapped[int] = mapped_column(Integer)
    remaining_tours: Mapped[int] = mapped_column(Integer)
    blog_posts_allowed: Mapped[bool] = mapped_column(Boolean, default=False)
    blog_post_limit: Mapped[int | None] = mapped_column(Integer)
    remaining_blog_posts: Mapped[int] = mapped_column(Integer, default=0)

    stripe_subscription_id: Mapped[str | None] = mapped_column(String, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    booking_id: Mapped[str | None] = mapped_column(String, index=True)  # survives an admin booking delete
    subscription_id: Mapped[str | None] = mapped_column(String, ForeignKey("subscriptions.id"), index=True)
    subscription_plan_id: Mapped[str | None] = mapped_column(String)

    amount: Mapped[int] = mapped_column(Integer)  # cents
    currency: Mapped[str] = mapped_column(String, default="USD")
    payment_method: Mapped[str] = mapped_column(String, default="STRIPE")
    status: Mapped[str] = mapped_column(String, index=True)

    # One row per gateway attempt: payment intent id, checkout session id or inv_<invoice id>.
    transaction_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String, index=True)
    payment_gateway: Mapped[str] = mapped_column(String, default="stripe")
    gateway_response: Mapped[dict] = mapped_column(JSON, default=dict)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UnreconciledEvent(Base):
    """
    Webhook delivery that was acknowledged to the gateway but could not be
    applied to local state (missing metadata, unknown subscription, handler
    error). Kept for administrative follow-up.
    """

    __tablename__ = "unreconciled_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str | None] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution_note: Mapped[str | None] = mapped_column(String)
