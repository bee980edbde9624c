"""
Subscription-side payment reconciliation.

Applies Stripe subscription, checkout and invoice events to local state.
Deliveries may repeat or arrive out of order, so every handler is written
to be safe to apply twice:

* payments are upserted by ``transaction_id`` (an invoice already recorded
  by its checkout session is matched by ``stripe_invoice_id``);
* plan quota is granted once per subscription, keyed on
  ``Host.subscription_id``;
* status only moves along ``SUBSCRIPTION_TRANSITIONS``.

An event that cannot be tied to local state is stored as an
``UnreconciledEvent`` instead of being dropped.

Handlers take the open session and the verified event dict and return the
domain events to publish once their transaction has committed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import gateway
from .billing import downgrade_host, grant_plan_quota, set_subscription_status
from .errors import Forbidden, NotFound
from .models import Host, Payment, PaymentStatus, Subscription, SubscriptionPlan, SubscriptionStatus, UnreconciledEvent
from .timeutil import add_months, as_utc, from_timestamp, now

logger = logging.getLogger(__name__)

Events = list[tuple[str, dict[str, Any]]]

# Stripe subscription.status -> local status. Anything else leaves the row alone.
_REMOTE_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}


def _obj(event: dict) -> dict:
    return (event.get("data") or {}).get("object") or {}


def ref_id(value: Any) -> str | None:
    # Expanded references arrive as objects, unexpanded ones as ids.
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def flag_unreconciled(s: Session, event: dict | None, reason: str) -> UnreconciledEvent:
    """Queue a delivery for follow-up inside the caller's transaction."""
    event = event or {}
    row = UnreconciledEvent(
        id=str(uuid4()),
        event_id=event.get("id"),
        event_type=event.get("type") or "unknown",
        reason=reason,
        payload=event,
        received_at=now(),
    )
    s.add(row)
    logger.warning("Unreconciled webhook %s (%s): %s", row.event_id, row.event_type, reason)
    return row


def record_unreconciled(s: Session, event: dict | None, reason: str) -> UnreconciledEvent:
    row = flag_unreconciled(s, event, reason)
    s.commit()
    return row


def list_unreconciled(
    s: Session,
    *,
    include_resolved: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[UnreconciledEvent], dict]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    qry = s.query(UnreconciledEvent)
    if not include_resolved:
        qry = qry.filter(UnreconciledEvent.resolved_at.is_(None))
    total = qry.count()
    rows = qry.order_by(UnreconciledEvent.received_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, {"page": page, "limit": limit, "total": total}


def resolve_unreconciled(s: Session, row_id: str, note: str | None = None) -> UnreconciledEvent:
    row = s.get(UnreconciledEvent, row_id)
    if row is None:
        raise NotFound("Unreconciled event not found")
    if row.resolved_at is None:
        row.resolved_at = now()
        row.resolution_note = note
        s.add(row)
        s.commit()
    return row


def upsert_payment(
    s: Session,
    *,
    transaction_id: str,
    status: str,
    amount: int,
    user_id: str,
    currency: str = "usd",
    invoice_id: str | None = None,
    payment_intent_id: str | None = None,
    booking_id: str | None = None,
    subscription_id: str | None = None,
    subscription_plan_id: str | None = None,
    gateway_response: dict | None = None,
) -> Payment:
    """
    Insert or update the payment row for one gateway attempt.

    A COMPLETED row is never moved back to FAILED.
    """
    ts = now()
    payment = s.execute(select(Payment).where(Payment.transaction_id == transaction_id)).scalar_one_or_none()
    if payment is None and invoice_id:
        payment = s.execute(select(Payment).where(Payment.stripe_invoice_id == invoice_id)).scalars().first()

    if payment is None:
        payment = Payment(
            id=str(uuid4()),
            user_id=user_id,
            booking_id=booking_id,
            subscription_id=subscription_id,
            subscription_plan_id=subscription_plan_id,
            amount=amount,
            currency=(currency or "usd").upper(),
            payment_method="STRIPE",
            status=status,
            transaction_id=transaction_id,
            stripe_payment_intent_id=payment_intent_id,
            stripe_invoice_id=invoice_id,
            payment_gateway="stripe",
            gateway_response=gateway_response or {},
            paid_at=ts if status == PaymentStatus.COMPLETED else None,
            created_at=ts,
            updated_at=ts,
        )
        s.add(payment)
        return payment

    if payment.status == PaymentStatus.COMPLETED and status == PaymentStatus.FAILED:
        logger.info("Ignoring failure for already completed payment %s", payment.id)
        return payment

    if payment.status != status:
        logger.info("Payment %s %s -> %s", payment.id, payment.status, status)
    payment.status = status
    if status == PaymentStatus.COMPLETED and payment.paid_at is None:
        payment.paid_at = ts
    payment.stripe_invoice_id = payment.stripe_invoice_id or invoice_id
    payment.stripe_payment_intent_id = payment.stripe_payment_intent_id or payment_intent_id
    if gateway_response:
        payment.gateway_response = gateway_response
    payment.updated_at = ts
    s.add(payment)
    return payment


def _find_subscription(s: Session, stripe_subscription_id: str | None, local_id: str | None = None) -> Subscription | None:
    if stripe_subscription_id:
        sub = s.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        ).scalars().first()
        if sub is not None:
            return sub
    if local_id:
        return s.get(Subscription, local_id)
    return None


def _period_end(remote: dict) -> datetime | None:
    end = remote.get("current_period_end")
    if end is None:
        # Newer API versions carry the period on the subscription items.
        items = (remote.get("items") or {}).get("data") or []
        ends = [i.get("current_period_end") for i in items if i.get("current_period_end")]
        end = max(ends) if ends else None
    return from_timestamp(end)


def _activate(s: Session, sub: Subscription, at: datetime) -> bool:
    """
    Make ``sub`` ACTIVE and hand its quota to the host, once.

    Returns True when the host's quota was (re)granted by this call.
    """
    if sub.status == SubscriptionStatus.PENDING:
        plan = s.get(SubscriptionPlan, sub.plan_id)
        set_subscription_status(sub, SubscriptionStatus.ACTIVE, at=at)
        sub.start_date = at
        sub.end_date = add_months(at, plan.duration if plan is not None else 1)
    if sub.status != SubscriptionStatus.ACTIVE:
        return False

    host = s.get(Host, sub.host_id)
    if host is None or host.subscription_id == sub.id:
        return False
    grant_plan_quota(host, sub, at=at)
    if sub.stripe_customer_id and not host.stripe_customer_id:
        host.stripe_customer_id = sub.stripe_customer_id
    s.add(host)
    return True


def apply_checkout_session(s: Session, checkout: dict, event: dict | None = None) -> Events:
    meta = checkout.get("metadata") or {}
    sub_id = meta.get("subscriptionId")
    if not sub_id:
        flag_unreconciled(s, event, "checkout session has no subscriptionId metadata")
        s.commit()
        return []
    sub = s.get(Subscription, sub_id)
    if sub is None:
        flag_unreconciled(s, event, f"checkout session references unknown subscription {sub_id}")
        s.commit()
        return []

    ts = now()
    remote_sub = ref_id(checkout.get("subscription"))
    if remote_sub:
        sub.stripe_subscription_id = remote_sub
    customer = ref_id(checkout.get("customer"))
    if customer:
        sub.stripe_customer_id = customer

    if sub.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
        # Paid after the local row was closed; money moved, state did not.
        flag_unreconciled(s, event, f"checkout completed for {sub.status.lower()} subscription {sub.id}")
    granted = _activate(s, sub, ts)
    sub.updated_at = ts
    s.add(sub)

    host = s.get(Host, sub.host_id)
    payment = upsert_payment(
        s,
        transaction_id=checkout["id"],
        status=PaymentStatus.COMPLETED,
        amount=int(checkout.get("amount_total") or 0),
        currency=checkout.get("currency") or "usd",
        user_id=host.user_id if host is not None else sub.host_id,
        invoice_id=ref_id(checkout.get("invoice")),
        payment_intent_id=ref_id(checkout.get("payment_intent")),
        subscription_id=sub.id,
        subscription_plan_id=sub.plan_id,
        gateway_response=checkout,
    )
    s.commit()

    logger.info("Checkout %s reconciled for subscription %s (granted=%s)", checkout["id"], sub.id, granted)
    out: Events = [("payment.completed", {"payment_id": payment.id, "subscription_id": sub.id, "amount": payment.amount})]
    if granted:
        out.append(("subscription.activated", {"subscription_id": sub.id, "host_id": sub.host_id, "plan_id": sub.plan_id}))
    return out


def handle_checkout_completed(s: Session, event: dict) -> Events:
    return apply_checkout_session(s, _obj(event), event)


def handle_subscription_updated(s: Session, event: dict) -> Events:
    remote = _obj(event)
    sub = _find_subscription(s, remote.get("id"), (remote.get("metadata") or {}).get("subscriptionId"))
    if sub is None:
        flag_unreconciled(s, event, f"no local subscription for Stripe subscription {remote.get('id')}")
        s.commit()
        return []

    ts = now()
    if not sub.stripe_subscription_id and remote.get("id"):
        sub.stripe_subscription_id = remote["id"]

    granted = False
    changed = False
    target = _REMOTE_STATUS.get(remote.get("status"))
    if target == SubscriptionStatus.ACTIVE:
        was = sub.status
        if sub.status == SubscriptionStatus.PAUSED:
            set_subscription_status(sub, SubscriptionStatus.ACTIVE, at=ts)
        granted = _activate(s, sub, ts)
        changed = sub.status != was
    elif target is not None:
        changed = set_subscription_status(sub, target, at=ts)

    end = _period_end(remote)
    if end is not None:
        sub.end_date = end
    sub.updated_at = ts
    s.add(sub)
    s.commit()

    out: Events = []
    if changed:
        out.append(("subscription.updated", {"subscription_id": sub.id, "status": sub.status}))
    if granted:
        out.append(("subscription.activated", {"subscription_id": sub.id, "host_id": sub.host_id, "plan_id": sub.plan_id}))
    return out


def handle_subscription_deleted(s: Session, event: dict) -> Events:
    remote = _obj(event)
    sub = _find_subscription(s, remote.get("id"), (remote.get("metadata") or {}).get("subscriptionId"))
    if sub is None:
        flag_unreconciled(s, event, f"no local subscription for deleted Stripe subscription {remote.get('id')}")
        s.commit()
        return []

    ts = now()
    changed = set_subscription_status(sub, SubscriptionStatus.CANCELLED, at=ts)
    s.add(sub)

    host = s.get(Host, sub.host_id)
    downgraded = host is not None and host.subscription_id == sub.id
    if downgraded:
        downgrade_host(host, reset_count=True, at=ts)
        s.add(host)
    s.commit()

    logger.info("Stripe subscription %s deleted (local=%s, downgraded=%s)", remote.get("id"), sub.id, downgraded)
    if not changed and not downgraded:
        return []
    return [("subscription.cancelled", {"subscription_id": sub.id, "host_id": sub.host_id})]


def _invoice_subscription(s: Session, invoice: dict) -> Subscription | None:
    remote_id = ref_id(invoice.get("subscription"))
    details = invoice.get("subscription_details") or {}
    if remote_id is None:
        # Newer API versions nest the reference under parent.
        details = ((invoice.get("parent") or {}).get("subscription_details")) or details
        remote_id = ref_id(details.get("subscription"))
    local_id = (details.get("metadata") or {}).get("subscriptionId")
    return _find_subscription(s, remote_id, local_id)


def _invoice_period_end(invoice: dict) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    ends = [(line.get("period") or {}).get("end") for line in lines]
    ends = [e for e in ends if e]
    return from_timestamp(max(ends)) if ends else None


def handle_invoice_payment_succeeded(s: Session, event: dict) -> Events:
    invoice = _obj(event)
    sub = _invoice_subscription(s, invoice)
    if sub is None:
        flag_unreconciled(s, event, f"paid invoice {invoice.get('id')} has no local subscription")
        s.commit()
        return []

    host = s.get(Host, sub.host_id)
    payment = upsert_payment(
        s,
        transaction_id=f"inv_{invoice['id']}",
        status=PaymentStatus.COMPLETED,
        amount=int(invoice.get("amount_paid") or 0),
        currency=invoice.get("currency") or "usd",
        user_id=host.user_id if host is not None else sub.host_id,
        invoice_id=invoice["id"],
        payment_intent_id=ref_id(invoice.get("payment_intent")),
        subscription_id=sub.id,
        subscription_plan_id=sub.plan_id,
        gateway_response=invoice,
    )

    end = _invoice_period_end(invoice)
    if end is not None and (sub.end_date is None or end > as_utc(sub.end_date)):
        sub.end_date = end
        sub.updated_at = now()
        s.add(sub)
    s.commit()

    return [("payment.completed", {"payment_id": payment.id, "subscription_id": sub.id, "amount": payment.amount})]


def handle_invoice_payment_failed(s: Session, event: dict) -> Events:
    invoice = _obj(event)
    sub = _invoice_subscription(s, invoice)
    if sub is None:
        flag_unreconciled(s, event, f"failed invoice {invoice.get('id')} has no local subscription")
        s.commit()
        return []

    host = s.get(Host, sub.host_id)
    payment = upsert_payment(
        s,
        transaction_id=f"inv_{invoice['id']}",
        status=PaymentStatus.FAILED,
        amount=int(invoice.get("amount_due") or 0),
        currency=invoice.get("currency") or "usd",
        user_id=host.user_id if host is not None else sub.host_id,
        invoice_id=invoice["id"],
        subscription_id=sub.id,
        subscription_plan_id=sub.plan_id,
        gateway_response=invoice,
    )
    s.commit()
    logger.warning("Invoice %s payment failed for subscription %s", invoice["id"], sub.id)
    return [("payment.failed", {"payment_id": payment.id, "subscription_id": sub.id})]


def verify_checkout_session(s: Session, session_id: str, host_user_id: str) -> tuple[dict, Events]:
    """
    Look up a checkout session after the browser returns from Stripe.

    When the session is paid the same reconciliation as the
    checkout.session.completed webhook is applied, so whichever arrives
    first activates the subscription.
    """
    host = s.execute(select(Host).where(Host.user_id == host_user_id)).scalar_one_or_none()
    if host is None:
        raise NotFound("Host not found")

    checkout = gateway.retrieve_checkout_session(session_id)
    meta = checkout.get("metadata") or {}
    sub = _find_subscription(s, ref_id(checkout.get("subscription")), meta.get("subscriptionId"))
    if sub is None:
        raise NotFound("Subscription not found")
    if sub.host_id != host.id:
        raise Forbidden("This checkout session belongs to another host")

    paid = checkout.get("payment_status") == "paid"
    out: Events = []
    if paid:
        out = apply_checkout_session(s, checkout)

    plan = s.get(SubscriptionPlan, sub.plan_id)
    return {
        "verified": paid,
        "payment_status": checkout.get("payment_status"),
        "subscription": sub,
        "plan": plan,
        "status": sub.status,
    }, out
