from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from . import gateway
from .errors import Forbidden, GatewayError, InvalidState, NotFound
from .models import Booking, BookingStatus, Payment, PaymentStatus, Tour
from .reconciler import Events, flag_unreconciled, ref_id, upsert_payment

logger = logging.getLogger(__name__)

# PaymentIntent.status values that settle a payment; the rest are still in flight.
_INTENT_STATUS = {
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.FAILED,
}


def create_payment_intent(s: Session, booking_id: str, *, actor_id: str, currency: str = "usd") -> tuple[Payment, str | None]:
    booking = s.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if booking.user_id != actor_id:
        raise Forbidden("You are not authorized to pay for this booking")
    if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
        raise InvalidState(f"Cannot pay for a {booking.status.lower()} booking")
    if booking.payment_status == PaymentStatus.COMPLETED:
        raise InvalidState("This booking is already paid")
    if booking.total_amount <= 0:
        raise InvalidState("This booking has nothing to pay")

    tour = s.get(Tour, booking.tour_id)
    intent = gateway.create_payment_intent(
        booking.total_amount,
        currency,
        {"bookingId": booking.id, "userId": actor_id, "tourId": booking.tour_id},
        f"Booking for {tour.title if tour is not None else booking.tour_id}",
    )
    payment = upsert_payment(
        s,
        transaction_id=intent["id"],
        status=PaymentStatus.PENDING,
        amount=booking.total_amount,
        currency=currency,
        user_id=actor_id,
        payment_intent_id=intent["id"],
        booking_id=booking.id,
        gateway_response=intent,
    )
    s.commit()
    logger.info("Payment intent %s created for booking %s", intent["id"], booking.id)
    return payment, intent.get("client_secret")


def _link_subscription_charge(s: Session, intent: dict, invoice_id: str | None) -> None:
    # Invoice and checkout events own subscription payment status.
    conditions = [Payment.stripe_payment_intent_id == intent["id"]]
    if invoice_id:
        conditions.append(Payment.stripe_invoice_id == invoice_id)
    payment = s.execute(select(Payment).where(or_(*conditions))).scalars().first()
    if payment is None:
        logger.info("Payment intent %s belongs to invoice %s; left to invoice events", intent["id"], invoice_id)
        return
    if not payment.stripe_payment_intent_id:
        payment.stripe_payment_intent_id = intent["id"]
        s.add(payment)
        s.commit()
    logger.info("Payment intent %s linked to subscription payment %s", intent["id"], payment.id)


def apply_intent_status(s: Session, intent: dict, status: str, event: dict | None = None) -> Events:
    """
    Record a settled PaymentIntent on its payment row and booking.

    A successful payment never confirms the booking; confirmation stays a
    host decision.
    """
    meta = intent.get("metadata") or {}
    payment = s.execute(select(Payment).where(Payment.transaction_id == intent["id"])).scalar_one_or_none()
    booking_id = meta.get("bookingId") or (payment.booking_id if payment is not None else None)
    booking = s.get(Booking, booking_id) if booking_id else None

    if payment is None and booking is None:
        invoice_id = ref_id(intent.get("invoice"))
        if invoice_id or meta.get("subscriptionId"):
            _link_subscription_charge(s, intent, invoice_id)
            return []
        flag_unreconciled(s, event, f"payment intent {intent['id']} matches no payment or booking")
        s.commit()
        return []

    amount = intent.get("amount_received") if status == PaymentStatus.COMPLETED else intent.get("amount")
    payment = upsert_payment(
        s,
        transaction_id=intent["id"],
        status=status,
        amount=int(amount or (booking.total_amount if booking is not None else 0)),
        currency=intent.get("currency") or "usd",
        user_id=meta.get("userId") or (booking.user_id if booking is not None else ""),
        payment_intent_id=intent["id"],
        booking_id=booking_id,
        gateway_response=intent,
    )

    if booking is not None:
        if booking.payment_status == PaymentStatus.REFUNDED:
            if status == PaymentStatus.COMPLETED:
                flag_unreconciled(s, event, f"payment {payment.id} succeeded for cancelled booking {booking.id}")
        elif booking.payment_status != PaymentStatus.COMPLETED or status == PaymentStatus.COMPLETED:
            booking.payment_status = payment.status
            s.add(booking)
    s.commit()

    if payment.status == PaymentStatus.COMPLETED:
        return [("payment.completed", {"payment_id": payment.id, "booking_id": booking_id, "amount": payment.amount})]
    if payment.status == PaymentStatus.FAILED:
        return [("payment.failed", {"payment_id": payment.id, "booking_id": booking_id})]
    return []


def handle_payment_intent_succeeded(s: Session, event: dict) -> Events:
    intent = event["data"]["object"]
    return apply_intent_status(s, intent, PaymentStatus.COMPLETED, event)


def handle_payment_intent_failed(s: Session, event: dict) -> Events:
    intent = event["data"]["object"]
    error = (intent.get("last_payment_error") or {}).get("message")
    logger.warning("Payment intent %s failed: %s", intent.get("id"), error)
    return apply_intent_status(s, intent, PaymentStatus.FAILED, event)


def payment_status(s: Session, payment_id: str, *, actor_id: str, is_admin: bool = False) -> tuple[Payment, Events]:
    payment = s.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    if not is_admin and payment.user_id != actor_id:
        raise Forbidden("You are not authorized to view this payment")

    if payment.status != PaymentStatus.PENDING or not payment.stripe_payment_intent_id:
        return payment, []

    try:
        intent = gateway.retrieve_payment_intent(payment.stripe_payment_intent_id)
    except GatewayError as e:
        logger.warning("Could not refresh payment %s from Stripe: %s", payment.id, e)
        return payment, []

    settled = _INTENT_STATUS.get(intent.get("status"))
    if settled is None:
        return payment, []
    out = apply_intent_status(s, intent, settled)
    s.refresh(payment)
    return payment, out
