from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import payments, reconciler
from .db import session
from .reconciler import Events

logger = logging.getLogger(__name__)

HANDLERS: dict[str, Callable[[Session, dict], Events]] = {
    "payment_intent.succeeded": payments.handle_payment_intent_succeeded,
    "payment_intent.payment_failed": payments.handle_payment_intent_failed,
    "checkout.session.completed": reconciler.handle_checkout_completed,
    "customer.subscription.updated": reconciler.handle_subscription_updated,
    "customer.subscription.deleted": reconciler.handle_subscription_deleted,
    "invoice.payment_succeeded": reconciler.handle_invoice_payment_succeeded,
    "invoice.payment_failed": reconciler.handle_invoice_payment_failed,
}


@dataclass
class WebhookOutcome:
    event_id: str | None
    event_type: str
    handled: bool
    processed: bool
    events: Events = field(default_factory=list)


def process_event(engine: Engine, event: dict) -> WebhookOutcome:
    """
    Apply one verified Stripe event.

    Never raises for a handler failure: the gateway has already delivered
    the event, so failures are rolled back and queued as unreconciled.
    """
    event_id = event.get("id")
    event_type = event.get("type") or ""
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type %s (%s)", event_type, event_id)
        return WebhookOutcome(event_id=event_id, event_type=event_type, handled=False, processed=False)

    with session(engine) as s:
        try:
            out = handler(s, event)
        except Exception as e:
            logger.exception("Webhook handler for %s (%s) failed", event_type, event_id)
            s.rollback()
            try:
                reconciler.record_unreconciled(s, event, f"handler error: {e}")
            except SQLAlchemyError:
                s.rollback()
                logger.exception("Could not store unreconciled webhook %s", event_id)
            return WebhookOutcome(event_id=event_id, event_type=event_type, handled=True, processed=False)

    logger.info("Stripe event %s (%s) processed", event_type, event_id)
    return WebhookOutcome(event_id=event_id, event_type=event_type, handled=True, processed=True, events=out)
