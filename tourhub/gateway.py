"""
Thin wrapper around the Stripe SDK.

Every call returns a plain dict, round-tripped through JSON so it can be
stored in a JSON column. Every SDK failure surfaces as GatewayError. Nothing here retries.
"""

from __future__ import annotations

import functools
import json
import logging
import os
from typing import Any

import stripe

from .errors import GatewayError

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "sk_test_change_me")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_change_me")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

stripe.api_key = STRIPE_SECRET_KEY

logger = logging.getLogger(__name__)


def _plain(obj: Any) -> dict:
    if isinstance(obj, dict):
        return json.loads(json.dumps(obj, default=str))
    # StripeObject renders itself as its JSON document.
    return json.loads(str(obj))


def _gateway_call(fn):
    @functools.wraps(fn)
    def _wrapped(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.warning("Stripe call %s failed: %s", fn.__name__, e)
            raise GatewayError(f"Payment gateway error: {e.user_message or e}")

    return _wrapped


def verify_webhook(payload: bytes, signature: str | None, secret: str | None = None) -> dict:
    """
    Verify the Stripe-Signature header against the raw body, then parse it.

    Raises stripe.SignatureVerificationError on a bad or missing signature and
    ValueError on a body that is not a JSON object.
    """
    if not signature:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature, payload)
    body = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(body, signature, secret or STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS)
    event = json.loads(body)
    if not isinstance(event, dict) or not event.get("type"):
        raise ValueError("Webhook body is not a Stripe event")
    return event


@_gateway_call
def create_customer(email: str, name: str, metadata: dict[str, str]) -> dict:
    return _plain(stripe.Customer.create(email=email, name=name, metadata=metadata))


@_gateway_call
def retrieve_customer(customer_id: str) -> dict:
    return _plain(stripe.Customer.retrieve(customer_id))


@_gateway_call
def create_product(name: str, description: str, metadata: dict[str, str]) -> dict:
    return _plain(stripe.Product.create(name=name, description=description, metadata=metadata))


@_gateway_call
def create_monthly_price(product_id: str, unit_amount: int, currency: str, metadata: dict[str, str]) -> dict:
    return _plain(
        stripe.Price.create(
            product=product_id,
            unit_amount=unit_amount,
            currency=currency.lower(),
            recurring={"interval": "month", "interval_count": 1},
            metadata=metadata,
        )
    )


@_gateway_call
def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> dict:
    return _plain(
        stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    )


@_gateway_call
def retrieve_checkout_session(session_id: str) -> dict:
    return _plain(stripe.checkout.Session.retrieve(session_id, expand=["subscription", "customer"]))


@_gateway_call
def create_billing_portal_session(customer_id: str, return_url: str) -> dict:
    return _plain(stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url))


@_gateway_call
def retrieve_subscription(subscription_id: str) -> dict:
    return _plain(stripe.Subscription.retrieve(subscription_id))


@_gateway_call
def cancel_subscription(subscription_id: str) -> dict:
    return _plain(stripe.Subscription.cancel(subscription_id))


@_gateway_call
def create_payment_intent(amount: int, currency: str, metadata: dict[str, str], description: str) -> dict:
    return _plain(
        stripe.PaymentIntent.create(
            amount=amount,
            currency=currency.lower(),
            metadata=metadata,
            description=description,
        )
    )


@_gateway_call
def retrieve_payment_intent(payment_intent_id: str) -> dict:
    return _plain(stripe.PaymentIntent.retrieve(payment_intent_id))
