import hashlib
import hmac
import json
import time
from uuid import uuid4

import pytest

from tourhub import billing, gateway, webhooks
from tourhub.db import session
from tourhub.models import Host, Payment, PaymentStatus, Subscription, SubscriptionPlan, SubscriptionStatus, UnreconciledEvent
from tourhub.timeutil import as_utc, from_timestamp


def _event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def _signed_headers(body: bytes, secret=None, ts=None):
    ts = ts or int(time.time())
    secret = secret or gateway.STRIPE_WEBHOOK_SECRET
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={ts},v1={sig}", "content-type": "application/json"}


def _post(client, event, **kwargs):
    body = json.dumps(event).encode("utf-8")
    return client.post("/webhooks/stripe", content=body, headers=_signed_headers(body, **kwargs))


def _reload(engine, model, row_id):
    with session(engine) as s:
        return s.get(model, row_id)


def _payments(engine):
    with session(engine) as s:
        return s.query(Payment).order_by(Payment.created_at.asc()).all()


def _unreconciled(engine):
    with session(engine) as s:
        return s.query(UnreconciledEvent).all()


@pytest.fixture
def pending(s, host, make_tour, fake_stripe):
    """A host with two tours and a PENDING Standard subscription awaiting checkout."""
    make_tour(host, title="One")
    make_tour(host, title="Two")
    billing.initialize_default_plans(s)
    standard = s.query(SubscriptionPlan).filter(SubscriptionPlan.name == "Standard").one()
    result = billing.subscribe(s, host_user_id=host.user_id, plan_id=standard.id)
    checkout = fake_stripe.checkout_sessions[result.session_id]
    checkout.update(
        {
            "subscription": "sub_remote_1",
            "payment_status": "paid",
            "amount_total": 999,
            "invoice": "in_first",
        }
    )
    return result.subscription, dict(checkout)


def _invoice(invoice_id, *, amount=999, period_end=None, subscription="sub_remote_1"):
    period_end = period_end or int(time.time()) + 40 * 24 * 3600
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "lines": {"data": [{"period": {"start": int(time.time()), "end": period_end}}]},
    }


def test_checkout_completed_activates_subscription(client, engine, host, pending):
    sub, checkout = pending

    r = _post(client, _event("checkout.session.completed", checkout))
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["data"] == {"received": True, "handled": True, "processed": True}

    sub = _reload(engine, Subscription, sub.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.stripe_subscription_id == "sub_remote_1"
    assert sub.start_date is not None and sub.end_date is not None

    h = _reload(engine, Host, host.id)
    assert h.tour_limit == 8
    assert h.current_tour_count == 0
    assert h.subscription_id == sub.id

    rows = _payments(engine)
    assert len(rows) == 1
    assert rows[0].status == PaymentStatus.COMPLETED
    assert rows[0].amount == 999
    assert rows[0].subscription_id == sub.id


def test_redelivered_checkout_is_idempotent(client, engine, host, make_tour, pending):
    sub, checkout = pending
    event = _event("checkout.session.completed", checkout)
    _post(client, event)

    # Quota is granted once; tours created in between keep counting.
    make_tour(_reload(engine, Host, host.id))
    _post(client, event)

    assert len(_payments(engine)) == 1
    assert _reload(engine, Host, host.id).current_tour_count == 1
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.ACTIVE


def test_first_invoice_is_not_double_counted(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    invoice = _invoice("in_first")
    _post(client, _event("invoice.payment_succeeded", invoice))
    _post(client, _event("invoice.payment_succeeded", invoice))
    assert len(_payments(engine)) == 1

    renewal = _invoice("in_second")
    _post(client, _event("invoice.payment_succeeded", renewal))
    _post(client, _event("invoice.payment_succeeded", renewal))

    rows = _payments(engine)
    assert len(rows) == 2
    assert len({p.transaction_id for p in rows}) == 2
    with session(engine) as s:
        assert billing.subscription_analytics(s)["revenue"]["total"] == 2 * 999


def test_subscription_charge_intent_is_linked_not_queued(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    intent = {"id": "pi_invoice_1", "object": "payment_intent", "status": "succeeded", "invoice": "in_first", "metadata": {}}
    r = _post(client, _event("payment_intent.succeeded", intent))
    assert r.json()["data"]["processed"] is True

    assert _unreconciled(engine) == []
    rows = _payments(engine)
    assert len(rows) == 1
    assert rows[0].stripe_payment_intent_id == "pi_invoice_1"
    assert rows[0].status == PaymentStatus.COMPLETED


def test_renewal_charge_intent_is_left_to_invoice_events(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    intent = {"id": "pi_renewal", "status": "succeeded", "invoice": {"id": "in_second"}, "metadata": {}}
    _post(client, _event("payment_intent.succeeded", intent))
    by_subscription = {"id": "pi_meta", "status": "succeeded", "metadata": {"subscriptionId": sub.id}}
    _post(client, _event("payment_intent.succeeded", by_subscription))

    assert _unreconciled(engine) == []
    assert len(_payments(engine)) == 1


def test_invoice_extends_end_date_but_never_shortens(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    later = int(time.time()) + 60 * 24 * 3600
    _post(client, _event("invoice.payment_succeeded", _invoice("in_2", period_end=later)))
    assert as_utc(_reload(engine, Subscription, sub.id).end_date) == from_timestamp(later)

    earlier = int(time.time()) + 5 * 24 * 3600
    _post(client, _event("invoice.payment_succeeded", _invoice("in_3", period_end=earlier)))
    assert as_utc(_reload(engine, Subscription, sub.id).end_date) == from_timestamp(later)
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.ACTIVE


def test_failed_invoice_records_failure_without_cancelling(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    _post(client, _event("invoice.payment_failed", _invoice("in_2")))
    rows = {p.transaction_id: p for p in _payments(engine)}
    assert rows["inv_in_2"].status == PaymentStatus.FAILED
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.ACTIVE

    # A late failure never undoes a completed payment.
    _post(client, _event("invoice.payment_succeeded", _invoice("in_3")))
    _post(client, _event("invoice.payment_failed", _invoice("in_3")))
    rows = {p.transaction_id: p for p in _payments(engine)}
    assert rows["inv_in_3"].status == PaymentStatus.COMPLETED


def test_subscription_deleted_downgrades_host(client, engine, host, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    r = _post(client, _event("customer.subscription.deleted", {"id": "sub_remote_1", "status": "canceled"}))
    assert r.status_code == 200

    sub = _reload(engine, Subscription, sub.id)
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.cancelled_at is not None
    assert sub.auto_renew is False

    h = _reload(engine, Host, host.id)
    assert h.tour_limit == 4
    assert h.current_tour_count == 0
    assert h.subscription_id is None


def test_unknown_subscription_events_are_queued(client, engine, host):
    r = _post(client, _event("customer.subscription.deleted", {"id": "sub_unknown"}))
    assert r.status_code == 200
    assert r.json()["data"]["processed"] is True
    _post(client, _event("customer.subscription.updated", {"id": "sub_unknown", "status": "active"}))

    rows = _unreconciled(engine)
    assert sorted(r.event_type for r in rows) == ["customer.subscription.deleted", "customer.subscription.updated"]
    assert all("sub_unknown" in r.reason for r in rows)
    assert _reload(engine, Host, host.id).tour_limit == 4


def test_subscription_updated_maps_status_and_period(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))

    period_end = int(time.time()) + 30 * 24 * 3600
    _post(client, _event("customer.subscription.updated", {"id": "sub_remote_1", "status": "past_due", "current_period_end": period_end}))
    row = _reload(engine, Subscription, sub.id)
    assert row.status == SubscriptionStatus.ACTIVE
    assert as_utc(row.end_date) == from_timestamp(period_end)

    _post(client, _event("customer.subscription.updated", {"id": "sub_remote_1", "status": "paused"}))
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.PAUSED

    _post(client, _event("customer.subscription.updated", {"id": "sub_remote_1", "status": "active"}))
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.ACTIVE


def test_update_before_checkout_activates_once(client, engine, host, make_tour, pending):
    sub, checkout = pending
    remote = {"id": "sub_remote_1", "status": "active", "metadata": {"subscriptionId": sub.id}}
    _post(client, _event("customer.subscription.updated", remote))

    h = _reload(engine, Host, host.id)
    assert h.subscription_id == sub.id
    assert h.tour_limit == 8
    make_tour(h)

    _post(client, _event("checkout.session.completed", checkout))
    assert _reload(engine, Host, host.id).current_tour_count == 1
    assert len(_payments(engine)) == 1


def test_cancelled_subscription_is_not_reactivated(client, engine, pending):
    sub, checkout = pending
    _post(client, _event("checkout.session.completed", checkout))
    _post(client, _event("customer.subscription.deleted", {"id": "sub_remote_1"}))

    _post(client, _event("customer.subscription.updated", {"id": "sub_remote_1", "status": "active"}))
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.CANCELLED


def test_checkout_without_metadata_is_queued_for_follow_up(client, engine, pending):
    sub, checkout = pending
    checkout["metadata"] = {}
    event = _event("checkout.session.completed", checkout)

    r = _post(client, event)
    assert r.status_code == 200
    assert r.json()["success"] is True

    rows = _unreconciled(engine)
    assert len(rows) == 1
    assert rows[0].event_id == event["id"]
    assert "subscriptionId" in rows[0].reason
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.PENDING
    assert _payments(engine) == []


def test_invoice_for_unknown_subscription_is_queued(client, engine):
    _post(client, _event("invoice.payment_succeeded", _invoice("in_x", subscription="sub_nowhere")))
    rows = _unreconciled(engine)
    assert len(rows) == 1
    assert rows[0].event_type == "invoice.payment_succeeded"
    assert _payments(engine) == []


def test_handler_error_is_acknowledged_and_recorded(client, engine, monkeypatch):
    def _explode(s, event):
        raise RuntimeError("boom")

    monkeypatch.setitem(webhooks.HANDLERS, "invoice.payment_succeeded", _explode)
    r = _post(client, _event("invoice.payment_succeeded", _invoice("in_x")))
    assert r.status_code == 200
    assert r.json()["data"]["processed"] is False

    rows = _unreconciled(engine)
    assert len(rows) == 1
    assert rows[0].reason == "handler error: boom"


def test_unhandled_event_type_is_acknowledged(client):
    r = _post(client, _event("customer.created", {"id": "cus_1"}))
    assert r.status_code == 200
    assert r.json()["data"]["handled"] is False


def test_bad_signature_is_rejected_without_state_change(client, engine, pending):
    sub, checkout = pending
    r = _post(client, _event("checkout.session.completed", checkout), secret="whsec_wrong")
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert _reload(engine, Subscription, sub.id).status == SubscriptionStatus.PENDING

    body = json.dumps(_event("checkout.session.completed", checkout)).encode("utf-8")
    r = client.post("/webhooks/stripe", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 400


def test_stale_signature_is_rejected(client, pending):
    _, checkout = pending
    r = _post(client, _event("checkout.session.completed", checkout), ts=int(time.time()) - 3600)
    assert r.status_code == 400


def test_process_event_directly(engine, pending):
    sub, checkout = pending
    outcome = webhooks.process_event(engine, _event("checkout.session.completed", checkout))
    assert outcome.processed is True
    assert ("subscription.activated", {"subscription_id": sub.id, "host_id": sub.host_id, "plan_id": sub.plan_id}) in outcome.events


def test_unreconciled_events_can_be_resolved(client, engine):
    from tourhub import reconciler

    _post(client, _event("invoice.payment_failed", _invoice("in_x", subscription="sub_nowhere")))
    with session(engine) as s:
        rows, meta = reconciler.list_unreconciled(s)
        assert meta["total"] == 1
        reconciler.resolve_unreconciled(s, rows[0].id, "refunded manually")
        rows, meta = reconciler.list_unreconciled(s)
        assert meta["total"] == 0
        rows, meta = reconciler.list_unreconciled(s, include_resolved=True)
        assert rows[0].resolution_note == "refunded manually"
