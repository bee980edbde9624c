import pytest

from tourhub import billing, quota
from tourhub.errors import GatewayError, InvalidState, NotFound, QuotaExceeded
from tourhub.models import Host, Subscription, SubscriptionPlan, SubscriptionStatus


def _plan(s, name, **overrides):
    fields = {
        "name": name,
        "description": f"{name} plan",
        "price": 0,
        "duration": 1,
        "tour_limit": 8,
        "can_write_blogs": False,
        "blog_post_limit": 0,
    }
    fields.update(overrides)
    return billing.create_plan(s, **fields)


def _fill_basic_quota(s, host, make_tour):
    for i in range(host.tour_limit):
        make_tour(host, title=f"Tour {i}")
    s.refresh(host)
    assert host.current_tour_count == host.tour_limit


def test_register_host_is_idempotent(s, host):
    again = quota.register_host(s, user_id=host.user_id, email="other@example.com")
    assert again.id == host.id
    assert host.email == "host@example.com"
    assert host.tour_limit == quota.BASIC_TOUR_LIMIT == 4
    assert host.current_tour_count == 0


def test_tour_creation_without_host_profile_is_not_found(s):
    with pytest.raises(NotFound):
        quota.check_tour_creation(s, "nobody")


def test_basic_host_blocked_then_free_upgrade_allows_tours(s, host, make_tour):
    _fill_basic_quota(s, host, make_tour)

    with pytest.raises(QuotaExceeded) as exc:
        quota.check_tour_creation(s, host.user_id)
    assert exc.value.status_code == 403
    assert exc.value.data["needs_subscription"] is True

    standard = _plan(s, "Standard Trial", tour_limit=8, can_write_blogs=True, blog_post_limit=10)
    result = billing.subscribe(s, host_user_id=host.user_id, plan_id=standard.id)
    assert result.checkout_url is None
    assert result.subscription.status == SubscriptionStatus.ACTIVE

    s.refresh(host)
    assert host.tour_limit == 8
    assert host.current_tour_count == 0
    assert host.subscription_id == result.subscription.id

    allowance = quota.check_tour_creation(s, host.user_id)
    assert allowance.remaining_tours == 8
    tour = quota.create_tour(s, allowance, quota.NewTour(title="New Tour", max_group_size=6))
    assert tour.host_id == host.id

    s.refresh(host)
    sub = s.get(Subscription, result.subscription.id)
    s.refresh(sub)
    assert host.current_tour_count == 1
    assert sub.remaining_tours == 7


def test_subscribed_host_at_limit_is_told_to_upgrade(s, host, make_tour):
    small = _plan(s, "Tiny", tour_limit=1)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=small.id)
    make_tour(host)

    with pytest.raises(QuotaExceeded) as exc:
        quota.check_tour_creation(s, host.user_id)
    assert exc.value.data["needs_upgrade"] is True
    assert exc.value.data["current_plan"] == "Tiny"


def test_stale_quota_cannot_overshoot_limit(s, host):
    small = _plan(s, "Tiny", tour_limit=1)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=small.id)

    first = quota.check_tour_creation(s, host.user_id)
    second = quota.check_tour_creation(s, host.user_id)
    quota.create_tour(s, first, quota.NewTour(title="One", max_group_size=4))
    with pytest.raises(QuotaExceeded):
        quota.create_tour(s, second, quota.NewTour(title="Two", max_group_size=4))


def test_blog_creation_requires_blog_plan_and_respects_limit(s, host):
    with pytest.raises(QuotaExceeded) as exc:
        quota.check_blog_creation(s, host.user_id)
    assert exc.value.data["current_plan"] == "Basic"

    writer = _plan(s, "Writer", can_write_blogs=True, blog_post_limit=2)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=writer.id)

    for i in range(2):
        allowance = quota.check_blog_creation(s, host.user_id)
        quota.create_blog(s, allowance, title=f"Post {i}", content="...")

    with pytest.raises(QuotaExceeded) as exc:
        quota.check_blog_creation(s, host.user_id)
    assert exc.value.data["remaining_blog_posts"] == 0


def test_unlimited_blog_plan(s, host):
    plan = _plan(s, "Unlimited", can_write_blogs=True, blog_post_limit=None)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)
    allowance = quota.check_blog_creation(s, host.user_id)
    assert allowance.remaining_blog_posts is None


def test_cancel_downgrades_to_basic_and_caps_count(s, host, make_tour):
    plan = _plan(s, "Standard Trial", tour_limit=8)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)
    for i in range(6):
        make_tour(host, title=f"Tour {i}")

    sub = billing.cancel_subscription(s, host.user_id)
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.cancelled_at is not None
    assert sub.auto_renew is False

    s.refresh(host)
    assert host.tour_limit == 4
    assert host.current_tour_count == 4
    assert host.subscription_id is None

    with pytest.raises(NotFound):
        billing.cancel_subscription(s, host.user_id)


def test_cancel_proceeds_when_gateway_cancel_fails(s, host, fake_stripe, monkeypatch):
    plan = _plan(s, "Standard Trial")
    result = billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)
    result.subscription.stripe_subscription_id = "sub_remote_1"
    s.commit()

    def _fail(subscription_id):
        raise GatewayError("stripe down")

    monkeypatch.setattr(billing.gateway, "cancel_subscription", _fail)
    sub = billing.cancel_subscription(s, host.user_id)
    assert sub.status == SubscriptionStatus.CANCELLED


def test_switching_free_plans_cancels_previous(s, host):
    first = _plan(s, "Free A", tour_limit=5)
    second = _plan(s, "Free B", tour_limit=6)
    one = billing.subscribe(s, host_user_id=host.user_id, plan_id=first.id).subscription
    two = billing.subscribe(s, host_user_id=host.user_id, plan_id=second.id).subscription

    s.refresh(one)
    assert one.status == SubscriptionStatus.CANCELLED
    assert two.status == SubscriptionStatus.ACTIVE
    s.refresh(host)
    assert host.tour_limit == 6


def test_paid_subscribe_creates_pending_subscription_and_checkout(s, host, fake_stripe):
    billing.initialize_default_plans(s)
    standard = s.query(SubscriptionPlan).filter(SubscriptionPlan.name == "Standard").one()
    assert standard.stripe_price_id

    result = billing.subscribe(s, host_user_id=host.user_id, plan_id=standard.id)
    sub = result.subscription
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.tour_limit == 8
    assert result.checkout_url.startswith("https://checkout.stripe.test/")

    checkout = fake_stripe.checkout_sessions[result.session_id]
    assert checkout["metadata"]["subscriptionId"] == sub.id
    assert checkout["metadata"]["hostId"] == host.id

    s.refresh(host)
    assert host.stripe_customer_id in fake_stripe.customers
    # Quota only changes once checkout completes.
    assert host.tour_limit == 4


def test_paid_plan_blocked_while_active_subscription(s, host):
    billing.initialize_default_plans(s)
    basic = s.query(SubscriptionPlan).filter(SubscriptionPlan.name == "Basic").one()
    premium = s.query(SubscriptionPlan).filter(SubscriptionPlan.name == "Premium").one()
    billing.subscribe(s, host_user_id=host.user_id, plan_id=basic.id)

    with pytest.raises(InvalidState):
        billing.subscribe(s, host_user_id=host.user_id, plan_id=premium.id)


def test_paid_plan_without_price_id_is_invalid(s, host):
    plan = _plan(s, "Unwired", price=500)
    with pytest.raises(InvalidState):
        billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)


def test_inactive_plan_cannot_be_subscribed(s, host):
    plan = _plan(s, "Retired", is_active=False)
    with pytest.raises(InvalidState):
        billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)


def test_initialize_default_plans_once(s):
    first = billing.initialize_default_plans(s)
    assert first["created"] == ["Basic", "Standard", "Premium"]
    second = billing.initialize_default_plans(s)
    assert second["created"] == []

    plans, meta = billing.list_plans(s)
    assert [p.name for p in plans] == ["Basic", "Standard", "Premium"]
    assert meta["total"] == 3
    basic = plans[0]
    assert basic.stripe_price_id is None
    assert plans[2].blog_post_limit is None


def test_initialize_default_plans_survives_gateway_failure(s, monkeypatch):
    def _fail(*args, **kwargs):
        raise GatewayError("stripe down")

    monkeypatch.setattr(billing.gateway, "create_product", _fail)
    result = billing.initialize_default_plans(s)
    assert len(result["created"]) == 3
    assert all(p.stripe_price_id is None for p in s.query(SubscriptionPlan).all())


def test_plan_crud(s, host):
    plan = _plan(s, "Custom", price=1500, tour_limit=20)
    with pytest.raises(InvalidState):
        _plan(s, "Custom")

    updated = billing.update_plan(s, plan.id, tour_limit=25, ignored_field="x")
    assert updated.tour_limit == 25

    billing.update_plan(s, plan.id, is_active=False)
    plans, _ = billing.list_plans(s)
    assert plan.id not in [p.id for p in plans]
    plans, _ = billing.list_plans(s, include_inactive=True)
    assert plan.id in [p.id for p in plans]

    free = _plan(s, "Free")
    billing.subscribe(s, host_user_id=host.user_id, plan_id=free.id)
    with pytest.raises(InvalidState):
        billing.delete_plan(s, free.id)

    billing.delete_plan(s, plan.id)
    with pytest.raises(NotFound):
        billing.get_plan(s, plan.id)


def test_current_subscription_views(s, host):
    view = billing.current_subscription(s, host.user_id)
    assert view["status"] == "BASIC"
    assert view["is_active"] is False
    assert view["remaining_tours"] == 4

    plan = _plan(s, "Writer", tour_limit=8, can_write_blogs=True, blog_post_limit=10)
    billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)
    view = billing.current_subscription(s, host.user_id)
    assert view["status"] == SubscriptionStatus.ACTIVE
    assert view["plan"].name == "Writer"
    assert view["is_free"] is True
    assert view["remaining_tours"] == 8
    assert view["remaining_blog_posts"] == 10
    assert view["next_billing_date"] is not None


def test_customer_portal_requires_customer(s, host):
    with pytest.raises(InvalidState):
        billing.customer_portal(s, host.user_id)
    host.stripe_customer_id = "cus_existing"
    s.add(host)
    s.commit()
    assert billing.customer_portal(s, host.user_id)["portal_url"].endswith("cus_existing")


def test_subscription_transitions():
    assert billing.can_transition(SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)
    assert billing.can_transition(SubscriptionStatus.PAUSED, SubscriptionStatus.ACTIVE)
    assert not billing.can_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING)
    assert not billing.can_transition(SubscriptionStatus.CANCELLED, SubscriptionStatus.ACTIVE)
    assert not billing.can_transition(SubscriptionStatus.EXPIRED, SubscriptionStatus.ACTIVE)


def test_list_and_analytics(s, host):
    plan = _plan(s, "Free")
    billing.subscribe(s, host_user_id=host.user_id, plan_id=plan.id)

    rows, meta = billing.list_subscriptions(s, status=SubscriptionStatus.ACTIVE)
    assert meta["total"] == 1
    sub, listed_plan, listed_host = rows[0]
    assert listed_plan.id == plan.id
    assert isinstance(listed_host, Host)

    stats = billing.subscription_analytics(s)
    assert stats["overview"]["active"] == 1
    assert stats["revenue"] == {"total": 0, "total_payments": 0, "average_payment": 0}
    assert stats["by_plan"][0]["plan_name"] == "Free"
    assert stats["recent_subscriptions"][0]["id"] == sub.id
