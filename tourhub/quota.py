from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import InvalidState, NotFound, QuotaExceeded
from .models import Blog, Host, Subscription, SubscriptionPlan, SubscriptionStatus, Tour
from .timeutil import now

BASIC_TOUR_LIMIT = int(os.getenv("BASIC_TOUR_LIMIT", "4"))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TourQuota:
    host_id: str
    tour_limit: int
    current_tour_count: int

    @property
    def remaining_tours(self) -> int:
        return max(0, self.tour_limit - self.current_tour_count)


@dataclass(frozen=True)
class BlogQuota:
    host_id: str
    subscription_id: str
    plan_name: str
    blog_post_limit: int | None  # None = unlimited
    blogs_this_year: int

    @property
    def remaining_blog_posts(self) -> int | None:
        if self.blog_post_limit is None:
            return None
        return max(0, self.blog_post_limit - self.blogs_this_year)


@dataclass(frozen=True)
class NewTour:
    title: str
    max_group_size: int
    destination: str = ""
    price: int = 0
    start_date: datetime | None = None
    end_date: datetime | None = None


def _host(s: Session, user_id: str) -> Host:
    host = s.execute(select(Host).where(Host.user_id == user_id)).scalar_one_or_none()
    if host is None:
        raise NotFound("Host not found")
    return host


def active_subscription(s: Session, host_id: str) -> tuple[Subscription, SubscriptionPlan] | None:
    row = s.execute(
        select(Subscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .where(Subscription.host_id == host_id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE)
        .order_by(Subscription.created_at.desc())
    ).first()
    if row is None:
        return None
    return row[0], row[1]


def register_host(s: Session, *, user_id: str, email: str, name: str = "") -> Host:
    host = s.execute(select(Host).where(Host.user_id == user_id)).scalar_one_or_none()
    if host is not None:
        return host
    ts = now()
    host = Host(
        id=str(uuid4()),
        user_id=user_id,
        email=email.lower().strip(),
        name=name,
        tour_limit=BASIC_TOUR_LIMIT,
        current_tour_count=0,
        created_at=ts,
        updated_at=ts,
    )
    s.add(host)
    s.commit()
    logger.info("Host profile %s registered for user %s", host.id, user_id)
    return host


def check_tour_creation(s: Session, host_user_id: str) -> TourQuota:
    host = _host(s, host_user_id)
    if host.current_tour_count >= host.tour_limit:
        data = {
            "current_tour_count": host.current_tour_count,
            "tour_limit": host.tour_limit,
            "remaining_tours": 0,
        }
        active = active_subscription(s, host.id)
        if active is None:
            raise QuotaExceeded(
                f"You have reached your tour creation limit ({host.tour_limit}). Please subscribe to a plan.",
                data={**data, "needs_subscription": True},
            )
        raise QuotaExceeded(
            f"You have reached your tour creation limit ({host.tour_limit}). Please upgrade your plan.",
            data={**data, "current_plan": active[1].name, "needs_upgrade": True},
        )
    return TourQuota(host_id=host.id, tour_limit=host.tour_limit, current_tour_count=host.current_tour_count)


def create_tour(s: Session, quota: TourQuota, payload: NewTour) -> Tour:
    if payload.max_group_size < 1:
        raise InvalidState("max_group_size must be at least 1")
    ts = now()
    # The quota may have been read in an earlier transaction; claim the slot
    # with a guarded increment.
    result = s.execute(
        update(Host)
        .where(Host.id == quota.host_id)
        .where(Host.current_tour_count < Host.tour_limit)
        .values(current_tour_count=Host.current_tour_count + 1, updated_at=ts),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount == 0:
        raise QuotaExceeded(
            f"You have reached your tour creation limit ({quota.tour_limit}).",
            data={"tour_limit": quota.tour_limit, "remaining_tours": 0},
        )
    host = s.get(Host, quota.host_id)
    s.refresh(host)

    if host.subscription_id:
        sub = s.get(Subscription, host.subscription_id)
        if sub is not None:
            sub.remaining_tours = max(0, host.tour_limit - host.current_tour_count)
            sub.updated_at = ts
            s.add(sub)

    tour = Tour(
        id=str(uuid4()),
        host_id=host.id,
        title=payload.title,
        destination=payload.destination,
        price=payload.price,
        max_group_size=payload.max_group_size,
        current_group_size=0,
        start_date=payload.start_date,
        end_date=payload.end_date,
        created_at=ts,
        updated_at=ts,
    )
    s.add(tour)
    s.commit()
    return tour


def get_tour(s: Session, tour_id: str) -> Tour:
    tour = s.get(Tour, tour_id)
    if tour is None:
        raise NotFound("Tour not found")
    return tour


def _blogs_since(s: Session, host_id: str, since: datetime) -> int:
    return int(
        s.execute(select(func.count(Blog.id)).where(Blog.host_id == host_id).where(Blog.created_at >= since)).scalar_one()
    )


def check_blog_creation(s: Session, host_user_id: str) -> BlogQuota:
    host = _host(s, host_user_id)
    active = active_subscription(s, host.id)
    if active is None or not active[1].can_write_blogs:
        raise QuotaExceeded(
            "You need a Standard or Premium subscription to write blog posts.",
            data={
                "can_write_blogs": False,
                "current_plan": active[1].name if active else "Basic",
                "needs_upgrade": True,
            },
        )
    sub, plan = active

    ts = now()
    blogs_this_year = _blogs_since(s, host.id, ts.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0))
    if plan.blog_post_limit is not None and blogs_this_year >= plan.blog_post_limit:
        raise QuotaExceeded(
            f"You have reached your annual blog post limit ({plan.blog_post_limit}).",
            data={
                "current_blog_count": blogs_this_year,
                "blog_post_limit": plan.blog_post_limit,
                "remaining_blog_posts": 0,
            },
        )
    return BlogQuota(
        host_id=host.id,
        subscription_id=sub.id,
        plan_name=plan.name,
        blog_post_limit=plan.blog_post_limit,
        blogs_this_year=blogs_this_year,
    )


def create_blog(s: Session, quota: BlogQuota, *, title: str, content: str) -> Blog:
    blog = Blog(id=str(uuid4()), host_id=quota.host_id, title=title, content=content, created_at=now())
    s.add(blog)
    sub = s.get(Subscription, quota.subscription_id)
    if sub is not None and sub.blog_post_limit is not None:
        sub.remaining_blog_posts = max(0, sub.remaining_blog_posts - 1)
        s.add(sub)
    s.commit()
    return blog
