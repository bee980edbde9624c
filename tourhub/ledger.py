"""
Booking ledger.

Keeps ``Tour.current_group_size`` equal to the sum of ``number_of_people``
over the tour's CONFIRMED bookings. Every path that moves a booking across
the CONFIRMED boundary adjusts the counter exactly once, in the same
transaction as the booking write, with a single conditional UPDATE.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    AlreadyCancelled,
    AlreadyCompleted,
    BookingTerminal,
    CapacityExceeded,
    DuplicateBooking,
    Forbidden,
    InvalidState,
    NotFound,
)
from .models import Booking, BookingStatus, Host, PaymentStatus, Tour
from .timeutil import as_utc, now

logger = logging.getLogger(__name__)

# Status changes a host/admin may request. Crossing into or out of CONFIRMED
# moves the tour counter.
_STATUS_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.COMPLETED},
}


def _get_tour(s: Session, tour_id: str) -> Tour:
    tour = s.get(Tour, tour_id)
    if tour is None:
        raise NotFound("Tour not found")
    return tour


def _get_booking(s: Session, booking_id: str) -> Booking:
    booking = s.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def _host_for_user(s: Session, user_id: str) -> Host | None:
    return s.execute(select(Host).where(Host.user_id == user_id)).scalar_one_or_none()


def _shift_group_size(s: Session, tour_id: str, delta: int) -> None:
    """
    Apply ``delta`` to the tour counter as one UPDATE statement.

    Increments only match while the result stays within max_group_size;
    decrements clamp at zero. When no row matches, the session is rolled
    back before raising.
    """
    if delta == 0:
        return
    stmt = update(Tour).where(Tour.id == tour_id)
    if delta > 0:
        stmt = stmt.where(Tour.current_group_size + delta <= Tour.max_group_size)
        new_value = Tour.current_group_size + delta
    else:
        new_value = case((Tour.current_group_size + delta < 0, 0), else_=Tour.current_group_size + delta)

    result = s.execute(
        stmt.values(current_group_size=new_value, updated_at=now()),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount == 0:
        # Discards the pending booking row along with the failed shift.
        s.rollback()
        if delta > 0:
            raise CapacityExceeded("Not enough spots left on this tour")
        raise NotFound("Tour not found")

    tour = s.get(Tour, tour_id)
    if tour is not None:
        s.refresh(tour)


def confirmed_participants(s: Session, tour_id: str, exclude_booking_id: str | None = None) -> int:
    stmt = (
        select(func.coalesce(func.sum(Booking.number_of_people), 0))
        .where(Booking.tour_id == tour_id)
        .where(Booking.status == BookingStatus.CONFIRMED)
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return int(s.execute(stmt).scalar_one())


def create_booking(
    s: Session,
    *,
    user_id: str,
    tour_id: str,
    number_of_people: int,
    special_requests: str | None = None,
    status: str = BookingStatus.PENDING,
    payment_status: str = PaymentStatus.PENDING,
) -> Booking:
    if number_of_people < 1:
        raise InvalidState("number_of_people must be at least 1")
    if status not in BookingStatus.ACTIVE:
        raise InvalidState(f"A booking cannot be created as {status}")

    tour = _get_tour(s, tour_id)

    existing = s.execute(
        select(Booking.id)
        .where(Booking.tour_id == tour_id)
        .where(Booking.user_id == user_id)
        .where(Booking.status.in_(BookingStatus.ACTIVE))
    ).first()
    if existing is not None:
        raise DuplicateBooking("You already have a booking for this tour")

    available = tour.max_group_size - tour.current_group_size
    if number_of_people > available:
        raise CapacityExceeded(
            f"Only {max(0, available)} spots available on this tour",
            data={"available": max(0, available), "requested": number_of_people},
        )

    ts = now()
    booking = Booking(
        id=str(uuid4()),
        user_id=user_id,
        tour_id=tour_id,
        number_of_people=number_of_people,
        total_amount=tour.price * number_of_people,
        special_requests=special_requests,
        status=status,
        payment_status=payment_status,
        is_reviewed=False,
        booking_date=ts,
        created_at=ts,
        updated_at=ts,
    )
    s.add(booking)
    try:
        s.flush()
    except IntegrityError:
        # A concurrent request won the partial unique index.
        s.rollback()
        raise DuplicateBooking("You already have a booking for this tour")

    if booking.status == BookingStatus.CONFIRMED:
        _shift_group_size(s, tour_id, number_of_people)

    s.commit()
    logger.info("Booking %s created (tour=%s, status=%s, people=%d)", booking.id, tour_id, booking.status, number_of_people)
    return booking


def update_booking(
    s: Session,
    booking_id: str,
    *,
    actor_id: str,
    is_admin: bool = False,
    number_of_people: int | None = None,
    special_requests: str | None = None,
) -> Booking:
    booking = _get_booking(s, booking_id)
    if not is_admin and booking.user_id != actor_id:
        raise Forbidden("You are not authorized to update this booking")
    if booking.status in BookingStatus.TERMINAL:
        raise BookingTerminal(f"Cannot update a {booking.status.lower()} booking")

    if number_of_people is not None and number_of_people != booking.number_of_people:
        if number_of_people < 1:
            raise InvalidState("number_of_people must be at least 1")
        tour = _get_tour(s, booking.tour_id)

        # Re-derive from sibling bookings instead of trusting the cached counter.
        others = confirmed_participants(s, tour.id, exclude_booking_id=booking.id)
        if others + number_of_people > tour.max_group_size:
            raise CapacityExceeded(
                f"Cannot update to {number_of_people} participants. "
                f"Only {max(0, tour.max_group_size - others)} spots available",
                data={"available": max(0, tour.max_group_size - others), "requested": number_of_people},
            )

        if booking.status == BookingStatus.CONFIRMED:
            _shift_group_size(s, tour.id, number_of_people - booking.number_of_people)

        booking.number_of_people = number_of_people
        booking.total_amount = tour.price * number_of_people

    if special_requests is not None:
        booking.special_requests = special_requests

    booking.updated_at = now()
    s.add(booking)
    s.commit()
    return booking


def _apply_cancellation(s: Session, booking: Booking) -> None:
    was_confirmed = booking.status == BookingStatus.CONFIRMED
    booking.status = BookingStatus.CANCELLED
    booking.payment_status = PaymentStatus.REFUNDED
    booking.updated_at = now()
    s.add(booking)
    if was_confirmed:
        _shift_group_size(s, booking.tour_id, -booking.number_of_people)


def update_booking_status(
    s: Session,
    booking_id: str,
    *,
    actor_id: str,
    is_admin: bool = False,
    status: str,
) -> Booking:
    booking = _get_booking(s, booking_id)
    tour = _get_tour(s, booking.tour_id)

    if not is_admin:
        host = _host_for_user(s, actor_id)
        if host is None or host.id != tour.host_id:
            raise Forbidden("You are not authorized to update this booking status")

    current = booking.status
    if status not in _STATUS_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot change booking status from {current} to {status}")

    if status == BookingStatus.CANCELLED:
        _apply_cancellation(s, booking)
    else:
        if status == BookingStatus.CONFIRMED:
            _shift_group_size(s, tour.id, booking.number_of_people)
        elif status == BookingStatus.COMPLETED:
            # Completed bookings stop holding capacity.
            _shift_group_size(s, tour.id, -booking.number_of_people)
        booking.status = status
        booking.updated_at = now()
        s.add(booking)

    s.commit()
    logger.info("Booking %s status %s -> %s", booking.id, current, booking.status)
    return booking


def cancel_booking(s: Session, booking_id: str, *, actor_id: str, is_admin: bool = False) -> Booking:
    booking = _get_booking(s, booking_id)
    if not is_admin and booking.user_id != actor_id:
        raise Forbidden("You are not authorized to cancel this booking")
    if booking.status == BookingStatus.CANCELLED:
        raise AlreadyCancelled("Booking is already cancelled")
    if booking.status == BookingStatus.COMPLETED:
        raise AlreadyCompleted("Cannot cancel a completed booking")

    _apply_cancellation(s, booking)
    s.commit()
    logger.info("Booking %s cancelled", booking.id)
    return booking


def delete_booking(s: Session, booking_id: str) -> Booking:
    booking = _get_booking(s, booking_id)
    if booking.status == BookingStatus.CONFIRMED:
        _shift_group_size(s, booking.tour_id, -booking.number_of_people)
    s.delete(booking)
    s.commit()
    logger.info("Booking %s deleted", booking.id)
    return booking


def get_booking(s: Session, booking_id: str, *, actor_id: str, is_admin: bool = False) -> Booking:
    booking = _get_booking(s, booking_id)
    if is_admin or booking.user_id == actor_id:
        return booking
    host = _host_for_user(s, actor_id)
    tour = s.get(Tour, booking.tour_id)
    if host is not None and tour is not None and tour.host_id == host.id:
        return booking
    raise Forbidden("You are not authorized to view this booking")


def list_bookings(
    s: Session,
    *,
    user_id: str | None = None,
    host_id: str | None = None,
    tour_id: str | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Booking], dict]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))

    qry = s.query(Booking)
    if host_id is not None:
        qry = qry.join(Tour, Tour.id == Booking.tour_id).filter(Tour.host_id == host_id)
    if user_id is not None:
        qry = qry.filter(Booking.user_id == user_id)
    if tour_id:
        qry = qry.filter(Booking.tour_id == tour_id)
    if status:
        qry = qry.filter(Booking.status == status)
    if payment_status:
        qry = qry.filter(Booking.payment_status == payment_status)

    total = qry.count()
    rows = qry.order_by(Booking.booking_date.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, {"page": page, "limit": limit, "total": total}


def host_for_user(s: Session, user_id: str) -> Host:
    host = _host_for_user(s, user_id)
    if host is None:
        raise NotFound("Host not found")
    return host


def list_user_bookings(s: Session, user_id: str, **filters) -> tuple[list[Booking], dict]:
    return list_bookings(s, user_id=user_id, **filters)


def list_host_bookings(s: Session, host_user_id: str, **filters) -> tuple[list[Booking], dict]:
    host = host_for_user(s, host_user_id)
    return list_bookings(s, host_id=host.id, **filters)


def _status_counts(bookings: list[Booking]) -> dict[str, int]:
    counts = Counter(b.status for b in bookings)
    return {
        "total_bookings": len(bookings),
        "confirmed_bookings": counts[BookingStatus.CONFIRMED],
        "pending_bookings": counts[BookingStatus.PENDING],
        "cancelled_bookings": counts[BookingStatus.CANCELLED],
        "completed_bookings": counts[BookingStatus.COMPLETED],
    }


def _earning(b: Booking) -> int:
    return b.total_amount if b.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED) else 0


def host_booking_stats(s: Session, host: Host, at: datetime | None = None) -> dict:
    at = at or now()
    rows = (
        s.query(Booking, Tour)
        .join(Tour, Tour.id == Booking.tour_id)
        .filter(Tour.host_id == host.id)
        .order_by(Booking.booking_date.desc())
        .all()
    )
    bookings = [b for b, _ in rows]

    since = at - timedelta(days=183)
    by_month: dict[str, dict] = {}
    for b in bookings:
        booked = as_utc(b.booking_date)
        if booked < since:
            continue
        bucket = by_month.setdefault(booked.strftime("%Y-%m"), {"count": 0, "revenue": 0})
        bucket["count"] += 1
        bucket["revenue"] += _earning(b)

    upcoming = sum(
        1
        for b, t in rows
        if b.status == BookingStatus.CONFIRMED and (as_utc(t.start_date) or at) > at
    )

    return {
        **_status_counts(bookings),
        "total_revenue": sum(_earning(b) for b in bookings),
        "upcoming_bookings": upcoming,
        "bookings_by_month": [{"month": m, **v} for m, v in sorted(by_month.items())],
        "recent_bookings": [
            {
                "id": b.id,
                "booking_date": b.booking_date,
                "status": b.status,
                "total_amount": b.total_amount,
                "number_of_people": b.number_of_people,
                "tour_title": t.title,
                "user_id": b.user_id,
            }
            for b, t in rows[:10]
        ],
    }


def user_booking_stats(s: Session, user_id: str, at: datetime | None = None) -> dict:
    at = at or now()
    rows = (
        s.query(Booking, Tour)
        .join(Tour, Tour.id == Booking.tour_id)
        .filter(Booking.user_id == user_id)
        .order_by(Booking.booking_date.desc())
        .all()
    )
    bookings = [b for b, _ in rows]

    upcoming = 0
    past = 0
    for b, t in rows:
        if b.status == BookingStatus.CONFIRMED and (as_utc(t.start_date) or at) > at:
            upcoming += 1
        if b.status == BookingStatus.COMPLETED or (
            b.status == BookingStatus.CONFIRMED and (as_utc(t.end_date) or at) < at
        ):
            past += 1

    destinations = Counter((t.destination or "Unknown") for _, t in rows)
    favourite = None
    if destinations:
        name, count = destinations.most_common(1)[0]
        favourite = {"destination": name, "count": count}

    return {
        **_status_counts(bookings),
        "total_spent": sum(_earning(b) for b in bookings),
        "upcoming_trips": upcoming,
        "past_trips": past,
        "favorite_destination": favourite,
        "recent_bookings": [
            {
                "id": b.id,
                "tour_title": t.title,
                "destination": t.destination,
                "booking_date": b.booking_date,
                "status": b.status,
                "total_amount": b.total_amount,
            }
            for b, t in rows[:5]
        ],
    }
