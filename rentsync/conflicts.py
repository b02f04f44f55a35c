from __future__ import annotations

from datetime import date
from typing import Iterable

from rentsync.models import Booking, BookingStatus, Conflict


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    # Half-open ranges: a checkout day equal to a check-in day is not an overlap.
    return start_a < end_b and start_b < end_a


def _claim_order(booking: Booking) -> tuple[object, ...]:
    return (booking.created_at, booking.start_date, booking.id)


def find_conflicts(bookings: Iterable[Booking]) -> list[Conflict]:
    by_property: dict[str, list[Booking]] = {}
    for booking in bookings:
        if booking.status is not BookingStatus.ACTIVE:
            continue
        by_property.setdefault(booking.property_id, []).append(booking)

    conflicts: list[Conflict] = []
    for property_id, items in by_property.items():
        ordered = sorted(items, key=_claim_order)
        for index, first in enumerate(ordered):
            for second in ordered[index + 1 :]:
                if not ranges_overlap(first.start_date, first.end_date, second.start_date, second.end_date):
                    continue
                conflicts.append(
                    Conflict(
                        property_id=property_id,
                        booking_a=first,
                        booking_b=second,
                        overlap_start=max(first.start_date, second.start_date),
                        overlap_end=min(first.end_date, second.end_date),
                    )
                )

    conflicts.sort(key=lambda item: (item.property_id, item.overlap_start, item.booking_a.id, item.booking_b.id))
    return conflicts


def find_conflict(bookings: Iterable[Booking], booking_id_a: str, booking_id_b: str) -> Conflict | None:
    wanted = {booking_id_a, booking_id_b}
    for conflict in find_conflicts(bookings):
        if set(conflict.booking_ids) == wanted:
            return conflict
    return None
