from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rentsync.models import Booking, BookingStatus, Conflict, Platform
from rentsync.state_store import StateStore

logger = logging.getLogger(__name__)


class ResolutionState(str, Enum):
    DETECTED = "detected"
    PRESENTED_TO_USER = "presented_to_user"
    RESOLVED = "resolved"


@dataclass
class ResolutionOutcome:
    kept_booking_id: str
    cancelled_booking_id: str
    cancelled_platform: Platform
    instructions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kept_booking_id": self.kept_booking_id,
            "cancelled_booking_id": self.cancelled_booking_id,
            "cancelled_platform": self.cancelled_platform.value,
            "instructions": list(self.instructions),
        }


def cancellation_instructions(booking: Booking) -> list[str]:
    dates = f"{booking.start_date.strftime('%b %d')} - {booking.end_date.strftime('%b %d')}"
    guest = booking.guest_label or "the guest"
    if booking.platform in {Platform.DIRECT, Platform.OTHER}:
        first_step = "Contact the guest directly"
    else:
        first_step = f"Open {booking.platform.label}"
    return [
        first_step,
        f"Find {guest}'s reservation ({dates})",
        "Cancel or relocate the guest",
    ]


@dataclass
class ResolutionCase:
    conflict: Conflict
    state: ResolutionState = ResolutionState.DETECTED
    outcome: ResolutionOutcome | None = None

    def present(self) -> None:
        if self.state is not ResolutionState.DETECTED:
            raise ValueError(f"Cannot present a conflict in state {self.state.value}")
        self.state = ResolutionState.PRESENTED_TO_USER

    def split(self, keep_booking_id: str) -> tuple[Booking, Booking]:
        first, second = self.conflict.booking_a, self.conflict.booking_b
        if keep_booking_id == first.id:
            return first, second
        if keep_booking_id == second.id:
            return second, first
        raise ValueError(f"Booking {keep_booking_id} is not part of this conflict")

    def mark_resolved(self, outcome: ResolutionOutcome) -> None:
        if self.state is not ResolutionState.PRESENTED_TO_USER:
            raise ValueError(f"Cannot resolve a conflict in state {self.state.value}")
        self.outcome = outcome
        self.state = ResolutionState.RESOLVED


class ConflictResolver:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def resolve(self, case: ResolutionCase, keep_booking_id: str) -> ResolutionOutcome:
        if case.state is not ResolutionState.PRESENTED_TO_USER:
            raise ValueError(f"Cannot resolve a conflict in state {case.state.value}")
        kept, cancelled = case.split(keep_booking_id)

        self.state_store.resolve_conflict(
            property_id=case.conflict.property_id,
            kept_booking_id=kept.id,
            cancelled_booking_id=cancelled.id,
        )
        outcome = ResolutionOutcome(
            kept_booking_id=kept.id,
            cancelled_booking_id=cancelled.id,
            cancelled_platform=cancelled.platform,
            instructions=cancellation_instructions(cancelled),
        )
        case.mark_resolved(outcome)
        self.state_store.record_audit_event(
            property_id=case.conflict.property_id,
            subject_id=cancelled.id,
            action="conflict_resolved",
            details={
                "kept_booking_id": kept.id,
                "kept_platform": kept.platform.value,
                "cancelled_booking_id": cancelled.id,
                "cancelled_platform": cancelled.platform.value,
                "overlap_start": case.conflict.overlap_start.isoformat(),
                "overlap_end": case.conflict.overlap_end.isoformat(),
            },
        )
        logger.info(
            "Conflict on %s resolved: keeping %s, %s needs cancelling on %s",
            case.conflict.property_id,
            kept.id,
            cancelled.id,
            cancelled.platform.label,
        )
        return outcome

    def confirm_external_cancellation(self, booking_id: str) -> Booking:
        booking = self.state_store.get_booking(booking_id)
        if booking is None:
            raise KeyError(booking_id)
        if booking.status is not BookingStatus.CANCELLATION_REQUIRED:
            raise ValueError(f"Booking {booking_id} is not awaiting cancellation (status={booking.status.value})")
        updated = self.state_store.set_booking_status(booking_id, BookingStatus.CANCELLED)
        self.state_store.record_audit_event(
            property_id=booking.property_id,
            subject_id=booking_id,
            action="external_cancellation_confirmed",
            details={"platform": booking.platform.value},
        )
        return updated or booking
