from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


ALLOWED_CADENCE_MINUTES = (15, 30, 60, 180)
DEFAULT_CADENCE_MINUTES = 30
SHORT_STAY_MAX_NIGHTS = 14
PLATFORM_BLOCK_REASON = "Platform block"
MANUAL_BLOCK_REASONS = ("Personal use", "Maintenance", "Renovation", "Other")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def nights_between(start: date, end: date) -> int:
    return (end - start).days


class Platform(str, Enum):
    AIRBNB = "Airbnb"
    BOOKING_DOT_COM = "Booking.com"
    VRBO = "VRBO"
    DIRECT = "Direct"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: "str | Platform") -> "Platform":
        if isinstance(value, Platform):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text.casefold() in {member.value.casefold(), member.name.casefold()}:
                return member
        raise ValueError(f"Unknown platform: {value!r}")

    @property
    def label(self) -> str:
        return self.value

    @property
    def guest_placeholder(self) -> str:
        return f"{self.value} Guest"

    @property
    def url_pattern(self) -> str:
        if self is Platform.AIRBNB:
            return "airbnb.com/calendar/ical"
        if self is Platform.BOOKING_DOT_COM:
            return "ical.booking.com"
        if self is Platform.VRBO:
            return "vrbo.com"
        if self is Platform.DIRECT or self is Platform.OTHER:
            return ""
        raise AssertionError(f"Unhandled platform: {self!r}")


class Classification(str, Enum):
    RESERVATION = "reservation"
    ADMINISTRATIVE_BLOCK = "administrative_block"


class BookingStatus(str, Enum):
    ACTIVE = "active"
    CANCELLATION_REQUIRED = "cancellation_required"
    CANCELLED = "cancelled"


class RuleOutcome(str, Enum):
    RESERVATION = "reservation"
    BLOCK = "block"
    BY_DURATION = "by_duration"


@dataclass(frozen=True)
class CalendarEvent:
    external_id: str
    start_date: date
    end_date: date
    raw_summary: str = ""
    raw_description: str = ""
    classification: Classification = Classification.ADMINISTRATIVE_BLOCK
    guest_label: str | None = None

    @property
    def nights(self) -> int:
        return nights_between(self.start_date, self.end_date)

    @property
    def is_reservation(self) -> bool:
        return self.classification is Classification.RESERVATION


@dataclass
class Booking:
    id: str
    property_id: str
    platform: Platform
    start_date: date
    end_date: date
    external_id: str | None = None
    guest_label: str = ""
    amount: float = 0.0
    status: BookingStatus = BookingStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)

    @property
    def nights(self) -> int:
        return nights_between(self.start_date, self.end_date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "property_id": self.property_id,
            "platform": self.platform.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "nights": self.nights,
            "external_id": self.external_id,
            "guest_label": self.guest_label,
            "amount": self.amount,
            "status": self.status.value,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class BlockedDate:
    id: str
    property_id: str
    platform: Platform
    start_date: date
    end_date: date
    external_id: str | None = None
    reason: str = PLATFORM_BLOCK_REASON
    note: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def nights(self) -> int:
        return nights_between(self.start_date, self.end_date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "property_id": self.property_id,
            "platform": self.platform.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "nights": self.nights,
            "external_id": self.external_id,
            "reason": self.reason,
            "note": self.note,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class SyncConnection:
    property_id: str
    platform: Platform
    feed_url: str
    last_synced_at: datetime | None = None
    cadence_minutes: int = DEFAULT_CADENCE_MINUTES
    conflict_alerts_enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_id": self.property_id,
            "platform": self.platform.value,
            "feed_url": self.feed_url,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "cadence_minutes": self.cadence_minutes,
            "conflict_alerts_enabled": self.conflict_alerts_enabled,
        }


@dataclass(frozen=True)
class Conflict:
    property_id: str
    booking_a: Booking
    booking_b: Booking
    overlap_start: date
    overlap_end: date

    @property
    def overlap_nights(self) -> int:
        return nights_between(self.overlap_start, self.overlap_end)

    @property
    def booking_ids(self) -> tuple[str, str]:
        return self.booking_a.id, self.booking_b.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_id": self.property_id,
            "booking_a": self.booking_a.to_dict(),
            "booking_b": self.booking_b.to_dict(),
            "overlap_start": self.overlap_start.isoformat(),
            "overlap_end": self.overlap_end.isoformat(),
            "overlap_nights": self.overlap_nights,
        }


class SyncStage(str, Enum):
    CONNECT = "connect"
    FETCH = "fetch"
    CLASSIFY = "classify"
    IMPORT = "import"
    FINALIZE = "finalize"


STAGE_FRACTIONS = {
    SyncStage.CONNECT: 0.15,
    SyncStage.FETCH: 0.25,
    SyncStage.CLASSIFY: 0.50,
    SyncStage.IMPORT: 0.70,
    SyncStage.FINALIZE: 1.0,
}


@dataclass
class SyncResult:
    status: str
    message: str
    imported_reservations: int = 0
    imported_blocks: int = 0
    conflicts_found: int = 0
    reservations_found: int = 0
    blocks_found: int = 0
    empty_feed: bool = False
    upcoming: list[Booking] = field(default_factory=list)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "imported_reservations": self.imported_reservations,
            "imported_blocks": self.imported_blocks,
            "conflicts_found": self.conflicts_found,
            "reservations_found": self.reservations_found,
            "blocks_found": self.blocks_found,
            "empty_feed": self.empty_feed,
            "upcoming": [booking.to_dict() for booking in self.upcoming],
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class SyncProgressEvent:
    stage: SyncStage
    message: str
    fraction: float
    details: dict[str, Any] = field(default_factory=dict)
    result: SyncResult | None = None

    @classmethod
    def for_stage(
        cls,
        stage: SyncStage,
        message: str,
        details: dict[str, Any] | None = None,
        result: SyncResult | None = None,
    ) -> "SyncProgressEvent":
        return cls(
            stage=stage,
            message=message,
            fraction=STAGE_FRACTIONS[stage],
            details=dict(details or {}),
            result=result,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage.value,
            "message": self.message,
            "fraction": self.fraction,
            "details": self.details,
        }
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        return payload


@dataclass
class FetchConfig:
    timeout_seconds: int = 20
    user_agent: str = "rentsync/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = data or {}
        return cls(
            timeout_seconds=min(120, max(1, int(data.get("timeout_seconds", 20)))),
            user_agent=str(data.get("user_agent", "rentsync/0.1")).strip() or "rentsync/0.1",
        )


@dataclass
class SyncConfig:
    upcoming_limit: int = 5
    default_cadence_minutes: int = DEFAULT_CADENCE_MINUTES
    enforce_platform_url_pattern: bool = False
    max_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        cadence = int(data.get("default_cadence_minutes", DEFAULT_CADENCE_MINUTES))
        if cadence not in ALLOWED_CADENCE_MINUTES:
            cadence = DEFAULT_CADENCE_MINUTES
        return cls(
            upcoming_limit=max(0, int(data.get("upcoming_limit", 5))),
            default_cadence_minutes=cadence,
            enforce_platform_url_pattern=bool(data.get("enforce_platform_url_pattern", False)),
            max_workers=max(1, int(data.get("max_workers", 4))),
        )


def _patterns(value: Any) -> list[str]:
    if value is None:
        return []
    # A bare string in YAML is one pattern, not a sequence of characters.
    items = [value] if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        return []
    return [str(x).strip().lower() for x in items if str(x).strip()]


@dataclass
class ClassificationRule:
    name: str
    match_any: list[str] = field(default_factory=list)
    exclude_any: list[str] = field(default_factory=list)
    outcome: RuleOutcome = RuleOutcome.BLOCK
    max_reservation_nights: int = SHORT_STAY_MAX_NIGHTS
    guest_label: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ClassificationRule":
        data = data or {}
        try:
            outcome = RuleOutcome(str(data.get("outcome", "block")).strip().lower())
        except ValueError:
            outcome = RuleOutcome.BLOCK
        return cls(
            name=str(data.get("name", "")).strip(),
            match_any=_patterns(data.get("match_any")),
            exclude_any=_patterns(data.get("exclude_any")),
            outcome=outcome,
            max_reservation_nights=max(0, int(data.get("max_reservation_nights", SHORT_STAY_MAX_NIGHTS))),
            guest_label=str(data.get("guest_label", "")).strip(),
        )

    def matches(self, summary: str) -> bool:
        text = summary.lower()
        if not any(pattern in text for pattern in self.match_any):
            return False
        return not any(pattern in text for pattern in self.exclude_any)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


def default_classification_rules() -> list[ClassificationRule]:
    return [
        ClassificationRule(
            name="reserved",
            match_any=["reserved"],
            exclude_any=["not available"],
            outcome=RuleOutcome.RESERVATION,
            guest_label="Airbnb Guest",
        ),
        # Some platforms publish every booked or blocked night as "CLOSED - Not available".
        ClassificationRule(
            name="closed",
            match_any=["closed", "not available"],
            outcome=RuleOutcome.BY_DURATION,
            max_reservation_nights=SHORT_STAY_MAX_NIGHTS,
            guest_label="Booking.com Guest",
        ),
    ]


@dataclass
class ClassificationConfig:
    rules: list[ClassificationRule] = field(default_factory=default_classification_rules)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ClassificationConfig":
        data = data or {}
        raw_rules = data.get("rules")
        if not isinstance(raw_rules, list):
            return cls()
        rules = [ClassificationRule.from_dict(item) for item in raw_rules if isinstance(item, dict)]
        rules = [rule for rule in rules if rule.name and rule.match_any]
        return cls(rules=rules)

    def to_dict(self) -> dict[str, Any]:
        return {"rules": [rule.to_dict() for rule in self.rules]}


@dataclass
class AppConfig:
    fetch: FetchConfig = field(default_factory=FetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            fetch=FetchConfig.from_dict(data.get("fetch")),
            sync=SyncConfig.from_dict(data.get("sync")),
            classification=ClassificationConfig.from_dict(data.get("classification")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetch": asdict(self.fetch),
            "sync": asdict(self.sync),
            "classification": self.classification.to_dict(),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
