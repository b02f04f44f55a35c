from __future__ import annotations

import logging
import re
import uuid
from datetime import date
from typing import Iterable

from icalendar.parser import Contentline, Contentlines

from rentsync.models import (
    CalendarEvent,
    Classification,
    ClassificationRule,
    Platform,
    RuleOutcome,
    default_classification_rules,
    nights_between,
)

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"\d{8}")


def _normalize_newlines(raw_text: str) -> str:
    return raw_text.replace("\r\n", "\n").replace("\r", "\n")


def _content_lines(raw_text: str) -> list[Contentline]:
    try:
        return [line for line in Contentlines.from_ical(_normalize_newlines(raw_text)) if line]
    except ValueError:
        logger.debug("Feed could not be split into content lines")
        return []


def _split_line(line: Contentline) -> tuple[str, str] | None:
    try:
        name, _params, value = line.parts()
    except ValueError:
        return None
    return str(name).strip().upper(), str(value)


def parse_ics_date(value: str) -> date | None:
    text = value.strip()
    if not DATE_PATTERN.fullmatch(text):
        return None
    try:
        return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        return None


def _guest_label(rule: ClassificationRule, platform: Platform | None) -> str | None:
    if platform is not None:
        return platform.guest_placeholder
    return rule.guest_label or None


def classify(
    summary: str,
    nights: int,
    rules: Iterable[ClassificationRule],
    platform: Platform | None = None,
) -> tuple[Classification, str | None]:
    for rule in rules:
        if not rule.matches(summary):
            continue
        if rule.outcome is RuleOutcome.RESERVATION:
            return Classification.RESERVATION, _guest_label(rule, platform)
        if rule.outcome is RuleOutcome.BY_DURATION:
            if nights <= rule.max_reservation_nights:
                return Classification.RESERVATION, _guest_label(rule, platform)
            return Classification.ADMINISTRATIVE_BLOCK, None
        return Classification.ADMINISTRATIVE_BLOCK, None
    return Classification.ADMINISTRATIVE_BLOCK, None


def _build_event(
    fields: dict[str, str],
    rules: list[ClassificationRule],
    platform: Platform | None,
) -> CalendarEvent | None:
    raw_start = fields.get("DTSTART")
    raw_end = fields.get("DTEND")
    if raw_start is None or raw_end is None:
        logger.debug("Dropping VEVENT without DTSTART/DTEND (uid=%s)", fields.get("UID", ""))
        return None
    start = parse_ics_date(raw_start)
    end = parse_ics_date(raw_end)
    if start is None or end is None:
        logger.debug("Dropping VEVENT with unsupported dates %r/%r", raw_start, raw_end)
        return None
    if end <= start:
        logger.debug("Dropping VEVENT with empty range %s..%s", start, end)
        return None

    summary = fields.get("SUMMARY", "")
    classification, guest_label = classify(summary, nights_between(start, end), rules, platform)
    # UID-less events get a fresh id and cannot be deduplicated across syncs.
    external_id = fields.get("UID", "").strip() or uuid.uuid4().hex
    return CalendarEvent(
        external_id=external_id,
        start_date=start,
        end_date=end,
        raw_summary=summary,
        raw_description=fields.get("DESCRIPTION", ""),
        classification=classification,
        guest_label=guest_label,
    )


def parse(
    raw_text: str,
    rules: list[ClassificationRule] | None = None,
    platform: Platform | None = None,
) -> list[CalendarEvent]:
    if not raw_text:
        return []
    active_rules = default_classification_rules() if rules is None else list(rules)
    events: list[CalendarEvent] = []
    fields: dict[str, str] | None = None
    nested_depth = 0

    for line in _content_lines(raw_text):
        parts = _split_line(line)
        if parts is None:
            continue
        key, value = parts
        component = value.strip().upper()

        if key == "BEGIN" and component == "VEVENT":
            fields = {}
            nested_depth = 0
            continue
        if fields is None:
            continue
        if key == "END" and component == "VEVENT":
            event = _build_event(fields, active_rules, platform)
            if event is not None:
                events.append(event)
            fields = None
            continue
        if key == "BEGIN":
            nested_depth += 1
            continue
        if key == "END":
            nested_depth = max(0, nested_depth - 1)
            continue
        if nested_depth:
            continue
        fields[key] = value

    return events
