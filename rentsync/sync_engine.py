from __future__ import annotations

import logging
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator

from rentsync.config_manager import ConfigManager
from rentsync.conflicts import find_conflicts
from rentsync.connection_registry import ConnectionRegistry
from rentsync.errors import ConnectionNotFound, SyncError
from rentsync.feed_client import FeedClient, validate_feed_url
from rentsync.ics_parser import parse
from rentsync.models import (
    PLATFORM_BLOCK_REASON,
    BlockedDate,
    Booking,
    BookingStatus,
    CalendarEvent,
    Conflict,
    Platform,
    SyncConnection,
    SyncProgressEvent,
    SyncResult,
    SyncStage,
    utc_now,
)
from rentsync.state_store import StateStore

logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def booking_amount(nightly_rate: float | None, nights: int) -> float:
    return round(float(nightly_rate or 0.0) * max(0, nights), 2)


@dataclass
class ImportSummary:
    imported_reservations: int = 0
    imported_blocks: int = 0
    feed_bookings: list[Booking] = field(default_factory=list)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        registry: ConnectionRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.registry = registry or ConnectionRegistry(state_store)
        self._clock = clock
        self._import_locks: dict[str, threading.Lock] = {}
        self._import_locks_guard = threading.Lock()

    def _import_lock(self, property_id: str) -> threading.Lock:
        with self._import_locks_guard:
            lock = self._import_locks.get(property_id)
            if lock is None:
                lock = threading.Lock()
                self._import_locks[property_id] = lock
            return lock

    def start_sync(self, property_id: str, platform: Platform | str) -> Iterator[SyncProgressEvent]:
        connection = self.registry.get(property_id, platform)
        if connection is None:
            raise ConnectionNotFound(f"No {Platform.parse(platform).label} connection for property {property_id}")
        return self.sync(connection)

    def get_conflicts(self, property_id: str) -> list[Conflict]:
        return find_conflicts(self.state_store.list_by_property(property_id))

    def sync(self, connection: SyncConnection, trigger: str = "manual") -> Iterator[SyncProgressEvent]:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(
            property_id=connection.property_id,
            platform=connection.platform,
            trigger=trigger,
        )
        summary = ImportSummary()
        conflicts_found = 0
        finished = False

        try:
            config = self.config_manager.load()
            platform = connection.platform

            url = validate_feed_url(
                connection.feed_url,
                platform,
                config.sync.enforce_platform_url_pattern,
            )
            yield SyncProgressEvent.for_stage(SyncStage.CONNECT, f"Connecting to {platform.label}...")

            raw_feed = FeedClient(config.fetch).fetch(url)
            yield SyncProgressEvent.for_stage(
                SyncStage.FETCH,
                "Fetched calendar data",
                {"bytes": len(raw_feed.encode("utf-8"))},
            )

            events = parse(raw_feed, config.classification.rules, platform)
            reservations = [event for event in events if event.is_reservation]
            blocks = [event for event in events if not event.is_reservation]
            if events:
                classify_message = f"Found {len(reservations)} bookings, {len(blocks)} blocked"
            else:
                classify_message = "Feed contained no events"
            logger.info("%s/%s: %s", connection.property_id, platform.label, classify_message)
            yield SyncProgressEvent.for_stage(
                SyncStage.CLASSIFY,
                classify_message,
                {"reservations": len(reservations), "blocks": len(blocks)},
            )

            summary = self._import_events(connection, reservations, blocks, run_id)
            yield SyncProgressEvent.for_stage(
                SyncStage.IMPORT,
                f"Imported {summary.imported_reservations} bookings, {summary.imported_blocks} blocked dates",
                {
                    "imported_reservations": summary.imported_reservations,
                    "imported_blocks": summary.imported_blocks,
                },
            )

            conflicts = self.get_conflicts(connection.property_id)
            conflicts_found = len(conflicts)
            if conflicts and connection.conflict_alerts_enabled:
                self._alert_conflicts(connection, conflicts, run_id)
            self.registry.mark_synced(connection, self._clock())

            result = SyncResult(
                status="success",
                message="Sync complete",
                imported_reservations=summary.imported_reservations,
                imported_blocks=summary.imported_blocks,
                conflicts_found=conflicts_found,
                reservations_found=len(reservations),
                blocks_found=len(blocks),
                empty_feed=not events,
                upcoming=self._upcoming(summary.feed_bookings, config.sync.upcoming_limit),
                duration_ms=_elapsed_ms(started_at),
            )
            self._finish_run(run_id, "success", result.message, started_at, summary, conflicts_found)
            finished = True
            yield SyncProgressEvent.for_stage(
                SyncStage.FINALIZE,
                result.message,
                {"conflicts_found": conflicts_found},
                result=result,
            )
        except GeneratorExit:
            # Rows committed by the import stage stay committed.
            if not finished:
                self._finish_run(run_id, "cancelled", "cancelled by caller", started_at, summary, conflicts_found)
            raise
        except SyncError as exc:
            logger.warning("Sync of %s/%s failed: %s", connection.property_id, connection.platform.label, exc)
            self._finish_run(run_id, "failed", f"{exc.code}: {exc.message}", started_at, summary, conflicts_found)
            raise
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}\n{traceback.format_exc(limit=3)}"
            self._finish_run(run_id, "failed", message, started_at, summary, conflicts_found)
            raise

    def _finish_run(
        self,
        run_id: int,
        status: str,
        message: str,
        started_at: datetime,
        summary: ImportSummary,
        conflicts: int,
    ) -> None:
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=_elapsed_ms(started_at),
            imported_reservations=summary.imported_reservations,
            imported_blocks=summary.imported_blocks,
            conflicts=conflicts,
        )

    def _import_events(
        self,
        connection: SyncConnection,
        reservations: list[CalendarEvent],
        blocks: list[CalendarEvent],
        run_id: int,
    ) -> ImportSummary:
        property_id = connection.property_id
        platform = connection.platform
        nightly_rate = self.state_store.get_nightly_rate(property_id)
        summary = ImportSummary()

        with self._import_lock(property_id):
            for event in reservations:
                existing = self.state_store.find_by_external_id(property_id, event.external_id)
                if existing is not None:
                    summary.feed_bookings.append(existing)
                    continue
                booking = Booking(
                    id=uuid.uuid4().hex,
                    property_id=property_id,
                    platform=platform,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    external_id=event.external_id,
                    guest_label=event.guest_label or platform.guest_placeholder,
                    amount=booking_amount(nightly_rate, event.nights),
                    created_at=self._clock(),
                )
                stored, created = self.state_store.insert_if_absent(booking)
                summary.feed_bookings.append(stored)
                if not created:
                    continue
                summary.imported_reservations += 1
                self.state_store.record_audit_event(
                    property_id=property_id,
                    subject_id=stored.id,
                    action="import_booking",
                    details={
                        "external_id": event.external_id,
                        "platform": platform.value,
                        "start_date": event.start_date.isoformat(),
                        "end_date": event.end_date.isoformat(),
                        "amount": stored.amount,
                    },
                    run_id=run_id,
                )

            for event in blocks:
                blocked = BlockedDate(
                    id=uuid.uuid4().hex,
                    property_id=property_id,
                    platform=platform,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    external_id=event.external_id,
                    reason=PLATFORM_BLOCK_REASON,
                    note=event.raw_summary,
                    created_at=self._clock(),
                )
                stored_block, created = self.state_store.insert_blocked_date_if_absent(blocked)
                if not created:
                    continue
                summary.imported_blocks += 1
                self.state_store.record_audit_event(
                    property_id=property_id,
                    subject_id=stored_block.id,
                    action="import_blocked_date",
                    details={
                        "external_id": event.external_id,
                        "platform": platform.value,
                        "start_date": event.start_date.isoformat(),
                        "end_date": event.end_date.isoformat(),
                    },
                    run_id=run_id,
                )

        logger.info(
            "%s/%s: imported %d bookings and %d blocked dates",
            property_id,
            platform.label,
            summary.imported_reservations,
            summary.imported_blocks,
        )
        return summary

    def _alert_conflicts(self, connection: SyncConnection, conflicts: list[Conflict], run_id: int) -> None:
        logger.warning(
            "%s: %d double-booking(s) detected after %s sync",
            connection.property_id,
            len(conflicts),
            connection.platform.label,
        )
        for conflict in conflicts:
            self.state_store.record_audit_event(
                property_id=connection.property_id,
                subject_id=f"{conflict.booking_a.id}:{conflict.booking_b.id}",
                action="conflict_alert",
                details={
                    "platform": connection.platform.value,
                    "overlap_start": conflict.overlap_start.isoformat(),
                    "overlap_end": conflict.overlap_end.isoformat(),
                    "overlap_nights": conflict.overlap_nights,
                },
                run_id=run_id,
            )

    def _upcoming(self, bookings: list[Booking], limit: int) -> list[Booking]:
        today = self._clock().date()
        upcoming = [
            booking
            for booking in bookings
            if booking.status is BookingStatus.ACTIVE and booking.start_date >= today
        ]
        upcoming.sort(key=lambda item: (item.start_date, item.end_date, item.id))
        return upcoming[:limit]

    def run_sync(self, connection: SyncConnection, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        result: SyncResult | None = None
        try:
            for progress in self.sync(connection, trigger=trigger):
                if progress.result is not None:
                    result = progress.result
        except SyncError as exc:
            return SyncResult(
                status="failed",
                message=f"{exc.code}: {exc.message}",
                duration_ms=_elapsed_ms(started_at),
            )
        if result is None:
            raise RuntimeError("Sync stream ended without a result.")
        return result

    def sync_many(
        self,
        connections: list[SyncConnection],
        trigger: str = "scheduled",
    ) -> list[tuple[SyncConnection, SyncResult]]:
        if not connections:
            return []
        max_workers = self.config_manager.load().sync.max_workers
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rentsync-sync") as executor:
            futures = [executor.submit(self.run_sync, connection, trigger) for connection in connections]
            results: list[tuple[SyncConnection, SyncResult]] = []
            for connection, future in zip(connections, futures):
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("Sync of %s/%s crashed", connection.property_id, connection.platform.label)
                    result = SyncResult(status="failed", message=f"{type(exc).__name__}: {exc}")
                results.append((connection, result))
            return results
