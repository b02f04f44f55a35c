from __future__ import annotations

import json
import logging
import uuid
from datetime import date
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from rentsync.config_manager import ConfigManager, config_path_from_env, state_path_from_env
from rentsync.conflicts import find_conflict
from rentsync.connection_registry import ConnectionRegistry
from rentsync.errors import ConnectionNotFound, InvalidFeedURL, PersistenceFailure, SyncError
from rentsync.models import (
    DEFAULT_CADENCE_MINUTES,
    MANUAL_BLOCK_REASONS,
    BlockedDate,
    Booking,
    Platform,
    SyncProgressEvent,
)
from rentsync.resolution import ConflictResolver, ResolutionCase
from rentsync.state_store import StateStore
from rentsync.sync_engine import SyncEngine, booking_amount

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class NightlyRateRequest(BaseModel):
    nightly_rate: float = Field(ge=0)


class ConnectRequest(BaseModel):
    platform: str
    feed_url: str
    cadence_minutes: int = DEFAULT_CADENCE_MINUTES
    conflict_alerts_enabled: bool = True


class ManualBookingRequest(BaseModel):
    start_date: date
    end_date: date
    guest_label: str = ""
    platform: str = Platform.DIRECT.value
    amount: float | None = Field(default=None, ge=0)


class ManualBlockRequest(BaseModel):
    start_date: date
    end_date: date
    reason: str = MANUAL_BLOCK_REASONS[0]
    note: str = Field(default="", max_length=2000)


class ResolveConflictRequest(BaseModel):
    booking_a_id: str
    booking_b_id: str
    keep_booking_id: str


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.registry = ConnectionRegistry(self.state_store)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.registry)
        self.resolver = ConflictResolver(self.state_store)


def _parse_platform(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _check_range(start: date, end: date) -> None:
    if end <= start:
        raise HTTPException(status_code=400, detail="end_date must be later than start_date")


def _progress_lines(stream: Iterator[SyncProgressEvent]) -> Iterator[str]:
    try:
        for progress in stream:
            yield json.dumps(progress.to_dict(), ensure_ascii=False) + "\n"
    except SyncError as exc:
        yield json.dumps({"stage": "failed", **exc.to_dict()}, ensure_ascii=False) + "\n"
    except Exception as exc:
        logger.exception("Sync stream crashed")
        payload = {"stage": "failed", "error": type(exc).__name__, "message": str(exc)}
        yield json.dumps(payload, ensure_ascii=False) + "\n"


def create_app() -> FastAPI:
    context = AppContext(config_path=config_path_from_env(), state_path=state_path_from_env())

    app = FastAPI(title="rentsync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(PersistenceFailure)
    def _persistence_failure(_request: Request, exc: PersistenceFailure) -> JSONResponse:
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.put("/api/properties/{property_id}/rate")
    def put_nightly_rate(property_id: str, request: NightlyRateRequest) -> dict[str, Any]:
        app.state.context.state_store.set_nightly_rate(property_id, request.nightly_rate)
        return {"property_id": property_id, "nightly_rate": request.nightly_rate}

    @app.get("/api/properties/{property_id}/connections")
    def list_connections(property_id: str) -> dict[str, Any]:
        connections = app.state.context.registry.list_for_property(property_id)
        return {"connections": [connection.to_dict() for connection in connections]}

    @app.post("/api/properties/{property_id}/connections")
    def connect_platform(property_id: str, request: ConnectRequest) -> dict[str, Any]:
        platform = _parse_platform(request.platform)
        config = app.state.context.config_manager.load()
        try:
            connection = app.state.context.registry.connect(
                property_id,
                platform,
                request.feed_url,
                cadence_minutes=request.cadence_minutes,
                conflict_alerts_enabled=request.conflict_alerts_enabled,
                enforce_platform_pattern=config.sync.enforce_platform_url_pattern,
            )
        except InvalidFeedURL as exc:
            raise HTTPException(status_code=400, detail=exc.to_dict()) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"connection": connection.to_dict()}

    @app.post("/api/properties/{property_id}/sync/{platform}")
    def start_sync(property_id: str, platform: str) -> StreamingResponse:
        platform_value = _parse_platform(platform)
        try:
            stream = app.state.context.sync_engine.start_sync(property_id, platform_value)
        except ConnectionNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.to_dict()) from exc
        return StreamingResponse(_progress_lines(stream), media_type="application/x-ndjson")

    @app.post("/api/sync/due")
    def sync_due() -> dict[str, Any]:
        due = app.state.context.registry.due_for_sync()
        results = app.state.context.sync_engine.sync_many(due, trigger="scheduled")
        return {
            "synced": [
                {
                    "property_id": connection.property_id,
                    "platform": connection.platform.value,
                    "result": result.to_dict(),
                }
                for connection, result in results
            ]
        }

    @app.get("/api/properties/{property_id}/bookings")
    def list_bookings(property_id: str) -> dict[str, Any]:
        bookings = app.state.context.state_store.list_by_property(property_id)
        return {"bookings": [booking.to_dict() for booking in bookings]}

    @app.post("/api/properties/{property_id}/bookings")
    def add_manual_booking(property_id: str, request: ManualBookingRequest) -> dict[str, Any]:
        _check_range(request.start_date, request.end_date)
        platform = _parse_platform(request.platform)
        store = app.state.context.state_store
        nights = (request.end_date - request.start_date).days
        amount = request.amount
        if amount is None:
            amount = booking_amount(store.get_nightly_rate(property_id), nights)
        booking = store.insert(
            Booking(
                id=uuid.uuid4().hex,
                property_id=property_id,
                platform=platform,
                start_date=request.start_date,
                end_date=request.end_date,
                guest_label=request.guest_label.strip() or platform.guest_placeholder,
                amount=amount,
            )
        )
        conflicts = app.state.context.sync_engine.get_conflicts(property_id)
        return {"booking": booking.to_dict(), "conflicts_found": len(conflicts)}

    @app.get("/api/properties/{property_id}/blocked-dates")
    def list_blocked_dates(property_id: str) -> dict[str, Any]:
        blocked = app.state.context.state_store.list_blocked_dates(property_id)
        return {"blocked_dates": [item.to_dict() for item in blocked]}

    @app.post("/api/properties/{property_id}/blocked-dates")
    def add_manual_block(property_id: str, request: ManualBlockRequest) -> dict[str, Any]:
        _check_range(request.start_date, request.end_date)
        if request.reason not in MANUAL_BLOCK_REASONS:
            raise HTTPException(status_code=400, detail=f"reason must be one of {', '.join(MANUAL_BLOCK_REASONS)}")
        blocked, _created = app.state.context.state_store.insert_blocked_date_if_absent(
            BlockedDate(
                id=uuid.uuid4().hex,
                property_id=property_id,
                platform=Platform.DIRECT,
                start_date=request.start_date,
                end_date=request.end_date,
                reason=request.reason,
                note=request.note.strip(),
            )
        )
        return {"blocked_date": blocked.to_dict()}

    @app.get("/api/properties/{property_id}/conflicts")
    def get_conflicts(property_id: str) -> dict[str, Any]:
        conflicts = app.state.context.sync_engine.get_conflicts(property_id)
        return {"conflicts": [conflict.to_dict() for conflict in conflicts]}

    @app.post("/api/properties/{property_id}/conflicts/resolve")
    def resolve_conflict(property_id: str, request: ResolveConflictRequest) -> dict[str, Any]:
        bookings = app.state.context.state_store.list_by_property(property_id)
        conflict = find_conflict(bookings, request.booking_a_id, request.booking_b_id)
        if conflict is None:
            raise HTTPException(status_code=404, detail="conflict not found")
        case = ResolutionCase(conflict)
        case.present()
        try:
            outcome = app.state.context.resolver.resolve(case, request.keep_booking_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        remaining = app.state.context.sync_engine.get_conflicts(property_id)
        return {
            "state": case.state.value,
            "outcome": outcome.to_dict(),
            "remaining_conflicts": len(remaining),
        }

    @app.post("/api/bookings/{booking_id}/confirm-cancelled")
    def confirm_cancelled(booking_id: str) -> dict[str, Any]:
        try:
            booking = app.state.context.resolver.confirm_external_cancellation(booking_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="booking not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"booking": booking.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, property_id: str | None = None) -> dict[str, Any]:
        runs = app.state.context.state_store.recent_sync_runs(limit=limit, property_id=property_id)
        return {"runs": runs}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, action: str | None = None) -> dict[str, Any]:
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id, action=action)
        return {"events": events}

    return app
