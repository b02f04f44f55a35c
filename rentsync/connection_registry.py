from __future__ import annotations

from datetime import datetime, timedelta

from rentsync.feed_client import validate_feed_url
from rentsync.models import (
    ALLOWED_CADENCE_MINUTES,
    DEFAULT_CADENCE_MINUTES,
    Platform,
    SyncConnection,
    parse_iso_datetime,
    utc_now,
)
from rentsync.state_store import StateStore


def validate_cadence(cadence_minutes: int) -> int:
    cadence = int(cadence_minutes)
    if cadence not in ALLOWED_CADENCE_MINUTES:
        allowed = ", ".join(str(x) for x in ALLOWED_CADENCE_MINUTES)
        raise ValueError(f"cadence_minutes must be one of {allowed}; got {cadence}")
    return cadence


class ConnectionRegistry:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get(self, property_id: str, platform: Platform | str) -> SyncConnection | None:
        return self.state_store.get_connection(property_id, Platform.parse(platform))

    def upsert(self, connection: SyncConnection) -> SyncConnection:
        validate_cadence(connection.cadence_minutes)
        self.state_store.upsert_connection(connection)
        return connection

    def connect(
        self,
        property_id: str,
        platform: Platform | str,
        feed_url: str,
        cadence_minutes: int = DEFAULT_CADENCE_MINUTES,
        conflict_alerts_enabled: bool = True,
        enforce_platform_pattern: bool = False,
    ) -> SyncConnection:
        platform = Platform.parse(platform)
        url = validate_feed_url(feed_url, platform, enforce_platform_pattern)
        existing = self.get(property_id, platform)
        connection = SyncConnection(
            property_id=property_id,
            platform=platform,
            feed_url=url,
            last_synced_at=existing.last_synced_at if existing else None,
            cadence_minutes=validate_cadence(cadence_minutes),
            conflict_alerts_enabled=bool(conflict_alerts_enabled),
        )
        return self.upsert(connection)

    def list_for_property(self, property_id: str) -> list[SyncConnection]:
        return self.state_store.list_connections(property_id)

    def mark_synced(self, connection: SyncConnection, at: datetime | None = None) -> SyncConnection:
        synced_at = parse_iso_datetime(at) if at is not None else utc_now()
        connection.last_synced_at = synced_at
        # Only the timestamp is written; settings edited during a sync are kept.
        if not self.state_store.set_connection_last_synced(connection.property_id, connection.platform, synced_at):
            return connection
        return self.get(connection.property_id, connection.platform) or connection

    def due_for_sync(self, now: datetime | None = None) -> list[SyncConnection]:
        current = parse_iso_datetime(now) if now is not None else utc_now()
        due: list[SyncConnection] = []
        for connection in self.state_store.list_connections():
            if connection.last_synced_at is None:
                due.append(connection)
                continue
            next_run = connection.last_synced_at + timedelta(minutes=connection.cadence_minutes)
            if next_run <= current:
                due.append(connection)
        return due
