from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from rentsync.errors import PersistenceFailure
from rentsync.models import (
    BlockedDate,
    Booking,
    BookingStatus,
    Platform,
    SyncConnection,
    parse_iso_date,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


def _utc_now() -> str:
    return utc_now().isoformat()


def _row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        id=str(row["id"]),
        property_id=str(row["property_id"]),
        platform=Platform.parse(row["platform"]),
        start_date=parse_iso_date(row["start_date"]),
        end_date=parse_iso_date(row["end_date"]),
        external_id=row["external_id"],
        guest_label=str(row["guest_label"] or ""),
        amount=float(row["amount"] or 0.0),
        status=BookingStatus(row["status"]),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
    )


def _row_to_blocked_date(row: sqlite3.Row) -> BlockedDate:
    return BlockedDate(
        id=str(row["id"]),
        property_id=str(row["property_id"]),
        platform=Platform.parse(row["platform"]),
        start_date=parse_iso_date(row["start_date"]),
        end_date=parse_iso_date(row["end_date"]),
        external_id=row["external_id"],
        reason=str(row["reason"] or ""),
        note=str(row["note"] or ""),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
    )


def _row_to_connection(row: sqlite3.Row) -> SyncConnection:
    return SyncConnection(
        property_id=str(row["property_id"]),
        platform=Platform.parse(row["platform"]),
        feed_url=str(row["feed_url"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        cadence_minutes=int(row["cadence_minutes"]),
        conflict_alerts_enabled=bool(row["conflict_alerts_enabled"]),
    )


BOOKING_COLUMNS = (
    "id, property_id, external_id, platform, start_date, end_date, guest_label, amount, status, created_at"
)
BLOCKED_DATE_COLUMNS = "id, property_id, external_id, platform, start_date, end_date, reason, note, created_at"
CONNECTION_COLUMNS = "property_id, platform, feed_url, last_synced_at, cadence_minutes, conflict_alerts_enabled"


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _write(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._connect() as conn:
                    yield conn
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"{action} failed: {exc}") from exc

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS bookings (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            external_id TEXT,
            platform TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            guest_label TEXT NOT NULL DEFAULT '',
            amount REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            UNIQUE (property_id, external_id)
        );

        CREATE INDEX IF NOT EXISTS idx_bookings_property ON bookings(property_id);

        CREATE TABLE IF NOT EXISTS blocked_dates (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            external_id TEXT,
            platform TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            reason TEXT NOT NULL DEFAULT '',
            note TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            UNIQUE (property_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS sync_connections (
            property_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            feed_url TEXT NOT NULL,
            last_synced_at TEXT,
            cadence_minutes INTEGER NOT NULL,
            conflict_alerts_enabled INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (property_id, platform)
        );

        CREATE TABLE IF NOT EXISTS property_rates (
            property_id TEXT PRIMARY KEY,
            nightly_rate REAL NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS conflict_resolutions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            property_id TEXT NOT NULL,
            kept_booking_id TEXT NOT NULL,
            cancelled_booking_id TEXT NOT NULL,
            resolved_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            property_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            imported_reservations INTEGER NOT NULL,
            imported_blocks INTEGER NOT NULL,
            conflicts INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            property_id TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._write("schema init") as conn:
            conn.executescript(schema_sql)

    # Bookings

    def insert(self, booking: Booking) -> Booking:
        with self._write("booking insert") as conn:
            conn.execute(
                f"INSERT INTO bookings({BOOKING_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._booking_params(booking),
            )
            conn.commit()
        return booking

    def insert_if_absent(self, booking: Booking) -> tuple[Booking, bool]:
        with self._write("booking insert") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO bookings({BOOKING_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(property_id, external_id) DO NOTHING
                """,
                self._booking_params(booking),
            )
            conn.commit()
            if cursor.rowcount:
                return booking, True
            row = conn.execute(
                f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE property_id = ? AND external_id = ?",
                (booking.property_id, booking.external_id),
            ).fetchone()
        if row is None:
            raise PersistenceFailure(f"booking insert ignored without an existing row: {booking.external_id}")
        return _row_to_booking(row), False

    @staticmethod
    def _booking_params(booking: Booking) -> tuple[Any, ...]:
        return (
            booking.id,
            booking.property_id,
            booking.external_id,
            booking.platform.value,
            booking.start_date.isoformat(),
            booking.end_date.isoformat(),
            booking.guest_label,
            float(booking.amount),
            booking.status.value,
            serialize_datetime(booking.created_at),
        )

    def find_by_external_id(self, property_id: str, external_id: str) -> Booking | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE property_id = ? AND external_id = ?",
                    (property_id, external_id),
                ).fetchone()
        return _row_to_booking(row) if row else None

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE id = ?",
                    (booking_id,),
                ).fetchone()
        return _row_to_booking(row) if row else None

    def list_by_property(self, property_id: str) -> list[Booking]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {BOOKING_COLUMNS}
                    FROM bookings
                    WHERE property_id = ?
                    ORDER BY start_date ASC, created_at ASC, id ASC
                    """,
                    (property_id,),
                ).fetchall()
        return [_row_to_booking(row) for row in rows]

    def set_booking_status(self, booking_id: str, status: BookingStatus) -> Booking | None:
        with self._write("booking status update") as conn:
            conn.execute(
                "UPDATE bookings SET status = ? WHERE id = ?",
                (status.value, booking_id),
            )
            conn.commit()
        return self.get_booking(booking_id)

    # Blocked dates

    def insert_blocked_date_if_absent(self, blocked: BlockedDate) -> tuple[BlockedDate, bool]:
        with self._write("blocked date insert") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO blocked_dates({BLOCKED_DATE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(property_id, external_id) DO NOTHING
                """,
                (
                    blocked.id,
                    blocked.property_id,
                    blocked.external_id,
                    blocked.platform.value,
                    blocked.start_date.isoformat(),
                    blocked.end_date.isoformat(),
                    blocked.reason,
                    blocked.note,
                    serialize_datetime(blocked.created_at),
                ),
            )
            conn.commit()
            if cursor.rowcount:
                return blocked, True
            row = conn.execute(
                f"SELECT {BLOCKED_DATE_COLUMNS} FROM blocked_dates WHERE property_id = ? AND external_id = ?",
                (blocked.property_id, blocked.external_id),
            ).fetchone()
        if row is None:
            raise PersistenceFailure(f"blocked date insert ignored without an existing row: {blocked.external_id}")
        return _row_to_blocked_date(row), False

    def list_blocked_dates(self, property_id: str) -> list[BlockedDate]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {BLOCKED_DATE_COLUMNS}
                    FROM blocked_dates
                    WHERE property_id = ?
                    ORDER BY start_date ASC, created_at ASC
                    """,
                    (property_id,),
                ).fetchall()
        return [_row_to_blocked_date(row) for row in rows]

    # Property rates

    def set_nightly_rate(self, property_id: str, nightly_rate: float) -> None:
        with self._write("nightly rate update") as conn:
            conn.execute(
                """
                INSERT INTO property_rates(property_id, nightly_rate, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(property_id) DO UPDATE SET
                    nightly_rate = excluded.nightly_rate,
                    updated_at = excluded.updated_at
                """,
                (property_id, float(nightly_rate), _utc_now()),
            )
            conn.commit()

    def get_nightly_rate(self, property_id: str) -> float | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT nightly_rate FROM property_rates WHERE property_id = ?",
                    (property_id,),
                ).fetchone()
        if row is None:
            return None
        return float(row["nightly_rate"])

    # Sync connections

    def get_connection(self, property_id: str, platform: Platform) -> SyncConnection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {CONNECTION_COLUMNS} FROM sync_connections WHERE property_id = ? AND platform = ?",
                    (property_id, platform.value),
                ).fetchone()
        return _row_to_connection(row) if row else None

    def upsert_connection(self, connection: SyncConnection) -> None:
        with self._write("connection upsert") as conn:
            conn.execute(
                f"""
                INSERT INTO sync_connections({CONNECTION_COLUMNS}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(property_id, platform) DO UPDATE SET
                    feed_url = excluded.feed_url,
                    last_synced_at = excluded.last_synced_at,
                    cadence_minutes = excluded.cadence_minutes,
                    conflict_alerts_enabled = excluded.conflict_alerts_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    connection.property_id,
                    connection.platform.value,
                    connection.feed_url,
                    serialize_datetime(connection.last_synced_at),
                    int(connection.cadence_minutes),
                    1 if connection.conflict_alerts_enabled else 0,
                    _utc_now(),
                ),
            )
            conn.commit()

    def set_connection_last_synced(self, property_id: str, platform: Platform, last_synced_at: datetime) -> bool:
        with self._write("connection sync timestamp update") as conn:
            cursor = conn.execute(
                """
                UPDATE sync_connections SET last_synced_at = ?, updated_at = ?
                WHERE property_id = ? AND platform = ?
                """,
                (serialize_datetime(last_synced_at), _utc_now(), property_id, platform.value),
            )
            conn.commit()
            return cursor.rowcount == 1

    def list_connections(self, property_id: str | None = None) -> list[SyncConnection]:
        with self._lock:
            with self._connect() as conn:
                if property_id is None:
                    rows = conn.execute(
                        f"SELECT {CONNECTION_COLUMNS} FROM sync_connections ORDER BY property_id, platform"
                    ).fetchall()
                else:
                    rows = conn.execute(
                        f"""
                        SELECT {CONNECTION_COLUMNS}
                        FROM sync_connections
                        WHERE property_id = ?
                        ORDER BY platform
                        """,
                        (property_id,),
                    ).fetchall()
        return [_row_to_connection(row) for row in rows]

    # Conflict resolutions

    def resolve_conflict(self, *, property_id: str, kept_booking_id: str, cancelled_booking_id: str) -> int:
        with self._write("conflict resolution") as conn:
            cursor = conn.execute(
                """
                UPDATE bookings SET status = ?
                WHERE id = ? AND property_id = ? AND status = ?
                  AND EXISTS (
                      SELECT 1 FROM bookings kept
                      WHERE kept.id = ? AND kept.property_id = ? AND kept.status = ?
                  )
                """,
                (
                    BookingStatus.CANCELLATION_REQUIRED.value,
                    cancelled_booking_id,
                    property_id,
                    BookingStatus.ACTIVE.value,
                    kept_booking_id,
                    property_id,
                    BookingStatus.ACTIVE.value,
                ),
            )
            if cursor.rowcount != 1:
                raise ValueError(
                    f"Bookings {kept_booking_id} and {cancelled_booking_id} are no longer both active"
                )
            cursor = conn.execute(
                """
                INSERT INTO conflict_resolutions(property_id, kept_booking_id, cancelled_booking_id, resolved_at)
                VALUES (?, ?, ?, ?)
                """,
                (property_id, kept_booking_id, cancelled_booking_id, _utc_now()),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def list_resolutions(self, property_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, property_id, kept_booking_id, cancelled_booking_id, resolved_at
                    FROM conflict_resolutions
                    WHERE property_id = ?
                    ORDER BY id ASC
                    """,
                    (property_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    # Sync runs and audit trail

    def start_sync_run(self, *, property_id: str, platform: Platform, trigger: str) -> int:
        with self._write("sync run insert") as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(
                    run_at, property_id, platform, trigger, status, message,
                    duration_ms, imported_reservations, imported_blocks, conflicts
                )
                VALUES (?, ?, ?, ?, 'running', 'running', 0, 0, 0, 0)
                """,
                (_utc_now(), property_id, platform.value, trigger),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        imported_reservations: int,
        imported_blocks: int,
        conflicts: int,
    ) -> None:
        with self._write("sync run update") as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, duration_ms = ?,
                    imported_reservations = ?, imported_blocks = ?, conflicts = ?
                WHERE id = ?
                """,
                (
                    str(status),
                    str(message),
                    int(duration_ms),
                    int(imported_reservations),
                    int(imported_blocks),
                    int(conflicts),
                    int(run_id),
                ),
            )
            conn.commit()

    def recent_sync_runs(self, limit: int = 20, property_id: str | None = None) -> list[dict[str, Any]]:
        columns = (
            "id, run_at, property_id, platform, trigger, status, message, "
            "duration_ms, imported_reservations, imported_blocks, conflicts"
        )
        with self._lock:
            with self._connect() as conn:
                if property_id is None:
                    rows = conn.execute(
                        f"SELECT {columns} FROM sync_runs ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        f"SELECT {columns} FROM sync_runs WHERE property_id = ? ORDER BY id DESC LIMIT ?",
                        (property_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        property_id: str,
        subject_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._write("audit insert") as conn:
            conn.execute(
                """
                INSERT INTO audit_events(run_id, created_at, property_id, subject_id, action, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _utc_now(), property_id, subject_id, action, json.dumps(details, ensure_ascii=False)),
            )
            conn.commit()

    def recent_audit_events(
        self,
        limit: int = 100,
        run_id: int | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(int(run_id))
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, run_id, created_at, property_id, subject_id, action, details_json
                    FROM audit_events
                    {where}
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (*params, max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
