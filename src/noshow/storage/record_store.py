"""Record store — protocol + implementations.

The store owns clients, appointments and their history; this package only
reads snapshots from it and writes intervention records, status changes and
notifications back. Calls are blocking.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Protocol, TypeVar

import psycopg

from noshow.domain import (
    AppointmentContext,
    AppointmentSnapshot,
    AppointmentStatus,
    Client,
    ClientHistorySnapshot,
    EngagementSnapshot,
    Notification,
    PastAppointment,
    PaymentStatus,
    Professional,
)
from noshow.errors import RecordStoreError
from noshow.interventions.engine import ExecutedIntervention

__all__ = [
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "RecordStoreProtocol",
    "call_with_retry",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


class RecordStoreProtocol(Protocol):
    """Minimal contract for the external record store."""

    def find_client(self, phone: str) -> Client | None: ...

    def find_upcoming_appointments(
        self, client_id: str, start: datetime, end: datetime
    ) -> list[AppointmentSnapshot]:
        """Open appointments of *client_id* scheduled within [start, end]."""
        ...

    def load_appointment_context(self, appointment_id: str) -> AppointmentContext | None: ...

    def get_last_execution(
        self, rule_id: str, appointment_id: str
    ) -> ExecutedIntervention | None: ...

    def get_intervention(self, intervention_id: str) -> ExecutedIntervention | None: ...

    def list_interventions(
        self, appointment_id: str | None = None, limit: int = 100
    ) -> list[ExecutedIntervention]: ...

    def save_intervention_history(self, record: ExecutedIntervention) -> None:
        """Insert or replace a record by id."""
        ...

    def update_appointment_status(self, appointment_id: str, status: AppointmentStatus) -> None: ...

    def create_notification(self, notification: Notification) -> None: ...


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    *,
    max_retries: int = 2,
    backoff: Sequence[float] = (0.2, 1.0),
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *fn*, retrying transient failures; raise RecordStoreError when exhausted."""
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= max_retries:
                logger.error("Record store %s failed after %d attempts", operation, attempt + 1)
                raise RecordStoreError(operation, exc) from exc
            delay = backoff[min(attempt, len(backoff) - 1)] if backoff else 0.0
            logger.warning(
                "Record store %s failed (attempt %d), retrying in %.1fs: %s",
                operation,
                attempt + 1,
                delay,
                exc,
            )
            sleep(delay)
            attempt += 1


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryRecordStore:
    """Record store backed by plain dicts — no external deps."""

    def __init__(self) -> None:
        self._contexts: dict[str, AppointmentContext] = {}
        self._statuses: dict[str, AppointmentStatus] = {}
        self._clients: dict[str, Client] = {}
        self._interventions: dict[str, ExecutedIntervention] = {}
        self.notifications: list[Notification] = []

    # -- seeding ------------------------------------------------------------

    def add_context(
        self,
        context: AppointmentContext,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    ) -> None:
        appointment_id = context.appointment.id
        self._contexts[appointment_id] = context
        self._statuses[appointment_id] = status
        self._clients[context.client.id] = context.client

    def appointment_status(self, appointment_id: str) -> AppointmentStatus | None:
        return self._statuses.get(appointment_id)

    # -- protocol -----------------------------------------------------------

    def find_client(self, phone: str) -> Client | None:
        wanted = _digits(phone)
        for client in self._clients.values():
            if wanted and _digits(client.phone) == wanted:
                return client
        return None

    def find_upcoming_appointments(
        self, client_id: str, start: datetime, end: datetime
    ) -> list[AppointmentSnapshot]:
        found = [
            ctx.appointment
            for appointment_id, ctx in self._contexts.items()
            if ctx.client.id == client_id
            and start <= ctx.appointment.scheduled_for <= end
            and self._statuses.get(appointment_id) not in _CLOSED_STATUSES
        ]
        return sorted(found, key=lambda a: a.scheduled_for)

    def load_appointment_context(self, appointment_id: str) -> AppointmentContext | None:
        return self._contexts.get(appointment_id)

    def get_last_execution(
        self, rule_id: str, appointment_id: str
    ) -> ExecutedIntervention | None:
        matching = [
            r
            for r in self._interventions.values()
            if r.rule_id == rule_id and r.appointment_id == appointment_id
        ]
        return max(matching, key=lambda r: r.executed_at, default=None)

    def get_intervention(self, intervention_id: str) -> ExecutedIntervention | None:
        return self._interventions.get(intervention_id)

    def list_interventions(
        self, appointment_id: str | None = None, limit: int = 100
    ) -> list[ExecutedIntervention]:
        out = list(self._interventions.values())
        if appointment_id:
            out = [r for r in out if r.appointment_id == appointment_id]
        out.sort(key=lambda r: r.executed_at, reverse=True)
        return out[:limit]

    def save_intervention_history(self, record: ExecutedIntervention) -> None:
        self._interventions[record.id] = record

    def update_appointment_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        if appointment_id not in self._statuses:
            raise RecordStoreError(
                "update_appointment_status", KeyError(appointment_id)
            )
        self._statuses[appointment_id] = status

    def create_notification(self, notification: Notification) -> None:
        self.notifications.append(notification)


def _digits(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit())


# ── PostgreSQL implementation ────────────────────────────


SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    phone           TEXT NOT NULL DEFAULT '',
    email           TEXT NOT NULL DEFAULT '',
    loyalty_points  INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS professionals (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    business_name   TEXT NOT NULL DEFAULT '',
    phone           TEXT NOT NULL DEFAULT '',
    address         TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS appointments (
    id               TEXT PRIMARY KEY,
    client_id        TEXT NOT NULL REFERENCES clients (id),
    professional_id  TEXT NOT NULL REFERENCES professionals (id),
    scheduled_for    TIMESTAMPTZ NOT NULL,
    created_at       TIMESTAMPTZ NOT NULL,
    service_name     TEXT NOT NULL DEFAULT '',
    service_price    NUMERIC(10, 2) NOT NULL DEFAULT 0,
    service_duration INTEGER NOT NULL DEFAULT 60,
    payment_status   TEXT NOT NULL DEFAULT 'PENDING',
    reminders_sent   INTEGER NOT NULL DEFAULT 0,
    status           TEXT NOT NULL DEFAULT 'SCHEDULED'
);
CREATE TABLE IF NOT EXISTS intervention_history (
    id              TEXT PRIMARY KEY,
    rule_id         TEXT NOT NULL,
    appointment_id  TEXT NOT NULL,
    client_id       TEXT NOT NULL,
    executed_at     TIMESTAMPTZ NOT NULL,
    result          TEXT NOT NULL,
    effectiveness   DOUBLE PRECISION,
    actions         JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS intervention_history_rule_appt
    ON intervention_history (rule_id, appointment_id, executed_at DESC);
CREATE TABLE IF NOT EXISTS notifications (
    id              TEXT PRIMARY KEY,
    client_id       TEXT NOT NULL,
    appointment_id  TEXT NOT NULL,
    kind            TEXT NOT NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL
);
"""

_INTERVENTION_COLUMNS = (
    "id, rule_id, appointment_id, client_id, executed_at, result, effectiveness, actions"
)


class PostgresRecordStore:
    """Record store in PostgreSQL; every call goes through ``call_with_retry``."""

    def __init__(
        self,
        conn: psycopg.Connection[Any],
        max_retries: int = 2,
        backoff: Sequence[float] = (0.2, 1.0),
    ) -> None:
        self._conn = conn
        self._max_retries = max_retries
        self._backoff = tuple(backoff)

    def ensure_schema(self) -> None:
        self._run("ensure_schema", lambda: self._execute(SCHEMA, None), commit=True)

    # -- plumbing -----------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], T], commit: bool = False) -> T:
        def attempt() -> T:
            try:
                result = fn()
                if commit:
                    self._conn.commit()
                return result
            except psycopg.Error:
                self._conn.rollback()
                raise

        return call_with_retry(
            operation,
            attempt,
            max_retries=self._max_retries,
            backoff=self._backoff,
            retry_on=(psycopg.Error,),
        )

    def _execute(self, sql: str, params: Sequence[Any] | None) -> None:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)

    def _fetchall(self, sql: str, params: Sequence[Any]) -> list[tuple[Any, ...]]:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any]) -> tuple[Any, ...] | None:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    # -- protocol -----------------------------------------------------------

    def find_client(self, phone: str) -> Client | None:
        digits = _digits(phone)
        if not digits:
            return None
        row = self._run(
            "find_client",
            lambda: self._fetchone(
                "SELECT id, name, phone, email, loyalty_points FROM clients "
                "WHERE regexp_replace(phone, '[^0-9]', '', 'g') = %s LIMIT 1",
                (digits,),
            ),
        )
        return Client(*row) if row else None

    def find_upcoming_appointments(
        self, client_id: str, start: datetime, end: datetime
    ) -> list[AppointmentSnapshot]:
        rows = self._run(
            "find_upcoming_appointments",
            lambda: self._fetchall(
                "SELECT id, client_id, scheduled_for, created_at, service_price, "
                "service_duration, payment_status, reminders_sent, service_name "
                "FROM appointments WHERE client_id = %s "
                "AND scheduled_for BETWEEN %s AND %s AND status <> ALL(%s) "
                "ORDER BY scheduled_for",
                (client_id, start, end, [str(s) for s in _CLOSED_STATUSES]),
            ),
        )
        return [
            AppointmentSnapshot(
                id=r[0],
                client_id=r[1],
                scheduled_for=r[2],
                created_at=r[3],
                service_price=float(r[4]),
                service_duration=r[5],
                payment_status=PaymentStatus(r[6]),
                reminders_sent=r[7],
                service_name=r[8],
            )
            for r in rows
        ]

    def load_appointment_context(self, appointment_id: str) -> AppointmentContext | None:
        return self._run(
            "load_appointment_context", lambda: self._load_context(appointment_id)
        )

    def _load_context(self, appointment_id: str) -> AppointmentContext | None:
        row = self._fetchone(
            "SELECT a.id, a.client_id, a.scheduled_for, a.created_at, a.service_price, "
            "a.service_duration, a.payment_status, a.reminders_sent, a.service_name, "
            "c.name, c.phone, c.email, c.loyalty_points, "
            "p.id, p.name, p.business_name, p.phone, p.address "
            "FROM appointments a "
            "JOIN clients c ON c.id = a.client_id "
            "JOIN professionals p ON p.id = a.professional_id "
            "WHERE a.id = %s",
            (appointment_id,),
        )
        if row is None:
            return None

        client = Client(id=row[1], name=row[9], phone=row[10], email=row[11], loyalty_points=row[12])
        past_rows = self._fetchall(
            "SELECT scheduled_for, status, service_price, created_at FROM appointments "
            "WHERE client_id = %s AND id <> %s AND status = ANY(%s) ORDER BY scheduled_for",
            (client.id, appointment_id, [str(s) for s in _CLOSED_STATUSES]),
        )
        past = tuple(
            PastAppointment(scheduled_for=r[0], status=AppointmentStatus(r[1]), service_price=float(r[2]))
            for r in past_rows
        )
        return AppointmentContext(
            appointment=AppointmentSnapshot(
                id=row[0],
                client_id=row[1],
                scheduled_for=row[2],
                created_at=row[3],
                service_price=float(row[4]),
                service_duration=row[5],
                payment_status=PaymentStatus(row[6]),
                reminders_sent=row[7],
                is_first_time=not past,
                service_name=row[8],
            ),
            history=_history_from_rows(client, past_rows),
            client=client,
            professional=Professional(
                id=row[13], name=row[14], business_name=row[15], phone=row[16], address=row[17]
            ),
            past_appointments=past,
            engagement=EngagementSnapshot(),
        )

    def get_last_execution(
        self, rule_id: str, appointment_id: str
    ) -> ExecutedIntervention | None:
        row = self._run(
            "get_last_execution",
            lambda: self._fetchone(
                f"SELECT {_INTERVENTION_COLUMNS} FROM intervention_history "  # noqa: S608
                "WHERE rule_id = %s AND appointment_id = %s "
                "ORDER BY executed_at DESC LIMIT 1",
                (rule_id, appointment_id),
            ),
        )
        return _intervention_from_row(row) if row else None

    def get_intervention(self, intervention_id: str) -> ExecutedIntervention | None:
        row = self._run(
            "get_intervention",
            lambda: self._fetchone(
                f"SELECT {_INTERVENTION_COLUMNS} FROM intervention_history WHERE id = %s",  # noqa: S608
                (intervention_id,),
            ),
        )
        return _intervention_from_row(row) if row else None

    def list_interventions(
        self, appointment_id: str | None = None, limit: int = 100
    ) -> list[ExecutedIntervention]:
        where = "WHERE appointment_id = %s" if appointment_id else ""
        params: list[Any] = [appointment_id] if appointment_id else []
        params.append(limit)
        rows = self._run(
            "list_interventions",
            lambda: self._fetchall(
                f"SELECT {_INTERVENTION_COLUMNS} FROM intervention_history {where} "  # noqa: S608
                "ORDER BY executed_at DESC LIMIT %s",
                params,
            ),
        )
        return [_intervention_from_row(r) for r in rows]

    def save_intervention_history(self, record: ExecutedIntervention) -> None:
        self._run(
            "save_intervention_history",
            lambda: self._execute(
                """
                INSERT INTO intervention_history
                    (id, rule_id, appointment_id, client_id,
                     executed_at, result, effectiveness, actions)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    result = EXCLUDED.result,
                    effectiveness = EXCLUDED.effectiveness,
                    actions = EXCLUDED.actions
                """,
                (
                    record.id,
                    record.rule_id,
                    record.appointment_id,
                    record.client_id,
                    record.executed_at,
                    str(record.result),
                    record.effectiveness,
                    json.dumps([a.to_dict() for a in record.actions]),
                ),
            ),
            commit=True,
        )

    def update_appointment_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        self._run(
            "update_appointment_status",
            lambda: self._execute(
                "UPDATE appointments SET status = %s WHERE id = %s",
                (str(status), appointment_id),
            ),
            commit=True,
        )

    def create_notification(self, notification: Notification) -> None:
        n = notification
        self._run(
            "create_notification",
            lambda: self._execute(
                "INSERT INTO notifications "
                "(id, client_id, appointment_id, kind, title, message, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s)",
                (n.id, n.client_id, n.appointment_id, n.kind, n.title, n.message, n.created_at),
            ),
            commit=True,
        )


def _history_from_rows(client: Client, rows: Sequence[tuple[Any, ...]]) -> ClientHistorySnapshot:
    """Aggregate closed past appointments (scheduled_for, status, price, created_at)."""
    statuses = [r[1] for r in rows]
    completed = [r for r in rows if r[1] == AppointmentStatus.COMPLETED]
    lead_days = [(r[0] - r[3]).total_seconds() / 86_400 for r in rows]
    return ClientHistorySnapshot(
        client_id=client.id,
        total_appointments=len(rows),
        completed_count=len(completed),
        no_show_count=statuses.count(AppointmentStatus.NO_SHOW),
        cancel_count=statuses.count(AppointmentStatus.CANCELLED),
        average_advance_booking_days=sum(lead_days) / len(lead_days) if lead_days else 0.0,
        average_service_value=(
            sum(float(r[2]) for r in completed) / len(completed) if completed else 0.0
        ),
        loyalty_points=client.loyalty_points,
        last_appointment_date=max((r[0] for r in rows), default=None),
    )


def _intervention_from_row(row: tuple[Any, ...]) -> ExecutedIntervention:
    actions = row[7]
    if isinstance(actions, str):
        actions = json.loads(actions)
    return ExecutedIntervention.from_dict(
        {
            "id": row[0],
            "rule_id": row[1],
            "appointment_id": row[2],
            "client_id": row[3],
            "executed_at": row[4],
            "result": row[5],
            "effectiveness": row[6],
            "actions": actions,
        }
    )
