"""Audit trail — append ``audit.*`` facts to the audit store.

Unlike the cascades these executors do not rewrite copies.  Each fact
becomes one row whose id is the envelope's ``eventId``, so a redelivered
fact finds its row already written and inserts nothing.  The publishing
service and the envelope timestamp are recorded alongside the payload.
"""

from __future__ import annotations

import abc
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, column, insert, select, table
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.cascade.base import CascadeExecutor, P
from wardsync.models.envelopes import (
    AuditLogPayload,
    DataAccessLogPayload,
    Envelope,
    EventType,
)


class _RecordWriter(CascadeExecutor[P]):
    """Insert one row per fact unless a row with the fact's id exists."""

    columns: tuple[tuple[str, Any], ...] = ()
    default_table: str = ""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        table_name: str | None = None,
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self._table = table(
            table_name or self.default_table,
            column("id", String),
            *(column(name, type_) for name, type_ in self.columns),
            column("service_name", String),
            column("created_at", DateTime(timezone=True)),
        )

    def describe(self) -> list[str]:
        return [f"{self._table.name} insert by eventId"]

    @abc.abstractmethod
    def row(self, payload: P, envelope: Envelope) -> dict[str, Any]:
        """Column values taken from the fact itself."""

    async def plan(
        self, conn: AsyncConnection, payload: P, envelope: Envelope
    ) -> list[Executable] | None:
        tbl = self._table
        existing = await conn.execute(select(tbl.c.id).where(tbl.c.id == envelope.event_id))
        if existing.first() is not None:
            return []
        values = self.row(payload, envelope)
        values.update(
            id=envelope.event_id,
            service_name=envelope.source,
            created_at=envelope.timestamp,
        )
        return [insert(tbl).values(values)]


class AuditLogWriter(_RecordWriter[AuditLogPayload]):
    """``audit.log`` -> ``audit_logs``."""

    event_type = EventType.AUDIT_LOG
    payload_model = AuditLogPayload
    default_table = "audit_logs"
    columns = (
        ("user_id", String),
        ("user_email", String),
        ("user_role", String),
        ("action", String),
        ("resource", String),
        ("resource_id", String),
        ("status", String),
        ("ip_address", String),
        ("user_agent", String),
        ("old_values", JSON),
        ("new_values", JSON),
        ("metadata", JSON),
        ("request_id", String),
        ("session_id", String),
        ("error_message", String),
    )

    def row(self, payload: AuditLogPayload, envelope: Envelope) -> dict[str, Any]:
        return {
            "user_id": payload.actor,
            "user_email": payload.actor_email,
            "user_role": payload.actor_role,
            "action": payload.action.upper(),
            "resource": payload.resource,
            "resource_id": payload.resource_id,
            # Errors are stored as failures; the message says which.
            "status": "SUCCESS" if payload.outcome == "success" else "FAILURE",
            "ip_address": payload.ip_address,
            "user_agent": payload.user_agent,
            "old_values": payload.before_values,
            "new_values": payload.after_values,
            "metadata": payload.metadata,
            "request_id": payload.request_id or envelope.correlation_id,
            "session_id": payload.session_id,
            "error_message": payload.error_message,
        }


class DataAccessLogWriter(_RecordWriter[DataAccessLogPayload]):
    """``audit.data-access`` -> ``data_access_logs``."""

    event_type = EventType.AUDIT_DATA_ACCESS
    payload_model = DataAccessLogPayload
    default_table = "data_access_logs"
    columns = (
        ("user_id", String),
        ("user_email", String),
        ("user_role", String),
        ("patient_id", String),
        ("patient_mrn", String),
        ("data_type", String),
        ("access_type", String),
        ("sensitivity", String),
        ("fields_accessed", JSON),
        ("ip_address", String),
        ("user_agent", String),
        ("request_id", String),
        ("emergency_access", Boolean),
        ("break_glass_reason", String),
    )

    def row(self, payload: DataAccessLogPayload, envelope: Envelope) -> dict[str, Any]:
        return {
            "user_id": payload.actor,
            "user_email": payload.actor_email,
            "user_role": payload.actor_role,
            "patient_id": payload.patient_id,
            "patient_mrn": payload.patient_mrn,
            "data_type": payload.data_type,
            "access_type": payload.access_type.upper(),
            "sensitivity": payload.sensitivity_level.upper(),
            "fields_accessed": payload.fields_accessed,
            "ip_address": payload.ip_address,
            "user_agent": payload.user_agent,
            "request_id": envelope.correlation_id,
            "emergency_access": payload.is_emergency_access,
            "break_glass_reason": payload.break_glass_reason,
        }
