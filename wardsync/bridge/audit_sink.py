"""Audit sink — fire-and-forget audit facts for the audit service.

Bridge boundary
---------------
Request-handling code records who did what through this sink.  Recording
never blocks on the broker and never raises: each record becomes a
background publish to the audit exchange, and any failure (broker down,
invalid payload, unexpected error) is logged and dropped.

Losing an audit record is preferable to failing the clinical operation
that produced it.  ``flush()`` waits for outstanding publishes, which is
what shutdown and tests use.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from wardsync.core.publisher import EventPublisher
from wardsync.models.audit import (
    AuditContext,
    AuditOutcome,
    DataAccessType,
    SensitivityLevel,
)
from wardsync.models.envelopes import EventType, FieldChange

logger = logging.getLogger(__name__)


class AuditSink:
    """Schedules audit publishes without awaiting them.

    Parameters
    ----------
    publisher:
        Publisher used for ``audit.log`` and ``audit.data-access`` facts.
    """

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher
        self._pending: set[asyncio.Task[None]] = set()
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def record(
        self,
        action: str,
        resource: str,
        outcome: AuditOutcome,
        context: AuditContext | None = None,
        *,
        resource_id: str | None = None,
        before_values: Mapping[str, Any] | None = None,
        after_values: Mapping[str, Any] | None = None,
        error_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a general audit fact.  Returns immediately."""
        ctx = context or AuditContext()
        payload = {
            "actor": ctx.actor,
            "actor_email": ctx.actor_email,
            "actor_role": ctx.actor_role,
            "action": action,
            "resource": resource,
            "resource_id": resource_id,
            "outcome": outcome,
            "before_values": dict(before_values) if before_values is not None else None,
            "after_values": dict(after_values) if after_values is not None else None,
            "error_message": error_message,
            "ip_address": ctx.ip_address,
            "user_agent": ctx.user_agent,
            "request_id": ctx.request_id,
            "session_id": ctx.session_id,
            "metadata": dict(metadata) if metadata is not None else None,
        }
        self._schedule(EventType.AUDIT_LOG, payload, ctx.correlation_id, action)

    def log_patient_access(
        self,
        patient_id: str,
        access_type: DataAccessType,
        data_type: str,
        context: AuditContext,
        *,
        patient_mrn: str | None = None,
        sensitivity_level: SensitivityLevel = "phi",
        fields_accessed: list[str] | None = None,
        is_emergency_access: bool = False,
        break_glass_reason: str | None = None,
    ) -> None:
        """Record access to patient-identifiable data (``audit.data-access``)."""
        payload = {
            "actor": context.actor,
            "actor_email": context.actor_email,
            "actor_role": context.actor_role,
            "patient_id": patient_id,
            "patient_mrn": patient_mrn,
            "data_type": data_type,
            "access_type": access_type,
            "sensitivity_level": sensitivity_level,
            "fields_accessed": fields_accessed,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "is_emergency_access": is_emergency_access,
            "break_glass_reason": break_glass_reason,
        }
        self._schedule(
            EventType.AUDIT_DATA_ACCESS,
            payload,
            context.correlation_id,
            f"{access_type} {data_type}",
        )

    async def flush(self) -> None:
        """Wait for every scheduled publish to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def log_login(
        self,
        email: str,
        success: bool,
        context: AuditContext | None = None,
        error_message: str | None = None,
    ) -> None:
        ctx = (context or AuditContext()).model_copy(update={"actor_email": email})
        self.record(
            "user.login",
            "auth",
            "success" if success else "failure",
            ctx,
            error_message=error_message,
        )

    def log_logout(self, context: AuditContext) -> None:
        self.record("user.logout", "auth", "success", context)

    def log_user_created(
        self, user_id: str, email: str, role: str, context: AuditContext
    ) -> None:
        self.record(
            "user.create",
            "user",
            "success",
            context,
            resource_id=user_id,
            after_values={"email": email, "role": role},
        )

    def log_user_updated(
        self,
        user_id: str,
        changes: Mapping[str, FieldChange | Mapping[str, Any]],
        context: AuditContext,
    ) -> None:
        before: dict[str, Any] = {}
        after: dict[str, Any] = {}
        for field, change in changes.items():
            if isinstance(change, FieldChange):
                before[field], after[field] = change.old, change.new
            else:
                before[field], after[field] = change.get("old"), change.get("new")
        self.record(
            "user.update",
            "user",
            "success",
            context,
            resource_id=user_id,
            before_values=before,
            after_values=after,
        )

    def log_role_changed(
        self, user_id: str, old_role: str, new_role: str, context: AuditContext
    ) -> None:
        self.record(
            "user.role.change",
            "user",
            "success",
            context,
            resource_id=user_id,
            before_values={"role": old_role},
            after_values={"role": new_role},
        )

    def log_permission_change(
        self, action: str, target_user_id: str, permission: str, context: AuditContext
    ) -> None:
        if action not in ("grant", "revoke"):
            self.dropped += 1
            logger.error("Audit permission change dropped: unknown action %r", action)
            return
        self.record(
            f"permission.{action}",
            "rbac",
            "success",
            context,
            resource_id=target_user_id,
            after_values={"permission": permission, "action": action},
        )

    def log_resource_access(
        self, resource: str, resource_id: str, action: str, context: AuditContext
    ) -> None:
        self.record(f"{resource}.{action}", resource, "success", context, resource_id=resource_id)

    def log_error(
        self,
        action: str,
        resource: str,
        error_message: str,
        context: AuditContext,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.record(
            action,
            resource,
            "error",
            context,
            error_message=error_message,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        correlation_id: str | None,
        label: str,
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.dropped += 1
            logger.error("Audit %s dropped: no running event loop", label)
            return
        task = loop.create_task(self._publish(event_type, payload, correlation_id, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        correlation_id: str | None,
        label: str,
    ) -> None:
        try:
            published = await self._publisher.publish_event(event_type, payload, correlation_id)
        except Exception:
            self.dropped += 1
            logger.exception("Failed to publish audit %s", label)
            return
        if not published:
            self.dropped += 1
            logger.error("Audit %s not delivered to the broker", label)
