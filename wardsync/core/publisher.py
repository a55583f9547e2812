"""Event publisher — wraps facts in envelopes and hands them to the broker.

Publishing is best-effort from the caller's point of view: every method
returns ``True`` when the broker accepted the message and ``False``
otherwise.  Nothing here raises into request-handling code; the reason for
a ``False`` is always logged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

from wardsync.bridge.transport import OutboundMessage
from wardsync.config import MessagingConfig
from wardsync.core.codec import encode_envelope
from wardsync.core.supervisor import ConnectionSupervisor, PublishUnavailableError
from wardsync.models.connection import ConnectionState
from wardsync.models.envelopes import (
    SCHEMA_VERSION,
    AuditLogPayload,
    BedStatusChangedPayload,
    DataAccessLogPayload,
    Envelope,
    EventType,
    PatientDeactivatedPayload,
    PatientReactivatedPayload,
    PatientUpdatedPayload,
    UserActivatedPayload,
    UserCreatedPayload,
    UserDeactivatedPayload,
    UserRoleChangedPayload,
    UserUpdatedPayload,
    envelope_class_for,
)

logger = logging.getLogger(__name__)

PayloadLike = BaseModel | Mapping[str, Any]


class EventPublisher:
    """Publishes envelopes through a ``ConnectionSupervisor``.

    Parameters
    ----------
    supervisor:
        Owner of the broker session.  The publisher never touches the
        connection directly.
    source:
        Name of the emitting service, stamped on every envelope.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        source: str,
        events_exchange: str = "clinical.events",
        audit_exchange: str = "clinical.audit",
        schema_version: str = SCHEMA_VERSION,
    ) -> None:
        self._supervisor = supervisor
        self._source = source
        self._events_exchange = events_exchange
        self._audit_exchange = audit_exchange
        self._version = schema_version

    @classmethod
    def from_config(
        cls, supervisor: ConnectionSupervisor, settings: MessagingConfig
    ) -> EventPublisher:
        return cls(
            supervisor,
            source=settings.service_name,
            events_exchange=settings.events_exchange,
            audit_exchange=settings.audit_exchange,
            schema_version=settings.schema_version,
        )

    @property
    def source(self) -> str:
        return self._source

    # ------------------------------------------------------------------
    # Envelope construction
    # ------------------------------------------------------------------

    def build_envelope(
        self,
        event_type: str,
        payload: PayloadLike,
        correlation_id: str | None = None,
    ) -> Envelope:
        """Wrap *payload* in a new envelope with a fresh ``eventId``.

        Known facts get their typed envelope, so the payload is validated
        here rather than by every consumer.

        Raises
        ------
        pydantic.ValidationError
            If *payload* does not satisfy the fact's payload model.
        """
        model_cls = envelope_class_for(event_type)
        if model_cls is Envelope and isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json", by_alias=True)
        data: dict[str, Any] = {
            "event_type": event_type,
            "source": self._source,
            "version": self._version,
            "payload": payload,
        }
        if correlation_id:
            data["correlation_id"] = correlation_id
        return model_cls.model_validate(data)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: PayloadLike,
        correlation_id: str | None = None,
    ) -> bool:
        """Publish one fact.  Returns ``False`` (and logs) instead of raising."""
        if self._supervisor.state is not ConnectionState.READY:
            logger.warning(
                "Cannot publish %s: broker not connected (state=%s)",
                routing_key,
                self._supervisor.state.value,
            )
            return False

        try:
            envelope = self.build_envelope(routing_key, payload, correlation_id)
        except ValidationError as exc:
            logger.error("Refusing to publish invalid %s payload: %s", routing_key, exc)
            return False

        try:
            message = OutboundMessage(
                body=encode_envelope(envelope),
                message_id=envelope.event_id,
                correlation_id=envelope.correlation_id,
                timestamp=envelope.timestamp,
                headers={"source": envelope.source, "eventType": routing_key},
            )
        except (ValueError, TypeError, PydanticSerializationError) as exc:
            logger.error("Cannot serialize %s payload: %s", routing_key, exc)
            return False
        try:
            await self._supervisor.publish(exchange, routing_key, message)
        except PublishUnavailableError as exc:
            logger.error("Failed to publish %s: %s", routing_key, exc)
            return False
        except Exception:
            logger.exception("Unexpected error publishing %s", routing_key)
            return False

        logger.debug(
            "Published %s to %s (eventId=%s, correlationId=%s)",
            routing_key,
            exchange,
            envelope.event_id,
            envelope.correlation_id,
        )
        return True

    async def publish_event(
        self,
        event_type: EventType | str,
        payload: PayloadLike,
        correlation_id: str | None = None,
    ) -> bool:
        """Publish to the exchange implied by the fact: ``audit.*`` or events."""
        routing_key = event_type.value if isinstance(event_type, EventType) else event_type
        exchange = (
            self._audit_exchange if routing_key.startswith("audit.") else self._events_exchange
        )
        return await self.publish(exchange, routing_key, payload, correlation_id)

    # ------------------------------------------------------------------
    # Per-fact helpers
    # ------------------------------------------------------------------

    async def publish_patient_updated(
        self, payload: PatientUpdatedPayload | Mapping[str, Any], correlation_id: str | None = None
    ) -> bool:
        return await self.publish_event(EventType.PATIENT_UPDATED, payload, correlation_id)

    async def publish_patient_deactivated(
        self,
        payload: PatientDeactivatedPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.PATIENT_DEACTIVATED, payload, correlation_id)

    async def publish_patient_reactivated(
        self,
        payload: PatientReactivatedPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.PATIENT_REACTIVATED, payload, correlation_id)

    async def publish_user_created(
        self, payload: UserCreatedPayload | Mapping[str, Any], correlation_id: str | None = None
    ) -> bool:
        return await self.publish_event(EventType.USER_CREATED, payload, correlation_id)

    async def publish_user_updated(
        self, payload: UserUpdatedPayload | Mapping[str, Any], correlation_id: str | None = None
    ) -> bool:
        return await self.publish_event(EventType.USER_UPDATED, payload, correlation_id)

    async def publish_user_deactivated(
        self,
        payload: UserDeactivatedPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.USER_DEACTIVATED, payload, correlation_id)

    async def publish_user_activated(
        self, payload: UserActivatedPayload | Mapping[str, Any], correlation_id: str | None = None
    ) -> bool:
        return await self.publish_event(EventType.USER_ACTIVATED, payload, correlation_id)

    async def publish_user_role_changed(
        self,
        payload: UserRoleChangedPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.USER_ROLE_CHANGED, payload, correlation_id)

    async def publish_bed_status_changed(
        self,
        payload: BedStatusChangedPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.BED_STATUS_CHANGED, payload, correlation_id)

    async def publish_audit_log(
        self, payload: AuditLogPayload | Mapping[str, Any], correlation_id: str | None = None
    ) -> bool:
        return await self.publish_event(EventType.AUDIT_LOG, payload, correlation_id)

    async def publish_data_access_log(
        self,
        payload: DataAccessLogPayload | Mapping[str, Any],
        correlation_id: str | None = None,
    ) -> bool:
        return await self.publish_event(EventType.AUDIT_DATA_ACCESS, payload, correlation_id)
