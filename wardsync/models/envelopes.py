"""Fact envelopes — the wire contract between publishing and consuming services.

Every fact crosses the broker wrapped in the same envelope shape.  Each
envelope is a frozen Pydantic model; typed variants pin the payload model
for one ``eventType`` so consumers get validated data, not loose dicts.
Wire keys are camelCase, Python attributes are snake_case.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = "1.0"


class EventType(str, Enum):
    """Routing keys of every fact exchanged between services."""

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DEACTIVATED = "user.deactivated"
    USER_ACTIVATED = "user.activated"
    USER_ROLE_CHANGED = "user.role.changed"
    PATIENT_UPDATED = "patient.updated"
    PATIENT_DEACTIVATED = "patient.deactivated"
    PATIENT_REACTIVATED = "patient.reactivated"
    BED_STATUS_CHANGED = "bed.status.changed"
    AUDIT_LOG = "audit.log"
    AUDIT_DATA_ACCESS = "audit.data-access"

    @property
    def is_audit(self) -> bool:
        return self.value.startswith("audit.")


class WireModel(BaseModel):
    """Base for everything serialized onto the broker."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class FieldChange(WireModel):
    """One ``{old, new}`` pair inside a ``changes`` map."""

    old: Any = None
    new: Any = None


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class PatientUpdatedPayload(WireModel):
    patient_id: str
    chi_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    changes: dict[str, FieldChange] = {}
    updated_by: str | None = None


class PatientDeactivatedPayload(WireModel):
    patient_id: str
    chi_number: str | None = None
    deactivated_by: str | None = None


class PatientReactivatedPayload(WireModel):
    patient_id: str
    chi_number: str | None = None


class UserCreatedPayload(WireModel):
    user_id: str
    email: str
    first_name: str
    last_name: str
    role: str
    phone_number: str | None = None
    is_active: bool = True
    created_by: str | None = None


class UserUpdatedPayload(WireModel):
    user_id: str
    changes: dict[str, FieldChange] = {}
    updated_by: str | None = None


class UserDeactivatedPayload(WireModel):
    user_id: str
    email: str | None = None
    reason: str | None = None
    deactivated_by: str | None = None


class UserActivatedPayload(WireModel):
    user_id: str
    email: str | None = None
    activated_by: str | None = None


class UserRoleChangedPayload(WireModel):
    user_id: str
    email: str | None = None
    old_role: str
    new_role: str
    changed_by: str | None = None


class BedStatusChangedPayload(WireModel):
    bed_id: str
    ward_id: str | None = None
    bed_number: str | None = None
    old_status: str | None = None
    new_status: str
    patient_id: str | None = None


class AuditLogPayload(WireModel):
    """General audit record: who did what to which resource, and how it went."""

    actor: str | None = None
    actor_email: str | None = None
    actor_role: str | None = None
    action: str
    resource: str
    resource_id: str | None = None
    outcome: Literal["success", "failure", "error"]
    before_values: dict[str, Any] | None = None
    after_values: dict[str, Any] | None = None
    error_message: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] | None = None


class DataAccessLogPayload(WireModel):
    """Record of access to patient-identifiable data."""

    actor: str
    actor_email: str | None = None
    actor_role: str | None = None
    patient_id: str
    patient_mrn: str | None = None
    data_type: str
    access_type: Literal["read", "write", "delete", "export"]
    sensitivity_level: Literal["low", "medium", "high", "phi"] = "phi"
    fields_accessed: list[str] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_emergency_access: bool = False
    break_glass_reason: str | None = None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class Envelope(WireModel):
    """Base fields shared by every fact on the wire.

    ``event_id`` is minted per construction and never reused; it doubles as
    the broker message id.  ``correlation_id`` carries a causal chain across
    services and defaults to a fresh id when the caller has none.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    version: str = SCHEMA_VERSION
    payload: dict[str, Any] = {}


class PatientUpdatedEnvelope(Envelope):
    event_type: EventType = EventType.PATIENT_UPDATED
    payload: PatientUpdatedPayload


class PatientDeactivatedEnvelope(Envelope):
    event_type: EventType = EventType.PATIENT_DEACTIVATED
    payload: PatientDeactivatedPayload


class PatientReactivatedEnvelope(Envelope):
    event_type: EventType = EventType.PATIENT_REACTIVATED
    payload: PatientReactivatedPayload


class UserCreatedEnvelope(Envelope):
    event_type: EventType = EventType.USER_CREATED
    payload: UserCreatedPayload


class UserUpdatedEnvelope(Envelope):
    event_type: EventType = EventType.USER_UPDATED
    payload: UserUpdatedPayload


class UserDeactivatedEnvelope(Envelope):
    event_type: EventType = EventType.USER_DEACTIVATED
    payload: UserDeactivatedPayload


class UserActivatedEnvelope(Envelope):
    event_type: EventType = EventType.USER_ACTIVATED
    payload: UserActivatedPayload


class UserRoleChangedEnvelope(Envelope):
    event_type: EventType = EventType.USER_ROLE_CHANGED
    payload: UserRoleChangedPayload


class BedStatusChangedEnvelope(Envelope):
    event_type: EventType = EventType.BED_STATUS_CHANGED
    payload: BedStatusChangedPayload


class AuditLogEnvelope(Envelope):
    event_type: EventType = EventType.AUDIT_LOG
    payload: AuditLogPayload


class DataAccessLogEnvelope(Envelope):
    event_type: EventType = EventType.AUDIT_DATA_ACCESS
    payload: DataAccessLogPayload


# Registry for deserialization by eventType
ENVELOPE_TYPE_MAP: dict[EventType, type[Envelope]] = {
    EventType.PATIENT_UPDATED: PatientUpdatedEnvelope,
    EventType.PATIENT_DEACTIVATED: PatientDeactivatedEnvelope,
    EventType.PATIENT_REACTIVATED: PatientReactivatedEnvelope,
    EventType.USER_CREATED: UserCreatedEnvelope,
    EventType.USER_UPDATED: UserUpdatedEnvelope,
    EventType.USER_DEACTIVATED: UserDeactivatedEnvelope,
    EventType.USER_ACTIVATED: UserActivatedEnvelope,
    EventType.USER_ROLE_CHANGED: UserRoleChangedEnvelope,
    EventType.BED_STATUS_CHANGED: BedStatusChangedEnvelope,
    EventType.AUDIT_LOG: AuditLogEnvelope,
    EventType.AUDIT_DATA_ACCESS: DataAccessLogEnvelope,
}


def envelope_class_for(event_type: str) -> type[Envelope]:
    """Return the typed envelope class for *event_type*, or the generic one."""
    try:
        return ENVELOPE_TYPE_MAP[EventType(event_type)]
    except ValueError:
        return Envelope
