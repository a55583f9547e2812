"""wardsync data models — all Pydantic v2, all frozen (immutable)."""

from wardsync.models.audit import AuditContext, AuditOutcome, DataAccessType
from wardsync.models.cascade import (
    CascadeResult,
    CascadeStatus,
    CascadeTarget,
    StatusCancellation,
)
from wardsync.models.connection import (
    VALID_TRANSITIONS,
    ConnectionState,
    ConnectionTransition,
)
from wardsync.models.envelopes import (
    ENVELOPE_TYPE_MAP,
    SCHEMA_VERSION,
    AuditLogPayload,
    BedStatusChangedPayload,
    DataAccessLogPayload,
    Envelope,
    EventType,
    FieldChange,
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
from wardsync.models.topology import (
    BindingSpec,
    ExchangeKind,
    ExchangeSpec,
    QueueSpec,
    Topology,
    TopologyError,
    consumer_queue_name,
    dead_letter_routing_key,
    topic_matches,
)

__all__ = [
    # audit
    "AuditContext",
    "AuditOutcome",
    "DataAccessType",
    # cascade
    "CascadeResult",
    "CascadeStatus",
    "CascadeTarget",
    "StatusCancellation",
    # connection
    "ConnectionState",
    "ConnectionTransition",
    "VALID_TRANSITIONS",
    # envelopes
    "ENVELOPE_TYPE_MAP",
    "SCHEMA_VERSION",
    "Envelope",
    "EventType",
    "FieldChange",
    "AuditLogPayload",
    "BedStatusChangedPayload",
    "DataAccessLogPayload",
    "PatientDeactivatedPayload",
    "PatientReactivatedPayload",
    "PatientUpdatedPayload",
    "UserActivatedPayload",
    "UserCreatedPayload",
    "UserDeactivatedPayload",
    "UserRoleChangedPayload",
    "UserUpdatedPayload",
    "envelope_class_for",
    # topology
    "BindingSpec",
    "ExchangeKind",
    "ExchangeSpec",
    "QueueSpec",
    "Topology",
    "TopologyError",
    "consumer_queue_name",
    "dead_letter_routing_key",
    "topic_matches",
]
