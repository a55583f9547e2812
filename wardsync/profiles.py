"""Service profiles — which facts each consuming service applies, and where.

A profile names the denormalized copies one service keeps and builds the
executors that maintain them.  The dispatcher registers every executor of
the selected profile, one queue per fact.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from wardsync.cascade.audit import AuditLogWriter, DataAccessLogWriter
from wardsync.cascade.base import CascadeExecutor
from wardsync.cascade.bed import BedStatusChangedCascade
from wardsync.cascade.directory import UserActivationSync, UserCreatedSync
from wardsync.cascade.patient import PatientDeactivatedCascade, PatientUpdatedCascade
from wardsync.cascade.user import UserDeactivatedCascade, UserUpdatedCascade
from wardsync.models.cascade import CascadeTarget, StatusCancellation
from wardsync.models.envelopes import EventType

ExecutorFactory = Callable[[AsyncEngine, float | None], list[CascadeExecutor]]


@dataclass(frozen=True)
class ServiceProfile:
    name: str
    description: str
    build: ExecutorFactory

    def executors(
        self, engine: AsyncEngine, *, timeout_seconds: float | None = 30.0
    ) -> list[CascadeExecutor]:
        return self.build(engine, timeout_seconds)


def _targets(*specs: tuple[str, str, str]) -> tuple[CascadeTarget, ...]:
    return tuple(CascadeTarget(table=t, column=c, key_column=k) for t, c, k in specs)


# ---------------------------------------------------------------------------
# clinical-service
# ---------------------------------------------------------------------------

CLINICAL_PATIENT_CHI = _targets(
    ("encounters", "patient_chi", "patient_id"),
    ("discharge_forms", "patient_chi", "patient_id"),
    ("imaging_requests", "patient_chi", "patient_id"),
    ("controlled_drug_entries", "patient_chi", "patient_id"),
    ("emergency_visits", "patient_chi", "patient_id"),
    ("care_plans", "patient_chi", "patient_id"),
)

CLINICAL_USER_NAMES = _targets(
    ("emergency_visits", "attending_doctor_name", "attending_doctor_id"),
    ("emergency_visits", "triaged_by_name", "triaged_by_id"),
    ("clinical_notes", "author_name", "author_id"),
    ("imaging_requests", "requested_by_name", "requested_by_id"),
    ("imaging_requests", "reported_by_name", "reported_by_id"),
    ("controlled_drug_entries", "administered_by_name", "administered_by_id"),
    ("controlled_drug_entries", "witness_name", "witness_id"),
    ("care_plans", "created_by_name", "created_by_id"),
    ("care_plans", "reviewed_by_name", "reviewed_by_id"),
)


def _clinical(engine: AsyncEngine, timeout: float | None) -> list[CascadeExecutor]:
    return [
        PatientUpdatedCascade(engine, chi_targets=CLINICAL_PATIENT_CHI, timeout_seconds=timeout),
        UserUpdatedCascade(engine, name_targets=CLINICAL_USER_NAMES, timeout_seconds=timeout),
        BedStatusChangedCascade(engine, timeout_seconds=timeout),
    ]


# ---------------------------------------------------------------------------
# appointment-service
# ---------------------------------------------------------------------------

APPOINTMENT_PATIENT_CHI = _targets(("appointments", "patient_chi", "patient_id"))
APPOINTMENT_PATIENT_NAMES = _targets(("appointments", "patient_name", "patient_id"))

APPOINTMENT_USER_NAMES = _targets(
    ("appointments", "doctor_name", "doctor_id"),
    ("clinician_availability", "clinician_name", "clinician_id"),
    ("reschedule_requests", "requested_by_name", "requested_by_id"),
)

PATIENT_APPOINTMENT_CANCELLATION = StatusCancellation(
    table="appointments",
    key_column="patient_id",
    note=" [Auto-cancelled: patient deactivated]",
)

DOCTOR_APPOINTMENT_CANCELLATION = StatusCancellation(
    table="appointments",
    key_column="doctor_id",
    note=" [Auto-cancelled: doctor deactivated]",
)

CLINICIAN_OFFLINE = StatusCancellation(
    table="clinician_availability",
    key_column="clinician_id",
    active_statuses=(),
    cancelled_status="offline",
    notes_column=None,
)


def _appointment(engine: AsyncEngine, timeout: float | None) -> list[CascadeExecutor]:
    return [
        PatientUpdatedCascade(
            engine,
            chi_targets=APPOINTMENT_PATIENT_CHI,
            name_targets=APPOINTMENT_PATIENT_NAMES,
            timeout_seconds=timeout,
        ),
        PatientDeactivatedCascade(
            engine,
            cancellations=(PATIENT_APPOINTMENT_CANCELLATION,),
            timeout_seconds=timeout,
        ),
        UserUpdatedCascade(engine, name_targets=APPOINTMENT_USER_NAMES, timeout_seconds=timeout),
        UserDeactivatedCascade(
            engine,
            cancellations=(DOCTOR_APPOINTMENT_CANCELLATION, CLINICIAN_OFFLINE),
            timeout_seconds=timeout,
        ),
    ]


# ---------------------------------------------------------------------------
# user-service
# ---------------------------------------------------------------------------


def _user(engine: AsyncEngine, timeout: float | None) -> list[CascadeExecutor]:
    return [
        UserCreatedSync(engine, timeout_seconds=timeout),
        UserActivationSync(engine, event_type=EventType.USER_ACTIVATED, timeout_seconds=timeout),
        UserActivationSync(engine, event_type=EventType.USER_DEACTIVATED, timeout_seconds=timeout),
    ]


# ---------------------------------------------------------------------------
# audit-service
# ---------------------------------------------------------------------------


def _audit(engine: AsyncEngine, timeout: float | None) -> list[CascadeExecutor]:
    return [
        AuditLogWriter(engine, timeout_seconds=timeout),
        DataAccessLogWriter(engine, timeout_seconds=timeout),
    ]


PROFILES: dict[str, ServiceProfile] = {
    "clinical-service": ServiceProfile(
        name="clinical-service",
        description="Encounters, notes, imaging, drugs, care plans: CHI, clinician names, beds",
        build=_clinical,
    ),
    "appointment-service": ServiceProfile(
        name="appointment-service",
        description="Appointments and availability: patient/doctor names, cancellations",
        build=_appointment,
    ),
    "user-service": ServiceProfile(
        name="user-service",
        description="User directory replica: creation and activation state",
        build=_user,
    ),
    "audit-service": ServiceProfile(
        name="audit-service",
        description="Audit trail: audit and data-access records from every service",
        build=_audit,
    ),
}


def get_profile(name: str) -> ServiceProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise KeyError(
            f"Unknown service profile {name!r}. Known: {', '.join(sorted(PROFILES))}"
        ) from None
