"""Reference schema of the tables the service profiles write to.

Each service owns its own database and its own migrations; these
definitions mirror only the columns the cascades touch.  They back the
in-process demo and the test suite, where every table lives in one
throwaway SQLite file.
"""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, DateTime, MetaData, String, Table, Text
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()


def _id() -> Column:
    return Column("id", String(36), primary_key=True)


# ---------------------------------------------------------------------------
# clinical-service
# ---------------------------------------------------------------------------

encounters = Table(
    "encounters",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
    Column("bed_id", String(36)),
    Column("status", String(20), nullable=False, default="admitted"),
)

discharge_forms = Table(
    "discharge_forms",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
)

imaging_requests = Table(
    "imaging_requests",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
    Column("requested_by_id", String(36)),
    Column("requested_by_name", String(200)),
    Column("reported_by_id", String(36)),
    Column("reported_by_name", String(200)),
)

controlled_drug_entries = Table(
    "controlled_drug_entries",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
    Column("administered_by_id", String(36)),
    Column("administered_by_name", String(200)),
    Column("witness_id", String(36)),
    Column("witness_name", String(200)),
)

emergency_visits = Table(
    "emergency_visits",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
    Column("attending_doctor_id", String(36)),
    Column("attending_doctor_name", String(200)),
    Column("triaged_by_id", String(36)),
    Column("triaged_by_name", String(200)),
)

care_plans = Table(
    "care_plans",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_chi", String(10)),
    Column("created_by_id", String(36)),
    Column("created_by_name", String(200)),
    Column("reviewed_by_id", String(36)),
    Column("reviewed_by_name", String(200)),
)

clinical_notes = Table(
    "clinical_notes",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("author_id", String(36)),
    Column("author_name", String(200)),
)

# ---------------------------------------------------------------------------
# appointment-service
# ---------------------------------------------------------------------------

appointments = Table(
    "appointments",
    metadata,
    _id(),
    Column("patient_id", String(36), nullable=False, index=True),
    Column("patient_name", String(200)),
    Column("patient_chi", String(10)),
    Column("doctor_id", String(36), index=True),
    Column("doctor_name", String(200)),
    Column("status", String(30), nullable=False, default="scheduled"),
    Column("notes", Text),
)

clinician_availability = Table(
    "clinician_availability",
    metadata,
    _id(),
    Column("clinician_id", String(36), nullable=False, index=True),
    Column("clinician_name", String(200)),
    Column("status", String(20), nullable=False, default="available"),
)

reschedule_requests = Table(
    "reschedule_requests",
    metadata,
    _id(),
    Column("appointment_id", String(36)),
    Column("requested_by_id", String(36)),
    Column("requested_by_name", String(200)),
)

# ---------------------------------------------------------------------------
# user-service
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    _id(),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(50)),
    Column("phone_number", String(30)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("deactivated_at", DateTime(timezone=True)),
    Column("deactivated_by", String(36)),
)


# ---------------------------------------------------------------------------
# audit-service
# ---------------------------------------------------------------------------

audit_logs = Table(
    "audit_logs",
    metadata,
    _id(),
    Column("user_id", String(36), index=True),
    Column("user_email", String(255)),
    Column("user_role", String(50)),
    Column("action", String(50), nullable=False, index=True),
    Column("resource", String(100), index=True),
    Column("resource_id", String(100)),
    Column("status", String(20), nullable=False, default="SUCCESS"),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("old_values", JSON),
    Column("new_values", JSON),
    Column("metadata", JSON),
    Column("request_id", String(100)),
    Column("session_id", String(100)),
    Column("service_name", String(50)),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

data_access_logs = Table(
    "data_access_logs",
    metadata,
    _id(),
    Column("user_id", String(36), nullable=False, index=True),
    Column("user_email", String(255)),
    Column("user_role", String(50)),
    Column("patient_id", String(36), index=True),
    Column("patient_mrn", String(50)),
    Column("data_type", String(100), nullable=False),
    Column("access_type", String(20), nullable=False),
    Column("sensitivity", String(20), nullable=False, default="PHI"),
    Column("fields_accessed", JSON),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("request_id", String(100)),
    Column("service_name", String(50)),
    Column("emergency_access", Boolean, nullable=False, default=False),
    Column("break_glass_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
