"""Patient cascades — CHI number and name copies, cancellation on deactivation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.cascade.base import (
    CascadeExecutor,
    cancel_rows,
    changed_value,
    compose_full_name,
    resolve_full_name,
    update_copy,
)
from wardsync.models.cascade import CascadeTarget, StatusCancellation
from wardsync.models.envelopes import (
    Envelope,
    EventType,
    PatientDeactivatedPayload,
    PatientUpdatedPayload,
)

logger = logging.getLogger(__name__)


class PatientUpdatedCascade(CascadeExecutor[PatientUpdatedPayload]):
    """Rewrite CHI number and patient name copies after ``patient.updated``.

    Only fields listed in ``changes`` are cascaded.  When the name cannot be
    derived the name part is skipped; a CHI change in the same fact is
    still applied.
    """

    event_type = EventType.PATIENT_UPDATED
    payload_model = PatientUpdatedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        chi_targets: Sequence[CascadeTarget] = (),
        name_targets: Sequence[CascadeTarget] = (),
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self.chi_targets = tuple(chi_targets)
        self.name_targets = tuple(name_targets)

    def describe(self) -> list[str]:
        return [str(t) for t in self.chi_targets + self.name_targets]

    async def plan(
        self, conn: AsyncConnection, payload: PatientUpdatedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        statements: list[Executable] = []
        changes = payload.changes

        if self.chi_targets and "chiNumber" in changes:
            chi = payload.chi_number or changed_value(changes, "chiNumber")
            if chi:
                statements.extend(
                    update_copy(target, chi, payload.patient_id) for target in self.chi_targets
                )

        name_changed = "firstName" in changes or "lastName" in changes
        if self.name_targets and name_changed:
            if payload.first_name and payload.last_name:
                full_name: str | None = compose_full_name(payload.first_name, payload.last_name)
            else:
                full_name = await resolve_full_name(
                    conn,
                    self.name_targets,
                    payload.patient_id,
                    first_name=changed_value(changes, "firstName"),
                    last_name=changed_value(changes, "lastName"),
                )
            if full_name is None:
                logger.warning(
                    "No existing name copy for patient %s; name cascade skipped",
                    payload.patient_id,
                )
                if not statements:
                    return None
            else:
                statements.extend(
                    update_copy(target, full_name, payload.patient_id)
                    for target in self.name_targets
                )

        return statements


class PatientDeactivatedCascade(CascadeExecutor[PatientDeactivatedPayload]):
    """Cancel the patient's pending bookings after ``patient.deactivated``."""

    event_type = EventType.PATIENT_DEACTIVATED
    payload_model = PatientDeactivatedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        cancellations: Sequence[StatusCancellation] = (),
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self.cancellations = tuple(cancellations)

    def describe(self) -> list[str]:
        return [
            f"{c.table}.{c.status_column} -> {c.cancelled_status} by {c.key_column}"
            for c in self.cancellations
        ]

    async def plan(
        self, conn: AsyncConnection, payload: PatientDeactivatedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        return [cancel_rows(c, payload.patient_id) for c in self.cancellations]
