"""Bed cascade — keep the active encounter's bed reference in step with the ward."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import column, table, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.cascade.base import CascadeExecutor
from wardsync.models.envelopes import BedStatusChangedPayload, Envelope, EventType


class BedStatusChangedCascade(CascadeExecutor[BedStatusChangedPayload]):
    """``occupied`` assigns the bed to the patient's active encounter;
    ``available`` clears it from whichever active encounter held it.
    Other statuses (cleaning, maintenance, ...) are not stored here.
    """

    event_type = EventType.BED_STATUS_CHANGED
    payload_model = BedStatusChangedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        table_name: str = "encounters",
        bed_column: str = "bed_id",
        patient_column: str = "patient_id",
        status_column: str = "status",
        active_statuses: Sequence[str] = ("admitted", "in_treatment"),
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self._table = table(
            table_name,
            column(bed_column),
            column(patient_column),
            column(status_column),
        )
        self._bed = bed_column
        self._patient = patient_column
        self._status = status_column
        self._active = tuple(active_statuses)

    def describe(self) -> list[str]:
        return [f"{self._table.name}.{self._bed} by {self._patient}"]

    async def plan(
        self, conn: AsyncConnection, payload: BedStatusChangedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        tbl = self._table
        active = tbl.c[self._status].in_(self._active)
        if payload.new_status == "occupied" and payload.patient_id:
            return [
                update(tbl)
                .where(tbl.c[self._patient] == payload.patient_id)
                .where(active)
                .values({self._bed: payload.bed_id})
            ]
        if payload.new_status == "available":
            return [
                update(tbl)
                .where(tbl.c[self._bed] == payload.bed_id)
                .where(active)
                .values({self._bed: None})
            ]
        return []
