"""Cascade executor base — one fact, one transaction, all or nothing.

A cascade rewrites every denormalized copy of a value that changed in
another service.  ``CascadeExecutor.execute``:

1. Checks out one pooled connection and opens a transaction.
2. Asks ``plan()`` for the statements to run.  ``None`` means the new value
   cannot be derived and the fact is skipped; ``[]`` means there is nothing
   to do.
3. Runs every statement.  The transaction commits only if all succeed;
   otherwise it rolls back and ``CascadeFailure`` is raised, so the
   dispatcher nacks and the broker redelivers.

Statements are set-based ``UPDATE ... WHERE <key> = :id`` keyed on stable
identifiers, so applying the same fact twice converges to the same rows.
Executors that keep a record of the fact insert one row keyed on its
``eventId`` instead, skipping the insert when that row already exists.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import String, column, func, select, table, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.models.cascade import (
    CascadeResult,
    CascadeStatus,
    CascadeTarget,
    StatusCancellation,
)
from wardsync.models.envelopes import Envelope, EventType, FieldChange

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


class CascadeFailure(RuntimeError):
    """Raised when a cascade could not be committed.  The fact is retried."""


# ---------------------------------------------------------------------------
# Name helpers
# ---------------------------------------------------------------------------


def compose_full_name(first_name: str, last_name: str) -> str:
    return f"{first_name} {last_name}".strip()


def splice_full_name(
    current: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
) -> str:
    """Replace one component of an existing full name.

    The first word is the first name; everything after it is the last name.

    >>> splice_full_name("Jane Doe", first_name="Janet")
    'Janet Doe'
    >>> splice_full_name("Mary Anne Smith", last_name="Jones")
    'Mary Jones'
    """
    parts = current.split()
    if first_name:
        return compose_full_name(first_name, " ".join(parts[1:]))
    if last_name:
        return compose_full_name(parts[0] if parts else "", last_name)
    return current


def changed_value(changes: Mapping[str, FieldChange], field: str) -> Any:
    """New value of *field* if the fact says it changed, else ``None``."""
    change = changes.get(field)
    return None if change is None else change.new


# ---------------------------------------------------------------------------
# Statement builders
# ---------------------------------------------------------------------------


def update_copy(target: CascadeTarget, value: Any, key: Any) -> Executable:
    """``UPDATE <table> SET <column> = :value WHERE <key_column> = :key``."""
    tbl = table(target.table, column(target.column), column(target.key_column))
    return (
        update(tbl)
        .where(tbl.c[target.key_column] == key)
        .values({target.column: value})
    )


def cancel_rows(cancellation: StatusCancellation, key: Any) -> Executable:
    """Move rows still in an active status to the cancelled status."""
    cols = [column(cancellation.key_column), column(cancellation.status_column, String)]
    if cancellation.notes_column:
        cols.append(column(cancellation.notes_column, String))
    tbl = table(cancellation.table, *cols)

    values: dict[str, Any] = {cancellation.status_column: cancellation.cancelled_status}
    if cancellation.notes_column and cancellation.note:
        notes = tbl.c[cancellation.notes_column]
        values[cancellation.notes_column] = func.coalesce(notes, "").concat(cancellation.note)

    stmt = update(tbl).where(tbl.c[cancellation.key_column] == key)
    if cancellation.active_statuses:
        stmt = stmt.where(tbl.c[cancellation.status_column].in_(cancellation.active_statuses))
    return stmt.values(values)


async def read_existing_copy(
    conn: AsyncConnection,
    targets: Iterable[CascadeTarget],
    key: Any,
) -> str | None:
    """First non-empty copy found across *targets*, in declared order."""
    for target in targets:
        tbl = table(target.table, column(target.column, String), column(target.key_column))
        stmt = (
            select(tbl.c[target.column])
            .where(tbl.c[target.key_column] == key)
            .where(tbl.c[target.column].is_not(None))
            .limit(1)
        )
        value = (await conn.execute(stmt)).scalar()
        if value:
            return str(value)
    return None


async def resolve_full_name(
    conn: AsyncConnection,
    targets: Sequence[CascadeTarget],
    key: Any,
    *,
    first_name: str | None,
    last_name: str | None,
) -> str | None:
    """Full name after a rename, or ``None`` when it cannot be derived.

    With both components known the name is composed directly.  With only
    one, an existing copy is borrowed from *targets* and the changed
    component spliced in.
    """
    if first_name and last_name:
        return compose_full_name(first_name, last_name)
    if not first_name and not last_name:
        return None
    current = await read_existing_copy(conn, targets, key)
    if current is None:
        return None
    return splice_full_name(current, first_name=first_name, last_name=last_name)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class CascadeExecutor(abc.ABC, Generic[P]):
    """Applies one fact to this service's denormalized copies.

    Parameters
    ----------
    engine:
        Async engine of the consuming service's datastore.
    timeout_seconds:
        Upper bound on the whole unit of work, transaction included.
        ``None`` disables the bound.
    """

    event_type: ClassVar[EventType]
    payload_model: ClassVar[type[BaseModel]]

    def __init__(self, engine: AsyncEngine, *, timeout_seconds: float | None = 30.0) -> None:
        self._engine = engine
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    async def plan(
        self, conn: AsyncConnection, payload: P, envelope: Envelope
    ) -> list[Executable] | None:
        """Statements to run in the open transaction.

        *envelope* is the fact as received; most executors need only the
        validated *payload*.

        Return ``[]`` when the fact carries nothing this service stores and
        ``None`` when the new value cannot be derived (skip, not retried).
        """

    def describe(self) -> list[str]:
        """Human-readable list of what this executor writes."""
        return []

    async def execute(self, envelope: Envelope) -> CascadeResult:
        """Run the cascade for *envelope*.

        Raises
        ------
        CascadeFailure
            On payload mismatch, any database error, or timeout.  Nothing
            has been committed when this is raised.
        """
        payload = self._payload(envelope)
        try:
            if self._timeout is None:
                return await self._run(envelope, payload)
            return await asyncio.wait_for(self._run(envelope, payload), self._timeout)
        except asyncio.TimeoutError as exc:
            raise CascadeFailure(
                f"{self.name}: {envelope.event_id} exceeded {self._timeout}s; rolled back"
            ) from exc

    async def _run(self, envelope: Envelope, payload: P) -> CascadeResult:
        rows = 0
        try:
            async with self._engine.begin() as conn:
                statements = await self.plan(conn, payload, envelope)
                if statements is None:
                    logger.warning(
                        "%s: skipped %s event %s; value not derivable from payload or existing copies",
                        self.name,
                        self.event_type.value,
                        envelope.event_id,
                    )
                    return self._result(
                        envelope,
                        CascadeStatus.SKIPPED,
                        reason="value not derivable",
                    )
                for stmt in statements:
                    result = await conn.execute(stmt)
                    rows += max(result.rowcount or 0, 0)
        except SQLAlchemyError as exc:
            raise CascadeFailure(
                f"{self.name}: {envelope.event_id} rolled back: {exc}"
            ) from exc

        if not statements:
            return self._result(envelope, CascadeStatus.NOOP)
        logger.info(
            "%s: cascaded %s event %s (%d statements, %d rows)",
            self.name,
            self.event_type.value,
            envelope.event_id,
            len(statements),
            rows,
        )
        return self._result(
            envelope,
            CascadeStatus.APPLIED,
            statements=len(statements),
            rows_affected=rows,
        )

    def _payload(self, envelope: Envelope) -> P:
        payload = envelope.payload
        if isinstance(payload, self.payload_model):
            return payload  # type: ignore[return-value]
        try:
            return self.payload_model.model_validate(payload)  # type: ignore[return-value]
        except ValidationError as exc:
            raise CascadeFailure(
                f"{self.name}: payload of {envelope.event_id} is not {self.payload_model.__name__}"
            ) from exc

    def _result(self, envelope: Envelope, status: CascadeStatus, **kwargs: Any) -> CascadeResult:
        return CascadeResult(
            event_id=envelope.event_id,
            event_type=self.event_type.value,
            status=status,
            **kwargs,
        )
