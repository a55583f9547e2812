"""Clinician cascades — name copies on rename, cancellations on deactivation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.cascade.base import (
    CascadeExecutor,
    cancel_rows,
    changed_value,
    resolve_full_name,
    update_copy,
)
from wardsync.models.cascade import CascadeTarget, StatusCancellation
from wardsync.models.envelopes import (
    Envelope,
    EventType,
    UserDeactivatedPayload,
    UserUpdatedPayload,
)

logger = logging.getLogger(__name__)


class UserUpdatedCascade(CascadeExecutor[UserUpdatedPayload]):
    """Rewrite every stored copy of a clinician's full name.

    ``user.updated`` carries only the changed fields.  When just one name
    component changed, the other is taken from an existing copy in
    ``name_targets`` (read in declared order within the same transaction).
    """

    event_type = EventType.USER_UPDATED
    payload_model = UserUpdatedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        name_targets: Sequence[CascadeTarget] = (),
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self.name_targets = tuple(name_targets)

    def describe(self) -> list[str]:
        return [str(t) for t in self.name_targets]

    async def plan(
        self, conn: AsyncConnection, payload: UserUpdatedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        first_name = changed_value(payload.changes, "firstName")
        last_name = changed_value(payload.changes, "lastName")
        if not self.name_targets or not (first_name or last_name):
            return []

        full_name = await resolve_full_name(
            conn,
            self.name_targets,
            payload.user_id,
            first_name=first_name,
            last_name=last_name,
        )
        if full_name is None:
            logger.warning(
                "No existing name copy for user %s; cannot complete partial rename",
                payload.user_id,
            )
            return None
        return [update_copy(target, full_name, payload.user_id) for target in self.name_targets]


class UserDeactivatedCascade(CascadeExecutor[UserDeactivatedPayload]):
    """Cancel a deactivated clinician's pending work and take them offline."""

    event_type = EventType.USER_DEACTIVATED
    payload_model = UserDeactivatedPayload

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
        self, conn: AsyncConnection, payload: UserDeactivatedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        return [cancel_rows(c, payload.user_id) for c in self.cancellations]
