"""User-directory replica — keep a local ``users`` table in step with identity.

The replica is insert-if-absent on ``user.created`` and tracks the active
flag on ``user.activated`` / ``user.deactivated``.  Both are safe to apply
more than once.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, column, insert, or_, select, table, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

from wardsync.cascade.base import CascadeExecutor
from wardsync.models.envelopes import (
    Envelope,
    EventType,
    UserActivatedPayload,
    UserCreatedPayload,
    UserDeactivatedPayload,
)


def _users_table(name: str):
    return table(
        name,
        column("id", String),
        column("email", String),
        column("first_name", String),
        column("last_name", String),
        column("role", String),
        column("phone_number", String),
        column("is_active", Boolean),
        column("deactivated_at", DateTime(timezone=True)),
        column("deactivated_by", String),
    )


class UserCreatedSync(CascadeExecutor[UserCreatedPayload]):
    """Insert the user unless a row with the same id or email exists."""

    event_type = EventType.USER_CREATED
    payload_model = UserCreatedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        table_name: str = "users",
        timeout_seconds: float | None = 30.0,
    ) -> None:
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self._users = _users_table(table_name)

    def describe(self) -> list[str]:
        return [f"{self._users.name} insert by id/email"]

    async def plan(
        self, conn: AsyncConnection, payload: UserCreatedPayload, envelope: Envelope
    ) -> list[Executable] | None:
        users = self._users
        existing = await conn.execute(
            select(users.c.id)
            .where(or_(users.c.id == payload.user_id, users.c.email == payload.email))
            .limit(1)
        )
        if existing.first() is not None:
            return []
        return [
            insert(users).values(
                id=payload.user_id,
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
                role=payload.role,
                phone_number=payload.phone_number,
                is_active=payload.is_active,
            )
        ]


class UserActivationSync(CascadeExecutor[UserActivatedPayload | UserDeactivatedPayload]):
    """Mirror ``user.activated`` or ``user.deactivated`` onto ``is_active``.

    One instance handles one of the two facts; pass ``event_type``.
    """

    payload_model = UserActivatedPayload

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        event_type: EventType = EventType.USER_ACTIVATED,
        table_name: str = "users",
        timeout_seconds: float | None = 30.0,
    ) -> None:
        if event_type not in (EventType.USER_ACTIVATED, EventType.USER_DEACTIVATED):
            raise ValueError(f"UserActivationSync cannot handle {event_type.value!r}")
        super().__init__(engine, timeout_seconds=timeout_seconds)
        self.event_type = event_type  # type: ignore[misc]
        self.payload_model = (  # type: ignore[misc]
            UserActivatedPayload
            if event_type is EventType.USER_ACTIVATED
            else UserDeactivatedPayload
        )
        self._users = _users_table(table_name)

    @property
    def activates(self) -> bool:
        return self.event_type is EventType.USER_ACTIVATED

    def describe(self) -> list[str]:
        return [f"{self._users.name}.is_active by id"]

    async def plan(
        self,
        conn: AsyncConnection,
        payload: UserActivatedPayload | UserDeactivatedPayload,
        envelope: Envelope,
    ) -> list[Executable] | None:
        users = self._users
        if self.activates:
            values = {"is_active": True, "deactivated_at": None, "deactivated_by": None}
        else:
            values = {
                "is_active": False,
                "deactivated_at": datetime.now(timezone.utc),
                "deactivated_by": getattr(payload, "deactivated_by", None),
            }
        return [update(users).where(users.c.id == payload.user_id).values(values)]
