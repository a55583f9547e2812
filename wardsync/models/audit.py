"""Audit context — who is acting, from where, within which request."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

AuditOutcome = Literal["success", "failure", "error"]
DataAccessType = Literal["read", "write", "delete", "export"]
SensitivityLevel = Literal["low", "medium", "high", "phi"]


class AuditContext(BaseModel):
    """Request-scoped identity attached to every audit record."""

    model_config = ConfigDict(frozen=True)

    actor: str | None = None
    actor_email: str | None = None
    actor_role: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    correlation_id: str | None = None
