"""Connection supervisor state models — explicit, validated transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Lifecycle of the single broker connection+channel a process owns."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    DECLARING_TOPOLOGY = "declaring_topology"
    READY = "ready"
    CLOSED = "closed"


# Valid state transitions — enforced structurally by ConnectionSupervisor.
# Any error returns to DISCONNECTED; CLOSED is terminal (process shutdown).
VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CONNECTING: {
        ConnectionState.DECLARING_TOPOLOGY,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSED,
    },
    ConnectionState.DECLARING_TOPOLOGY: {
        ConnectionState.READY,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSED,
    },
    ConnectionState.READY: {ConnectionState.DISCONNECTED, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),  # terminal
}


class ConnectionTransition(BaseModel):
    """Records a single supervisor state change."""

    model_config = ConfigDict(frozen=True)

    from_state: ConnectionState
    to_state: ConnectionState
    reason: str = ""
    attempt: int = 0  # consecutive failures at the time of the transition
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
