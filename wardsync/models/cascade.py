"""Cascade models — where denormalized copies live and what a cascade did."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Not a plain SQL identifier: {value!r}")
    return value


class CascadeTarget(BaseModel):
    """One denormalized copy: ``<table>.<column>`` keyed by ``<key_column>``."""

    model_config = ConfigDict(frozen=True)

    table: str
    column: str
    key_column: str

    @field_validator("table", "column", "key_column")
    @classmethod
    def check_identifiers(cls, v: str) -> str:
        return _check_identifier(v)

    def __str__(self) -> str:
        return f"{self.table}.{self.column} by {self.key_column}"


class StatusCancellation(BaseModel):
    """Cancel rows still in an active status, appending an explanatory note.

    Rows already cancelled no longer match ``active_statuses``, so the note
    is appended once no matter how often the fact is redelivered.  An empty
    ``active_statuses`` matches every row for the key.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    key_column: str
    status_column: str = "status"
    active_statuses: tuple[str, ...] = ("scheduled", "confirmed", "pending_acceptance")
    cancelled_status: str = "cancelled"
    notes_column: str | None = "notes"
    note: str = ""

    @field_validator("table", "key_column", "status_column")
    @classmethod
    def check_identifiers(cls, v: str) -> str:
        return _check_identifier(v)

    @field_validator("notes_column")
    @classmethod
    def check_notes_identifier(cls, v: str | None) -> str | None:
        return None if v is None else _check_identifier(v)


class CascadeStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"  # fact carried nothing this service stores
    SKIPPED = "skipped"  # value not derivable; logged, not retried


class CascadeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    status: CascadeStatus
    statements: int = 0
    rows_affected: int = 0
    reason: str = ""
