"""Envelope codec — JSON bytes on the wire, validated models in process.

Decoding determines the envelope model from ``eventType`` and validates
every field.  Anything that fails here is a malformed envelope: the
dispatcher rejects it back to the broker rather than guessing.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from wardsync.models.envelopes import Envelope, EventType, envelope_class_for


class MalformedEnvelopeError(ValueError):
    """Raised when a delivery cannot be decoded into a valid envelope."""


def encode_envelope(envelope: Envelope) -> bytes:
    """Serialize an envelope to compact UTF-8 JSON with camelCase keys."""
    data = envelope.model_dump(mode="json", by_alias=True)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_envelope(
    raw: bytes | str,
    *,
    expected_type: EventType | str | None = None,
) -> Envelope:
    """Deserialize and validate a raw JSON envelope.

    Parameters
    ----------
    raw:
        Message body as received from the broker.
    expected_type:
        When given, the decoded ``eventType`` must equal it.  A queue bound
        to one fact must never hand its handler a different one.

    Raises
    ------
    MalformedEnvelopeError
        On invalid JSON, a non-object body, a missing or mismatched
        ``eventType``, or payload validation failure.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEnvelopeError(f"Body is not UTF-8: {exc}") from exc

    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedEnvelopeError(f"Invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedEnvelopeError(
            f"Envelope must be a JSON object, got {type(data).__name__}"
        )

    event_type = data.get("eventType")
    if not event_type or not isinstance(event_type, str):
        raise MalformedEnvelopeError("Missing eventType field")

    if expected_type is not None:
        expected = expected_type.value if isinstance(expected_type, EventType) else expected_type
        if event_type != expected:
            raise MalformedEnvelopeError(
                f"Expected eventType {expected!r}, got {event_type!r}"
            )

    model_cls = envelope_class_for(event_type)
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        raise MalformedEnvelopeError(
            f"Envelope validation failed for {event_type!r}: {exc}"
        ) from exc
