"""Adversarial tests — envelope validation and rejection.

These tests verify that:
1. Malformed JSON is rejected
2. Missing or mismatched eventType is rejected
3. Payloads that do not fit the fact's model are rejected
4. Table and column names in cascade targets cannot carry SQL
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from wardsync.core.codec import MalformedEnvelopeError, decode_envelope
from wardsync.models.cascade import CascadeTarget, StatusCancellation


def _body(**fields) -> bytes:
    data = {"eventType": "patient.updated", "source": "patient-service", "payload": {"patientId": "p1"}}
    data.update(fields)
    return json.dumps(data).encode()


class TestEnvelopeRejection:
    """Ensure invalid envelopes are caught and rejected."""

    def test_reject_empty_bytes(self):
        with pytest.raises(MalformedEnvelopeError, match="Invalid JSON"):
            decode_envelope(b"")

    def test_reject_malformed_json(self):
        with pytest.raises(MalformedEnvelopeError, match="Invalid JSON"):
            decode_envelope(b"this is not json {{{")

    def test_reject_non_utf8(self):
        with pytest.raises(MalformedEnvelopeError, match="UTF-8"):
            decode_envelope(b"\xff\xfe{}")

    def test_reject_json_array(self):
        with pytest.raises(MalformedEnvelopeError, match="JSON object"):
            decode_envelope(b"[]")

    def test_reject_missing_event_type(self):
        body = json.dumps({"source": "x", "payload": {}}).encode()
        with pytest.raises(MalformedEnvelopeError, match="Missing eventType"):
            decode_envelope(body)

    def test_reject_non_string_event_type(self):
        with pytest.raises(MalformedEnvelopeError, match="Missing eventType"):
            decode_envelope(_body(eventType=42))

    def test_reject_event_type_mismatch(self):
        with pytest.raises(MalformedEnvelopeError, match="Expected eventType"):
            decode_envelope(_body(), expected_type="user.updated")

    def test_reject_payload_missing_key(self):
        with pytest.raises(MalformedEnvelopeError, match="validation failed"):
            decode_envelope(_body(payload={"chiNumber": "NEWCHI123"}))

    def test_reject_payload_wrong_type(self):
        with pytest.raises(MalformedEnvelopeError):
            decode_envelope(_body(payload="patientId=p1"))

    def test_reject_missing_source(self):
        body = json.dumps({"eventType": "patient.updated", "payload": {"patientId": "p1"}}).encode()
        with pytest.raises(MalformedEnvelopeError):
            decode_envelope(body)

    def test_reject_bad_timestamp(self):
        with pytest.raises(MalformedEnvelopeError):
            decode_envelope(_body(timestamp="yesterday"))

    def test_reject_bad_access_type(self):
        body = json.dumps(
            {
                "eventType": "audit.data-access",
                "source": "x",
                "payload": {"actor": "u1", "patientId": "p1", "dataType": "record", "accessType": "steal"},
            }
        ).encode()
        with pytest.raises(MalformedEnvelopeError):
            decode_envelope(body)


class TestIdentifierInjection:
    """Cascade targets are interpolated as identifiers; only plain names pass."""

    @pytest.mark.parametrize(
        "name",
        ["appointments; DROP TABLE users", "patient_chi--", "a.b", "1table", "name with space", ""],
    )
    def test_target_rejects_non_identifier(self, name):
        with pytest.raises(ValidationError):
            CascadeTarget(table=name, column="patient_chi", key_column="patient_id")
        with pytest.raises(ValidationError):
            CascadeTarget(table="appointments", column=name, key_column="patient_id")

    def test_cancellation_rejects_non_identifier(self):
        with pytest.raises(ValidationError):
            StatusCancellation(table="appointments", key_column="patient_id OR 1=1")
        with pytest.raises(ValidationError):
            StatusCancellation(table="appointments", key_column="patient_id", notes_column="notes;")
