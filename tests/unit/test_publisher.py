"""Tests for the event publisher."""

from __future__ import annotations

import json

import pytest

from wardsync.bridge.local_transport import LocalBroker
from wardsync.core.publisher import EventPublisher
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.models.connection import ConnectionState
from wardsync.models.envelopes import (
    Envelope,
    EventType,
    PatientUpdatedEnvelope,
    PatientUpdatedPayload,
)
from wardsync.models.topology import ExchangeKind, ExchangeSpec, Topology

EXCHANGES = Topology(
    exchanges=(
        ExchangeSpec(name="clinical.events", kind=ExchangeKind.TOPIC),
        ExchangeSpec(name="clinical.audit", kind=ExchangeKind.DIRECT),
    )
)


@pytest.fixture
def ready(supervisor: ConnectionSupervisor):
    async def _ready() -> ConnectionSupervisor:
        supervisor.add_topology(EXCHANGES)
        await supervisor.start()
        return supervisor

    return _ready


@pytest.fixture
def offline_publisher(make_supervisor) -> EventPublisher:
    return EventPublisher(make_supervisor(), source="patient-service")


class TestBuildEnvelope:
    def test_typed_envelope_for_known_fact(self, offline_publisher: EventPublisher):
        envelope = offline_publisher.build_envelope(
            "patient.updated", {"patientId": "p1", "chiNumber": "NEWCHI123"}
        )
        assert isinstance(envelope, PatientUpdatedEnvelope)
        assert envelope.source == "patient-service"
        assert envelope.payload.chi_number == "NEWCHI123"

    def test_fresh_event_id_each_time(self, offline_publisher: EventPublisher):
        first = offline_publisher.build_envelope("patient.updated", {"patientId": "p1"})
        second = offline_publisher.build_envelope("patient.updated", {"patientId": "p1"})
        assert first.event_id != second.event_id

    def test_correlation_id_carried(self, offline_publisher: EventPublisher):
        envelope = offline_publisher.build_envelope("patient.updated", {"patientId": "p1"}, "req-42")
        assert envelope.correlation_id == "req-42"

    def test_model_payload_accepted(self, offline_publisher: EventPublisher):
        payload = PatientUpdatedPayload(patient_id="p1", first_name="John")
        envelope = offline_publisher.build_envelope("patient.updated", payload)
        assert envelope.payload == payload

    def test_unknown_fact_uses_generic_envelope(self, offline_publisher: EventPublisher):
        envelope = offline_publisher.build_envelope("ward.closed", {"wardId": "w1"})
        assert type(envelope) is Envelope
        assert envelope.payload == {"wardId": "w1"}


class TestPublish:
    @pytest.mark.asyncio
    async def test_not_ready_returns_false(self, broker: LocalBroker, publisher: EventPublisher):
        assert await publisher.publish_patient_updated({"patientId": "p1"}) is False
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_message_properties(self, broker: LocalBroker, publisher: EventPublisher, ready):
        await ready()
        assert await publisher.publish_patient_updated({"patientId": "p1"}, correlation_id="req-1")

        exchange, routing_key, message = broker.published[0]
        body = json.loads(message.body)
        assert (exchange, routing_key) == ("clinical.events", "patient.updated")
        assert message.message_id == body["eventId"]
        assert message.correlation_id == "req-1"
        assert message.persistent
        assert message.content_type == "application/json"
        assert message.headers == {"source": "patient-service", "eventType": "patient.updated"}
        assert body["payload"]["patientId"] == "p1"

    @pytest.mark.asyncio
    async def test_invalid_payload_returns_false(self, broker: LocalBroker, publisher: EventPublisher, ready):
        await ready()
        assert await publisher.publish_user_created({"userId": "u1"}) is False
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_undecodable_bytes_return_false(self, broker: LocalBroker, publisher: EventPublisher, ready):
        await ready()
        assert await publisher.publish("clinical.events", "ward.note", {"blob": b"\xff\xfe"}) is False
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_unserializable_audit_values_return_false(
        self, broker: LocalBroker, publisher: EventPublisher, ready
    ):
        await ready()
        ok = await publisher.publish_audit_log(
            {
                "action": "update",
                "resource": "patient",
                "outcome": "success",
                "afterValues": {"o": object()},
            }
        )
        assert ok is False
        assert broker.published == []

    @pytest.mark.asyncio
    async def test_audit_facts_use_audit_exchange(self, broker: LocalBroker, publisher: EventPublisher, ready):
        await ready()
        assert await publisher.publish_event(
            EventType.AUDIT_LOG, {"action": "login", "resource": "session", "outcome": "success"}
        )
        assert broker.published[0][0] == "clinical.audit"
        assert broker.published[0][1] == "audit.log"

    @pytest.mark.asyncio
    async def test_severed_session_returns_false_and_reconnects(
        self, broker: LocalBroker, supervisor: ConnectionSupervisor, publisher: EventPublisher, ready
    ):
        await ready()
        broker.sever_connections()

        assert await publisher.publish_bed_status_changed(
            {"bedId": "b1", "newStatus": "available"}
        ) is False
        assert supervisor.state == ConnectionState.DISCONNECTED

        await supervisor.wait_settled()
        assert await publisher.publish_bed_status_changed({"bedId": "b1", "newStatus": "available"})

    @pytest.mark.asyncio
    async def test_each_helper_routes_its_fact(self, broker: LocalBroker, publisher: EventPublisher, ready):
        await ready()
        await publisher.publish_patient_deactivated({"patientId": "p1"})
        await publisher.publish_patient_reactivated({"patientId": "p1"})
        await publisher.publish_user_updated({"userId": "u1"})
        await publisher.publish_user_deactivated({"userId": "u1"})
        await publisher.publish_user_activated({"userId": "u1"})
        await publisher.publish_user_role_changed({"userId": "u1", "oldRole": "nurse", "newRole": "doctor"})
        await publisher.publish_data_access_log(
            {"actor": "u1", "patientId": "p1", "dataType": "record", "accessType": "read"}
        )
        assert [key for _, key, _ in broker.published] == [
            "patient.deactivated",
            "patient.reactivated",
            "user.updated",
            "user.deactivated",
            "user.activated",
            "user.role.changed",
            "audit.data-access",
        ]
