"""End-to-end integration tests — facts flowing between services.

These tests exercise MessagingRuntime, ConnectionSupervisor, EventPublisher,
ConsumerDispatcher, the cascade executors and AuditSink together against one
in-process broker, with each consuming service on its own SQLite database.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import create_async_engine

from wardsync import schema
from wardsync.bridge.local_transport import LocalBroker
from wardsync.bridge.transport import OutboundMessage
from wardsync.config import MessagingConfig, config
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.models.audit import AuditContext
from wardsync.models.connection import ConnectionState
from wardsync.runtime import MessagingRuntime


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


def _settings(service: str) -> MessagingConfig:
    return config.model_copy(
        update={"service_name": service, "delivery_limit": 3, "max_reconnect_attempts": 5}
    )


def _runtime(broker: LocalBroker, service: str, **kwargs) -> MessagingRuntime:
    settings = _settings(service)
    supervisor = kwargs.pop("supervisor", None) or ConnectionSupervisor.from_config(
        broker, settings, sleep=no_sleep
    )
    return MessagingRuntime(settings, transport=broker, supervisor=supervisor, **kwargs)


@pytest_asyncio.fixture
async def engines(tmp_path: Path):
    made = {
        name: create_async_engine(f"sqlite+aiosqlite:///{tmp_path / (name + '.db')}")
        for name in ("clinical", "appointments", "users")
    }
    for engine in made.values():
        await schema.create_schema(engine)
    async with made["clinical"].begin() as conn:
        await conn.execute(
            insert(schema.encounters),
            [{"id": "e1", "patient_id": "p1", "patient_chi": "OLDCHI456", "status": "admitted"}],
        )
        await conn.execute(
            insert(schema.clinical_notes),
            [{"id": "n1", "patient_id": "p1", "author_id": "u1", "author_name": "Jane Doe"}],
        )
    async with made["appointments"].begin() as conn:
        await conn.execute(
            insert(schema.appointments),
            [
                {
                    "id": "a1",
                    "patient_id": "p1",
                    "patient_chi": "OLDCHI456",
                    "doctor_id": "u1",
                    "doctor_name": "Jane Doe",
                    "status": "scheduled",
                }
            ],
        )
    yield made
    for engine in made.values():
        await engine.dispose()


async def _column(engine, table, column) -> dict:
    async with engine.connect() as conn:
        rows = (await conn.execute(select(table.c.id, table.c[column]))).all()
    return {row[0]: row[1] for row in rows}


class TestEventFlow:
    """Publish in one service, observe the cascade in every consumer."""

    @pytest.mark.asyncio
    async def test_chi_correction_reaches_every_consumer(self, broker: LocalBroker, engines):
        clinical = _runtime(broker, "clinical-service", engine=engines["clinical"], profile="clinical-service")
        appointments = _runtime(
            broker, "appointment-service", engine=engines["appointments"], profile="appointment-service"
        )
        patients = _runtime(broker, "patient-service")
        runtimes = [clinical, appointments, patients]
        try:
            for runtime in runtimes:
                await runtime.start()

            assert await patients.publisher.publish_patient_updated(
                {
                    "patientId": "p1",
                    "chiNumber": "NEWCHI123",
                    "changes": {"chiNumber": {"old": "OLDCHI456", "new": "NEWCHI123"}},
                }
            )
            await broker.drain()

            assert await _column(engines["clinical"], schema.encounters, "patient_chi") == {"e1": "NEWCHI123"}
            assert await _column(engines["appointments"], schema.appointments, "patient_chi") == {
                "a1": "NEWCHI123"
            }
            assert clinical.health()["acked"] == 1
            assert appointments.health()["acked"] == 1
        finally:
            for runtime in runtimes:
                await runtime.stop()

    @pytest.mark.asyncio
    async def test_partial_rename_and_deactivation(self, broker: LocalBroker, engines):
        clinical = _runtime(broker, "clinical-service", engine=engines["clinical"], profile="clinical-service")
        appointments = _runtime(
            broker, "appointment-service", engine=engines["appointments"], profile="appointment-service"
        )
        identity = _runtime(broker, "auth-service")
        runtimes = [clinical, appointments, identity]
        try:
            for runtime in runtimes:
                await runtime.start()

            await identity.publisher.publish_user_updated(
                {"userId": "u1", "changes": {"firstName": {"old": "Jane", "new": "Janet"}}}
            )
            await identity.publisher.publish_user_deactivated({"userId": "u1"})
            await broker.drain()

            assert await _column(engines["clinical"], schema.clinical_notes, "author_name") == {"n1": "Janet Doe"}
            assert await _column(engines["appointments"], schema.appointments, "doctor_name") == {"a1": "Janet Doe"}
            assert await _column(engines["appointments"], schema.appointments, "status") == {"a1": "cancelled"}
        finally:
            for runtime in runtimes:
                await runtime.stop()

    @pytest.mark.asyncio
    async def test_user_directory_replica(self, broker: LocalBroker, engines):
        users = _runtime(broker, "user-service", engine=engines["users"], profile="user-service")
        identity = _runtime(broker, "auth-service")
        try:
            await users.start()
            await identity.start()
            payload = {
                "userId": "u2",
                "email": "r.brown@example.org",
                "firstName": "Robert",
                "lastName": "Brown",
                "role": "nurse",
            }
            await identity.publisher.publish_user_created(payload)
            await identity.publisher.publish_user_created(payload)
            await identity.publisher.publish_user_deactivated({"userId": "u2", "deactivatedBy": "admin"})
            await broker.drain()

            assert await _column(engines["users"], schema.users, "is_active") == {"u2": False}
            assert users.health()["acked"] == 3
        finally:
            await users.stop()
            await identity.stop()

    @pytest.mark.asyncio
    async def test_poison_message_dead_lettered(self, broker: LocalBroker, engines):
        clinical = _runtime(broker, "clinical-service", engine=engines["clinical"], profile="clinical-service")
        try:
            await clinical.start()
            await clinical.supervisor.publish(
                "clinical.events", "patient.updated", OutboundMessage(body=b"{oops", message_id="bad-1")
            )
            await broker.drain()

            assert broker.queued_bodies("clinical-service.dead") == [b"{oops"]
            assert clinical.health()["malformed"] == 4
            assert clinical.supervisor.state == ConnectionState.READY
        finally:
            await clinical.stop()


class TestConnectionLoss:
    """Broker outages heal without losing facts."""

    @pytest.mark.asyncio
    async def test_facts_queued_while_consumer_down_are_applied(self, broker: LocalBroker, engines):
        gate = asyncio.Event()

        async def _held(_delay: float) -> None:
            await gate.wait()

        settings = _settings("clinical-service")
        clinical = _runtime(
            broker,
            "clinical-service",
            engine=engines["clinical"],
            profile="clinical-service",
            supervisor=ConnectionSupervisor.from_config(broker, settings, sleep=_held),
        )
        patients = _runtime(broker, "patient-service")
        try:
            await clinical.start()
            await patients.start()

            broker.drop_connections()
            assert await patients.publisher.publish_patient_updated({"patientId": "p1"}) is False
            await patients.supervisor.wait_settled()
            assert clinical.supervisor.state == ConnectionState.DISCONNECTED

            assert await patients.publisher.publish_patient_updated(
                {
                    "patientId": "p1",
                    "chiNumber": "NEWCHI123",
                    "changes": {"chiNumber": {"old": "OLDCHI456", "new": "NEWCHI123"}},
                }
            )
            assert broker.queue_depth("clinical-service.patient.updated") == 1

            gate.set()
            assert await clinical.supervisor.wait_until_ready(timeout=5)
            await broker.drain()

            assert await _column(engines["clinical"], schema.encounters, "patient_chi") == {"e1": "NEWCHI123"}
            assert clinical.health()["reconnect_attempts"] == 0
        finally:
            await clinical.stop()
            await patients.stop()

    @pytest.mark.asyncio
    async def test_broker_state_loss_is_redeclared(self, broker: LocalBroker, engines):
        clinical = _runtime(broker, "clinical-service", engine=engines["clinical"], profile="clinical-service")
        try:
            await clinical.start()
            broker.reset()
            broker.drop_connections()
            await clinical.supervisor.wait_settled()

            assert clinical.health()["healthy"]
            for event_type in clinical.dispatcher.event_types:
                assert broker.has_queue(clinical.dispatcher.queue_for(event_type))
            assert broker.has_queue("clinical-service.dead")
        finally:
            await clinical.stop()

    @pytest.mark.asyncio
    async def test_outage_longer_than_budget_gives_up(self, broker: LocalBroker):
        patients = _runtime(broker, "patient-service")
        broker.online = False
        try:
            await patients.start()
            await patients.supervisor.wait_settled()
            health = patients.health()
            assert health["gave_up"]
            assert health["reconnect_attempts"] == 5
            assert await patients.publisher.publish_patient_deactivated({"patientId": "p1"}) is False
        finally:
            await patients.stop()


class TestAuditOnShutdown:
    @pytest.mark.asyncio
    async def test_stop_flushes_pending_audit(self, broker: LocalBroker):
        auth = _runtime(broker, "auth-service")
        await auth.start()
        auth.audit.log_login("jane.doe@example.org", True, AuditContext(actor="u1"))
        await auth.stop()

        exchange, routing_key, message = broker.published[-1]
        assert (exchange, routing_key) == ("clinical.audit", "audit.log")
        assert json.loads(message.body)["source"] == "auth-service"
        assert auth.supervisor.state == ConnectionState.CLOSED



class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_audit_service_records_every_audit_fact(self, broker: LocalBroker, tmp_path: Path):
        store = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
        await schema.create_schema(store)
        trail = _runtime(broker, "audit-service", engine=store, profile="audit-service")
        auth = _runtime(broker, "auth-service")
        try:
            await trail.start()
            await auth.start()
            ctx = AuditContext(actor="u1", actor_role="doctor", correlation_id="req-5")
            auth.audit.log_login("jane.doe@example.org", True, ctx)
            auth.audit.log_patient_access("p1", "read", "clinical_notes", ctx)
            await auth.audit.flush()
            await broker.drain()

            actions = set((await _column(store, schema.audit_logs, "action")).values())
            assert actions == {"USER.LOGIN"}
            sources = set((await _column(store, schema.audit_logs, "service_name")).values())
            assert sources == {"auth-service"}
            access = await _column(store, schema.data_access_logs, "access_type")
            assert list(access.values()) == ["READ"]
            assert broker.queue_depth("audit-service.audit.log") == 0
            assert trail.health()["acked"] == 2
        finally:
            await trail.stop()
            await auth.stop()
            await store.dispose()
