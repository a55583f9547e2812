"""Adversarial tests — consumer dispatcher resilience under failure.

These tests verify that:
1. Handlers raising any exception type are nacked, never crash the consumer
2. A failing fact does not stall other facts' queues
3. Poison messages end up in the dead-letter queue, not in a redelivery loop
4. Settlement happens exactly once per delivery
"""

from __future__ import annotations

import pytest

from wardsync.core.dispatcher import ConsumerDispatcher
from wardsync.models.envelopes import Envelope


@pytest.fixture
def dispatcher(supervisor) -> ConsumerDispatcher:
    return ConsumerDispatcher(supervisor, service_name="appointment-service", delivery_limit=1)


class TestHandlerExceptions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc_type",
        [RuntimeError, ValueError, KeyError, TypeError, ZeroDivisionError, ConnectionError, TimeoutError],
    )
    async def test_any_exception_is_nacked(self, broker, supervisor, publisher, dispatcher, exc_type):
        async def _explode(envelope: Envelope) -> None:
            raise exc_type("boom")

        dispatcher.register("user.updated", _explode)
        dispatcher.install()
        await supervisor.start()
        await publisher.publish_user_updated({"userId": "u1"})
        await broker.drain()

        assert dispatcher.stats.handler_failures == 2
        assert dispatcher.stats.acked == 0
        assert broker.queue_depth("appointment-service.dead") == 1
        assert broker.unacked_count() == 0


class TestIsolation:
    @pytest.mark.asyncio
    async def test_failing_fact_does_not_stall_others(self, broker, supervisor, publisher, dispatcher):
        handled: list[str] = []

        async def _explode(envelope: Envelope) -> None:
            raise RuntimeError("poison")

        async def _record(envelope: Envelope) -> None:
            handled.append(envelope.payload.patient_id)

        dispatcher.register("user.updated", _explode)
        dispatcher.register("patient.deactivated", _record)
        dispatcher.install()
        await supervisor.start()

        for i in range(3):
            await publisher.publish_user_updated({"userId": f"u{i}"})
            await publisher.publish_patient_deactivated({"patientId": f"p{i}"})
        await broker.drain()

        assert handled == ["p0", "p1", "p2"]
        assert broker.queue_depth("appointment-service.dead") == 3

    @pytest.mark.asyncio
    async def test_each_delivery_settled_once(self, broker, supervisor, publisher, dispatcher):
        async def _ok(envelope: Envelope) -> None: ...

        dispatcher.register("patient.deactivated", _ok)
        dispatcher.install()
        await supervisor.start()

        for i in range(20):
            await publisher.publish_patient_deactivated({"patientId": f"p{i}"})
        await broker.drain()

        assert dispatcher.stats.received == 20
        assert dispatcher.stats.acked == 20
        assert dispatcher.stats.settle_failures == 0
