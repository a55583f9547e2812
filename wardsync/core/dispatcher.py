"""Consumer dispatcher — one durable queue per fact, one handler per queue.

Every consumed fact gets its own queue named ``<service>.<eventType>``,
bound with the exact routing key and dead-lettering to ``<service>.dead``.
``audit.*`` facts bind to the audit exchange, everything else to the
events exchange, unless a registration names its exchange.

Deliveries are settled exactly once:

- decoded and handled        -> ack
- malformed envelope         -> nack(requeue=True)
- handler raised             -> nack(requeue=True)

Redelivery after a nack is bounded by the broker (delivery limit or DLX
policy), not by this module.  Backpressure comes from the channel prefetch
the supervisor applies.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from wardsync.bridge.transport import InboundMessage
from wardsync.cascade.base import CascadeExecutor
from wardsync.config import MessagingConfig
from wardsync.core.codec import MalformedEnvelopeError, decode_envelope
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.models.envelopes import Envelope, EventType
from wardsync.models.topology import (
    BindingSpec,
    ExchangeKind,
    ExchangeSpec,
    QueueSpec,
    Topology,
    consumer_queue_name,
    dead_letter_routing_key,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Envelope], Awaitable[object]]


class DuplicateHandlerError(ValueError):
    """Raised when a second handler is registered for the same fact."""


@dataclass
class DispatchStats:
    received: int = 0
    acked: int = 0
    nacked: int = 0
    malformed: int = 0
    handler_failures: int = 0
    settle_failures: int = 0


class ConsumerDispatcher:
    """Routes deliveries from per-fact queues to registered handlers.

    Parameters
    ----------
    supervisor:
        Receives the topology and consumer callbacks on ``install()``.
    service_name:
        Consuming service; prefixes every queue this dispatcher owns.
    delivery_limit:
        When set, consumer queues become quorum queues that dead-letter
        after that many redeliveries.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        service_name: str,
        events_exchange: str = "clinical.events",
        audit_exchange: str = "clinical.audit",
        dead_letter_exchange: str = "clinical.dlx",
        delivery_limit: int | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._service = service_name
        self._events_exchange = ExchangeSpec(name=events_exchange, kind=ExchangeKind.TOPIC)
        self._audit_exchange = ExchangeSpec(name=audit_exchange, kind=ExchangeKind.DIRECT)
        self._dlx = dead_letter_exchange
        self._delivery_limit = delivery_limit
        self._handlers: dict[str, Handler] = {}
        self._bindings: dict[str, ExchangeSpec] = {}
        self._installed = False
        self.stats = DispatchStats()

    @classmethod
    def from_config(
        cls, supervisor: ConnectionSupervisor, settings: MessagingConfig
    ) -> ConsumerDispatcher:
        return cls(
            supervisor,
            service_name=settings.service_name,
            events_exchange=settings.events_exchange,
            audit_exchange=settings.audit_exchange,
            dead_letter_exchange=settings.dead_letter_exchange,
            delivery_limit=settings.delivery_limit,
        )

    @property
    def service_name(self) -> str:
        return self._service

    @property
    def event_types(self) -> list[str]:
        return list(self._handlers)

    def queue_for(self, event_type: EventType | str) -> str:
        return consumer_queue_name(self._service, _routing_key(event_type))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        event_type: EventType | str,
        handler: Handler,
        *,
        exchange: ExchangeSpec | None = None,
    ) -> str:
        """Register the single handler for *event_type*; returns its queue name.

        *exchange* is where the queue is bound.  Defaults to the audit
        exchange for ``audit.*`` facts and the events exchange otherwise.
        """
        key = _routing_key(event_type)
        if key in self._handlers:
            raise DuplicateHandlerError(
                f"{self._service} already has a handler for {key!r}"
            )
        if self._installed:
            raise RuntimeError("Handlers must be registered before install()")
        if exchange is None:
            exchange = self._audit_exchange if key.startswith("audit.") else self._events_exchange
        for bound in (self._events_exchange, *self._bindings.values()):
            if bound.name == exchange.name and bound != exchange:
                raise ValueError(f"Conflicting declarations of exchange {exchange.name!r}")
        self._handlers[key] = handler
        self._bindings[key] = exchange
        return self.queue_for(key)

    def register_executor(self, executor: CascadeExecutor) -> str:
        return self.register(executor.event_type, executor.execute)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def topology(self) -> Topology:
        """Exchanges, consumer queues, bindings and the dead-letter queue."""
        dead_key = dead_letter_routing_key(self._service)
        queues = [
            QueueSpec(
                name=self.queue_for(key),
                dead_letter_exchange=self._dlx,
                dead_letter_routing_key=dead_key,
                delivery_limit=self._delivery_limit,
            )
            for key in self._handlers
        ]
        bindings = [
            BindingSpec(queue=self.queue_for(key), exchange=spec.name, routing_key=key)
            for key, spec in self._bindings.items()
        ]
        if self._handlers:
            # Dead letters are retained for inspection, not replayed.
            queues.append(QueueSpec(name=dead_key))
            bindings.append(BindingSpec(queue=dead_key, exchange=self._dlx, routing_key=dead_key))
        exchanges = {self._events_exchange.name: self._events_exchange}
        for spec in self._bindings.values():
            exchanges.setdefault(spec.name, spec)
        exchanges.setdefault(self._dlx, ExchangeSpec(name=self._dlx, kind=ExchangeKind.DIRECT))
        return Topology(
            exchanges=tuple(exchanges.values()),
            queues=tuple(queues),
            bindings=tuple(bindings),
        )

    def install(self) -> None:
        """Hand topology and consumers to the supervisor.  Call before ``start()``."""
        if self._installed:
            return
        self._supervisor.add_topology(self.topology())
        for key in self._handlers:
            self._supervisor.add_consumer(self.queue_for(key), self._consumer_for(key))
        self._installed = True
        logger.info(
            "%s consuming %d facts: %s",
            self._service,
            len(self._handlers),
            ", ".join(self._handlers) or "-",
        )

    # ------------------------------------------------------------------
    # Delivery handling
    # ------------------------------------------------------------------

    def _consumer_for(self, key: str) -> Callable[[InboundMessage], Awaitable[None]]:
        async def _consume(message: InboundMessage) -> None:
            await self.dispatch(key, message)

        return _consume

    async def dispatch(self, event_type: str, message: InboundMessage) -> None:
        """Decode, handle and settle one delivery from *event_type*'s queue."""
        self.stats.received += 1
        handler = self._handlers[event_type]

        try:
            envelope = decode_envelope(message.body, expected_type=event_type)
        except MalformedEnvelopeError as exc:
            self.stats.malformed += 1
            logger.error(
                "Malformed %s delivery (messageId=%s): %s",
                event_type,
                message.message_id,
                exc,
            )
            await self._nack(message)
            return

        try:
            result = await handler(envelope)
        except Exception as exc:
            self.stats.handler_failures += 1
            logger.error(
                "Handler for %s failed on event %s (redelivered=%s): %s",
                event_type,
                envelope.event_id,
                message.redelivered,
                exc,
            )
            await self._nack(message)
            return

        logger.info("Processed %s event %s: %s", event_type, envelope.event_id, _describe(result))
        await self._ack(message)

    async def _ack(self, message: InboundMessage) -> None:
        try:
            await message.ack()
        except Exception as exc:
            # The broker redelivers whatever was never acknowledged.
            self.stats.settle_failures += 1
            logger.warning("Ack failed for message %s: %s", message.message_id, exc)
            return
        self.stats.acked += 1

    async def _nack(self, message: InboundMessage) -> None:
        try:
            await message.nack(requeue=True)
        except Exception as exc:
            self.stats.settle_failures += 1
            logger.warning("Nack failed for message %s: %s", message.message_id, exc)
            return
        self.stats.nacked += 1


def _routing_key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


def _describe(result: object) -> str:
    status = getattr(result, "status", None)
    if status is None:
        return "ok"
    return f"{getattr(status, 'value', status)} ({getattr(result, 'rows_affected', 0)} rows)"
