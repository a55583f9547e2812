"""Transport bridge — wraps aio-pika behind a narrow broker-session interface.

Bridge boundary
---------------
``ConnectionSupervisor`` owns the broker connection, but it never talks to
aio-pika directly.  It asks a ``Transport`` to ``open()`` a
``BrokerSession`` (one connection + one channel) and drives everything
through that session: topology declaration, prefetch, publish, consume,
close.  Swapping the transport is how tests run the whole messaging layer
without a live broker (see ``wardsync.bridge.local_transport``).

Closing a session always closes the channel first, then the connection.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from wardsync.config import mask_url
from wardsync.models.topology import BindingSpec, ExchangeSpec, QueueSpec

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when a broker-level operation fails."""


@dataclass(frozen=True)
class OutboundMessage:
    """Everything the broker needs to route and persist one envelope."""

    body: bytes
    message_id: str
    correlation_id: str | None = None
    content_type: str = "application/json"
    persistent: bool = True
    timestamp: datetime | None = None
    headers: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class InboundMessage(Protocol):
    """One delivery handed to a consumer callback."""

    @property
    def body(self) -> bytes: ...

    @property
    def message_id(self) -> str | None: ...

    @property
    def routing_key(self) -> str | None: ...

    @property
    def redelivered(self) -> bool: ...

    async def ack(self) -> None: ...

    async def nack(self, *, requeue: bool = True) -> None: ...


ConsumerCallback = Callable[[InboundMessage], Awaitable[None]]
CloseCallback = Callable[[BaseException | None], None]


class BrokerSession(Protocol):
    """One open connection + channel.  Owned by the connection supervisor."""

    @property
    def is_closed(self) -> bool: ...

    def add_close_callback(self, callback: CloseCallback) -> None: ...

    async def declare_exchange(self, spec: ExchangeSpec) -> None: ...

    async def declare_queue(self, spec: QueueSpec) -> None: ...

    async def bind_queue(self, binding: BindingSpec) -> None: ...

    async def set_prefetch(self, count: int) -> None: ...

    async def publish(self, exchange: str, routing_key: str, message: OutboundMessage) -> None: ...

    async def consume(self, queue: str, callback: ConsumerCallback) -> None: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, url: str) -> BrokerSession: ...


# ---------------------------------------------------------------------------
# aio-pika implementation
# ---------------------------------------------------------------------------


class AmqpDelivery:
    """Adapts an aio-pika incoming message to ``InboundMessage``."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def routing_key(self) -> str | None:
        return self._message.routing_key

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)


class AmqpSession:
    """``BrokerSession`` over one aio-pika connection and channel.

    The connection is a plain (non-robust) one: reconnection policy belongs
    to the supervisor's state machine, not to the client library.
    """

    def __init__(self, connection: AbstractConnection, channel: AbstractChannel) -> None:
        self._connection = connection
        self._channel = channel
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed or self._channel.is_closed

    def add_close_callback(self, callback: CloseCallback) -> None:
        def _fire(_sender: Any, exc: BaseException | None = None) -> None:
            callback(exc)

        self._connection.close_callbacks.add(_fire)
        self._channel.close_callbacks.add(_fire)

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        self._exchanges[spec.name] = await self._channel.declare_exchange(
            spec.name,
            aio_pika.ExchangeType(spec.kind.value),
            durable=spec.durable,
        )

    async def declare_queue(self, spec: QueueSpec) -> None:
        self._queues[spec.name] = await self._channel.declare_queue(
            spec.name,
            durable=spec.durable,
            arguments=spec.arguments() or None,
        )

    async def bind_queue(self, binding: BindingSpec) -> None:
        queue = self._queues.get(binding.queue)
        if queue is None:
            raise TransportError(f"Queue {binding.queue!r} was not declared on this session")
        await queue.bind(binding.exchange, routing_key=binding.routing_key)

    async def set_prefetch(self, count: int) -> None:
        # global_=True: the limit covers every consumer on this channel.
        await self._channel.set_qos(prefetch_count=count, global_=True)

    async def publish(self, exchange: str, routing_key: str, message: OutboundMessage) -> None:
        target = self._exchanges.get(exchange)
        if target is None:
            target = await self._channel.get_exchange(exchange, ensure=False)
            self._exchanges[exchange] = target
        await target.publish(
            aio_pika.Message(
                message.body,
                content_type=message.content_type,
                delivery_mode=(
                    aio_pika.DeliveryMode.PERSISTENT
                    if message.persistent
                    else aio_pika.DeliveryMode.NOT_PERSISTENT
                ),
                message_id=message.message_id,
                correlation_id=message.correlation_id,
                timestamp=message.timestamp,
                headers=message.headers,
            ),
            routing_key=routing_key,
        )

    async def consume(self, queue: str, callback: ConsumerCallback) -> None:
        target = self._queues.get(queue)
        if target is None:
            raise TransportError(f"Queue {queue!r} was not declared on this session")

        async def _on_message(message: AbstractIncomingMessage) -> None:
            await callback(AmqpDelivery(message))

        await target.consume(_on_message, no_ack=False)

    async def close(self) -> None:
        try:
            if not self._channel.is_closed:
                await self._channel.close()
        finally:
            if not self._connection.is_closed:
                await self._connection.close()


class AmqpTransport:
    """Opens ``AmqpSession`` objects against a RabbitMQ URL."""

    def __init__(self, *, heartbeat: int = 60) -> None:
        self._heartbeat = heartbeat

    async def open(self, url: str) -> AmqpSession:
        connection = await aio_pika.connect(url, heartbeat=self._heartbeat)
        try:
            channel = await connection.channel()
        except BaseException:
            await connection.close()
            raise
        logger.debug("AmqpTransport: opened connection to %s", mask_url(url))
        return AmqpSession(connection, channel)
