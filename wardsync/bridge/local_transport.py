"""In-process broker — a ``Transport`` that needs no RabbitMQ.

``LocalBroker`` keeps exchanges, queues and bindings in memory and
reproduces the broker behaviour the messaging layer depends on:

1. **Routing**: topic exchanges match binding patterns (``*`` / ``#``),
   direct exchanges match exactly; a message lands once per matching queue.
2. **Prefetch**: a session never holds more unacknowledged deliveries than
   its prefetch count; the next delivery waits for an ack or nack.
3. **Redelivery**: ``nack(requeue=True)`` puts the message back at the head
   of its queue flagged as redelivered.
4. **Dead-lettering**: ``nack(requeue=False)``, or exceeding a queue's
   delivery limit, republishes the message to the queue's dead-letter
   exchange with its dead-letter routing key.
5. **Outages**: connections can be refused, dropped with a close
   notification, or severed silently; the broker can lose all its state.

State lives on the broker object, so it survives sessions the same way
durable queues survive client reconnects.  Used by the ``demo`` command and
by the test suite.
"""

from __future__ import annotations

import asyncio
import collections
import itertools
import logging
from dataclasses import dataclass

from wardsync.bridge.transport import (
    CloseCallback,
    ConsumerCallback,
    OutboundMessage,
    TransportError,
)
from wardsync.models.topology import (
    BindingSpec,
    ExchangeKind,
    ExchangeSpec,
    QueueSpec,
    topic_matches,
)

logger = logging.getLogger(__name__)


@dataclass
class _Stored:
    message: OutboundMessage
    exchange: str
    routing_key: str
    delivery_count: int = 0
    redelivered: bool = False


class _LocalQueue:
    def __init__(self, spec: QueueSpec) -> None:
        self.spec = spec
        self.messages: collections.deque[_Stored] = collections.deque()


class LocalDelivery:
    """``InboundMessage`` handed to consumers of a ``LocalSession``."""

    def __init__(self, session: LocalSession, tag: int, queue: str, stored: _Stored) -> None:
        self._session = session
        self._tag = tag
        self._queue = queue
        self._stored = stored

    @property
    def body(self) -> bytes:
        return self._stored.message.body

    @property
    def message_id(self) -> str | None:
        return self._stored.message.message_id

    @property
    def routing_key(self) -> str | None:
        return self._stored.routing_key

    @property
    def redelivered(self) -> bool:
        return self._stored.redelivered

    @property
    def queue(self) -> str:
        return self._queue

    async def ack(self) -> None:
        self._session._settle(self._tag, requeue=None)

    async def nack(self, *, requeue: bool = True) -> None:
        self._session._settle(self._tag, requeue=requeue)


class LocalSession:
    """``BrokerSession`` bound to a ``LocalBroker``."""

    def __init__(self, broker: LocalBroker) -> None:
        self._broker = broker
        self._closed = False
        self._close_callbacks: list[CloseCallback] = []
        self._prefetch = 0  # 0 = unlimited, as in AMQP
        self._consumers: list[tuple[str, ConsumerCallback]] = []
        self._unacked: dict[int, tuple[str, _Stored]] = {}
        self._tags = itertools.count(1)
        self._next_consumer = 0

    # ------------------------------------------------------------------
    # BrokerSession
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    @property
    def prefetch(self) -> int:
        return self._prefetch

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        self._check_open()
        self._broker._declare_exchange(spec)

    async def declare_queue(self, spec: QueueSpec) -> None:
        self._check_open()
        self._broker._declare_queue(spec)

    async def bind_queue(self, binding: BindingSpec) -> None:
        self._check_open()
        self._broker._bind(binding)

    async def set_prefetch(self, count: int) -> None:
        self._check_open()
        self._prefetch = count

    async def publish(self, exchange: str, routing_key: str, message: OutboundMessage) -> None:
        self._check_open()
        self._broker._publish(exchange, routing_key, message)

    async def consume(self, queue: str, callback: ConsumerCallback) -> None:
        self._check_open()
        if queue not in self._broker._queues:
            raise TransportError(f"NOT_FOUND - no queue {queue!r}")
        self._consumers.append((queue, callback))
        self._broker._pump()

    async def close(self) -> None:
        self._terminate(None, notify=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError("Channel is closed")

    def _terminate(self, exc: BaseException | None, *, notify: bool) -> None:
        if self._closed:
            return
        self._closed = True
        self._consumers.clear()
        # Unacked deliveries go back to their queues, flagged as redelivered.
        for queue, stored in reversed(list(self._unacked.values())):
            stored.redelivered = True
            local = self._broker._queues.get(queue)
            if local is not None:
                local.messages.appendleft(stored)
        self._unacked.clear()
        if self in self._broker.sessions:
            self._broker.sessions.remove(self)
        if notify:
            for callback in list(self._close_callbacks):
                callback(exc)
        self._broker._pump()

    def _settle(self, tag: int, *, requeue: bool | None) -> None:
        if self._closed:
            raise TransportError("Channel is closed; delivery will be redelivered")
        entry = self._unacked.pop(tag, None)
        if entry is None:
            raise TransportError(f"PRECONDITION_FAILED - unknown delivery tag {tag}")
        queue, stored = entry
        if requeue is not None:
            self._broker._reject(queue, stored, requeue=requeue)
        self._broker._pump()

    def _pump(self) -> None:
        while not self._closed and self._consumers:
            if self._prefetch and len(self._unacked) >= self._prefetch:
                return
            picked = self._next_ready_consumer()
            if picked is None:
                return
            queue, callback = picked
            stored = self._broker._queues[queue].messages.popleft()
            stored.delivery_count += 1
            tag = next(self._tags)
            self._unacked[tag] = (queue, stored)
            self._broker._spawn(callback(LocalDelivery(self, tag, queue, stored)))

    def _next_ready_consumer(self) -> tuple[str, ConsumerCallback] | None:
        count = len(self._consumers)
        for offset in range(count):
            index = (self._next_consumer + offset) % count
            queue, callback = self._consumers[index]
            local = self._broker._queues.get(queue)
            if local is not None and local.messages:
                self._next_consumer = (index + 1) % count
                return queue, callback
        return None


class LocalBroker:
    """In-memory broker that also acts as its own ``Transport``."""

    def __init__(self) -> None:
        self.sessions: list[LocalSession] = []
        self.published: list[tuple[str, str, OutboundMessage]] = []
        self.online = True
        self.open_attempts = 0
        self.fail_next_opens = 0
        self.fail_next_declarations = 0
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, _LocalQueue] = {}
        self._bindings: list[BindingSpec] = []
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def open(self, url: str) -> LocalSession:
        self.open_attempts += 1
        if not self.online:
            raise ConnectionRefusedError(f"Broker at {url} is offline")
        if self.fail_next_opens > 0:
            self.fail_next_opens -= 1
            raise ConnectionRefusedError(f"Connection to {url} refused")
        session = LocalSession(self)
        self.sessions.append(session)
        return session

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def exchanges(self) -> dict[str, ExchangeSpec]:
        return dict(self._exchanges)

    @property
    def bindings(self) -> list[BindingSpec]:
        return list(self._bindings)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def queue_spec(self, name: str) -> QueueSpec:
        return self._queues[name].spec

    def queue_depth(self, name: str) -> int:
        return len(self._queues[name].messages)

    def queued_bodies(self, name: str) -> list[bytes]:
        return [stored.message.body for stored in self._queues[name].messages]

    def unacked_count(self) -> int:
        return sum(session.unacked_count for session in self.sessions)

    async def drain(self) -> None:
        """Wait until every in-flight consumer callback has finished."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def drop_connections(self, exc: BaseException | None = None) -> None:
        """Close every session and notify its owner, like a broker restart."""
        error = exc or ConnectionResetError("Connection closed by broker")
        for session in list(self.sessions):
            session._terminate(error, notify=True)

    def sever_connections(self) -> None:
        """Kill every session without notification (half-open TCP)."""
        for session in list(self.sessions):
            session._terminate(None, notify=False)

    def reset(self) -> None:
        """Forget all exchanges, queues and bindings."""
        self._exchanges.clear()
        self._queues.clear()
        self._bindings.clear()

    # ------------------------------------------------------------------
    # Broker internals (called by sessions)
    # ------------------------------------------------------------------

    def _declare_exchange(self, spec: ExchangeSpec) -> None:
        self._maybe_fail_declaration(spec.name)
        existing = self._exchanges.get(spec.name)
        if existing is not None and existing != spec:
            raise TransportError(
                f"PRECONDITION_FAILED - inequivalent arg for exchange {spec.name!r}"
            )
        self._exchanges[spec.name] = spec

    def _declare_queue(self, spec: QueueSpec) -> None:
        self._maybe_fail_declaration(spec.name)
        existing = self._queues.get(spec.name)
        if existing is not None:
            if existing.spec != spec:
                raise TransportError(
                    f"PRECONDITION_FAILED - inequivalent arg for queue {spec.name!r}"
                )
            return
        self._queues[spec.name] = _LocalQueue(spec)

    def _bind(self, binding: BindingSpec) -> None:
        if binding.queue not in self._queues:
            raise TransportError(f"NOT_FOUND - no queue {binding.queue!r}")
        if binding.exchange not in self._exchanges:
            raise TransportError(f"NOT_FOUND - no exchange {binding.exchange!r}")
        if binding not in self._bindings:
            self._bindings.append(binding)

    def _maybe_fail_declaration(self, name: str) -> None:
        if self.fail_next_declarations > 0:
            self.fail_next_declarations -= 1
            raise TransportError(f"Declaration of {name!r} failed")

    def _route(self, exchange: str, routing_key: str) -> list[str]:
        spec = self._exchanges.get(exchange)
        if spec is None:
            raise TransportError(f"NOT_FOUND - no exchange {exchange!r}")
        matched: list[str] = []
        for binding in self._bindings:
            if binding.exchange != exchange or binding.queue in matched:
                continue
            if spec.kind is ExchangeKind.TOPIC:
                hit = topic_matches(binding.routing_key, routing_key)
            else:
                hit = binding.routing_key == routing_key
            if hit:
                matched.append(binding.queue)
        return matched

    def _publish(self, exchange: str, routing_key: str, message: OutboundMessage) -> None:
        queues = self._route(exchange, routing_key)
        self.published.append((exchange, routing_key, message))
        for queue in queues:
            self._queues[queue].messages.append(_Stored(message, exchange, routing_key))
        if not queues:
            logger.debug("LocalBroker: %s/%s routed to no queue", exchange, routing_key)
        self._pump()

    def _reject(self, queue: str, stored: _Stored, *, requeue: bool) -> None:
        local = self._queues.get(queue)
        if local is None:
            return
        limit = local.spec.delivery_limit
        if requeue and (limit is None or stored.delivery_count <= limit):
            stored.redelivered = True
            local.messages.appendleft(stored)
            return
        self._dead_letter(local.spec, stored)

    def _dead_letter(self, spec: QueueSpec, stored: _Stored) -> None:
        exchange, routing_key = spec.dead_letter_exchange, spec.dead_letter_routing_key
        if exchange is None or routing_key is None:
            logger.debug("LocalBroker: dropped message %s", stored.message.message_id)
            return
        for queue in self._route(exchange, routing_key):
            self._queues[queue].messages.append(_Stored(stored.message, exchange, routing_key))

    def _pump(self) -> None:
        for session in list(self.sessions):
            session._pump()

    def _spawn(self, coro: object) -> None:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
