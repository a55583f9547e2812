"""Connection supervisor — one broker connection, explicit lifecycle.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Topology redeclared on every successful (re)connect
- Bounded reconnection: a fixed delay between attempts, a fixed number of
  consecutive failures before giving up
- Publishing only while READY; failures reported, never swallowed silently
- Teardown closes the channel before the connection

The raw connection never leaves this class.  Publishers and consumers go
through ``publish()`` and ``add_consumer()``.
"""

from __future__ import annotations

import asyncio
import collections
import functools
import logging
from collections.abc import Awaitable, Callable

from wardsync.bridge.transport import (
    BrokerSession,
    ConsumerCallback,
    OutboundMessage,
    Transport,
)
from wardsync.config import MessagingConfig, mask_url
from wardsync.models.connection import (
    VALID_TRANSITIONS,
    ConnectionState,
    ConnectionTransition,
)
from wardsync.models.topology import Topology

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class PublishUnavailableError(RuntimeError):
    """Raised when a publish is attempted without a ready broker session."""


class ConnectionSupervisor:
    """Owns the single broker session of a process.

    Parameters
    ----------
    transport:
        Opens broker sessions (aio-pika in production, in-process in tests).
    url:
        Broker URL.  Only ever logged with credentials masked.
    reconnect_delay:
        Seconds to wait between a failure and the next connect attempt.
    max_attempts:
        Consecutive failures tolerated.  Reaching it stops reconnection
        until the process restarts.
    prefetch_count:
        Unacknowledged deliveries allowed on the channel.
    sleep:
        Coroutine used to wait out ``reconnect_delay``; injectable so tests
        run the schedule without real time passing.
    """

    def __init__(
        self,
        transport: Transport,
        url: str,
        *,
        reconnect_delay: float = 5.0,
        max_attempts: int = 10,
        prefetch_count: int = 10,
        sleep: SleepFn = asyncio.sleep,
        history_limit: int = 200,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport
        self._url = url
        self._delay = reconnect_delay
        self._max_attempts = max_attempts
        self._prefetch = prefetch_count
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._session: BrokerSession | None = None
        self._topology = Topology()
        self._consumers: list[tuple[str, ConsumerCallback]] = []
        self._failures = 0
        self._gave_up = False
        self._started = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing: set[asyncio.Task[None]] = set()
        self._ready = asyncio.Event()
        self._history: collections.deque[ConnectionTransition] = collections.deque(
            maxlen=history_limit
        )

    @classmethod
    def from_config(
        cls,
        transport: Transport,
        settings: MessagingConfig,
        **kwargs: object,
    ) -> ConnectionSupervisor:
        return cls(
            transport,
            settings.rabbitmq_url,
            reconnect_delay=settings.reconnect_delay_seconds,
            max_attempts=settings.max_reconnect_attempts,
            prefetch_count=settings.prefetch_count,
            **kwargs,  # type: ignore[arg-type]
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failures since the last READY."""
        return self._failures

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def transitions(self) -> list[ConnectionTransition]:
        return list(self._history)

    def is_healthy(self) -> bool:
        session = self._session
        return (
            self._state is ConnectionState.READY
            and session is not None
            and not session.is_closed
        )

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for READY.  Returns ``False`` if *timeout* elapses first."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_settled(self) -> None:
        """Wait until no reconnect is pending (READY, given up, or closed)."""
        while self._reconnect_task is not None:
            await asyncio.wait({self._reconnect_task})

    # ------------------------------------------------------------------
    # Registration (replayed on every connect)
    # ------------------------------------------------------------------

    def add_topology(self, topology: Topology) -> None:
        self._topology = self._topology.merge(topology)

    def add_consumer(self, queue: str, callback: ConsumerCallback) -> None:
        if self._state is not ConnectionState.DISCONNECTED or self._started:
            logger.warning(
                "Consumer for %s registered after start; it attaches on the next connect",
                queue,
            )
        self._consumers.append((queue, callback))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """First connect attempt.  Failures schedule reconnection, never raise."""
        if self._started or self._state is ConnectionState.CLOSED:
            return
        self._started = True
        logger.info("Connecting to broker at %s", mask_url(self._url))
        await self._connect()

    async def close(self) -> None:
        """Cancel any pending reconnect, close channel then connection."""
        if self._state is ConnectionState.CLOSED:
            return
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
        session, self._session = self._session, None
        self._ready.clear()
        self._transition(ConnectionState.CLOSED, reason="close requested")
        if session is not None:
            await session.close()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        logger.info("Broker connection closed")

    def report_failure(self, exc: BaseException, *, reason: str = "publish failed") -> None:
        """Mark the current session broken and schedule reconnection."""
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            return
        self._discard_in_background()
        self._on_failure(exc, reason)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, exchange: str, routing_key: str, message: OutboundMessage) -> None:
        """Publish through the current session.

        Raises
        ------
        PublishUnavailableError
            If not READY, or if the session rejected the publish.  In the
            latter case the failure has already been reported.
        """
        session = self._session
        if self._state is not ConnectionState.READY or session is None:
            raise PublishUnavailableError(
                f"Broker not ready (state={self._state.value})"
            )
        try:
            await session.publish(exchange, routing_key, message)
        except Exception as exc:
            if session is self._session:
                self.report_failure(exc)
            raise PublishUnavailableError(f"Publish to {exchange}/{routing_key} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        self._transition(ConnectionState.CONNECTING, reason=f"attempt {self._failures + 1}")
        try:
            session = await self._transport.open(self._url)
        except Exception as exc:
            self._on_failure(exc, "connect failed")
            return

        if self._state is not ConnectionState.CONNECTING:
            # Closed while the connection was opening.
            await session.close()
            return

        self._session = session
        session.add_close_callback(functools.partial(self._on_session_closed, session))
        self._transition(ConnectionState.DECLARING_TOPOLOGY)

        try:
            await self._declare(session)
            await session.set_prefetch(self._prefetch)
            for queue, callback in self._consumers:
                await session.consume(queue, callback)
        except Exception as exc:
            if session is not self._session:
                # Loss already handled by the close callback.
                return
            self._session = None
            await self._close_quietly(session)
            self._on_failure(exc, "topology declaration failed")
            return

        if self._state is not ConnectionState.DECLARING_TOPOLOGY or session is not self._session:
            return

        self._failures = 0
        self._transition(ConnectionState.READY)
        self._ready.set()
        logger.info(
            "Broker READY: %d exchanges, %d queues, %d consumers, prefetch %d",
            len(self._topology.exchanges),
            len(self._topology.queues),
            len(self._consumers),
            self._prefetch,
        )

    async def _declare(self, session: BrokerSession) -> None:
        for exchange in self._topology.exchanges:
            await session.declare_exchange(exchange)
        for queue in self._topology.queues:
            await session.declare_queue(queue)
        for binding in self._topology.bindings:
            await session.bind_queue(binding)

    def _on_failure(self, exc: BaseException, reason: str) -> None:
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            return
        self._failures += 1
        self._ready.clear()
        self._transition(ConnectionState.DISCONNECTED, reason=f"{reason}: {exc}")

        if self._failures < self._max_attempts:
            logger.warning(
                "Broker %s (%s); reconnecting in %.1fs (attempt %d/%d)",
                reason,
                exc,
                self._delay,
                self._failures,
                self._max_attempts,
            )
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_after_delay()
            )
        else:
            self._gave_up = True
            logger.error(
                "Broker %s (%s); giving up after %d consecutive failures",
                reason,
                exc,
                self._failures,
            )

    async def _reconnect_after_delay(self) -> None:
        await self._sleep(self._delay)
        self._reconnect_task = None
        if self._state is ConnectionState.DISCONNECTED:
            await self._connect()

    def _on_session_closed(self, session: BrokerSession, exc: BaseException | None) -> None:
        # Only the live session matters; closes we initiated have already
        # detached it.
        if session is not self._session:
            return
        self._session = None
        self._close_in_background(session)
        self._on_failure(exc or ConnectionError("closed by broker"), "connection lost")

    def _discard_in_background(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            self._close_in_background(session)

    def _close_in_background(self, session: BrokerSession) -> None:
        task = asyncio.get_running_loop().create_task(self._close_quietly(session))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, session: BrokerSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing dead session: %s", exc)

    def _transition(self, target: ConnectionState, *, reason: str = "") -> None:
        current = self._state
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition connection from {current.value} to {target.value}. "
                f"Allowed: {[s.value for s in allowed]}"
            )
        self._history.append(
            ConnectionTransition(
                from_state=current,
                to_state=target,
                reason=reason,
                attempt=self._failures,
            )
        )
        self._state = target
        logger.debug("Connection %s -> %s %s", current.value, target.value, reason)
