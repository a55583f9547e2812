"""Messaging runtime — wires one consuming/publishing service together.

Composition:

    Transport -> ConnectionSupervisor -> EventPublisher -> AuditSink
                                      -> ConsumerDispatcher <- profile executors
                                                              <- AsyncEngine

``start()`` installs the dispatcher and makes the first connect attempt.
A broker outage at startup is not fatal: the supervisor keeps retrying in
the background.  ``stop()`` flushes pending audit records, closes the
channel and connection, and disposes of the database pool.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from wardsync.bridge.audit_sink import AuditSink
from wardsync.bridge.transport import AmqpTransport, Transport
from wardsync.cascade.base import CascadeExecutor
from wardsync.config import MessagingConfig, config
from wardsync.core.dispatcher import ConsumerDispatcher
from wardsync.core.publisher import EventPublisher
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.models.topology import ExchangeKind, ExchangeSpec, Topology
from wardsync.profiles import get_profile

logger = logging.getLogger(__name__)


def create_engine_from_config(settings: MessagingConfig) -> AsyncEngine:
    """Async engine for the cascade datastore."""
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        kwargs["pool_size"] = settings.db_pool_size
    return create_async_engine(settings.database_url, **kwargs)


@contextlib.contextmanager
def describing_engine() -> Iterator[AsyncEngine]:
    """Throwaway engine for executors that are inspected but never run."""
    engine = create_async_engine("sqlite+aiosqlite://")
    try:
        yield engine
    finally:
        asyncio.run(engine.dispose())


class MessagingRuntime:
    """Owns every messaging component of one service process.

    Parameters
    ----------
    settings:
        Defaults to the module-level ``config``.
    transport:
        Defaults to ``AmqpTransport``.
    engine:
        Cascade datastore.  Built from ``settings.database_url`` when omitted
        and a profile is consumed.
    profile:
        Service profile whose executors are consumed.  ``None`` runs a
        publish-only service.
    """

    def __init__(
        self,
        settings: MessagingConfig | None = None,
        *,
        transport: Transport | None = None,
        engine: AsyncEngine | None = None,
        profile: str | None = None,
        supervisor: ConnectionSupervisor | None = None,
    ) -> None:
        self.settings = settings or config
        self.transport = transport or AmqpTransport()
        self.supervisor = supervisor or ConnectionSupervisor.from_config(
            self.transport, self.settings
        )
        self.publisher = EventPublisher.from_config(self.supervisor, self.settings)
        self.audit = AuditSink(self.publisher)
        self.dispatcher = ConsumerDispatcher.from_config(self.supervisor, self.settings)

        self.engine = engine
        self._owns_engine = False
        self.executors: list[CascadeExecutor] = []
        if profile is not None:
            service_profile = get_profile(profile)
            if self.engine is None:
                self.engine = create_engine_from_config(self.settings)
                self._owns_engine = True
            self.executors = service_profile.executors(
                self.engine, timeout_seconds=self.settings.cascade_timeout_seconds
            )
            for executor in self.executors:
                self.dispatcher.register_executor(executor)

        self._stop = asyncio.Event()

    async def start(self) -> None:
        # Exchanges this process publishes to, declared even when it consumes nothing.
        self.supervisor.add_topology(
            Topology(
                exchanges=(
                    ExchangeSpec(name=self.settings.events_exchange, kind=ExchangeKind.TOPIC),
                    ExchangeSpec(name=self.settings.audit_exchange, kind=ExchangeKind.DIRECT),
                )
            )
        )
        self.dispatcher.install()
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.audit.flush()
        await self.supervisor.close()
        if self._owns_engine and self.engine is not None:
            await self.engine.dispose()

    def request_stop(self) -> None:
        self._stop.set()

    async def run_until_signalled(self) -> None:
        """Start, run until SIGINT/SIGTERM (or ``request_stop()``), then stop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms' loops.
                logger.debug("Cannot install handler for %s", sig)
        await self.start()
        try:
            await self._stop.wait()
        finally:
            logger.info("Shutting down %s", self.settings.service_name)
            await self.stop()

    def health(self) -> dict[str, Any]:
        return {
            "service": self.settings.service_name,
            "healthy": self.supervisor.is_healthy(),
            "state": self.supervisor.state.value,
            "reconnect_attempts": self.supervisor.reconnect_attempts,
            "gave_up": self.supervisor.gave_up,
            "consuming": self.dispatcher.event_types,
            "received": self.dispatcher.stats.received,
            "acked": self.dispatcher.stats.acked,
            "nacked": self.dispatcher.stats.nacked,
            "malformed": self.dispatcher.stats.malformed,
            "audit_dropped": self.audit.dropped,
        }
