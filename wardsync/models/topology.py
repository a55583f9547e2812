"""Broker topology models — exchanges, queues, bindings.

The whole topology of a process is plain data.  The connection supervisor
redeclares it on every successful (re)connect, so a broker that lost its
state heals itself the next time a service reconnects.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class TopologyError(ValueError):
    """Raised when a topology is internally inconsistent."""


class ExchangeKind(str, Enum):
    TOPIC = "topic"
    DIRECT = "direct"


class ExchangeSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: ExchangeKind
    durable: bool = True


class QueueSpec(BaseModel):
    """A durable queue, optionally dead-lettering to a fixed destination.

    When ``delivery_limit`` is set the queue is declared as a quorum queue
    so the broker itself dead-letters a message after that many redeliveries.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    durable: bool = True
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    delivery_limit: int | None = None

    @model_validator(mode="after")
    def check_dead_letter_pair(self) -> QueueSpec:
        if (self.dead_letter_exchange is None) != (self.dead_letter_routing_key is None):
            raise TopologyError(
                f"Queue {self.name!r} must set both dead-letter exchange and routing key, or neither"
            )
        return self

    @property
    def dead_letters(self) -> bool:
        return self.dead_letter_exchange is not None

    def arguments(self) -> dict[str, Any]:
        """AMQP ``x-*`` queue arguments for this queue."""
        args: dict[str, Any] = {}
        if self.dead_letter_exchange is not None:
            args["x-dead-letter-exchange"] = self.dead_letter_exchange
            args["x-dead-letter-routing-key"] = self.dead_letter_routing_key
        if self.delivery_limit is not None:
            args["x-queue-type"] = "quorum"
            args["x-delivery-limit"] = self.delivery_limit
        return args


class BindingSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    queue: str
    exchange: str
    routing_key: str


class Topology(BaseModel):
    """Exchanges, queues and bindings declared together on connect."""

    model_config = ConfigDict(frozen=True)

    exchanges: tuple[ExchangeSpec, ...] = ()
    queues: tuple[QueueSpec, ...] = ()
    bindings: tuple[BindingSpec, ...] = ()

    @model_validator(mode="after")
    def check_consistent(self) -> Topology:
        exchange_names = [e.name for e in self.exchanges]
        if len(set(exchange_names)) != len(exchange_names):
            raise TopologyError(f"Conflicting exchange declarations: {exchange_names}")
        queue_names = [q.name for q in self.queues]
        if len(set(queue_names)) != len(queue_names):
            raise TopologyError(f"Queue names must be unique: {queue_names}")

        for binding in self.bindings:
            if binding.queue not in queue_names:
                raise TopologyError(f"Binding references undeclared queue {binding.queue!r}")
            if binding.exchange not in exchange_names:
                raise TopologyError(
                    f"Binding references undeclared exchange {binding.exchange!r}"
                )
        for queue in self.queues:
            if queue.dead_letters and queue.dead_letter_exchange not in exchange_names:
                raise TopologyError(
                    f"Queue {queue.name!r} dead-letters to undeclared exchange "
                    f"{queue.dead_letter_exchange!r}"
                )
        return self

    def merge(self, other: Topology) -> Topology:
        """Union of two topologies; identical declarations are kept once."""
        return Topology(
            exchanges=_unique(self.exchanges + other.exchanges),
            queues=_unique(self.queues + other.queues),
            bindings=_unique(self.bindings + other.bindings),
        )

    def queue(self, name: str) -> QueueSpec:
        for spec in self.queues:
            if spec.name == name:
                return spec
        raise KeyError(name)


def _unique(items: tuple[Any, ...]) -> tuple[Any, ...]:
    seen: list[Any] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return tuple(seen)


# ---------------------------------------------------------------------------
# Naming conventions
# ---------------------------------------------------------------------------


def consumer_queue_name(service_name: str, event_type: str) -> str:
    """Queue owned by *service_name* for one fact, e.g. ``clinical-service.user.updated``."""
    return f"{service_name}.{event_type}"


def dead_letter_routing_key(service_name: str) -> str:
    return f"{service_name}.dead"


# ---------------------------------------------------------------------------
# Topic-exchange routing
# ---------------------------------------------------------------------------


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` is zero or more."""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False
