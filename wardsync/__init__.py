"""wardsync: event distribution for denormalized clinical data.

Keeps copies of patient and clinician data consistent across independently
owned service databases through a durable RabbitMQ topology:
  - Versioned JSON envelopes, one typed variant per fact
  - Connection supervisor with bounded reconnection and topology redeclaration
  - Publisher that reports failure instead of raising
  - Per-fact durable queues with dead-lettering and prefetch backpressure
  - Transactional, idempotent cascade executors over SQLAlchemy async Core
  - Fire-and-forget audit sink
"""

__version__ = "0.1.0"
__description__ = "Broker-driven consistency for denormalized clinical data"

from wardsync.runtime import MessagingRuntime

__all__ = ["MessagingRuntime", "__version__"]
