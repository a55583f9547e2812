"""Bridge layer between wardsync and the outside world.

Modules
-------
transport
    ``Transport`` / ``BrokerSession`` protocols and the aio-pika
    implementation used in production.
local_transport
    In-process broker with the same routing, prefetch and dead-letter
    behaviour, for the demo and the test suite.
audit_sink
    Fire-and-forget publishing of audit facts.
"""
