"""Tests for MessagingRuntime wiring."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from wardsync.bridge.local_transport import LocalBroker
from wardsync.config import config
from wardsync.runtime import MessagingRuntime


def _settings(service: str):
    return config.model_copy(
        update={"service_name": service, "database_url": "sqlite+aiosqlite://"}
    )


class TestEngineOwnership:
    def test_profile_without_engine_builds_one(self):
        runtime = MessagingRuntime(
            _settings("user-service"), transport=LocalBroker(), profile="user-service"
        )
        assert runtime.engine is not None
        assert runtime._owns_engine
        assert len(runtime.executors) == 3
        assert runtime.dispatcher.event_types == [
            "user.created",
            "user.activated",
            "user.deactivated",
        ]

    def test_supplied_engine_is_not_owned(self):
        engine = create_async_engine("sqlite+aiosqlite://")
        runtime = MessagingRuntime(
            _settings("audit-service"),
            transport=LocalBroker(),
            engine=engine,
            profile="audit-service",
        )
        assert runtime.engine is engine
        assert not runtime._owns_engine

    def test_publish_only_service_has_no_engine(self):
        runtime = MessagingRuntime(_settings("auth-service"), transport=LocalBroker())
        assert runtime.engine is None
        assert runtime.executors == []

    def test_unknown_profile(self):
        with pytest.raises(KeyError, match="Known"):
            MessagingRuntime(_settings("billing"), transport=LocalBroker(), profile="billing")
