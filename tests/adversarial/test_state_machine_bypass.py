"""Adversarial tests — connection state machine bypass attempts.

These tests verify that:
1. Invalid state transitions are always rejected
2. CLOSED is terminal
3. Failures while closed or already disconnected do not schedule reconnects
4. A stale session's close notification cannot disturb a newer session
"""

from __future__ import annotations

import pytest

from wardsync.core.supervisor import InvalidTransitionError
from wardsync.models.connection import VALID_TRANSITIONS, ConnectionState


class TestInvalidTransitionAttempts:
    """Try to make transitions that violate the VALID_TRANSITIONS table."""

    def test_cannot_skip_to_ready(self, make_supervisor):
        supervisor = make_supervisor()
        with pytest.raises(InvalidTransitionError, match="disconnected to ready"):
            supervisor._transition(ConnectionState.READY)

    def test_cannot_skip_topology_declaration(self, make_supervisor):
        supervisor = make_supervisor()
        supervisor._transition(ConnectionState.CONNECTING)
        with pytest.raises(InvalidTransitionError):
            supervisor._transition(ConnectionState.READY)

    def test_rejected_transition_is_not_recorded(self, make_supervisor):
        supervisor = make_supervisor()
        with pytest.raises(InvalidTransitionError):
            supervisor._transition(ConnectionState.DECLARING_TOPOLOGY)
        assert supervisor.transitions == []
        assert supervisor.state == ConnectionState.DISCONNECTED

    def test_every_state_can_reach_closed_except_closed(self):
        for state, targets in VALID_TRANSITIONS.items():
            if state is ConnectionState.CLOSED:
                assert targets == set()
            else:
                assert ConnectionState.CLOSED in targets


class TestTerminalState:
    @pytest.mark.asyncio
    async def test_closed_cannot_reconnect(self, broker, supervisor):
        await supervisor.start()
        await supervisor.close()
        with pytest.raises(InvalidTransitionError):
            supervisor._transition(ConnectionState.CONNECTING)

    @pytest.mark.asyncio
    async def test_failure_after_close_is_ignored(self, broker, supervisor):
        await supervisor.start()
        await supervisor.close()
        supervisor.report_failure(ConnectionResetError("late"))
        await supervisor.wait_settled()
        assert supervisor.state == ConnectionState.CLOSED
        assert broker.open_attempts == 1

    @pytest.mark.asyncio
    async def test_start_after_close_does_not_connect(self, broker, make_supervisor):
        sup = make_supervisor()
        await sup.close()
        await sup.start()
        assert sup.state == ConnectionState.CLOSED
        assert broker.open_attempts == 0


class TestStaleNotifications:
    @pytest.mark.asyncio
    async def test_double_failure_counts_once(self, broker, supervisor):
        await supervisor.start()
        supervisor.report_failure(ConnectionResetError("first"))
        supervisor.report_failure(ConnectionResetError("second"))
        assert supervisor.reconnect_attempts == 1
        await supervisor.wait_settled()
        assert supervisor.state == ConnectionState.READY

    @pytest.mark.asyncio
    async def test_old_session_close_ignored(self, broker, supervisor):
        await supervisor.start()
        old = broker.sessions[0]
        broker.drop_connections()
        await supervisor.wait_settled()
        assert supervisor.state == ConnectionState.READY

        # A late close callback from the dead session must not tear down the new one.
        supervisor._on_session_closed(old, ConnectionResetError("late"))
        assert supervisor.state == ConnectionState.READY
        assert supervisor.is_healthy()
