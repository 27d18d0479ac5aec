"""Tests for the in-process event bus and instance state machine."""

from unittest.mock import AsyncMock, Mock

import pytest

from clinical_platform.core.datamodels import InstanceStatus, PlatformEvent, WorkflowInstance
from clinical_platform.core.exceptions import InvalidTransitionError
from clinical_platform.orchestration.events import EventBus
from clinical_platform.orchestration.state import can_transition, transition


class TestEventBus:
    """Test subscription and publishing."""

    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async_handlers(self):
        """Test 1: both plain and coroutine handlers receive the event"""
        bus = EventBus()
        sync_handler = Mock()
        async_handler = AsyncMock()
        bus.subscribe("study.created", sync_handler)
        bus.subscribe("study.created", async_handler)

        event = PlatformEvent(type="study.created", data={"study_id": "S-1"})
        delivered = await bus.publish(event)

        assert delivered == 2
        sync_handler.assert_called_once_with(event)
        async_handler.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        """Test 2: a raising handler does not stop the others"""
        bus = EventBus()
        calls = []

        def broken(event):
            raise ValueError("handler bug")

        bus.subscribe("x", broken)
        bus.subscribe("x", lambda event: calls.append(event.type))

        delivered = await bus.publish(PlatformEvent(type="x"))

        assert delivered == 1
        assert calls == ["x"]

    @pytest.mark.asyncio
    async def test_wildcard(self):
        bus = EventBus()
        handler = Mock()
        bus.subscribe("*", handler)

        await bus.publish(PlatformEvent(type="anything"))

        handler.assert_called_once()

    def test_subscribe_is_idempotent(self):
        bus = EventBus()
        handler = Mock()

        bus.subscribe("x", handler)
        bus.subscribe("x", handler)

        assert bus.get_handlers("x") == [handler]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Test 3: an unsubscribed handler no longer receives events"""
        bus = EventBus()
        handler = Mock()
        bus.subscribe("x", handler)

        assert bus.unsubscribe("x", handler) is True
        assert bus.unsubscribe("x", handler) is False

        assert await bus.publish(PlatformEvent(type="x")) == 0
        handler.assert_not_called()

    def test_clear(self):
        bus = EventBus()
        bus.subscribe("x", Mock())

        bus.clear()

        assert bus.get_handlers("x") == []


class TestStateMachine:
    """Test instance status transitions."""

    def test_forward_transitions(self):
        """Test 1: running sets started_at, terminal sets completed_at"""
        instance = WorkflowInstance(workflow_id="w")

        transition(instance, InstanceStatus.RUNNING)
        assert instance.started_at is not None
        assert instance.completed_at is None

        transition(instance, InstanceStatus.COMPLETED)
        assert instance.completed_at is not None

    def test_terminal_states_never_change(self):
        """Test 2: nothing leaves a terminal status"""
        for terminal in (InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED):
            for target in InstanceStatus:
                assert not can_transition(terminal, target)

    def test_invalid_transition(self):
        instance = WorkflowInstance(workflow_id="w")

        with pytest.raises(InvalidTransitionError):
            transition(instance, InstanceStatus.PAUSED)

    def test_pause_resume_keeps_started_at(self):
        instance = WorkflowInstance(workflow_id="w")
        transition(instance, InstanceStatus.RUNNING)
        started = instance.started_at

        transition(instance, InstanceStatus.PAUSED)
        transition(instance, InstanceStatus.RUNNING)

        assert instance.started_at == started
        assert can_transition(InstanceStatus.PAUSED, InstanceStatus.CANCELLED)
        assert not can_transition(InstanceStatus.PAUSED, InstanceStatus.COMPLETED)
