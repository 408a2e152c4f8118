"""
Tests for the shared VMController state machine, driven through a scripted
control plane and a fake clock
"""

import asyncio

import pytest

from cloudpanel.core.events import EventBus, EventType
from cloudpanel.core.exceptions import VMControlPlaneError
from cloudpanel.vm.models import VMState
from fakes import (
    EventRecorder,
    FakeClock,
    assert_ready_only_when_running,
    make_agent_client,
    make_controller,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_running_captures_address(self, clock, bus):
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.running

        status = await controller.get_status()

        assert status == VMState.running
        assert controller.game_agent_url == "http://10.0.0.5:4000"
        assert controller.agent_ready is False

    @pytest.mark.asyncio
    async def test_transport_error_reports_unknown(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.status_error = VMControlPlaneError("get", "connection reset")

        status = await controller.get_status()

        assert status == VMState.unknown
        assert controller.agent_ready is False

    @pytest.mark.asyncio
    async def test_timeout_reports_unknown(self, clock):
        controller = make_controller(clock)
        controller.status_error = asyncio.TimeoutError()

        assert await controller.get_status() == VMState.unknown

    @pytest.mark.asyncio
    async def test_stopped_clears_readiness(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.running
        await controller.poll_once()
        assert controller.agent_ready is True

        controller.remote_state = VMState.stopped
        await controller.get_status()

        assert controller.status == VMState.stopped
        assert controller.agent_ready is False
        assert_ready_only_when_running(recorder)

    @pytest.mark.asyncio
    async def test_status_event_only_on_change(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.stopped

        await controller.get_status()
        await controller.get_status()

        assert recorder.statuses() == ["stopped"]
        assert recorder.events[0].data["previous"] == "unknown"


class TestStart:
    @pytest.mark.asyncio
    async def test_start_waits_for_agent(self, clock, bus, recorder):
        agent = make_agent_client(healthy=True)
        controller = make_controller(clock, agent, bus)

        result = await controller.start()

        assert result.success is True
        assert result.status == VMState.running
        assert result.agent_ready is True
        assert controller.start_calls == 1
        assert recorder.statuses() == ["starting", "running", "running"]
        assert [e.data["agentReady"] for e in recorder.of_type(EventType.vm_status)] == [
            False,
            False,
            True,
        ]
        agent.check_health.assert_awaited_with("http://10.0.0.5:4000", 3.0)
        assert_ready_only_when_running(recorder)

    @pytest.mark.asyncio
    async def test_start_failure_rolls_back_to_stopped(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.start_error = VMControlPlaneError("start", "quota exceeded")

        result = await controller.start()

        assert result.success is False
        assert "quota exceeded" in result.error
        assert controller.status == VMState.stopped
        assert controller.agent_ready is False
        assert recorder.statuses() == ["starting", "stopped"]

    @pytest.mark.asyncio
    async def test_unexpected_start_error_rolls_back_to_stopped(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.start_error = RuntimeError("operation returned garbage")

        result = await controller.start()

        assert result.success is False
        assert result.error == "operation returned garbage"
        assert controller.status == VMState.stopped
        assert recorder.statuses() == ["starting", "stopped"]

    @pytest.mark.asyncio
    async def test_unexpected_start_error_through_ensure_running(self, clock):
        controller = make_controller(clock)
        controller.start_error = ValueError("bad zone")

        result = await controller.ensure_running()

        assert result.success is False
        assert controller.status == VMState.stopped

    @pytest.mark.asyncio
    async def test_readiness_wait_is_bounded(self, clock):
        agent = make_agent_client(healthy=False)
        controller = make_controller(clock, agent, ready_timeout=9, probe_interval=3)

        result = await controller.start()

        assert result.success is True
        assert result.agent_ready is False
        assert controller.status == VMState.running
        assert agent.check_health.await_count == 3
        assert clock.sleeps == [3, 3, 3]

    @pytest.mark.asyncio
    async def test_start_refreshes_stale_address(self, clock):
        controller = make_controller(clock)
        controller.remote_state = VMState.running
        await controller.poll_once()
        assert controller.game_agent_url == "http://10.0.0.5:4000"

        controller.remote_state = VMState.stopped
        await controller.get_status()
        controller.remote_address = "10.0.0.9"
        controller.start_gate = asyncio.Event()

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        # The cached address is not trusted while the VM boots
        assert controller.status == VMState.starting
        assert controller.game_agent_url is None

        controller.start_gate.set()
        result = await task

        assert result.agent_ready is True
        assert controller.game_agent_url == "http://10.0.0.9:4000"

    @pytest.mark.asyncio
    async def test_stale_stopped_poll_during_start_is_ignored(self, clock):
        controller = make_controller(clock)
        controller.start_gate = asyncio.Event()

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        # Remote still reports the pre-start state
        assert await controller.get_status() == VMState.starting

        controller.start_gate.set()
        await task

    @pytest.mark.asyncio
    async def test_static_address_is_always_confirmed(self, clock):
        controller = make_controller(clock, static_address="192.168.1.20")
        controller.remote_address = None

        assert controller.game_agent_url == "http://192.168.1.20:4000"
        result = await controller.start()

        assert result.agent_ready is True
        assert controller.game_agent_url == "http://192.168.1.20:4000"


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_calls_agent_shutdown_first(self, clock, bus, recorder):
        agent = make_agent_client(healthy=True)
        controller = make_controller(clock, agent, bus)
        controller.remote_state = VMState.running
        await controller.poll_once()

        result = await controller.stop()

        agent.request_shutdown.assert_awaited_once_with("http://10.0.0.5:4000", 35.0)
        assert result.success is True
        assert result.status == VMState.stopped
        assert controller.agent_ready is False
        assert recorder.statuses()[-2:] == ["stopping", "stopped"]
        assert_ready_only_when_running(recorder)

    @pytest.mark.asyncio
    async def test_stop_skips_agent_shutdown_when_not_ready(self, clock):
        agent = make_agent_client(healthy=False)
        controller = make_controller(clock, agent)
        controller.remote_state = VMState.running
        await controller.poll_once()

        result = await controller.stop()

        agent.request_shutdown.assert_not_awaited()
        assert result.success is True

    @pytest.mark.asyncio
    async def test_unreachable_agent_does_not_block_power_off(self, clock):
        agent = make_agent_client(healthy=True)
        agent.request_shutdown.return_value = False
        controller = make_controller(clock, agent)
        controller.remote_state = VMState.running
        await controller.poll_once()

        result = await controller.stop()

        assert result.success is True
        assert controller.stop_calls == 1

    @pytest.mark.asyncio
    async def test_stop_failure_is_reported(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.running
        await controller.poll_once()
        controller.stop_error = VMControlPlaneError("stop", "permission denied")

        result = await controller.stop()

        assert result.success is False
        assert "permission denied" in result.error
        assert controller.status == VMState.stopping
        assert controller.agent_ready is False
        assert_ready_only_when_running(recorder)

    @pytest.mark.asyncio
    async def test_stale_running_poll_during_stop_is_ignored(self, clock):
        controller = make_controller(clock)
        controller.remote_state = VMState.running
        await controller.poll_once()

        gate = asyncio.Event()
        original_stop = controller._remote_stop

        async def slow_stop():
            await gate.wait()
            await original_stop()

        controller._remote_stop = slow_stop
        task = asyncio.create_task(controller.stop())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert await controller.get_status() == VMState.stopping

        gate.set()
        result = await task
        assert result.status == VMState.stopped


class TestEnsureRunning:
    @pytest.mark.asyncio
    async def test_already_running_and_ready_is_a_no_op(self, clock):
        controller = make_controller(clock)
        controller.remote_state = VMState.running
        await controller.poll_once()

        result = await controller.ensure_running()

        assert result.success is True
        assert result.already_running is True
        assert controller.start_calls == 0

    @pytest.mark.asyncio
    async def test_running_but_not_ready_waits_shorter_ceiling(self, clock):
        agent = make_agent_client(healthy=False)
        controller = make_controller(
            clock, agent, running_ready_timeout=6, ready_timeout=120, probe_interval=3
        )
        controller.remote_state = VMState.running

        result = await controller.ensure_running()

        assert result.success is False
        assert controller.start_calls == 0
        assert sum(clock.sleeps) == 6

    @pytest.mark.asyncio
    async def test_starting_only_waits_for_agent(self, clock):
        controller = make_controller(clock)
        controller.remote_state = VMState.starting

        async def boot(seconds):
            clock.sleeps.append(seconds)
            clock.advance(seconds)
            controller.remote_state = VMState.running

        controller._sleep = boot
        controller.agent_client.check_health.return_value = True

        result = await controller.ensure_running()

        assert result.success is True
        assert result.agent_ready is True
        assert controller.start_calls == 0

    @pytest.mark.asyncio
    async def test_stopping_waits_grace_then_starts(self, clock):
        controller = make_controller(clock, stopping_grace=15)
        controller.remote_state = VMState.stopping

        result = await controller.ensure_running()

        assert clock.sleeps[0] == 15
        assert controller.start_calls == 1
        assert result.success is True

    @pytest.mark.parametrize("remote_state", [VMState.stopped, VMState.unknown])
    @pytest.mark.asyncio
    async def test_stopped_or_unknown_starts(self, clock, remote_state):
        controller = make_controller(clock)
        controller.remote_state = remote_state

        result = await controller.ensure_running()

        assert controller.start_calls == 1
        assert result.agent_ready is True


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_tracks_agent_health(self, clock, bus, recorder):
        agent = make_agent_client(healthy=True)
        controller = make_controller(clock, agent, bus)
        controller.remote_state = VMState.running

        await controller.poll_once()
        assert controller.agent_ready is True

        agent.check_health.return_value = False
        await controller.poll_once()
        assert controller.agent_ready is False
        assert controller.status == VMState.running

        agent.check_health.assert_awaited_with("http://10.0.0.5:4000", 5.0)

    @pytest.mark.asyncio
    async def test_poll_skips_probe_when_not_running(self, clock):
        agent = make_agent_client(healthy=True)
        controller = make_controller(clock, agent)
        controller.remote_state = VMState.stopped

        await controller.poll_once()

        agent.check_health.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_sees_external_stop(self, clock, bus, recorder):
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.running
        await controller.poll_once()

        controller.remote_state = VMState.stopping
        await controller.poll_once()

        assert controller.status == VMState.stopping
        assert controller.agent_ready is False
        assert_ready_only_when_running(recorder)

    @pytest.mark.asyncio
    async def test_start_and_stop_polling(self, clock):
        controller = make_controller(clock, sleep=asyncio.sleep)
        controller.remote_state = VMState.running

        controller.start_polling(60000)
        for _ in range(5):
            await asyncio.sleep(0)

        assert controller.is_polling is True
        assert controller.status == VMState.running

        controller.stop_polling()
        await asyncio.sleep(0)
        assert controller.is_polling is False

    @pytest.mark.asyncio
    async def test_hanging_subscriber_does_not_hold_up_poll(self, clock):
        bus = EventBus(handler_timeout=0.05)
        never = asyncio.Event()

        async def hang(event):
            await never.wait()

        bus.subscribe(hang)
        controller = make_controller(clock, events=bus)
        controller.remote_state = VMState.running

        await asyncio.wait_for(controller.poll_once(), 1.0)

        assert controller.status == VMState.running
        assert controller.agent_ready is True


@pytest.mark.asyncio
async def test_agent_never_ready_unless_running(clock, bus, recorder):
    """Mixed start/stop/poll sequence keeps readiness tied to running"""
    agent = make_agent_client(healthy=True)
    controller = make_controller(clock, agent, bus, ready_timeout=6, probe_interval=3)

    await controller.start()
    await controller.stop()
    agent.check_health.return_value = False
    await controller.start()
    agent.check_health.return_value = True
    await controller.poll_once()
    controller.stop_error = VMControlPlaneError("stop", "boom")
    await controller.stop()
    controller.remote_state = VMState.running
    await controller.poll_once()
    controller.stop_error = None
    await controller.stop()

    assert controller.status == VMState.stopped
    assert controller.agent_ready is False
    assert_ready_only_when_running(recorder)
