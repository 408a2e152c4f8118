"""
Tests for the Compute Engine controller with a mocked InstancesClient
"""

import time
from unittest.mock import Mock

import pytest
from google.api_core import exceptions as google_exceptions

from cloudpanel.vm.gce import GceVMController
from cloudpanel.vm.models import InstanceRef, VMState
from fakes import FakeClock, make_agent_client

INSTANCE = InstanceRef(project="my-project", zone="us-central1-a", name="game-vm")


def make_instance(status="RUNNING", address="10.128.0.7"):
    interface = Mock()
    interface.network_i_p = address
    instance = Mock()
    instance.status = status
    instance.network_interfaces = [interface]
    return instance


def make_operation(error_code=None, error_message=None, result_error=None):
    operation = Mock()
    operation.error_code = error_code
    operation.error_message = error_message
    operation.result = Mock(side_effect=result_error, return_value=None)
    return operation


def make_gce_controller(client, agent=None, **kwargs):
    clock = FakeClock()
    kwargs.setdefault("clock", clock)
    kwargs.setdefault("sleep", clock.sleep)
    return GceVMController(
        INSTANCE,
        agent if agent is not None else make_agent_client(),
        instances_client=client,
        **kwargs,
    )


class TestStatusMapping:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("RUNNING", VMState.running),
            ("TERMINATED", VMState.stopped),
            ("STOPPED", VMState.stopped),
            ("SUSPENDED", VMState.stopped),
            ("PROVISIONING", VMState.starting),
            ("STAGING", VMState.starting),
            ("STOPPING", VMState.stopping),
            ("SUSPENDING", VMState.stopping),
            ("REPAIRING", VMState.unknown),
            ("", VMState.unknown),
            (None, VMState.unknown),
        ],
    )
    def test_map_remote_status(self, raw, expected):
        assert GceVMController.map_remote_status(raw) == expected


class TestGceStatus:
    @pytest.mark.asyncio
    async def test_get_status_reads_instance(self):
        client = Mock()
        client.get.return_value = make_instance("RUNNING", "10.128.0.7")
        controller = make_gce_controller(client)

        status = await controller.get_status()

        assert status == VMState.running
        assert controller.game_agent_url == "http://10.128.0.7:4000"
        client.get.assert_called_once_with(
            project="my-project", zone="us-central1-a", instance="game-vm"
        )

    @pytest.mark.asyncio
    async def test_static_address_overrides_reported_one(self):
        client = Mock()
        client.get.return_value = make_instance("RUNNING", "10.128.0.7")
        controller = make_gce_controller(client, static_address="10.0.0.2")

        await controller.get_status()

        assert controller.game_agent_url == "http://10.0.0.2:4000"

    @pytest.mark.asyncio
    async def test_api_error_reports_unknown(self):
        client = Mock()
        client.get.side_effect = google_exceptions.ServiceUnavailable("backend down")
        controller = make_gce_controller(client)

        assert await controller.get_status() == VMState.unknown

    @pytest.mark.asyncio
    async def test_slow_control_plane_is_bounded(self):
        client = Mock()
        client.get.side_effect = lambda **kwargs: time.sleep(0.3)
        controller = make_gce_controller(client, status_timeout=0.05)

        assert await controller.get_status() == VMState.unknown


class TestGceOperations:
    @pytest.mark.asyncio
    async def test_start_runs_operation_to_completion(self):
        client = Mock()
        operation = make_operation()
        client.start.return_value = operation
        client.get.return_value = make_instance("RUNNING", "10.128.0.7")
        agent = make_agent_client(healthy=True)
        controller = make_gce_controller(client, agent, operation_timeout=120)

        result = await controller.start()

        assert result.success is True
        assert result.agent_ready is True
        client.start.assert_called_once_with(
            project="my-project", zone="us-central1-a", instance="game-vm"
        )
        operation.result.assert_called_once_with(timeout=120)
        agent.check_health.assert_awaited_with("http://10.128.0.7:4000", 3.0)

    @pytest.mark.asyncio
    async def test_failed_operation_rolls_back(self):
        client = Mock()
        client.start.return_value = make_operation(
            result_error=google_exceptions.Forbidden("quota exceeded")
        )
        controller = make_gce_controller(client)

        result = await controller.start()

        assert result.success is False
        assert "quota exceeded" in result.error
        assert controller.status == VMState.stopped

    @pytest.mark.asyncio
    async def test_operation_error_code_is_failure(self):
        client = Mock()
        client.get.return_value = make_instance("RUNNING")
        client.stop.return_value = make_operation(
            error_code=403, error_message="permission denied"
        )
        controller = make_gce_controller(client)
        await controller.get_status()

        result = await controller.stop()

        assert result.success is False
        assert result.error == "Control plane stop failed: permission denied"

    @pytest.mark.asyncio
    async def test_stop_powers_off(self):
        client = Mock()
        client.get.return_value = make_instance("RUNNING")
        client.stop.return_value = make_operation()
        controller = make_gce_controller(client)
        await controller.get_status()

        result = await controller.stop()

        assert result.success is True
        assert controller.status == VMState.stopped
        client.stop.assert_called_once_with(
            project="my-project", zone="us-central1-a", instance="game-vm"
        )
