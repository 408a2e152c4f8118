"""Game VM lifecycle controller.

``VMController`` owns the power state of the remote instance and the
readiness of the management agent inside it. Variants only implement the
three control-plane calls; readiness waits, ensure-running, polling and the
"agent is never ready unless the VM is running" rule live here.

State machine::

    unknown/stopped --start()--> starting --(poll: RUNNING)--> running(ready=False)
    running(ready=False) --(health probe ok)--> running(ready=True)
    running(*) --stop()--> stopping --(remote stop completes)--> stopped
    starting/any --(poll: STOPPING/SUSPENDING)--> stopping
    any --(poll: unrecognized remote state)--> unknown
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from cloudpanel.core.events import EventBus, EventType
from cloudpanel.core.exceptions import VMControlPlaneError
from cloudpanel.vm.agent_client import GameAgentClient
from cloudpanel.vm.models import RemoteStatus, VMOperationResult, VMSnapshot, VMState

logger = logging.getLogger(__name__)

# Control-plane failures a public operation absorbs instead of raising
CONTROL_PLANE_ERRORS = (VMControlPlaneError, asyncio.TimeoutError)


class VMController(ABC):
    def __init__(
        self,
        agent_client: GameAgentClient,
        events: Optional[EventBus] = None,
        *,
        agent_port: int = 4000,
        static_address: Optional[str] = None,
        status_timeout: float = 10.0,
        operation_timeout: float = 300.0,
        ready_timeout: float = 120.0,
        running_ready_timeout: float = 60.0,
        probe_interval: float = 3.0,
        poll_health_timeout: float = 5.0,
        shutdown_timeout: float = 35.0,
        stopping_grace: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.agent_client = agent_client
        self.events = events
        self.agent_port = agent_port
        self.static_address = static_address or None
        self.status_timeout = status_timeout
        self.operation_timeout = operation_timeout
        self.ready_timeout = ready_timeout
        self.running_ready_timeout = running_ready_timeout
        self.probe_interval = probe_interval
        self.poll_health_timeout = poll_health_timeout
        self.shutdown_timeout = shutdown_timeout
        self.stopping_grace = stopping_grace
        self._clock = clock
        self._sleep = sleep

        self._status = VMState.unknown
        self._agent_ready = False
        self._address: Optional[str] = self.static_address
        self._address_confirmed = self.static_address is not None
        self._pending_operation: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None

    # ===================
    # Control plane calls
    # ===================

    @abstractmethod
    async def _fetch_remote_status(self) -> RemoteStatus:
        """Query the control plane; raise VMControlPlaneError on failure"""

    @abstractmethod
    async def _remote_start(self) -> None:
        """Power on and wait for the long-running operation to finish"""

    @abstractmethod
    async def _remote_stop(self) -> None:
        """Power off and wait for the long-running operation to finish"""

    @property
    def instance_label(self) -> str:
        return self.__class__.__name__

    # ===================
    # Read-only state
    # ===================

    @property
    def status(self) -> VMState:
        return self._status

    @property
    def agent_ready(self) -> bool:
        return self._agent_ready

    @property
    def address_confirmed(self) -> bool:
        return self._address_confirmed

    @property
    def game_agent_url(self) -> Optional[str]:
        """Agent base URL, or None while no confirmed address is known"""
        if not self._address or not self._address_confirmed:
            return None
        return f"http://{self._address}:{self.agent_port}"

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def snapshot(self) -> VMSnapshot:
        return VMSnapshot(
            status=self._status,
            agent_ready=self._agent_ready,
            game_agent_url=self.game_agent_url,
            address_confirmed=self._address_confirmed,
        )

    async def _transition(
        self, state: VMState, agent_ready: Optional[bool] = None
    ) -> None:
        """Apply a state change and publish it if anything changed"""
        previous_status, previous_ready = self._status, self._agent_ready

        self._status = state
        if agent_ready is not None:
            self._agent_ready = agent_ready
        if state != VMState.running:
            self._agent_ready = False

        if (self._status, self._agent_ready) == (previous_status, previous_ready):
            return

        logger.info(
            f"Game VM {self.instance_label}: {previous_status.value} -> "
            f"{self._status.value} (agent ready: {self._agent_ready})"
        )
        if self.events is not None:
            await self.events.emit(
                EventType.vm_status,
                status=self._status.value,
                agentReady=self._agent_ready,
                previous=previous_status.value,
            )

    # ===================
    # Status
    # ===================

    async def get_status(self) -> VMState:
        """Refresh the power state from the control plane.

        Transport errors are logged and reported as ``unknown``; they never
        propagate to the caller.
        """
        try:
            remote = await self._fetch_remote_status()
        except CONTROL_PLANE_ERRORS as e:
            logger.warning(f"Failed to get VM status for {self.instance_label}: {e}")
            await self._transition(VMState.unknown)
            return self._status

        state = remote.state
        # A poll that raced an in-flight operation still reports the old state
        if self._pending_operation == "start" and state == VMState.stopped:
            logger.debug("Ignoring stale 'stopped' status while start is in flight")
            state = VMState.starting
        elif self._pending_operation == "stop" and state == VMState.running:
            logger.debug("Ignoring stale 'running' status while stop is in flight")
            state = VMState.stopping

        if state == VMState.running:
            self._confirm_address(remote.address)
        elif state == VMState.unknown:
            logger.warning(
                f"Unrecognized remote status '{remote.raw_status}' for {self.instance_label}"
            )

        await self._transition(state)
        return self._status

    def _confirm_address(self, reported: Optional[str]) -> None:
        if self.static_address:
            self._address_confirmed = True
            return
        if reported and (not self._address or not self._address_confirmed):
            if reported != self._address:
                logger.info(f"Game VM address is {reported}")
            self._address = reported
            self._address_confirmed = True

    # ===================
    # Lifecycle
    # ===================

    async def start(self) -> VMOperationResult:
        """Power on the VM and wait (bounded) for the agent to answer"""
        logger.info(f"Starting game VM {self.instance_label}...")
        self._pending_operation = "start"
        if not self.static_address:
            # Cached address is stale until a fresh poll confirms it
            self._address_confirmed = False
        await self._transition(VMState.starting)

        try:
            await self._remote_start()
        except CONTROL_PLANE_ERRORS as e:
            logger.error(f"Failed to start VM {self.instance_label}: {e}")
            await self._transition(VMState.stopped)
            return VMOperationResult(success=False, status=self._status, error=str(e))
        except Exception as e:
            logger.error(
                f"Unexpected error starting VM {self.instance_label}: {e}", exc_info=True
            )
            await self._transition(VMState.stopped)
            return VMOperationResult(success=False, status=self._status, error=str(e))
        finally:
            self._pending_operation = None

        await self.get_status()
        logger.info("Game VM started. Waiting for game agent to come online...")

        ready = await self._wait_for_agent_ready(self.ready_timeout)
        if ready:
            logger.info(f"Game agent is online at {self.game_agent_url}")
        else:
            logger.warning("Game VM started but the agent is not responding")

        return VMOperationResult(
            success=True, status=self._status, agent_ready=self._agent_ready
        )

    async def stop(self) -> VMOperationResult:
        """Best-effort graceful agent shutdown, then power off"""
        logger.info(f"Stopping game VM {self.instance_label}...")

        agent_url = self.game_agent_url
        if self._agent_ready and agent_url:
            # Failure is logged by the client and never blocks the power-off
            await self.agent_client.request_shutdown(agent_url, self.shutdown_timeout)

        self._pending_operation = "stop"
        await self._transition(VMState.stopping)

        try:
            await self._remote_stop()
        except CONTROL_PLANE_ERRORS as e:
            logger.error(f"Failed to stop VM {self.instance_label}: {e}")
            return VMOperationResult(success=False, status=self._status, error=str(e))
        except Exception as e:
            logger.error(
                f"Unexpected error stopping VM {self.instance_label}: {e}", exc_info=True
            )
            return VMOperationResult(success=False, status=self._status, error=str(e))
        finally:
            self._pending_operation = None

        await self._transition(VMState.stopped)
        logger.info(f"Game VM {self.instance_label} stopped")
        return VMOperationResult(success=True, status=VMState.stopped)

    async def wait_for_agent(self, timeout_seconds: float) -> bool:
        """Refresh the address, then probe the agent until it answers or time runs out"""
        await self.get_status()
        return await self._wait_for_agent_ready(timeout_seconds)

    async def _wait_for_agent_ready(self, timeout_seconds: float) -> bool:
        deadline = self._clock() + timeout_seconds

        while self._clock() < deadline:
            if self._status in (VMState.stopping, VMState.stopped):
                logger.warning(
                    f"Stopped waiting for game agent: VM is {self._status.value}"
                )
                return False

            agent_url = self.game_agent_url
            if agent_url is None:
                await self.get_status()
                agent_url = self.game_agent_url

            if agent_url and await self.agent_client.check_health(
                agent_url, self.probe_interval
            ):
                if self._status in (VMState.stopping, VMState.stopped):
                    return False
                # A healthy agent means the VM is running
                await self._transition(VMState.running, agent_ready=True)
                return True

            await self._sleep(self.probe_interval)

        logger.warning(f"Game agent did not respond within {timeout_seconds}s")
        return False

    async def ensure_running(self) -> VMOperationResult:
        """Idempotently bring the VM to running with a ready agent"""
        await self.get_status()

        if self._status == VMState.running and self._agent_ready:
            return VMOperationResult(
                success=True,
                status=VMState.running,
                agent_ready=True,
                already_running=True,
            )

        if self._status == VMState.running:
            ready = await self._wait_for_agent_ready(self.running_ready_timeout)
            return VMOperationResult(success=ready, status=self._status, agent_ready=ready)

        if self._status == VMState.starting:
            # Someone else started it; only wait for the agent
            ready = await self._wait_for_agent_ready(self.ready_timeout)
            return VMOperationResult(success=ready, status=self._status, agent_ready=ready)

        if self._status == VMState.stopping:
            logger.info(
                f"Game VM is stopping; restarting in {self.stopping_grace}s"
            )
            await self._sleep(self.stopping_grace)
            return await self.start()

        return await self.start()

    # ===================
    # Polling
    # ===================

    async def poll_once(self) -> None:
        """One status refresh plus, when running, one health probe"""
        await self.get_status()
        if self._status != VMState.running:
            return

        agent_url = self.game_agent_url
        healthy = bool(agent_url) and await self.agent_client.check_health(
            agent_url, self.poll_health_timeout
        )
        # The VM may have left running while the probe was in flight
        if self._status == VMState.running:
            await self._transition(VMState.running, agent_ready=healthy)

    def start_polling(self, interval_ms: int = 30000) -> None:
        self.stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop(interval_ms / 1000))
        logger.info(f"VM status polling started (every {interval_ms / 1000:.0f}s)")

    def stop_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll_loop(self, interval_seconds: float) -> None:
        try:
            while True:
                try:
                    await self.poll_once()
                except Exception as e:
                    logger.error(f"Error in VM status polling: {e}", exc_info=True)
                await self._sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("VM status polling cancelled")
