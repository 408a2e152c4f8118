import asyncio
import logging
from typing import Optional

from cloudpanel.core.events import EventBus, EventType, PanelEvent, Subscription
from cloudpanel.services.inactivity_monitor import InactivityMonitor
from cloudpanel.vm.controller import VMController
from cloudpanel.vm.models import VMOperationResult, VMState

logger = logging.getLogger(__name__)


class VMLifecycleService:
    """Ties the VM controller and the inactivity monitor together.

    Owns the single in-flight start task, so any number of concurrent
    callers (proxied requests, the start endpoint) produce one start.
    """

    def __init__(
        self,
        vm_controller: VMController,
        monitor: InactivityMonitor,
        events: EventBus,
        poll_interval_ms: int = 30000,
    ):
        self.vm_controller = vm_controller
        self.monitor = monitor
        self.events = events
        self.poll_interval_ms = poll_interval_ms
        self._start_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def start_in_progress(self) -> bool:
        return self._start_task is not None and not self._start_task.done()

    async def startup(self) -> VMState:
        """Initial status check, background polling, monitor for a running VM"""
        self._subscription = self.events.subscribe(
            self._on_event, EventType.vm_status, EventType.vm_shutdown
        )

        status = await self.vm_controller.get_status()
        logger.info(f"Initial game VM status: {status.value}")

        self.vm_controller.start_polling(self.poll_interval_ms)
        if status == VMState.running:
            self.monitor.start()
        return status

    async def shutdown(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        self.monitor.stop()
        self.vm_controller.stop_polling()

        if self.start_in_progress:
            self._start_task.cancel()
            try:
                await self._start_task
            except asyncio.CancelledError:
                pass
        self._start_task = None

    def request_start(self) -> asyncio.Task:
        """Start the VM in the background unless a start is already running"""
        if self.start_in_progress:
            return self._start_task

        logger.info("Game VM start requested")
        self._start_task = asyncio.create_task(self._run_start())
        return self._start_task

    async def start(self) -> VMOperationResult:
        # Shielded so a dropped HTTP request does not cancel the shared start
        return await asyncio.shield(self.request_start())

    async def stop(self) -> VMOperationResult:
        """Manual stop: the monitor goes first so it cannot race the power-off"""
        self.monitor.stop()
        return await self.vm_controller.stop()

    async def _run_start(self) -> VMOperationResult:
        result = await self.vm_controller.ensure_running()
        if result.success:
            self.monitor.start()
        else:
            logger.warning(
                f"Game VM start did not complete: {result.error or 'agent not ready'}"
            )
        return result

    def _on_event(self, event: PanelEvent) -> None:
        if event.type == EventType.vm_shutdown:
            self.monitor.stop()
            return

        status = event.data.get("status")
        if status == VMState.running.value and not self.monitor.is_running:
            self.monitor.start()
        elif status == VMState.stopped.value and self.monitor.is_running:
            self.monitor.stop()
