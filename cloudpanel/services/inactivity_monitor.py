"""Dual-idle auto-shutdown for the game VM.

The VM is powered off only when BOTH signals have been idle for the full
timeout: no management requests from the web panel, and no players online.
A panel left open with nobody playing, or players online with nobody using
the panel, keeps the VM up.
"""

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from cloudpanel.core.events import EventBus, EventType
from cloudpanel.vm.agent_client import GameAgentClient
from cloudpanel.vm.controller import VMController
from cloudpanel.vm.models import VMState

logger = logging.getLogger(__name__)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class InactivityMonitor:
    CHECK_INTERVAL_SECONDS = 30

    def __init__(
        self,
        vm_controller: VMController,
        agent_client: GameAgentClient,
        events: Optional[EventBus] = None,
        timeout_minutes: float = 30,
        warning_minutes: float = 5,
        player_poll_interval: float = 60.0,
        player_count_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.vm_controller = vm_controller
        self.agent_client = agent_client
        self.events = events
        self.timeout_seconds = timeout_minutes * 60
        self.warning_seconds = warning_minutes * 60
        self.player_poll_interval = player_poll_interval
        self.player_count_timeout = player_count_timeout
        self._clock = clock

        now = clock()
        self.last_web_activity = now
        self.last_player_activity = now
        self.last_player_count = 0

        self._running = False
        self._warning_emitted = False
        # Bumped on every start/stop so loops from an older run exit
        self._generation = 0
        self._check_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def warning_emitted(self) -> bool:
        return self._warning_emitted

    # ===================
    # Start / stop
    # ===================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._generation += 1

        now = self._clock()
        self.last_web_activity = now
        self.last_player_activity = now
        self._warning_emitted = False

        generation = self._generation
        self._check_task = asyncio.create_task(
            self._run_every(self.CHECK_INTERVAL_SECONDS, self.check_inactivity, generation)
        )
        self._poll_task = asyncio.create_task(
            self._run_every(self.player_poll_interval, self.poll_player_count, generation)
        )

        logger.info(
            f"Inactivity monitor started ({self.timeout_seconds / 60:g} min timeout)"
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._generation += 1

        # The shutdown path calls stop() from inside the check loop; that
        # task finishes its current step and then exits on its own.
        current = _current_task()
        for task in (self._check_task, self._poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._check_task = None
        self._poll_task = None

        logger.info("Inactivity monitor stopped")

    async def _run_every(
        self,
        interval_seconds: float,
        step: Callable[[], Awaitable[None]],
        generation: int,
    ) -> None:
        try:
            while self._generation == generation:
                await asyncio.sleep(interval_seconds)
                if self._generation != generation:
                    break
                try:
                    await step()
                except Exception as e:
                    logger.error(f"Inactivity monitor step failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            pass

    # ===================
    # Activity recording
    # ===================

    def record_web_activity(self) -> None:
        self.last_web_activity = self._clock()
        self._warning_emitted = False

    def record_player_activity(self) -> None:
        self.last_player_activity = self._clock()
        self._warning_emitted = False

    # ===================
    # Periodic steps
    # ===================

    async def check_inactivity(self) -> None:
        if not self._running:
            return

        # Never power off a VM that is not (known to be) running
        if self.vm_controller.status != VMState.running:
            return

        now = self._clock()
        web_idle = now - self.last_web_activity
        player_idle = now - self.last_player_activity

        both_idle = web_idle >= self.timeout_seconds and player_idle >= self.timeout_seconds
        time_until_shutdown = self.timeout_seconds - min(web_idle, player_idle)

        if (
            0 < time_until_shutdown <= self.warning_seconds
            and not self._warning_emitted
        ):
            self._warning_emitted = True
            minutes_left = math.ceil(time_until_shutdown / 60)
            message = (
                f"Game VM will shut down in ~{minutes_left} minutes due to inactivity"
            )
            logger.warning(f"Inactivity warning: {message}")
            await self._emit(
                EventType.vm_warning,
                minutesLeft=minutes_left,
                message=message,
                webIdleMinutes=math.floor(web_idle / 60),
                playerIdleMinutes=math.floor(player_idle / 60),
            )

        if both_idle:
            logger.info(
                f"Inactivity timeout reached: web idle {math.floor(web_idle / 60)}m, "
                f"players idle {math.floor(player_idle / 60)}m"
            )
            await self._trigger_shutdown()

    async def poll_player_count(self) -> None:
        if not self._running:
            return
        if not self.vm_controller.agent_ready:
            return
        agent_url = self.vm_controller.game_agent_url
        if not agent_url:
            return

        count = await self.agent_client.get_player_count(
            agent_url, self.player_count_timeout
        )
        if count is None:
            # Unreachable agent: leave the idle clock running
            logger.debug("Player count unavailable; idle clock left running")
            return
        if not self._running:
            return

        if count > 0:
            self.record_player_activity()

        if count != self.last_player_count:
            previous = self.last_player_count
            self.last_player_count = count
            logger.info(f"Player count changed: {previous} -> {count}")
            await self._emit(EventType.player_count_changed, count=count, previous=previous)

    # ===================
    # Shutdown
    # ===================

    async def _trigger_shutdown(self) -> None:
        now = self._clock()
        web_idle_minutes = math.floor((now - self.last_web_activity) / 60)
        player_idle_minutes = math.floor((now - self.last_player_activity) / 60)

        # Stop first so no further check can re-enter
        self.stop()

        message = "Game VM shutting down due to inactivity"
        logger.info(message)
        await self._emit(
            EventType.vm_shutting_down,
            message=message,
            reason="inactivity",
            webIdleMinutes=web_idle_minutes,
            playerIdleMinutes=player_idle_minutes,
        )

        try:
            result = await self.vm_controller.stop()
        except Exception as e:
            logger.error(f"Inactivity shutdown failed: {e}", exc_info=True)
            await self._emit(EventType.vm_shutdown_error, error=str(e), reason="inactivity")
            self.start()
            return

        if not result.success:
            logger.error(f"Inactivity shutdown failed: {result.error}")
            await self._emit(
                EventType.vm_shutdown_error,
                error=result.error or "VM stop failed",
                reason="inactivity",
            )
            # Resume idle checks; the next timeout retries the shutdown
            self.start()
            return

        logger.info("Game VM shutdown complete")
        await self._emit(EventType.vm_shutdown, reason="inactivity", **result.to_dict())

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self.events is not None:
            await self.events.emit(event_type, **data)

    # ===================
    # Status
    # ===================

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        web_idle = now - self.last_web_activity
        player_idle = now - self.last_player_activity

        time_until_shutdown = 0
        if self._running:
            # Measured from the more recent activity, not the longer idle
            # signal: any activity must put the full timeout back on the clock
            remaining = self.timeout_seconds - min(web_idle, player_idle)
            time_until_shutdown = max(0, math.ceil(remaining / 60))

        return {
            "running": self._running,
            "timeoutMinutes": self.timeout_seconds / 60,
            "warningMinutes": self.warning_seconds / 60,
            "webIdleMinutes": math.floor(web_idle / 60),
            "playerIdleMinutes": math.floor(player_idle / 60),
            "lastPlayerCount": self.last_player_count,
            "timeUntilShutdownMinutes": time_until_shutdown,
        }
