import logging
from dataclasses import dataclass

from fastapi import Request

from cloudpanel.core.config import Settings
from cloudpanel.core.events import EventBus
from cloudpanel.core.exceptions import VMNotConfiguredException
from cloudpanel.middleware.proxy_gate import GameProxy
from cloudpanel.services.inactivity_monitor import InactivityMonitor
from cloudpanel.services.notification_service import NotificationService
from cloudpanel.vm.agent_client import GameAgentClient
from cloudpanel.vm.controller import VMController
from cloudpanel.vm.factory import create_vm_controller
from cloudpanel.vm.lifecycle import VMLifecycleService

logger = logging.getLogger(__name__)


@dataclass
class PanelContext:
    """Everything the panel shares across requests.

    Each component owns and mutates its own state; the others only hold
    references to it.
    """

    settings: Settings
    events: EventBus
    agent_client: GameAgentClient
    vm_controller: VMController
    inactivity_monitor: InactivityMonitor
    lifecycle: VMLifecycleService
    notifications: NotificationService
    proxy: GameProxy

    async def startup(self) -> None:
        await self.lifecycle.startup()

    async def shutdown(self) -> None:
        self.notifications.close()
        await self.lifecycle.shutdown()
        await self.proxy.close()


def build_panel_context(settings: Settings) -> PanelContext:
    events = EventBus()
    agent_client = GameAgentClient(api_prefix=settings.GAME_AGENT_API_PREFIX)
    vm_controller = create_vm_controller(settings, agent_client, events)

    monitor = InactivityMonitor(
        vm_controller,
        agent_client,
        events,
        timeout_minutes=settings.INACTIVITY_TIMEOUT_MINUTES,
        warning_minutes=settings.INACTIVITY_WARNING_MINUTES,
        player_poll_interval=settings.player_poll_interval_seconds,
        player_count_timeout=settings.PLAYER_COUNT_TIMEOUT,
    )
    lifecycle = VMLifecycleService(
        vm_controller, monitor, events, poll_interval_ms=settings.VM_POLL_INTERVAL_MS
    )

    return PanelContext(
        settings=settings,
        events=events,
        agent_client=agent_client,
        vm_controller=vm_controller,
        inactivity_monitor=monitor,
        lifecycle=lifecycle,
        notifications=NotificationService(events, vm_controller, monitor),
        proxy=GameProxy(timeout=settings.PROXY_TIMEOUT),
    )


def get_panel_context(request: Request) -> PanelContext:
    context = getattr(request.app.state, "panel_context", None)
    if context is None:
        raise VMNotConfiguredException()
    return context
