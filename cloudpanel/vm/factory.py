import logging
from typing import Optional

from cloudpanel.core.config import Settings
from cloudpanel.core.events import EventBus
from cloudpanel.vm.agent_client import GameAgentClient
from cloudpanel.vm.controller import VMController
from cloudpanel.vm.models import InstanceRef

logger = logging.getLogger(__name__)


def controller_options(settings: Settings) -> dict:
    """Timeouts and intervals shared by every controller variant"""
    return {
        "agent_port": settings.GAME_AGENT_PORT,
        "status_timeout": settings.VM_STATUS_TIMEOUT,
        "operation_timeout": settings.VM_OPERATION_TIMEOUT,
        "ready_timeout": settings.AGENT_READY_TIMEOUT,
        "probe_interval": settings.AGENT_PROBE_INTERVAL,
        "poll_health_timeout": settings.AGENT_POLL_HEALTH_TIMEOUT,
        "shutdown_timeout": settings.AGENT_SHUTDOWN_TIMEOUT,
        "stopping_grace": settings.ENSURE_RUNNING_STOPPING_GRACE,
    }


def create_vm_controller(
    settings: Settings,
    agent_client: GameAgentClient,
    events: Optional[EventBus] = None,
) -> VMController:
    """Select the controller variant named by VM_CONTROLLER"""
    options = controller_options(settings)

    if settings.VM_CONTROLLER == "gce":
        # Imported lazily so local development does not need Google credentials
        from cloudpanel.vm.gce import GceVMController

        instance = InstanceRef(
            project=settings.GCP_PROJECT_ID,
            zone=settings.GCP_ZONE,
            name=settings.GCP_INSTANCE_NAME,
        )
        logger.info(f"Using Compute Engine VM controller for {instance}")
        return GceVMController(
            instance,
            agent_client,
            events,
            static_address=settings.GAME_VM_IP or None,
            **options,
        )

    from cloudpanel.vm.local import LocalVMController

    logger.info("Running in LOCAL mode: skipping cloud control plane calls")
    return LocalVMController(agent_client, events, **options)
