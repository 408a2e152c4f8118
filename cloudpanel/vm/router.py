import logging

from fastapi import APIRouter

from cloudpanel.core.exceptions import VMOperationException
from cloudpanel.types import ApprovedUser, PanelContextDep
from cloudpanel.vm.schemas import InactivityStatus, VMOperationResponse, VMStatusResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status", response_model=VMStatusResponse)
async def get_vm_status(current_user: ApprovedUser, context: PanelContextDep):
    vm_controller = context.vm_controller
    vm_status = await vm_controller.get_status()

    return VMStatusResponse(
        vm_status=vm_status,
        agent_ready=vm_controller.agent_ready,
        game_agent_url=vm_controller.game_agent_url,
        inactivity=InactivityStatus.model_validate(
            context.inactivity_monitor.get_status()
        ),
    )


@router.post("/start", response_model=VMOperationResponse)
async def start_vm(current_user: ApprovedUser, context: PanelContextDep):
    logger.info(f"VM start requested by {current_user.username}")
    result = await context.lifecycle.start()

    # A start the control plane rejected is an error; a slow agent is not
    if not result.success and result.error:
        raise VMOperationException("start", result.error)

    return VMOperationResponse(
        success=result.success,
        status=result.status,
        agent_ready=result.agent_ready,
        already_running=result.already_running,
    )


@router.post("/stop", response_model=VMOperationResponse)
async def stop_vm(current_user: ApprovedUser, context: PanelContextDep):
    logger.info(f"VM stop requested by {current_user.username}")
    result = await context.lifecycle.stop()

    if not result.success:
        raise VMOperationException("stop", result.error or "")

    return VMOperationResponse(
        success=result.success,
        status=result.status,
        agent_ready=result.agent_ready,
    )
