import logging

from cloudpanel.vm.controller import VMController
from cloudpanel.vm.models import RemoteStatus, VMOperationResult, VMState

logger = logging.getLogger(__name__)

LOCAL_ADDRESS = "127.0.0.1"


class LocalVMController(VMController):
    """Development stand-in: the agent runs on this machine and is always up.

    No control plane is contacted; lifecycle operations succeed without
    doing anything.
    """

    def __init__(self, *args, **kwargs):
        kwargs["static_address"] = LOCAL_ADDRESS
        super().__init__(*args, **kwargs)
        self._status = VMState.running
        self._agent_ready = True

    @property
    def instance_label(self) -> str:
        return f"local:{self.agent_port}"

    async def _fetch_remote_status(self) -> RemoteStatus:
        return RemoteStatus(state=VMState.running, raw_status="LOCAL", address=LOCAL_ADDRESS)

    async def _remote_start(self) -> None:
        return None

    async def _remote_stop(self) -> None:
        return None

    async def get_status(self) -> VMState:
        return self._status

    async def start(self) -> VMOperationResult:
        return VMOperationResult(success=True, status=VMState.running, agent_ready=True)

    async def stop(self) -> VMOperationResult:
        logger.info("Local mode: ignoring VM stop request")
        return VMOperationResult(success=True, status=VMState.stopped)

    async def ensure_running(self) -> VMOperationResult:
        return VMOperationResult(
            success=True, status=VMState.running, agent_ready=True, already_running=True
        )

    async def poll_once(self) -> None:
        return None

    def start_polling(self, interval_ms: int = 30000) -> None:
        logger.debug("Local mode: VM status polling disabled")

    def stop_polling(self) -> None:
        return None
