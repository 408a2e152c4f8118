import asyncio
import concurrent.futures
import logging
from typing import Any, Callable, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1

from cloudpanel.core.exceptions import VMControlPlaneError
from cloudpanel.vm.controller import VMController
from cloudpanel.vm.models import InstanceRef, RemoteStatus, VMState

logger = logging.getLogger(__name__)

GOOGLE_ERRORS = (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError)
TIMEOUT_ERRORS = (asyncio.TimeoutError, concurrent.futures.TimeoutError)


class GceVMController(VMController):
    """Game VM hosted on Google Compute Engine"""

    STATUS_MAP = {
        "RUNNING": VMState.running,
        "TERMINATED": VMState.stopped,
        "STOPPED": VMState.stopped,
        "SUSPENDED": VMState.stopped,
        "PROVISIONING": VMState.starting,
        "STAGING": VMState.starting,
        "STOPPING": VMState.stopping,
        "SUSPENDING": VMState.stopping,
    }

    def __init__(
        self,
        instance: InstanceRef,
        *args,
        instances_client: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.instance = instance
        self._instances_client = instances_client

    @property
    def instance_label(self) -> str:
        return str(self.instance)

    @classmethod
    def map_remote_status(cls, raw_status: Optional[str]) -> VMState:
        return cls.STATUS_MAP.get((raw_status or "").upper(), VMState.unknown)

    def _client(self):
        if self._instances_client is None:
            self._instances_client = compute_v1.InstancesClient()
        return self._instances_client

    async def _call(self, operation: str, bound: float, func: Callable[..., Any], **kwargs):
        """Run a blocking client call in a worker thread with a hard bound"""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, **kwargs), timeout=bound)
        except TIMEOUT_ERRORS:
            raise VMControlPlaneError(operation, f"timed out after {bound}s")
        except GOOGLE_ERRORS as e:
            raise VMControlPlaneError(operation, str(e)) from e

    def _invoke(self, method_name: str, **kwargs):
        # Client construction happens here too, so credential errors are bounded
        return getattr(self._client(), method_name)(
            project=self.instance.project,
            zone=self.instance.zone,
            instance=self.instance.name,
            **kwargs,
        )

    async def _fetch_remote_status(self) -> RemoteStatus:
        instance = await self._call(
            "get", self.status_timeout, self._invoke, method_name="get"
        )

        raw_status = instance.status or ""
        address = None
        if instance.network_interfaces:
            address = instance.network_interfaces[0].network_i_p or None

        return RemoteStatus(
            state=self.map_remote_status(raw_status),
            raw_status=raw_status,
            address=address,
        )

    async def _run_operation(self, operation: str, method_name: str) -> None:
        extended_operation = await self._call(
            operation, self.status_timeout, self._invoke, method_name=method_name
        )
        logger.info(f"{operation} operation for {self.instance_label} submitted")

        # result() blocks until the operation is DONE and raises if it failed
        await self._call(
            operation,
            self.operation_timeout + self.status_timeout,
            extended_operation.result,
            timeout=self.operation_timeout,
        )

        error_code = getattr(extended_operation, "error_code", None)
        if error_code:
            message = getattr(extended_operation, "error_message", "") or str(error_code)
            raise VMControlPlaneError(operation, message)

    async def _remote_start(self) -> None:
        await self._run_operation("start", "start")

    async def _remote_stop(self) -> None:
        await self._run_operation("stop", "stop")
