"""Readiness gate in front of the in-VM agent.

Requests under the management prefix that the panel does not serve itself
are forwarded to the game agent, but only once the agent is confirmed
ready. Until then the caller gets an immediate 503 describing the VM state
and how long to wait, and a stopped VM is started in the background.
"""

import asyncio
import logging
import math
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

import aiohttp
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cloudpanel.vm.models import VMState

logger = logging.getLogger(__name__)

PROXIED_VIA_HEADER = "X-Proxied-Via"
PROXIED_VIA_VALUE = "web-vm"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# error, reported status, message, suggested retry delay per VM state.
# A stopped or unknown VM reports "starting": the gate has just started it.
NOT_READY_RESPONSES = {
    VMState.stopped: (
        "Game VM is starting up",
        VMState.starting,
        "The Game VM is being started. Please wait...",
        5000,
    ),
    VMState.unknown: (
        "Game VM is starting up",
        VMState.starting,
        "The Game VM is being started. Please wait...",
        5000,
    ),
    VMState.starting: (
        "Game VM is still booting",
        VMState.starting,
        "Game VM is starting up, please wait...",
        5000,
    ),
    VMState.stopping: (
        "Game VM is shutting down",
        VMState.stopping,
        "Game VM is shutting down, please try again in a moment.",
        10000,
    ),
    VMState.running: (
        "Game agent is not ready",
        VMState.running,
        "Game VM is running but the agent is not responding yet.",
        3000,
    ),
}


class RouteKind(str, Enum):
    local = "local"
    proxied = "proxied"
    passthrough = "passthrough"


def _under_prefix(path: str, prefix: str) -> bool:
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


def classify_path(
    path: str, api_prefix: str, local_prefixes: Iterable[str]
) -> RouteKind:
    """Decide who serves a request path"""
    if not _under_prefix(path, api_prefix):
        return RouteKind.passthrough
    for prefix in local_prefixes:
        if _under_prefix(path, prefix):
            return RouteKind.local
    return RouteKind.proxied


def not_ready_response(vm_status: VMState) -> JSONResponse:
    error, reported_status, message, retry_after_ms = NOT_READY_RESPONSES[vm_status]
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": error,
            "vmStatus": reported_status.value,
            "message": message,
            "retryAfterMs": retry_after_ms,
        },
        headers={"Retry-After": str(math.ceil(retry_after_ms / 1000))},
    )


def unreachable_response(vm_status: VMState, agent_ready: bool) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": "Game VM is not reachable",
            "vmStatus": vm_status.value,
            "agentReady": agent_ready,
        },
    )


class GameProxy:
    """Forwards a buffered request to the agent and buffers its response"""

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Bodies pass through untouched, content-encoding included
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                auto_decompress=False,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def build_target_url(base_url: str, request: Request) -> str:
        target = f"{base_url.rstrip('/')}{request.url.path}"
        if request.url.query:
            target += f"?{request.url.query}"
        return target

    @staticmethod
    def build_upstream_headers(request: Request, base_url: str) -> dict:
        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS
            and key.lower() not in ("host", "content-length")
        }
        # Rewrite the origin to the agent, keep the original for its logs
        headers["Host"] = urlsplit(base_url).netloc
        if request.client:
            headers["X-Forwarded-For"] = request.client.host
        headers["X-Forwarded-Host"] = request.headers.get("host", "")
        headers["X-Forwarded-Proto"] = request.url.scheme
        return headers

    async def forward(self, request: Request, base_url: str) -> Response:
        target = self.build_target_url(base_url, request)
        headers = self.build_upstream_headers(request, base_url)
        body = await request.body()

        session = await self._get_session()
        logger.debug(f"Proxying {request.method} {request.url.path} -> {target}")

        async with session.request(
            request.method,
            target,
            headers=headers,
            data=body or None,
            allow_redirects=False,
        ) as upstream:
            content = await upstream.read()

            response = Response(content=content, status_code=upstream.status)
            for key, value in upstream.headers.items():
                if key.lower() in HOP_BY_HOP_HEADERS or key.lower() == "content-length":
                    continue
                response.headers.append(key, value)
            response.headers[PROXIED_VIA_HEADER] = PROXIED_VIA_VALUE
            return response


async def gate_request(request: Request, context) -> Response:
    """Forward to the agent when it is ready, otherwise answer 503 at once"""
    vm_controller = context.vm_controller

    if not vm_controller.agent_ready:
        vm_status = vm_controller.status
        if vm_status in (VMState.stopped, VMState.unknown):
            # Single-flight: concurrent requests share one start
            context.lifecycle.request_start()
        logger.debug(
            f"Gated {request.method} {request.url.path}: VM {vm_status.value}, agent not ready"
        )
        request.state.gate_outcome = "not_ready"
        return not_ready_response(vm_status)

    agent_url = vm_controller.game_agent_url
    if not agent_url:
        request.state.gate_outcome = "not_ready"
        return not_ready_response(vm_controller.status)

    context.inactivity_monitor.record_web_activity()

    try:
        response = await context.proxy.forward(request, agent_url)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Proxy error for {request.method} {request.url.path}: {e}")
        request.state.gate_outcome = "proxy_error"
        return unreachable_response(vm_controller.status, vm_controller.agent_ready)

    request.state.gate_outcome = "proxied"
    return response


class GameProxyMiddleware(BaseHTTPMiddleware):
    """Routes management API calls the panel does not serve to the game agent"""

    async def dispatch(self, request: Request, call_next):
        context = getattr(request.app.state, "panel_context", None)
        if context is None:
            return await call_next(request)

        kind = classify_path(
            request.url.path,
            context.settings.MANAGEMENT_API_PREFIX,
            context.settings.local_route_prefixes,
        )
        if kind != RouteKind.proxied:
            return await call_next(request)

        return await gate_request(request, context)
