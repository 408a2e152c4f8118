import logging
import re
import time
from typing import Dict, List

import psutil
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from cloudpanel.middleware.proxy_gate import PROXIED_VIA_HEADER

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("local", "proxied", "not_ready", "proxy_error")


class MemoryTracker:
    """Helper class to track memory usage"""

    @staticmethod
    def get_memory_usage() -> Dict:
        """Get current memory usage information"""
        try:
            process = psutil.Process()
            memory_info = process.memory_info()
            memory_percent = process.memory_percent()

            return {
                "rss_mb": round(memory_info.rss / 1024 / 1024, 2),  # Resident set size
                "percent": round(memory_percent, 2),
                "available_mb": round(psutil.virtual_memory().available / 1024 / 1024, 2),
            }
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return {"rss_mb": 0, "percent": 0, "available_mb": 0}


class PerformanceMetrics:
    """Request timings split by who answered: the panel, the agent, or the gate"""

    MAX_HISTORY = 1000
    MAX_ENDPOINT_HISTORY = 100

    def __init__(self):
        self.request_times: List[float] = []
        self.endpoint_stats: Dict[str, List[float]] = {}
        self.kind_counts: Dict[str, int] = {kind: 0 for kind in REQUEST_KINDS}
        self.memory_peaks: List[float] = []

    def add_request_metric(
        self,
        endpoint: str,
        method: str,
        duration: float,
        kind: str,
        memory_stats: Dict,
    ):
        self.request_times.append(duration)

        endpoint_key = f"{method} {endpoint}"
        self.endpoint_stats.setdefault(endpoint_key, []).append(duration)
        self.kind_counts[kind] = self.kind_counts.get(kind, 0) + 1
        self.memory_peaks.append(memory_stats.get("percent", 0))

        if len(self.request_times) > self.MAX_HISTORY:
            self.request_times = self.request_times[-self.MAX_HISTORY:]
            self.memory_peaks = self.memory_peaks[-self.MAX_HISTORY:]

        times = self.endpoint_stats[endpoint_key]
        if len(times) > self.MAX_ENDPOINT_HISTORY:
            self.endpoint_stats[endpoint_key] = times[-self.MAX_ENDPOINT_HISTORY:]

    def reset(self):
        self.__init__()

    def get_summary(self) -> Dict:
        """Get performance summary statistics"""
        if not self.request_times:
            return {
                "total_requests": 0,
                "avg_response_time_ms": 0,
                "p95_response_time_ms": 0,
                "requests_by_kind": dict(self.kind_counts),
                "avg_memory_usage_percent": 0,
                "slowest_endpoints": [],
            }

        sorted_times = sorted(self.request_times)
        total_requests = len(sorted_times)
        p95_index = min(int(total_requests * 0.95), total_requests - 1)

        endpoint_averages = [
            {
                "endpoint": endpoint,
                "avg_time_ms": round(sum(times) / len(times) * 1000, 2),
                "request_count": len(times),
            }
            for endpoint, times in self.endpoint_stats.items()
        ]
        slowest_endpoints = sorted(
            endpoint_averages, key=lambda x: x["avg_time_ms"], reverse=True
        )[:10]

        return {
            "total_requests": total_requests,
            "avg_response_time_ms": round(sum(sorted_times) / total_requests * 1000, 2),
            "p95_response_time_ms": round(sorted_times[p95_index] * 1000, 2),
            "requests_by_kind": dict(self.kind_counts),
            "avg_memory_usage_percent": round(
                sum(self.memory_peaks) / len(self.memory_peaks), 2
            ),
            "slowest_endpoints": slowest_endpoints,
        }


# Global performance metrics instance
performance_metrics = PerformanceMetrics()


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor request timing and memory usage"""

    def __init__(
        self,
        app,
        enabled: bool = True,
        log_slow_requests: bool = True,
        slow_request_threshold: float = 1.0,
    ):
        super().__init__(app)
        self.enabled = enabled
        self.log_slow_requests = log_slow_requests
        self.slow_request_threshold = slow_request_threshold  # seconds

    async def dispatch(self, request: Request, call_next):
        if not self.enabled:
            return await call_next(request)

        if request.url.path in ["/health", "/metrics"]:
            return await call_next(request)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path} - {str(e)} (took {duration:.3f}s)"
            )
            raise

        duration = time.time() - start_time
        memory_end = MemoryTracker.get_memory_usage()
        kind = self._classify(request, response)

        performance_metrics.add_request_metric(
            endpoint=self._extract_endpoint_pattern(request.url.path),
            method=request.method,
            duration=duration,
            kind=kind,
            memory_stats=memory_end,
        )

        response.headers["X-Response-Time"] = f"{duration * 1000:.2f}ms"

        if self.log_slow_requests and duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} ({kind}) "
                f"took {duration:.3f}s (Memory: {memory_end.get('percent', 0):.1f}%)"
            )

        logger.debug(
            f"{request.method} {request.url.path} - {response.status_code} - "
            f"{kind} - {duration * 1000:.2f}ms"
        )

        return response

    @staticmethod
    def _classify(request: Request, response) -> str:
        outcome = getattr(request.state, "gate_outcome", None)
        if outcome in REQUEST_KINDS:
            return outcome
        if PROXIED_VIA_HEADER in response.headers:
            return "proxied"
        return "local"

    def _extract_endpoint_pattern(self, path: str) -> str:
        """Extract endpoint pattern by replacing IDs with placeholders"""
        path = re.sub(r"/\d+", "/{id}", path)
        path = re.sub(r"/[a-f0-9-]{36}", "/{uuid}", path)
        return path


def get_performance_metrics() -> Dict:
    """Get current performance metrics summary"""
    return performance_metrics.get_summary()
