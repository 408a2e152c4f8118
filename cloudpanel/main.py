import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from cloudpanel.auth.router import router as auth_router
from cloudpanel.core.config import settings
from cloudpanel.core.context import build_panel_context
from cloudpanel.core.database import Base, engine
from cloudpanel.middleware.performance_monitoring import (
    PerformanceMonitoringMiddleware,
    get_performance_metrics,
)
from cloudpanel.middleware.proxy_gate import GameProxyMiddleware

# Import models to ensure they are registered with SQLAlchemy
from cloudpanel.users import models as user_models  # noqa: F401
from cloudpanel.vm.router import router as vm_router
from cloudpanel.websockets.router import router as websockets_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class ServiceStatus:
    """Track service initialization status for graceful degradation"""

    def __init__(self):
        self.database_ready = False
        self.vm_controller_ready = False
        self.failed_services = []

    def is_healthy(self) -> bool:
        return self.database_ready and self.vm_controller_ready

    def get_status(self) -> Dict[str, Any]:
        return {
            "database": self.database_ready,
            "vm_controller": self.vm_controller_ready,
            "failed_services": self.failed_services,
            "healthy": self.is_healthy(),
        }


# Global service status tracker
service_status = ServiceStatus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan with error handling and graceful degradation"""
    logger.info("Starting application startup sequence...")

    await _initialize_database()
    await _initialize_panel_context(app)

    app.state.service_status = service_status

    if service_status.is_healthy():
        logger.info("Application startup completed successfully")
    else:
        logger.warning(
            f"Application started with degraded functionality. "
            f"Failed services: {service_status.failed_services}"
        )

    yield

    await _cleanup_services(app)
    logger.info("Application shutdown completed")


async def _initialize_database():
    """Initialize database tables - critical service"""
    try:
        logger.info("Initializing database tables...")
        Base.metadata.create_all(bind=engine)
        service_status.database_ready = True
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.critical(f"Failed to initialize database: {e}")
        service_status.failed_services.append("database")
        raise RuntimeError(f"Critical database initialization failed: {e}") from e


async def _initialize_panel_context(app: FastAPI):
    """Build the VM controller, inactivity monitor and notifications"""
    try:
        logger.info(f"Initializing game VM controller ({settings.VM_CONTROLLER})...")
        context = build_panel_context(settings)
        await context.startup()
        app.state.panel_context = context
        service_status.vm_controller_ready = True
        logger.info("Game VM controller initialized successfully")
    except Exception as e:
        logger.error(f"Game VM controller initialization failed: {e}")
        service_status.failed_services.append("vm_controller")
        # Continue startup so auth and health stay available


async def _cleanup_services(app: FastAPI):
    logger.info("Starting application shutdown sequence...")

    context = getattr(app.state, "panel_context", None)
    if context is not None:
        try:
            await context.shutdown()
            logger.info("Game VM controller shut down cleanly")
        except Exception as e:
            logger.error(f"Error shutting down game VM controller: {e}")
        app.state.panel_context = None


app = FastAPI(lifespan=lifespan)


@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint with service status information"""
    status = service_status.get_status()

    response_data = {
        "status": "healthy" if status["healthy"] else "degraded",
        "timestamp": datetime.now().isoformat(),
        "services": {
            "database": "operational" if status["database"] else "failed",
            "vm_controller": "operational" if status["vm_controller"] else "failed",
        },
        "failed_services": status["failed_services"],
        "message": (
            "All services operational"
            if status["healthy"]
            else f"Running with degraded functionality: {', '.join(status['failed_services'])}"
        ),
    }

    context = getattr(app.state, "panel_context", None)
    if context is not None:
        response_data["vm"] = context.vm_controller.snapshot().to_dict()

    if not status["healthy"]:
        return Response(
            content=json.dumps(response_data),
            status_code=503,
            media_type="application/json",
        )

    return response_data


@app.get("/metrics", tags=["monitoring"])
async def get_metrics():
    """Get performance metrics and statistics"""
    return {
        "timestamp": datetime.now().isoformat(),
        "performance": get_performance_metrics(),
        "service_status": service_status.get_status(),
        "message": "Performance metrics collected successfully",
    }


# Innermost: decides local vs. proxied before routing
app.add_middleware(GameProxyMiddleware)

app.add_middleware(
    PerformanceMonitoringMiddleware,
    enabled=True,
    log_slow_requests=True,
    slow_request_threshold=1.0,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(vm_router, prefix="/api/vm", tags=["vm"])
app.include_router(websockets_router, prefix="/api/ws", tags=["websockets"])
