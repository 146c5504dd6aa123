"""
HTTP API for the Fleet Sentinel control plane.

Serves the fleet summary, alert and workflow endpoints. Every error is
returned as ``{"error": {"code", "message"}}`` with a stable code.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..alerts.models import Alert
from ..controller import ControlPlane, setup_logging
from ..core.config import get_config
from ..core.errors import FleetError
from ..core.models import DeviceStatus
from ..workflows.models import WorkflowDefinition

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    "NOT_FOUND": 404,
    "CONFIGURATION_ERROR": 400,
    "ACTION_FAILED": 502,
    "DEPENDENCY_UNAVAILABLE": 503,
    "DEPENDENCY_TIMEOUT": 504,
}


class ActorRequest(BaseModel):
    """Who performs an acknowledge/resolve/stop."""

    by: str = Field(..., min_length=1)


class StartWorkflowRequest(BaseModel):
    device_id: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    deadline_seconds: Optional[float] = Field(None, gt=0)


def alert_payload(alert: Alert) -> Dict[str, Any]:
    payload = alert.model_dump(mode="json")
    payload["state"] = alert.state.value
    return payload


def definition_payload(definition: WorkflowDefinition) -> Dict[str, Any]:
    return {
        "name": definition.name,
        "description": definition.description,
        "steps": [
            {"name": s.name, "kind": s.action.kind, "required": s.required}
            for s in definition.steps
        ],
    }


def control_plane_of(request: Request) -> ControlPlane:
    """The app's control plane, built from global configuration on first use."""
    state = request.app.state
    if getattr(state, "control_plane", None) is None:
        state.control_plane = ControlPlane(get_config())
    return state.control_plane


fleet_router = APIRouter(prefix="/api/fleet", tags=["fleet"])
alerts_router = APIRouter(prefix="/api/alerts", tags=["alerts"])
workflows_router = APIRouter(prefix="/api/workflows", tags=["workflows"])


@fleet_router.get("")
def get_fleet(request: Request) -> Dict[str, Any]:
    """Device counts by status plus open alert counts."""
    return control_plane_of(request).fleet_summary()


@fleet_router.get("/devices")
def list_devices(
    request: Request,
    status: Optional[DeviceStatus] = None,
    limit: int = Query(500, ge=1, le=5000),
) -> List[Dict[str, Any]]:
    devices = control_plane_of(request).inventory.list_devices(status=status, limit=limit)
    return [d.model_dump(mode="json") for d in devices]


@alerts_router.get("")
def list_alerts(
    request: Request,
    device_id: Optional[str] = None,
    include_resolved: bool = False,
    limit: int = Query(100, ge=1, le=1000),
) -> List[Dict[str, Any]]:
    alerts = control_plane_of(request).alert_manager.list_alerts(
        device_id=device_id, include_resolved=include_resolved, limit=limit
    )
    return [alert_payload(a) for a in alerts]


@alerts_router.get("/correlations/{device_id}")
def correlate_alerts(
    request: Request,
    device_id: str,
    window_minutes: Optional[int] = Query(None, ge=1),
) -> List[Dict[str, Any]]:
    groups = control_plane_of(request).alert_manager.correlate(device_id, window_minutes)
    return [g.model_dump(mode="json") for g in groups]


@alerts_router.get("/{alert_id}")
def get_alert(request: Request, alert_id: str) -> Dict[str, Any]:
    return alert_payload(control_plane_of(request).alert_manager.get(alert_id))


@alerts_router.post("/{alert_id}/acknowledge")
def acknowledge_alert(request: Request, alert_id: str, body: ActorRequest) -> Dict[str, Any]:
    return alert_payload(control_plane_of(request).alert_manager.acknowledge(alert_id, body.by))


@alerts_router.post("/{alert_id}/resolve")
def resolve_alert(request: Request, alert_id: str, body: ActorRequest) -> Dict[str, Any]:
    return alert_payload(control_plane_of(request).alert_manager.resolve(alert_id, body.by))


@workflows_router.get("")
def list_workflows(request: Request) -> List[Dict[str, Any]]:
    return [definition_payload(d) for d in control_plane_of(request).orchestrator.list_definitions()]


@workflows_router.get("/history")
def workflow_history(
    request: Request,
    limit: int = Query(20, ge=1, le=500),
    device_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    executions = control_plane_of(request).orchestrator.history(limit=limit, device_id=device_id)
    return [e.model_dump(mode="json") for e in executions]


@workflows_router.post("/{workflow_name}/start", status_code=202)
async def start_workflow(request: Request, workflow_name: str, body: StartWorkflowRequest) -> Dict[str, Any]:
    """Start a workflow; poll the execution endpoint for its outcome."""
    execution_id = await control_plane_of(request).orchestrator.start(
        workflow_name,
        body.device_id,
        params=body.params,
        deadline_seconds=body.deadline_seconds,
        triggered_by="api",
    )
    return {"execution_id": execution_id, "status": "Running"}


@workflows_router.get("/executions/{execution_id}")
def get_execution(request: Request, execution_id: str) -> Dict[str, Any]:
    return control_plane_of(request).orchestrator.status(execution_id).model_dump(mode="json")


@workflows_router.post("/executions/{execution_id}/stop")
async def stop_execution(request: Request, execution_id: str, body: ActorRequest) -> Dict[str, Any]:
    execution = await control_plane_of(request).orchestrator.stop(execution_id, by=body.by)
    return execution.model_dump(mode="json")


async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    status_code = HTTP_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} crashed: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": FleetError.code, "message": "Internal server error"}},
    )


def create_app(control_plane: Optional[ControlPlane] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        control_plane: Control plane to serve. If None, one is built from
            global configuration on the first request.
    """
    app = FastAPI(
        title="Fleet Sentinel API",
        description="Fleet health, alert lifecycle and remediation workflow API",
        version=__version__,
    )
    app.state.control_plane = control_plane

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FleetError, fleet_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    app.include_router(fleet_router)
    app.include_router(alerts_router)
    app.include_router(workflows_router)

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Fleet Sentinel API",
            "version": __version__,
            "endpoints": {
                "fleet": "/api/fleet",
                "devices": "/api/fleet/devices",
                "alerts": "/api/alerts",
                "workflows": "/api/workflows",
                "docs": "/docs",
            },
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    return app


def main() -> None:
    """Main entry point for the API server (no background loops)."""
    config = get_config()
    setup_logging(config.log_level)
    host = os.getenv("API_HOST", config.api_host)
    port = int(os.getenv("API_PORT", str(config.api_port)))

    logger.info("=" * 60)
    logger.info("Fleet Sentinel - API Server")
    logger.info("=" * 60)
    logger.info(f"Host: {host}")
    logger.info(f"Port: {port}")
    logger.info(f"API Documentation: http://{host}:{port}/docs")
    logger.info("=" * 60)

    uvicorn.run(create_app(ControlPlane(config)), host=host, port=port)


if __name__ == "__main__":
    main()
