"""API route handlers for the flow engine service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from ..core import ComponentRegistry, Flow, FlowEngine, FlowRegistry
from .models import (
    ComponentListResponse,
    ExportInfo,
    FlowDetail,
    FlowInfo,
    FlowState,
    HealthResponse,
    UpdateRequest,
    UpdateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> FlowEngine:
    return request.app.state.engine


def get_flow(name: str) -> Flow:
    """Look up a registered flow or answer 404."""
    try:
        return FlowRegistry.get_instance().get(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Flow '{name}' not found")


# === Health ===

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    """Check service health."""
    from .app import get_uptime
    from .. import __version__

    return HealthResponse(
        status="healthy",
        version=__version__,
        flows_registered=len(FlowRegistry.get_instance().list_names()),
        uptime_seconds=get_uptime(),
    )


# === Flows ===

@router.get("/flows", response_model=dict, tags=["Flows"])
async def list_flows() -> dict:
    """List all registered flows."""
    return {
        "flows": [
            FlowInfo(
                name=flow.name,
                imports=list(flow.imports),
                exports=list(flow.exports),
            ).model_dump()
            for flow in FlowRegistry.get_instance().all()
        ]
    }


@router.get("/flows/{name}", response_model=FlowDetail, tags=["Flows"])
async def show_flow(name: str, request: Request) -> FlowDetail:
    """Flow definition plus setup changes still pending."""
    flow = get_flow(name)
    info = get_engine(request).show(flow)

    return FlowDetail(
        name=flow.name,
        description=info["description"],
        imports={n: op.spec.type for n, op in flow.imports.items()},
        exports=[
            ExportInfo(
                name=export.name,
                collector=export.collector_id,
                target=export.target.type,
                primary_key_fields=list(export.primary_key_fields),
                setup_by_user=export.setup_by_user,
            )
            for export in flow.exports.values()
        ],
        setup_changes=[c for c in info["setup"]["changes"] if c["action"] != "unchanged"],
    )


@router.get("/flows/{name}/state", response_model=FlowState, tags=["Flows"])
async def flow_state(name: str, request: Request) -> FlowState:
    """Recorded row and target state of a flow."""
    flow = get_flow(name)
    return FlowState(**get_engine(request).store.load(flow.name).summary())


@router.post("/flows/{name}/update", response_model=UpdateResponse, tags=["Flows"])
async def update_flow(name: str, request: Request, body: UpdateRequest | None = None) -> UpdateResponse:
    """
    Run one incremental update cycle and wait for its report.

    Row and export failures are part of the report (success=false); only
    an unknown import name is rejected.
    """
    flow = get_flow(name)
    imports = body.imports if body is not None else None
    try:
        result = await get_engine(request).update(flow, imports=imports)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        logger.warning("Update of flow '%s' recorded %d errors", name, len(result.errors))
    return UpdateResponse(**result.to_dict())


# === Components ===

@router.get("/components", response_model=ComponentListResponse, tags=["Components"])
async def list_components() -> ComponentListResponse:
    """List all available component types by category."""
    registry = ComponentRegistry.get_instance()

    return ComponentListResponse(
        components={
            category: registry.list_by_category(category)
            for category in ("source", "function", "target")
        },
        total=len(registry.list_types()),
    )


@router.get("/components/{category}/{name}", tags=["Components"])
async def get_component(category: str, name: str) -> dict:
    """Get a component's manifest."""
    manifest = ComponentRegistry.get_instance().get_manifest(f"{category}/{name}")
    if manifest is None:
        raise HTTPException(status_code=404, detail=f"Component '{category}/{name}' not found")
    return manifest
