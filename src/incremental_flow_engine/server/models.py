"""Pydantic models for the flow engine API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# === Flow Models ===

class FlowInfo(BaseModel):
    """Summary info about a flow (for listing)."""
    name: str
    imports: list[str] = Field(default_factory=list)
    exports: list[str] = Field(default_factory=list)


class ExportInfo(BaseModel):
    """One declared export of a flow."""
    name: str
    collector: str
    target: str
    primary_key_fields: list[str]
    setup_by_user: bool = False


class FlowDetail(BaseModel):
    """Definition of a flow with its pending setup changes."""
    name: str
    description: str
    imports: dict[str, str] = Field(default_factory=dict)
    exports: list[ExportInfo] = Field(default_factory=list)
    setup_changes: list[dict[str, Any]] = Field(default_factory=list)


class FlowState(BaseModel):
    """Recorded state summary of a flow."""
    flow: str
    events: int = 0
    imports: dict[str, dict[str, Any]] = Field(default_factory=dict)
    exports: dict[str, dict[str, Any]] = Field(default_factory=dict)


# === Update Models ===

class UpdateRequest(BaseModel):
    """Request to run one update cycle."""
    imports: Optional[list[str]] = None


class UpdateResponse(BaseModel):
    """Report of an update cycle."""
    flow: str
    success: bool
    cancelled: bool = False
    duration_seconds: float = 0.0
    stats: dict[str, Any] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    traces: list[dict[str, Any]] = Field(default_factory=list)


# === Component Models ===

class ComponentListResponse(BaseModel):
    """Response listing components by category."""
    components: dict[str, list[str]]
    total: int


# === Health Check ===

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str = "0.1.0"
    flows_registered: int = 0
    uptime_seconds: float = 0.0
