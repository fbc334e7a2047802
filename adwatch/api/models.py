"""
API Request and Response Models.

Pydantic models for FastAPI request/response validation and
automatic OpenAPI documentation generation.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, List
from datetime import date, datetime

from ..services.monitoring.models import (
    Alert,
    AlertStatus,
    FatigueSignal,
    MonitoringRunResult,
)


# ============================================================================
# Monitoring Run Models
# ============================================================================

class RunMonitoringRequest(BaseModel):
    """
    Request model for triggering a monitoring run.

    All fields are optional; an empty body runs every enabled client for
    today.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "client_ids": ["acme"],
                "date": "2025-03-10",
                "dry_run": True
            }
        }
    )

    client_ids: Optional[List[str]] = Field(
        None,
        description="Restrict the run to these clients (default: all enabled)"
    )
    as_of: Optional[date] = Field(
        None,
        alias="date",
        description="Anchor day for windows and fingerprints (default: today)"
    )
    check_ids: Optional[List[str]] = Field(
        None,
        description="Restrict the run to these check ids"
    )
    dry_run: bool = Field(
        False,
        description="Evaluate and log without writing alerts or signals"
    )


class CronRunResponse(BaseModel):
    """Compact run summary returned to the scheduler."""
    success: bool
    summary: Dict[str, int]
    errors: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_result(cls, result: MonitoringRunResult) -> "CronRunResponse":
        return cls(
            success=result.success,
            summary={
                "clients_processed": result.clients_processed,
                "checks_run": result.checks_run,
                "alerts_created": result.alerts_created,
                "alerts_skipped": result.alerts_skipped,
                "alerts_resolved": result.alerts_resolved,
                "errors": len(result.errors),
            },
            errors=[str(error) for error in result.errors] or None,
        )


# ============================================================================
# Alert Models
# ============================================================================

class AlertListResponse(BaseModel):
    """One page of alerts."""
    items: List[Alert] = Field(default_factory=list)
    total: int = Field(..., description="Total alerts matching the filters")
    page: int
    per_page: int


class AlertStatusUpdateRequest(BaseModel):
    """Request model for acknowledging or resolving an alert."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "acknowledged",
                "reason": "Looking into the disapprovals"
            }
        }
    )

    status: AlertStatus = Field(..., description="Target status (acknowledged or resolved)")
    reason: Optional[str] = Field(None, max_length=500, description="Optional note stored with the change")


# ============================================================================
# Fatigue Models
# ============================================================================

class FatigueSignalListResponse(BaseModel):
    items: List[FatigueSignal] = Field(default_factory=list)
    total: int


# ============================================================================
# System Models
# ============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    timestamp: datetime = Field(default_factory=datetime.now)
    services: Dict[str, str] = Field(
        default_factory=dict,
        description="Status of dependent services"
    )


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    timestamp: datetime = Field(default_factory=datetime.now)
