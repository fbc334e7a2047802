"""
AdWatch FastAPI Application.

REST API for the monitoring pipeline: trigger runs, read and update
alerts, review creative fatigue signals.

Features:
- Manual and scheduled (cron) monitoring runs
- Alert listing, summary and status updates
- API key authentication
- Rate limiting
- Health check endpoint
- Automatic OpenAPI documentation
"""

# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, status
from fastapi.security import APIKeyHeader
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from . import __version__
from .models import (
    AlertListResponse,
    AlertStatusUpdateRequest,
    CronRunResponse,
    ErrorResponse,
    FatigueSignalListResponse,
    HealthResponse,
    RunMonitoringRequest,
)
from ..core.config import Config
from ..core.observability import setup_logging, setup_logfire
from ..services.monitoring.access import Principal
from ..services.monitoring.exceptions import (
    AccessDeniedError,
    AlertNotFoundError,
    AlertUpdateError,
    ConfigProviderError,
    InvalidStatusTransitionError,
    MonitoringError,
    SignalNotFoundError,
)
from ..services.monitoring.models import (
    Alert,
    AlertChannel,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertSummary,
    AlertType,
    FatigueSignal,
    MonitoringRunResult,
)
from ..services.monitoring.service import MonitoringService, build_monitoring_service

# ============================================================================
# Logging Configuration
# ============================================================================

setup_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FastAPI Application Setup
# ============================================================================

app = FastAPI(
    title="AdWatch API",
    description="Ad account monitoring, creative fatigue detection and alerting",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# ============================================================================
# CORS Configuration
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# Rate Limiting
# ============================================================================

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# Service Wiring
# ============================================================================

_service: Optional[MonitoringService] = None


def get_monitoring_service() -> MonitoringService:
    """Lazily build the Supabase-backed service on first use."""
    global _service
    if _service is None:
        _service = build_monitoring_service()
    return _service

# ============================================================================
# Authentication
# ============================================================================

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(API_KEY_HEADER)):
    """
    Verify API key from request header.

    Checks against environment variable ADWATCH_API_KEY.
    If not set, allows all requests (development mode).

    Raises:
        HTTPException: If API key is invalid or missing
    """
    expected_key = os.getenv("ADWATCH_API_KEY")

    # Development mode - no API key required
    if not expected_key:
        logger.warning("ADWATCH_API_KEY not set - running in development mode (no auth)")
        return True

    if not api_key:
        logger.warning("API key missing from request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide via X-API-Key header."
        )

    if api_key != expected_key:
        logger.warning(f"Invalid API key attempt: {api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )

    return True


async def get_principal(
    authenticated: bool = Depends(verify_api_key),
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_client_ids: Optional[str] = Header(None),
) -> Principal:
    """
    Resolve the acting principal.

    The gateway in front of the API forwards the signed-in user as
    X-User-Id / X-User-Role / X-Client-Ids (comma separated). Requests
    carrying only the API key act as the integration service account.
    """
    if not x_user_id:
        return Principal.service("api")

    return Principal(
        user_id=x_user_id,
        is_admin=(x_user_role or "").lower() == "admin",
        client_ids=[c.strip() for c in (x_client_ids or "").split(",") if c.strip()],
    )


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> bool:
    """Scheduler calls authenticate with `Authorization: Bearer <CRON_SECRET>`."""
    cron_secret = os.getenv("CRON_SECRET")
    if not cron_secret or authorization != f"Bearer {cron_secret}":
        logger.error("Unauthorized cron monitoring request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
    return True


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Unauthorized - Invalid API key"},
    403: {"model": ErrorResponse, "description": "Forbidden - Not allowed for this client"},
    429: {"model": ErrorResponse, "description": "Too many requests"},
    500: {"model": ErrorResponse, "description": "Internal server error"}
}


# ============================================================================
# Health Check Endpoint
# ============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["System"],
    summary="Health check endpoint"
)
async def health_check():
    """
    Check API health and configuration status.
    """
    services = {
        "database": "configured" if Config.SUPABASE_URL and Config.SUPABASE_SERVICE_KEY else "not_configured",
        "cron": "configured" if os.getenv("CRON_SECRET") else "not_configured",
    }

    overall_status = "healthy" if services["database"] == "configured" else "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        timestamp=datetime.now(),
        services=services
    )


# ============================================================================
# Monitoring Endpoints
# ============================================================================

@app.post(
    "/api/monitoring/run",
    response_model=MonitoringRunResult,
    responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Unknown check id"}},
    tags=["Monitoring"],
    summary="Run monitoring now"
)
@limiter.limit("10/minute")
async def run_monitoring(
    request: Request,
    run_request: Optional[RunMonitoringRequest] = None,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """
    Run checks and fatigue detection immediately.

    Per-client failures are reported inside the result (HTTP 200); only a
    failure to load the client list returns 500.

    **Request Body (all optional):**
    ```json
    {"client_ids": ["acme"], "date": "2025-03-10", "dry_run": true}
    ```
    """
    run_request = run_request or RunMonitoringRequest()

    try:
        return await service.run_now(
            principal,
            client_ids=run_request.client_ids,
            as_of=run_request.as_of,
            check_ids=run_request.check_ids,
            dry_run=run_request.dry_run,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.api_route(
    "/api/cron/monitoring",
    methods=["GET", "POST"],
    response_model=CronRunResponse,
    responses=ERROR_RESPONSES,
    tags=["Monitoring"],
    summary="Scheduled monitoring run"
)
async def cron_monitoring(
    authorized: bool = Depends(verify_cron_secret),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """
    Entry point for the scheduler (every 30 minutes).

    Runs every enabled client as the scheduler service account.
    """
    logger.info("[Cron] Starting monitoring job...")
    result = await service.run_now(Principal.service("cron"))
    logger.info(
        f"[Cron] Monitoring complete: {result.clients_processed} clients, "
        f"{result.alerts_created} alerts created, {len(result.errors)} errors"
    )
    return CronRunResponse.from_result(result)


# ============================================================================
# Alert Endpoints
# ============================================================================

@app.get(
    "/api/alerts",
    response_model=AlertListResponse,
    responses=ERROR_RESPONSES,
    tags=["Alerts"],
    summary="List alerts"
)
@limiter.limit("60/minute")
async def list_alerts(
    request: Request,
    client_id: Optional[List[str]] = Query(None, description="Filter by client (repeatable)"),
    channel: Optional[AlertChannel] = None,
    alert_type: Optional[AlertType] = Query(None, alias="type"),
    severity: Optional[AlertSeverity] = None,
    alert_status: Optional[AlertStatus] = Query(AlertStatus.OPEN, alias="status"),
    all_statuses: bool = Query(False, description="Ignore the status filter"),
    check_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """
    List alerts, newest first. Defaults to open alerts.

    Members only see alerts of the clients they belong to.
    """
    filters = AlertFilters(
        client_ids=client_id,
        channel=channel,
        type=alert_type,
        severity=severity,
        status=None if all_statuses else alert_status,
        check_id=check_id,
        page=page,
        per_page=per_page,
    )
    alerts, total = await service.list_alerts(principal, filters)
    return AlertListResponse(items=alerts, total=total, page=page, per_page=per_page)


@app.get(
    "/api/alerts/summary",
    response_model=AlertSummary,
    responses=ERROR_RESPONSES,
    tags=["Alerts"],
    summary="Open critical/high alerts by channel"
)
@limiter.limit("60/minute")
async def alert_summary(
    request: Request,
    client_id: Optional[str] = None,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """
    Dashboard header summary: counts of open critical and high alerts plus
    the newest few per channel.
    """
    return await service.get_summary(principal, client_id)


@app.get(
    "/api/alerts/{alert_id}",
    response_model=Alert,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Alert not found"}},
    tags=["Alerts"],
    summary="Get one alert"
)
async def get_alert(
    alert_id: str,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    return await service.get_alert(principal, alert_id)


@app.patch(
    "/api/alerts/{alert_id}",
    response_model=Alert,
    responses={
        **ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Alert not found"},
        409: {"model": ErrorResponse, "description": "Status change not allowed"},
        503: {"model": ErrorResponse, "description": "Alert could not be written"},
    },
    tags=["Alerts"],
    summary="Acknowledge or resolve an alert"
)
@limiter.limit("30/minute")
async def update_alert(
    request: Request,
    alert_id: str,
    update: AlertStatusUpdateRequest,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """
    Move an alert along open -> acknowledged -> resolved.

    Resolved alerts cannot be reopened; a recurrence creates a new alert.
    """
    return await service.update_alert_status(principal, alert_id, update.status, update.reason)


# ============================================================================
# Fatigue Endpoints
# ============================================================================

@app.get(
    "/api/fatigue/signals",
    response_model=FatigueSignalListResponse,
    responses=ERROR_RESPONSES,
    tags=["Fatigue"],
    summary="List fatigue signals for a client"
)
async def list_fatigue_signals(
    client_id: str,
    severity: Optional[List[AlertSeverity]] = Query(None),
    include_acknowledged: bool = False,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    signals = await service.list_fatigue_signals(principal, client_id, severity, include_acknowledged)
    return FatigueSignalListResponse(items=signals, total=len(signals))


@app.post(
    "/api/fatigue/signals/{signal_id}/acknowledge",
    response_model=FatigueSignal,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Signal not found"}},
    tags=["Fatigue"],
    summary="Acknowledge a fatigue signal"
)
async def acknowledge_fatigue_signal(
    signal_id: str,
    principal: Principal = Depends(get_principal),
    service: MonitoringService = Depends(get_monitoring_service),
):
    return await service.acknowledge_fatigue_signal(principal, signal_id)


# ============================================================================
# Error Handlers
# ============================================================================

MONITORING_ERROR_STATUS = (
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (AlertNotFoundError, status.HTTP_404_NOT_FOUND),
    (SignalNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStatusTransitionError, status.HTTP_409_CONFLICT),
    (AlertUpdateError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConfigProviderError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _error_response(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            detail=detail,
            timestamp=datetime.now()
        ).model_dump(mode="json")
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return _error_response(exc.status_code, str(exc.detail), str(exc))


@app.exception_handler(MonitoringError)
async def monitoring_exception_handler(request: Request, exc: MonitoringError):
    """Map pipeline errors to HTTP status codes."""
    status_code = next(
        (code for error_class, code in MONITORING_ERROR_STATUS if isinstance(exc, error_class)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    if status_code >= 500:
        logger.error(f"Monitoring error on {request.url.path}: {exc}")
    return _error_response(status_code, str(exc), type(exc).__name__)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", str(exc))


# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    setup_logfire()
    logger.info("="*60)
    logger.info("AdWatch API Starting...")
    logger.info(f"API Version: {__version__}")
    logger.info("Docs available at: /docs")
    logger.info(f"Auth mode: {'Production (API key required)' if os.getenv('ADWATCH_API_KEY') else 'Development (no auth)'}")
    logger.info("="*60)


@app.on_event("shutdown")
async def shutdown_event():
    """Log shutdown information."""
    logger.info("AdWatch API shutting down...")


# ============================================================================
# Root Endpoint
# ============================================================================

@app.get("/", tags=["System"])
async def root():
    """
    API root endpoint with basic information.
    """
    return {
        "name": "AdWatch API",
        "version": __version__,
        "description": "Ad account monitoring, creative fatigue detection and alerting",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "run_monitoring": "/api/monitoring/run",
            "cron_monitoring": "/api/cron/monitoring",
            "alerts": "/api/alerts",
            "alert_summary": "/api/alerts/summary",
            "fatigue_signals": "/api/fatigue/signals"
        }
    }
