"""Pydantic models for the monitoring & alerting pipeline.

Enums, alert records, check results, fatigue signals, client configs and
run results. No database access in this file -- pure type definitions.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ClientConfigurationError


# =============================================================================
# Enums
# =============================================================================

class AlertChannel(str, Enum):
    GOOGLE_ADS = "google_ads"
    META = "meta"
    WEBSITE = "website"
    TRACKING = "tracking"
    SEO = "seo"
    COMMERCE = "commerce"


AD_CHANNELS = (AlertChannel.GOOGLE_ADS, AlertChannel.META)


class AlertType(str, Enum):
    FUNDAMENTAL = "fundamental"
    FATIGUE = "fatigue"
    PERFORMANCE = "performance"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]


_SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class EntityType(str, Enum):
    AD = "ad"
    AD_SET = "ad_set"
    CAMPAIGN = "campaign"


class AlertOutcome(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    DUPLICATE = "duplicate"
    ALREADY_OPEN = "already_open"


class RunErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    DATA_FETCH = "data_fetch"
    TIMEOUT = "timeout"
    CHECK = "check"
    DETECTOR = "detector"
    UNEXPECTED = "unexpected"


# =============================================================================
# Alert details (tagged by `kind`)
# =============================================================================

class AlertDetails(BaseModel):
    """Structured audit payload attached to an alert.

    Every producer registers a subclass keyed by its `kind`. Fields a
    variant does not declare are kept as extras so that payloads written by
    newer producers survive a read/write cycle.
    """

    model_config = ConfigDict(extra="allow")

    kind: str = "generic"
    client_name: Optional[str] = None
    check_count: Optional[int] = None


_DETAILS_REGISTRY: Dict[str, Type[AlertDetails]] = {}


def register_details(cls: Type[AlertDetails]) -> Type[AlertDetails]:
    """Class decorator registering a details variant under its `kind` default."""
    _DETAILS_REGISTRY[cls.model_fields["kind"].default] = cls
    return cls


def parse_alert_details(raw: Any) -> AlertDetails:
    """Resolve a raw details payload into its registered variant.

    Unknown kinds, missing payloads and payloads that do not fit their
    variant all fall back to the generic AlertDetails.
    """
    if isinstance(raw, AlertDetails):
        return raw
    if not isinstance(raw, dict):
        return AlertDetails()

    variant = _DETAILS_REGISTRY.get(raw.get("kind") or "", AlertDetails)
    try:
        return variant.model_validate(raw)
    except ValidationError:
        return AlertDetails.model_validate(raw)


@register_details
class DisapprovedAdsDetails(AlertDetails):
    kind: str = "disapproved_ads"
    ads: List[Dict[str, Any]] = Field(default_factory=list)
    total_disapproved: int = 0


@register_details
class NoDeliveryDetails(AlertDetails):
    kind: str = "no_delivery"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)
    total_no_delivery: int = 0
    min_days_running: int = 1


@register_details
class BudgetDepletedDetails(AlertDetails):
    kind: str = "budget_depleted"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)
    depletion_threshold: float = 0.95


@register_details
class ConversionTrackingDetails(AlertDetails):
    kind: str = "conversion_tracking_broken"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)
    total_spend: float = 0.0
    total_clicks: int = 0


@register_details
class CpcSpikeDetails(AlertDetails):
    kind: str = "cpc_spike"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)
    max_increase_pct: float = 0.0


@register_details
class CpaIncreaseDetails(AlertDetails):
    kind: str = "cpa_increase"
    current_cpa: float = 0.0
    previous_cpa: float = 0.0
    change_pct: float = 0.0
    current_conversions: float = 0.0
    previous_conversions: float = 0.0


@register_details
class SpendWithoutValueDetails(AlertDetails):
    kind: str = "spend_without_value"
    current_spend: float = 0.0
    previous_spend: float = 0.0
    spend_change_pct: float = 0.0
    result_change_pct: float = 0.0
    wasted_spend_estimate: float = 0.0


@register_details
class RoasDecreaseDetails(AlertDetails):
    kind: str = "roas_decrease"
    current_roas: float = 0.0
    previous_roas: float = 0.0
    change_pct: float = 0.0
    current_spend: float = 0.0
    previous_spend: float = 0.0
    current_value: float = 0.0
    previous_value: float = 0.0
    lost_revenue: float = 0.0
    collapsed: bool = False


@register_details
class PerformanceDropDetails(AlertDetails):
    kind: str = "performance_drop"
    current_conversions: float = 0.0
    previous_conversions: float = 0.0
    change_pct: float = 0.0


@register_details
class PausedHighPerformersDetails(AlertDetails):
    kind: str = "paused_high_performers"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)
    total_count: int = 0
    total_missed_revenue: float = 0.0
    total_conversions: float = 0.0
    avg_roas: float = 0.0
    comparison_cpa: Optional[float] = None


@register_details
class AudienceIssuesDetails(AlertDetails):
    kind: str = "audience_issues"
    campaigns: List[Dict[str, Any]] = Field(default_factory=list)


@register_details
class CreativeFatigueDetails(AlertDetails):
    kind: str = "creative_fatigue"
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    account_ref: Optional[str] = None
    current_frequency: float = 0.0
    baseline_frequency: float = 0.0
    current_ctr: float = 0.0
    baseline_ctr: float = 0.0
    current_cpc: float = 0.0
    baseline_cpc: float = 0.0
    frequency_change: float = 0.0
    ctr_change: float = 0.0
    cpc_change: float = 0.0
    reasons: List[str] = Field(default_factory=list)


def _coerce_details(value: Any) -> AlertDetails:
    return parse_alert_details(value)


# =============================================================================
# Alerts
# =============================================================================

class Alert(BaseModel):
    """A persisted alert record."""

    id: str
    client_id: str
    channel: AlertChannel
    check_id: str
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.OPEN
    title: str
    short_description: str = ""
    impact: str = ""
    suggested_actions: List[str] = Field(default_factory=list)
    details: SerializeAsAny[AlertDetails] = Field(default_factory=AlertDetails)
    fingerprint: str
    detected_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    status_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, value: Any) -> AlertDetails:
        return _coerce_details(value)

    @field_validator("suggested_actions", mode="before")
    @classmethod
    def _default_actions(cls, value: Any) -> List[str]:
        return value or []


class CreateAlertInput(BaseModel):
    """Everything needed to create an alert; status and timestamps are set on insert."""

    client_id: str
    channel: AlertChannel
    type: AlertType
    severity: AlertSeverity
    check_id: str
    title: str
    short_description: str = ""
    impact: str = ""
    suggested_actions: List[str] = Field(default_factory=list)
    details: SerializeAsAny[AlertDetails] = Field(default_factory=AlertDetails)
    fingerprint: str

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, value: Any) -> AlertDetails:
        return _coerce_details(value)


class AlertCreationResult(BaseModel):
    """Outcome of a create attempt. Never raised, always returned."""

    outcome: AlertOutcome
    alert_id: Optional[str] = None
    reason: Optional[SkipReason] = None
    error: Optional[str] = None

    @classmethod
    def created(cls, alert_id: str) -> "AlertCreationResult":
        return cls(outcome=AlertOutcome.CREATED, alert_id=alert_id)

    @classmethod
    def skipped(cls, reason: SkipReason, alert_id: Optional[str] = None) -> "AlertCreationResult":
        return cls(outcome=AlertOutcome.SKIPPED, reason=reason, alert_id=alert_id)

    @classmethod
    def failed(cls, error: str) -> "AlertCreationResult":
        return cls(outcome=AlertOutcome.FAILED, error=error)

    @property
    def is_created(self) -> bool:
        return self.outcome == AlertOutcome.CREATED


class AlertFilters(BaseModel):
    """Filters and pagination for alert listings."""

    client_ids: Optional[List[str]] = None
    channel: Optional[AlertChannel] = None
    type: Optional[AlertType] = None
    severity: Optional[AlertSeverity] = None
    status: Optional[AlertStatus] = AlertStatus.OPEN
    check_id: Optional[str] = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class AlertPreview(BaseModel):
    id: str
    client_id: str
    check_id: str
    title: str
    severity: AlertSeverity
    detected_at: datetime


class ChannelSummary(BaseModel):
    count: int = 0
    items: List[AlertPreview] = Field(default_factory=list)


class AlertSummary(BaseModel):
    """Open critical/high alerts grouped by channel for dashboard headers."""

    total_critical: int = 0
    total_high: int = 0
    by_channel: Dict[str, ChannelSummary] = Field(default_factory=dict)


# =============================================================================
# Checks
# =============================================================================

class AlertData(BaseModel):
    """Alert content carried by a non-ok check result."""

    title: str
    short_description: str
    impact: str = ""
    suggested_actions: List[str] = Field(default_factory=list)
    severity: AlertSeverity


class CheckResult(BaseModel):
    check_id: str
    status: CheckStatus
    count: int = 0
    alert_data: Optional[AlertData] = None
    details: SerializeAsAny[AlertDetails] = Field(default_factory=AlertDetails)

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, value: Any) -> AlertDetails:
        return _coerce_details(value)

    @model_validator(mode="after")
    def _alert_data_matches_status(self) -> "CheckResult":
        if self.status == CheckStatus.OK and self.alert_data is not None:
            raise ValueError("ok check results carry no alert data")
        if self.status != CheckStatus.OK and self.alert_data is None:
            raise ValueError(f"{self.status.value} check results require alert data")
        return self

    @property
    def is_ok(self) -> bool:
        return self.status == CheckStatus.OK


# =============================================================================
# Metrics
# =============================================================================

class DateRange(BaseModel):
    """Inclusive calendar-day range."""

    start: date
    end: date

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @classmethod
    def trailing(cls, end: date, days: int) -> "DateRange":
        """The `days` calendar days ending at (and including) `end`."""
        return cls(start=end - timedelta(days=days - 1), end=end)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def covers(self, other: "DateRange") -> bool:
        return self.start <= other.start and other.end <= self.end


class MetricRow(BaseModel):
    """One entity-day of performance data.

    Optional status fields are None when the source does not provide them;
    None means unknown, never a problem.
    """

    day: date
    entity_type: EntityType
    entity_id: str
    entity_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_set_name: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: float = 0.0
    conversion_value: float = 0.0
    frequency: Optional[float] = None
    status: Optional[str] = None
    review_status: Optional[str] = None
    policy_topics: List[str] = Field(default_factory=list)
    daily_budget: Optional[float] = None
    audience_count: Optional[int] = None
    start_date: Optional[date] = None


# =============================================================================
# Fatigue
# =============================================================================

class FatigueThresholds(BaseModel):
    """Tunable fatigue detection settings. Percentages are whole numbers."""

    current_window_days: int = Field(default=7, ge=1)
    baseline_window_days: int = Field(default=14, ge=1)
    min_baseline_days: int = Field(default=7, ge=1)
    min_current_spend: float = Field(default=10.0, ge=0)
    frequency_moderate: float = 20.0
    frequency_large: float = 50.0
    ctr_moderate: float = 15.0
    ctr_large: float = 30.0
    cpc_moderate: float = 15.0
    cpc_large: float = 30.0


class FatigueSignal(BaseModel):
    """A per-entity creative fatigue verdict."""

    id: Optional[str] = None
    client_id: str
    channel: AlertChannel = AlertChannel.META
    account_ref: Optional[str] = None
    entity_type: EntityType
    entity_id: str
    entity_name: Optional[str] = None
    campaign_name: Optional[str] = None
    ad_set_name: Optional[str] = None
    current_frequency: float
    baseline_frequency: float
    current_ctr: float
    baseline_ctr: float
    current_cpc: float
    baseline_cpc: float
    frequency_change: float
    ctr_change: float
    cpc_change: float
    current_spend: float = 0.0
    baseline_days: int = 0
    severity: AlertSeverity
    reasons: List[str] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list)
    is_acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    detected_at: Optional[datetime] = None
    detection_date: Optional[date] = None

    @property
    def is_promotable(self) -> bool:
        return self.severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL)


# =============================================================================
# Client configuration
# =============================================================================

class ClientMonitoringConfig(BaseModel):
    """Per-client monitoring settings, read-only to the pipeline."""

    client_id: str
    client_name: str
    enabled: bool = True
    accounts: Dict[AlertChannel, str] = Field(default_factory=dict)
    credentials_ref: Optional[str] = None
    thresholds: Dict[str, Any] = Field(default_factory=dict)
    timezone: Optional[str] = None

    def account_for(self, channel: AlertChannel) -> Optional[str]:
        return self.accounts.get(channel)

    @property
    def ad_channels(self) -> List[AlertChannel]:
        return [channel for channel in AD_CHANNELS if self.accounts.get(channel)]

    def threshold(self, key: str, default: Any) -> Any:
        """Per-client override for `key`, falling back to `default`."""
        value = self.thresholds.get(key)
        return default if value is None else value

    def validate_for_monitoring(self) -> None:
        """Raise ClientConfigurationError when this client cannot be monitored."""
        if not self.enabled:
            raise ClientConfigurationError(self.client_id, "monitoring is disabled")
        if not self.ad_channels:
            raise ClientConfigurationError(self.client_id, "no ad account configured")
        if not self.credentials_ref:
            raise ClientConfigurationError(self.client_id, "no credentials reference configured")


# =============================================================================
# Run results
# =============================================================================

class CheckError(BaseModel):
    client_id: str
    kind: RunErrorKind
    message: str
    check_id: Optional[str] = None
    channel: Optional[AlertChannel] = None

    def __str__(self) -> str:
        scope = f"{self.client_id}/{self.check_id}" if self.check_id else self.client_id
        return f"[{self.kind.value}] {scope}: {self.message}"


class ClientRunResult(BaseModel):
    client_id: str
    client_name: Optional[str] = None
    success: bool = True
    skipped: bool = False
    skip_kind: Optional[RunErrorKind] = None
    skip_reason: Optional[str] = None
    checks_run: int = 0
    alerts_created: int = 0
    alerts_skipped: int = 0
    alerts_failed: int = 0
    alerts_resolved: int = 0
    fatigue_signals: int = 0
    errors: List[CheckError] = Field(default_factory=list)
    duration_seconds: float = 0.0


class MonitoringRunResult(BaseModel):
    """Aggregate outcome of one monitoring invocation."""

    success: bool = True
    dry_run: bool = False
    as_of: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    clients_processed: int = 0
    clients_succeeded: int = 0
    clients_failed: int = 0
    clients_skipped: int = 0
    checks_run: int = 0
    alerts_created: int = 0
    alerts_skipped: int = 0
    alerts_resolved: int = 0
    fatigue_signals: int = 0
    errors: List[CheckError] = Field(default_factory=list)
    clients: List[ClientRunResult] = Field(default_factory=list)

    @classmethod
    def from_client_results(
        cls,
        results: List[ClientRunResult],
        as_of: date,
        started_at: datetime,
        finished_at: datetime,
        dry_run: bool = False,
    ) -> "MonitoringRunResult":
        errors = [error for result in results for error in result.errors]
        return cls(
            success=not errors,
            dry_run=dry_run,
            as_of=as_of,
            started_at=started_at,
            finished_at=finished_at,
            clients_processed=len(results),
            clients_succeeded=sum(1 for r in results if r.success and not r.skipped),
            clients_failed=sum(1 for r in results if not r.success),
            clients_skipped=sum(1 for r in results if r.skipped),
            checks_run=sum(r.checks_run for r in results),
            alerts_created=sum(r.alerts_created for r in results),
            alerts_skipped=sum(r.alerts_skipped for r in results),
            alerts_resolved=sum(r.alerts_resolved for r in results),
            fatigue_signals=sum(r.fatigue_signals for r in results),
            errors=errors,
            clients=results,
        )
