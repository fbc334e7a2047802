"""Base class for monitoring checks.

A check reads metrics and reports a CheckResult. It never writes alerts;
the orchestrator hands non-ok results to the AlertEngine.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, List, Optional

from ....core.config import today_in_timezone
from ..metric_source import MetricSource
from ..models import (
    AlertChannel,
    AlertData,
    AlertDetails,
    AlertSeverity,
    AlertType,
    CheckResult,
    CheckStatus,
    ClientMonitoringConfig,
    DateRange,
    EntityType,
    MetricRow,
)

logger = logging.getLogger(__name__)

CHANNEL_LABELS = {
    AlertChannel.GOOGLE_ADS: "Google Ads",
    AlertChannel.META: "Meta Ads",
    AlertChannel.WEBSITE: "Website",
    AlertChannel.TRACKING: "Tracking",
    AlertChannel.SEO: "SEO",
    AlertChannel.COMMERCE: "Commerce",
}

ACTIVE_STATUSES = {"enabled", "active"}


class BaseCheck(ABC):
    """One health heuristic bound to one channel.

    Subclasses set `key`, `name`, `description` and `lookback_days` and
    implement `evaluate`. The check id is the bare key on Google Ads and
    `<channel>_<key>` on every other channel.
    """

    key: str = ""
    name: str = ""
    description: str = ""
    alert_type: AlertType = AlertType.FUNDAMENTAL
    lookback_days: int = 7

    def __init__(self, channel: AlertChannel = AlertChannel.GOOGLE_ADS):
        self.channel = channel

    @property
    def id(self) -> str:
        if self.channel == AlertChannel.GOOGLE_ADS:
            return self.key
        return f"{self.channel.value}_{self.key}"

    @property
    def label(self) -> str:
        return CHANNEL_LABELS.get(self.channel, self.channel.value)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id}>"

    async def run(
        self,
        metric_source: MetricSource,
        config: ClientMonitoringConfig,
        as_of: Optional[date] = None,
    ) -> CheckResult:
        """Run the check for one client.

        Args:
            metric_source: Where to read metrics from.
            config: The client's monitoring config.
            as_of: Anchor day for all windows (defaults to today in the client's timezone).

        Returns:
            CheckResult; ok with reason "no_account" when the client has no
            account on this check's channel.
        """
        account_ref = config.account_for(self.channel)
        if not account_ref:
            return self.ok_result(reason="no_account")

        as_of = as_of or today_in_timezone(config.timezone)
        logger.debug(f"Running {self.id} check for {config.client_name} as of {as_of}")
        return await self.evaluate(metric_source, account_ref, config, as_of)

    @abstractmethod
    async def evaluate(
        self,
        metric_source: MetricSource,
        account_ref: str,
        config: ClientMonitoringConfig,
        as_of: date,
    ) -> CheckResult:
        """Evaluate the heuristic against the account's metrics."""

    # =========================================================================
    # Helpers
    # =========================================================================

    async def fetch(
        self,
        metric_source: MetricSource,
        account_ref: str,
        as_of: date,
        days: Optional[int] = None,
        entity_type: EntityType = EntityType.CAMPAIGN,
    ) -> List[MetricRow]:
        date_range = DateRange.trailing(as_of, days or self.lookback_days)
        return await metric_source.get_metrics(account_ref, entity_type, date_range)

    def threshold(self, config: ClientMonitoringConfig, key: str, default: Any) -> Any:
        return config.threshold(key, default)

    @staticmethod
    def is_active(row: MetricRow) -> bool:
        return row.status is not None and row.status.lower() in ACTIVE_STATUSES

    @staticmethod
    def plural(count: int, singular: str, plural: str) -> str:
        return f"{count} {singular if count == 1 else plural}"

    def ok_result(self, **details: Any) -> CheckResult:
        return CheckResult(
            check_id=self.id,
            status=CheckStatus.OK,
            count=0,
            details=AlertDetails(kind=self.key, **details),
        )

    def problem_result(
        self,
        count: int,
        alert_data: AlertData,
        details: AlertDetails,
    ) -> CheckResult:
        """Non-ok result; status is critical for critical alerts, warning otherwise."""
        status = CheckStatus.CRITICAL if alert_data.severity == AlertSeverity.CRITICAL else CheckStatus.WARNING
        return CheckResult(
            check_id=self.id,
            status=status,
            count=count,
            alert_data=alert_data,
            details=details,
        )
