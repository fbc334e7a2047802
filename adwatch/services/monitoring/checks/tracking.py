"""Conversion tracking check."""

from __future__ import annotations

from datetime import date

from ..helpers import group_by_entity, totals
from ..metric_source import MetricSource
from ..models import AlertData, AlertSeverity, CheckResult, ClientMonitoringConfig, ConversionTrackingDetails
from .base import BaseCheck


class ConversionTrackingBrokenCheck(BaseCheck):
    """Campaigns with meaningful spend and clicks but zero conversions over the week.

    A campaign buying real traffic with no conversions at all usually means
    the conversion tag stopped firing, not that nobody converted.
    """

    key = "conversion_tracking_broken"
    name = "Conversion Tracking Broken"
    description = "Detects campaigns with spend and clicks but no recorded conversions"
    lookback_days = 7

    MIN_SPEND = 50.0
    MIN_CLICKS = 50

    async def evaluate(
        self,
        metric_source: MetricSource,
        account_ref: str,
        config: ClientMonitoringConfig,
        as_of: date,
    ) -> CheckResult:
        rows = await self.fetch(metric_source, account_ref, as_of)
        if not rows:
            return self.ok_result(reason="no_data")

        min_spend = self.threshold(config, "tracking_min_spend", self.MIN_SPEND)
        min_clicks = self.threshold(config, "tracking_min_clicks", self.MIN_CLICKS)

        suspects = []
        for campaign_id, campaign_rows in group_by_entity(rows).items():
            if not self.is_active(campaign_rows[-1]):
                continue
            summed = totals(campaign_rows)
            if summed["spend"] > min_spend and summed["clicks"] > min_clicks and summed["conversions"] == 0:
                suspects.append({
                    "campaign_id": campaign_id,
                    "name": campaign_rows[-1].entity_name or campaign_id,
                    "spend": round(summed["spend"], 2),
                    "clicks": int(summed["clicks"]),
                })

        if not suspects:
            return self.ok_result(reason="healthy")

        count = len(suspects)
        total_spend = sum(s["spend"] for s in suspects)
        total_clicks = sum(s["clicks"] for s in suspects)

        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: possible conversion tracking problem",
                short_description=(
                    f"{self.plural(count, 'campaign', 'campaigns')} with {total_spend:.0f} spend "
                    f"and no conversions"
                ),
                impact=(
                    "Smart bidding optimizes without conversion data and reporting "
                    "understates results. Spend may be going to traffic that cannot be measured."
                ),
                suggested_actions=[
                    "Verify that the conversion tag fires on the thank-you page",
                    "Check recent website deployments for removed tracking code",
                    "Compare platform conversions with analytics for the same period",
                ],
                severity=AlertSeverity.CRITICAL,
            ),
            ConversionTrackingDetails(
                kind=self.key,
                campaigns=suspects,
                total_spend=round(total_spend, 2),
                total_clicks=total_clicks,
            ),
        )
