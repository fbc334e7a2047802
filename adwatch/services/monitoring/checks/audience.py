"""Audience targeting check."""

from __future__ import annotations

from datetime import date

from ..helpers import group_by_entity, totals
from ..metric_source import MetricSource
from ..models import AlertData, AlertSeverity, AudienceIssuesDetails, CheckResult, ClientMonitoringConfig
from .base import BaseCheck


class AudienceIssuesCheck(BaseCheck):
    """Campaigns spending without audience signals, or with audiences that barely reach anyone.

    Campaigns whose audience count is unknown are never flagged.
    """

    key = "audience_issues"
    name = "Audience Targeting Issues"
    description = "Detects campaigns without audience signals or with very limited reach"
    lookback_days = 7

    MIN_SPEND = 50.0
    MIN_IMPRESSIONS = 100
    MEDIUM_COUNT = 2

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

        min_spend = self.threshold(config, "audience_min_spend", self.MIN_SPEND)
        issues = []
        no_audience_count = 0

        for campaign_id, campaign_rows in group_by_entity(rows).items():
            latest = campaign_rows[-1]
            if not self.is_active(latest) or latest.audience_count is None:
                continue
            summed = totals(campaign_rows)
            name = latest.entity_name or campaign_id

            if latest.audience_count == 0 and summed["spend"] > min_spend:
                no_audience_count += 1
                issues.append({
                    "campaign_id": campaign_id,
                    "name": name,
                    "issue": "no_audiences",
                    "spend": round(summed["spend"], 2),
                })
            elif latest.audience_count > 0 and 0 < summed["spend"] and summed["impressions"] < self.MIN_IMPRESSIONS:
                issues.append({
                    "campaign_id": campaign_id,
                    "name": name,
                    "issue": "limited_reach",
                    "impressions": int(summed["impressions"]),
                })

        if not issues:
            return self.ok_result(reason="healthy")

        count = len(issues)
        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: audience targeting issues",
                short_description=f"{self.plural(count, 'campaign', 'campaigns')} with audience problems",
                impact=(
                    "Campaigns without audience signals give the bidding algorithm less to learn from; "
                    "audiences with very little reach barely deliver."
                ),
                suggested_actions=[
                    "Add remarketing or customer-match audiences in observation mode",
                    "Widen audiences that reach fewer than 100 impressions per week",
                    "Review audience exclusions that may be too strict",
                ],
                severity=AlertSeverity.MEDIUM if no_audience_count > self.MEDIUM_COUNT else AlertSeverity.LOW,
            ),
            AudienceIssuesDetails(kind=self.key, campaigns=issues),
        )
