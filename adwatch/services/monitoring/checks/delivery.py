"""Delivery checks: disapproved ads, campaigns without delivery, depleted budgets."""

from __future__ import annotations

import logging
from datetime import date

from ..helpers import group_by_entity, latest_day
from ..metric_source import MetricSource
from ..models import (
    AlertData,
    AlertSeverity,
    BudgetDepletedDetails,
    CheckResult,
    ClientMonitoringConfig,
    DisapprovedAdsDetails,
    EntityType,
    NoDeliveryDetails,
)
from .base import BaseCheck

logger = logging.getLogger(__name__)

DISAPPROVED_STATUSES = {"disapproved", "rejected"}
REMOVED_STATUSES = {"removed", "deleted", "archived"}
MAX_LISTED = 10


class DisapprovedAdsCheck(BaseCheck):
    """Ads whose latest review status is disapproved."""

    key = "disapproved_ads"
    name = "Disapproved Ads"
    description = "Detects ads that were disapproved by the platform's policy review"
    lookback_days = 7

    CRITICAL_COUNT = 5

    async def evaluate(
        self,
        metric_source: MetricSource,
        account_ref: str,
        config: ClientMonitoringConfig,
        as_of: date,
    ) -> CheckResult:
        rows = await self.fetch(metric_source, account_ref, as_of, entity_type=EntityType.AD)
        if not rows:
            return self.ok_result(reason="no_data")

        disapproved = []
        for ad_id, ad_rows in group_by_entity(rows).items():
            latest = ad_rows[-1]
            if latest.review_status is None:
                continue
            if latest.status and latest.status.lower() in REMOVED_STATUSES:
                continue
            if latest.review_status.lower() in DISAPPROVED_STATUSES:
                disapproved.append({
                    "ad_id": ad_id,
                    "name": latest.entity_name or ad_id,
                    "campaign_name": latest.campaign_name,
                    "policy_topics": latest.policy_topics,
                })

        if not disapproved:
            return self.ok_result(reason="healthy", ads_checked=len(group_by_entity(rows)))

        count = len(disapproved)
        critical_count = self.threshold(config, "disapproved_critical_count", self.CRITICAL_COUNT)
        logger.info(f"Found {count} disapproved ads for {config.client_name}")

        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: ads disapproved",
                short_description=f"{self.plural(count, 'ad', 'ads')} disapproved",
                impact="Disapproved ads stop serving, so the traffic and conversions they drove are lost.",
                suggested_actions=[
                    "Review the policy topics listed for each disapproved ad",
                    "Edit the ad copy or landing page to comply and resubmit",
                    "Appeal the decision if the disapproval looks incorrect",
                ],
                severity=AlertSeverity.CRITICAL if count > critical_count else AlertSeverity.HIGH,
            ),
            DisapprovedAdsDetails(
                kind=self.key,
                ads=disapproved[:MAX_LISTED],
                total_disapproved=count,
            ),
        )


class NoDeliveryCheck(BaseCheck):
    """Active campaigns with zero impressions on the latest day with data."""

    key = "no_delivery"
    name = "Campaigns Without Delivery"
    description = "Detects active campaigns that are not generating impressions"
    lookback_days = 3

    CRITICAL_COUNT = 3
    MIN_DAYS_RUNNING = 1

    async def evaluate(
        self,
        metric_source: MetricSource,
        account_ref: str,
        config: ClientMonitoringConfig,
        as_of: date,
    ) -> CheckResult:
        rows = await self.fetch(metric_source, account_ref, as_of)
        last_day = latest_day(rows)
        if last_day is None:
            return self.ok_result(reason="no_data")

        min_days = self.threshold(config, "no_delivery_min_days", self.MIN_DAYS_RUNNING)
        last_day_rows = [row for row in rows if row.day == last_day and self.is_active(row)]
        if not last_day_rows:
            return self.ok_result(reason="no_active_campaigns")

        stalled = []
        for row in last_day_rows:
            if row.impressions > 0:
                continue
            if row.start_date is not None and (last_day - row.start_date).days < min_days:
                continue
            stalled.append({
                "campaign_id": row.entity_id,
                "name": row.entity_name or row.entity_id,
                "start_date": row.start_date.isoformat() if row.start_date else None,
                "spend": row.spend,
            })

        if not stalled:
            return self.ok_result(reason="healthy", campaigns_checked=len(last_day_rows))

        count = len(stalled)
        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: campaigns without impressions",
                short_description=f"{self.plural(count, 'campaign', 'campaigns')} active but not delivering",
                impact="Budget is not being spent and the campaigns are not reaching any audience.",
                suggested_actions=[
                    "Check the campaign settings and schedule",
                    "Check whether the budget is sufficient",
                    "Check whether bids are competitive enough",
                    "Check targeting and ad group status",
                ],
                severity=AlertSeverity.CRITICAL if count > self.CRITICAL_COUNT else AlertSeverity.HIGH,
            ),
            NoDeliveryDetails(
                kind=self.key,
                campaigns=stalled[:MAX_LISTED],
                total_no_delivery=count,
                min_days_running=min_days,
            ),
        )


class BudgetDepletedCheck(BaseCheck):
    """Active campaigns that spent (nearly) their whole daily budget today."""

    key = "budget_depleted"
    name = "Budget Depleted"
    description = "Detects campaigns that have used up their daily budget"
    lookback_days = 1

    CRITICAL_COUNT = 2
    DEPLETION_RATIO = 0.95

    async def evaluate(
        self,
        metric_source: MetricSource,
        account_ref: str,
        config: ClientMonitoringConfig,
        as_of: date,
    ) -> CheckResult:
        rows = [row for row in await self.fetch(metric_source, account_ref, as_of) if row.day == as_of]
        budgeted = [row for row in rows if self.is_active(row) and row.daily_budget]
        if not budgeted:
            return self.ok_result(reason="no_data")

        ratio = self.threshold(config, "budget_depletion_ratio", self.DEPLETION_RATIO)
        depleted = [
            {
                "campaign_id": row.entity_id,
                "name": row.entity_name or row.entity_id,
                "daily_budget": row.daily_budget,
                "spend": row.spend,
                "used_pct": round(row.spend / row.daily_budget * 100, 1),
            }
            for row in budgeted
            if row.spend >= row.daily_budget * ratio
        ]

        if not depleted:
            return self.ok_result(reason="healthy", campaigns_checked=len(budgeted))

        count = len(depleted)
        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: budget depleted",
                short_description=f"{self.plural(count, 'campaign has', 'campaigns have')} used up the daily budget",
                impact="Campaigns stop serving for the rest of the day and miss traffic during peak hours.",
                suggested_actions=[
                    "Consider raising the daily budget for well-performing campaigns",
                    "Check whether bids are driving costs up unexpectedly",
                    "Use ad scheduling to spread spend over the day",
                ],
                severity=AlertSeverity.CRITICAL if count > self.CRITICAL_COUNT else AlertSeverity.HIGH,
            ),
            BudgetDepletedDetails(
                kind=self.key,
                campaigns=depleted[:MAX_LISTED],
                depletion_threshold=ratio,
            ),
        )
