"""Performance checks comparing recent periods against the period before.

- cpc_spike: per-campaign CPC of the last 3 data days vs the 7 before.
- cpa_increase: account CPA this week vs last week.
- spend_without_value: spend growth not matched by conversion/value growth.
- roas_decrease: account ROAS this week vs last week.
- performance_drop: account conversions this week vs last week.
- paused_high_performers: paused campaigns that were earning well in the last 30 days.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..helpers import group_by_entity, pct_change, safe_ratio, totals
from ..metric_source import MetricSource
from ..models import (
    AlertData,
    AlertSeverity,
    AlertType,
    CheckResult,
    ClientMonitoringConfig,
    CpaIncreaseDetails,
    CpcSpikeDetails,
    MetricRow,
    PausedHighPerformersDetails,
    PerformanceDropDetails,
    RoasDecreaseDetails,
    SpendWithoutValueDetails,
)
from .base import BaseCheck

logger = logging.getLogger(__name__)


def split_weeks(rows: List[MetricRow], as_of: date, days: int = 7) -> Tuple[List[MetricRow], List[MetricRow]]:
    """Split rows into (current, previous) consecutive windows of `days` ending at as_of."""
    current_start = as_of - timedelta(days=days - 1)
    previous_start = current_start - timedelta(days=days)
    current = [row for row in rows if current_start <= row.day <= as_of]
    previous = [row for row in rows if previous_start <= row.day < current_start]
    return current, previous


class CpcSpikeCheck(BaseCheck):
    key = "cpc_spike"
    name = "CPC Spike"
    description = "Detects campaigns whose cost per click rose sharply in the last days"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 14

    MIN_DATA_DAYS = 10
    RECENT_DAYS = 3
    PRIOR_DAYS = 7
    SPIKE_PCT = 30.0
    CRITICAL_PCT = 50.0

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

        spike_pct = self.threshold(config, "cpc_spike_pct", self.SPIKE_PCT)
        evaluated = 0
        spikes = []

        for campaign_id, campaign_rows in group_by_entity(rows).items():
            if not self.is_active(campaign_rows[-1]):
                continue
            paid_days = [row for row in campaign_rows if row.clicks > 0 and row.spend > 0]
            if len(paid_days) < self.MIN_DATA_DAYS:
                continue
            evaluated += 1

            recent = paid_days[-self.RECENT_DAYS:]
            prior = paid_days[-(self.RECENT_DAYS + self.PRIOR_DAYS):-self.RECENT_DAYS]
            recent_totals = totals(recent)
            prior_totals = totals(prior)
            recent_cpc = safe_ratio(recent_totals["spend"], recent_totals["clicks"])
            prior_cpc = safe_ratio(prior_totals["spend"], prior_totals["clicks"])
            if recent_cpc is None or not prior_cpc:
                continue

            increase = pct_change(recent_cpc, prior_cpc)
            if increase is not None and increase > spike_pct:
                spikes.append({
                    "campaign_id": campaign_id,
                    "name": campaign_rows[-1].entity_name or campaign_id,
                    "recent_cpc": round(recent_cpc, 2),
                    "prior_cpc": round(prior_cpc, 2),
                    "increase_pct": round(increase, 1),
                })

        if evaluated == 0:
            return self.ok_result(reason="insufficient_data", min_data_days=self.MIN_DATA_DAYS)
        if not spikes:
            return self.ok_result(reason="healthy", campaigns_checked=evaluated)

        spikes.sort(key=lambda s: s["increase_pct"], reverse=True)
        count = len(spikes)
        max_increase = spikes[0]["increase_pct"]

        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: CPC spike detected",
                short_description=(
                    f"{self.plural(count, 'campaign', 'campaigns')} with CPC up to +{max_increase:.0f}%"
                ),
                impact="Each click costs noticeably more, so the same budget buys less traffic.",
                suggested_actions=[
                    "Check auction insights for new or more aggressive competitors",
                    "Review recent bid strategy or target changes",
                    "Check quality score and ad relevance for the affected campaigns",
                ],
                severity=AlertSeverity.CRITICAL if max_increase > self.CRITICAL_PCT else AlertSeverity.HIGH,
            ),
            CpcSpikeDetails(kind=self.key, campaigns=spikes, max_increase_pct=max_increase),
        )


class CpaIncreaseCheck(BaseCheck):
    key = "cpa_increase"
    name = "CPA Increase"
    description = "Detects a week-over-week increase in cost per acquisition"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 14

    WARNING_PCT = 20.0
    CRITICAL_PCT = 40.0
    MIN_CONVERSIONS = 5

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

        current_rows, previous_rows = split_weeks(rows, as_of)
        current = totals(current_rows)
        previous = totals(previous_rows)

        min_conversions = self.threshold(config, "cpa_min_conversions", self.MIN_CONVERSIONS)
        if current["conversions"] < min_conversions or previous["conversions"] < min_conversions:
            return self.ok_result(
                reason="insufficient_data",
                current_conversions=current["conversions"],
                previous_conversions=previous["conversions"],
            )

        current_cpa = current["spend"] / current["conversions"]
        previous_cpa = previous["spend"] / previous["conversions"]
        change = pct_change(current_cpa, previous_cpa)
        if change is None:
            return self.ok_result(reason="insufficient_data")

        warning_pct = self.threshold(config, "cpa_warning_pct", self.WARNING_PCT)
        critical_pct = self.threshold(config, "cpa_critical_pct", self.CRITICAL_PCT)
        if change < warning_pct:
            return self.ok_result(reason="healthy", change_pct=round(change, 1))

        severity = AlertSeverity.CRITICAL if change >= critical_pct else AlertSeverity.HIGH
        prefix = "critical CPA increase" if severity == AlertSeverity.CRITICAL else "CPA increase"

        return self.problem_result(
            1,
            AlertData(
                title=f"{self.label}: {prefix}",
                short_description=(
                    f"CPA +{change:.0f}% vs last week ({current_cpa:.2f} vs {previous_cpa:.2f})"
                ),
                impact="Every conversion costs more than last week; at the same budget fewer conversions come in.",
                suggested_actions=[
                    "Find the campaigns whose CPA rose the most",
                    "Check for changes in bids, budgets or targeting last week",
                    "Check landing page speed and conversion rate",
                    "Pause or restrict the worst performing ad groups",
                ],
                severity=severity,
            ),
            CpaIncreaseDetails(
                kind=self.key,
                current_cpa=round(current_cpa, 2),
                previous_cpa=round(previous_cpa, 2),
                change_pct=round(change, 1),
                current_conversions=current["conversions"],
                previous_conversions=previous["conversions"],
            ),
        )


class SpendWithoutValueCheck(BaseCheck):
    key = "spend_without_value"
    name = "Spend Without Value"
    description = "Detects spend growth that is not matched by conversion or value growth"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 14

    SPEND_INCREASE_WARNING = 0.30
    SPEND_INCREASE_CRITICAL = 0.50
    VALUE_GROWTH_TOLERANCE = 0.10
    MIN_SPEND = 100.0

    @staticmethod
    def _growth(current: float, previous: float) -> float:
        if previous > 0:
            return (current - previous) / previous
        return 1.0 if current > 0 else 0.0

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

        current_rows, previous_rows = split_weeks(rows, as_of)
        current = totals(current_rows)
        previous = totals(previous_rows)

        min_spend = self.threshold(config, "spend_without_value_min_spend", self.MIN_SPEND)
        if previous["spend"] < min_spend or current["spend"] < min_spend:
            return self.ok_result(
                reason="insufficient_data",
                current_spend=current["spend"],
                previous_spend=previous["spend"],
            )

        spend_change = (current["spend"] - previous["spend"]) / previous["spend"]
        if spend_change < self.SPEND_INCREASE_WARNING:
            return self.ok_result(reason="healthy", spend_change_pct=round(spend_change * 100))

        conversion_change = self._growth(current["conversions"], previous["conversions"])
        value_change = self._growth(current["conversion_value"], previous["conversion_value"])
        tracks_value = current["conversion_value"] > 0 or previous["conversion_value"] > 0
        result_change = max(conversion_change, value_change) if tracks_value else conversion_change

        if result_change >= spend_change - self.VALUE_GROWTH_TOLERANCE:
            return self.ok_result(
                reason="proportional_growth",
                spend_change_pct=round(spend_change * 100),
                result_change_pct=round(result_change * 100),
            )

        extra_spend = current["spend"] - previous["spend"]
        wasted = extra_spend * (1 - max(result_change, 0.0) / spend_change)
        spend_pct = round(spend_change * 100)
        result_pct = round(result_change * 100)

        critical = spend_change >= self.SPEND_INCREASE_CRITICAL and result_change <= self.VALUE_GROWTH_TOLERANCE
        logger.info(
            f"Spend without value for {config.client_name}: spend +{spend_pct}%, results {result_pct:+d}%"
        )

        return self.problem_result(
            1,
            AlertData(
                title=(
                    f"{self.label}: severe budget waste" if critical
                    else f"{self.label}: spend increase without matching results"
                ),
                short_description=f"Spend +{spend_pct}%, results {result_pct:+d}%",
                impact=(
                    f"Spend rose by {extra_spend:.0f} (+{spend_pct}%) while results changed {result_pct:+d}%. "
                    f"Estimated inefficient spend: {wasted:.0f}."
                ),
                suggested_actions=[
                    "Stop scaling until the cause is found",
                    "Find which campaigns or ad groups absorbed the extra spend",
                    "Check whether automated bidding raised bids",
                    "Check whether conversion tracking still works",
                ],
                severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
            ),
            SpendWithoutValueDetails(
                kind=self.key,
                current_spend=round(current["spend"], 2),
                previous_spend=round(previous["spend"], 2),
                spend_change_pct=spend_pct,
                result_change_pct=result_pct,
                wasted_spend_estimate=round(wasted, 2),
            ),
        )


class RoasDecreaseCheck(BaseCheck):
    """Week-over-week return on ad spend (conversion value / spend).

    Only meaningful for accounts that track monetary conversion values;
    accounts without any value in either week are skipped. A drop from a
    profitable ROAS above 1 to below 0.5 is reported as a collapse
    regardless of the percentage thresholds.
    """

    key = "roas_decrease"
    name = "ROAS Decrease"
    description = "Detects a significant week-over-week drop in return on ad spend"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 14

    WARNING_PCT = 20.0
    CRITICAL_PCT = 35.0
    MIN_CONVERSION_VALUE = 100.0
    MIN_SPEND = 50.0
    COLLAPSE_FROM_ROAS = 1.0
    COLLAPSE_TO_ROAS = 0.5

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

        current_rows, previous_rows = split_weeks(rows, as_of)
        current = totals(current_rows)
        previous = totals(previous_rows)

        if current["conversion_value"] == 0 and previous["conversion_value"] == 0:
            return self.ok_result(reason="no_value_tracking")

        min_spend = self.threshold(config, "roas_min_spend", self.MIN_SPEND)
        if current["spend"] < min_spend or previous["spend"] < min_spend:
            return self.ok_result(
                reason="insufficient_data",
                current_spend=current["spend"],
                previous_spend=previous["spend"],
            )

        min_value = self.threshold(config, "roas_min_conversion_value", self.MIN_CONVERSION_VALUE)
        if current["conversion_value"] < min_value and previous["conversion_value"] < min_value:
            return self.ok_result(
                reason="insufficient_data",
                current_value=current["conversion_value"],
                previous_value=previous["conversion_value"],
            )

        current_roas = current["conversion_value"] / current["spend"]
        previous_roas = previous["conversion_value"] / previous["spend"]
        change = pct_change(current_roas, previous_roas)
        if change is None:
            change = 0.0

        warning_pct = self.threshold(config, "roas_warning_pct", self.WARNING_PCT)
        critical_pct = self.threshold(config, "roas_critical_pct", self.CRITICAL_PCT)
        collapsed = previous_roas > self.COLLAPSE_FROM_ROAS and current_roas < self.COLLAPSE_TO_ROAS
        if not collapsed and change > -warning_pct:
            return self.ok_result(
                reason="healthy",
                current_roas=round(current_roas, 2),
                previous_roas=round(previous_roas, 2),
                change_pct=round(change, 1),
            )

        lost_revenue = max(0.0, current["spend"] * previous_roas - current["conversion_value"])
        critical = collapsed or change <= -critical_pct
        if collapsed:
            title = f"{self.label}: ROAS collapsed"
        elif critical:
            title = f"{self.label}: severe ROAS decrease"
        else:
            title = f"{self.label}: ROAS decrease"

        logger.info(
            f"ROAS decrease for {config.client_name}: {previous_roas:.2f} -> {current_roas:.2f} ({change:.0f}%)"
        )

        return self.problem_result(
            1,
            AlertData(
                title=title,
                short_description=(
                    f"ROAS {change:.0f}% vs last week ({current_roas:.2f} vs {previous_roas:.2f})"
                ),
                impact=(
                    f"Each unit of spend now returns {current_roas:.2f} instead of {previous_roas:.2f}. "
                    f"Estimated missed revenue at last week's ROAS: {lost_revenue:.0f}."
                ),
                suggested_actions=[
                    "Check that conversion value tracking still works",
                    "Find the campaigns or product groups with the largest ROAS drop",
                    "Check target ROAS/CPA bid strategy settings",
                    "Look for price, stock or landing page changes",
                ],
                severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
            ),
            RoasDecreaseDetails(
                kind=self.key,
                current_roas=round(current_roas, 2),
                previous_roas=round(previous_roas, 2),
                change_pct=round(change, 1),
                current_spend=round(current["spend"], 2),
                previous_spend=round(previous["spend"], 2),
                current_value=round(current["conversion_value"], 2),
                previous_value=round(previous["conversion_value"], 2),
                lost_revenue=round(lost_revenue, 2),
                collapsed=collapsed,
            ),
        )


class PerformanceDropCheck(BaseCheck):
    key = "performance_drop"
    name = "Performance Drop"
    description = "Detects a significant week-over-week drop in conversions"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 14

    WARNING_PCT = 25.0
    CRITICAL_PCT = 50.0

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

        current_rows, previous_rows = split_weeks(rows, as_of)
        current = totals(current_rows)["conversions"]
        previous = totals(previous_rows)["conversions"]
        if previous <= 0:
            return self.ok_result(reason="no_baseline", current_conversions=current)

        change = pct_change(current, previous)
        warning_pct = self.threshold(config, "conversion_drop_warning_pct", self.WARNING_PCT)
        critical_pct = self.threshold(config, "conversion_drop_critical_pct", self.CRITICAL_PCT)

        if current <= 0:
            title = f"{self.label}: no conversions"
            short_description = f"0 conversions in the last 7 days (was {previous:.0f} the week before)"
            severity = AlertSeverity.CRITICAL
        elif change <= -warning_pct:
            critical = change <= -critical_pct
            title = f"{self.label}: severe performance drop" if critical else f"{self.label}: performance drop"
            short_description = f"Conversions {change:.0f}% vs last week"
            severity = AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH
        else:
            return self.ok_result(reason="healthy", change_pct=round(change, 1))

        return self.problem_result(
            1,
            AlertData(
                title=title,
                short_description=short_description,
                impact=f"Conversions went from {previous:.1f} to {current:.1f} week over week.",
                suggested_actions=[
                    "Check that conversion tracking still works",
                    "Check whether campaigns are still running and have budget",
                    "Find the campaigns with the largest drop",
                    "Compare with seasonal patterns",
                ],
                severity=severity,
            ),
            PerformanceDropDetails(
                kind=self.key,
                current_conversions=current,
                previous_conversions=previous,
                change_pct=round(change, 1),
            ),
        )


PAUSED_STATUSES = {"paused"}


class PausedHighPerformersCheck(BaseCheck):
    """Paused campaigns that were converting well over the last 30 days.

    A paused campaign counts as a high performer when it converted at
    least once, either earned a ROAS above MIN_ROAS or beat the CPA of the
    account's running campaigns, and had real volume (MIN_CONVERSIONS
    conversions or more than MIN_REVENUE in value).
    """

    key = "paused_high_performers"
    name = "Paused High Performers"
    description = "Detects paused campaigns that were performing well"
    alert_type = AlertType.PERFORMANCE
    lookback_days = 30

    MIN_ROAS = 2.0
    MIN_CONVERSIONS = 5
    MIN_REVENUE = 500.0
    HIGH_REVENUE = 1000.0
    HIGH_COUNT = 2
    MAX_LISTED = 10

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

        paused: List[Dict[str, Any]] = []
        running_rows: List[MetricRow] = []
        for campaign_id, campaign_rows in group_by_entity(rows).items():
            latest = campaign_rows[-1]
            if self.is_active(latest):
                running_rows.extend(campaign_rows)
            elif latest.status is not None and latest.status.lower() in PAUSED_STATUSES:
                paused.append(self._summarize(campaign_id, campaign_rows))

        if not paused:
            return self.ok_result(reason="no_paused_campaigns")

        running = totals(running_rows)
        comparison_cpa = safe_ratio(running["spend"], running["conversions"])
        min_roas = self.threshold(config, "paused_min_roas", self.MIN_ROAS)
        high_performers = [c for c in paused if self._is_high_performer(c, comparison_cpa, min_roas)]
        if not high_performers:
            return self.ok_result(reason="healthy", paused_campaigns=len(paused))

        high_performers.sort(key=lambda c: c["revenue"], reverse=True)
        count = len(high_performers)
        missed_revenue = sum(c["revenue"] for c in high_performers)
        conversions = sum(c["conversions"] for c in high_performers)
        avg_roas = sum(c["roas"] for c in high_performers) / count
        logger.warning(
            f"{count} paused high performing campaigns for {config.client_name} "
            f"(revenue {missed_revenue:.2f}, conversions {conversions:.0f})"
        )

        return self.problem_result(
            count,
            AlertData(
                title=f"{self.label}: well performing campaigns are paused",
                short_description=f"{self.plural(count, 'profitable campaign', 'profitable campaigns')} paused",
                impact=(
                    f"The paused campaigns earned {missed_revenue:.2f} from {conversions:.0f} conversions "
                    f"in the last 30 days. Average ROAS: {avg_roas:.1f}x."
                ),
                suggested_actions=[
                    "Check whether these campaigns were paused by accident",
                    "Confirm there is a valid reason for the pause",
                    "Consider re-enabling the campaigns",
                    "Check whether a seasonal pause was intended",
                ],
                severity=(
                    AlertSeverity.HIGH
                    if missed_revenue > self.HIGH_REVENUE or count > self.HIGH_COUNT
                    else AlertSeverity.MEDIUM
                ),
            ),
            PausedHighPerformersDetails(
                kind=self.key,
                campaigns=high_performers[: self.MAX_LISTED],
                total_count=count,
                total_missed_revenue=round(missed_revenue, 2),
                total_conversions=round(conversions),
                avg_roas=round(avg_roas, 2),
                comparison_cpa=round(comparison_cpa, 2) if comparison_cpa is not None else None,
            ),
        )

    @staticmethod
    def _summarize(campaign_id: str, rows: List[MetricRow]) -> Dict[str, Any]:
        summed = totals(rows)
        roas = safe_ratio(summed["conversion_value"], summed["spend"])
        cpa = safe_ratio(summed["spend"], summed["conversions"])
        return {
            "campaign_id": campaign_id,
            "name": rows[-1].entity_name or campaign_id,
            "conversions": summed["conversions"],
            "revenue": round(summed["conversion_value"], 2),
            "spend": round(summed["spend"], 2),
            "roas": round(roas, 2) if roas is not None else 0.0,
            "cpa": round(cpa, 2) if cpa is not None else None,
        }

    def _is_high_performer(self, campaign: Dict[str, Any], comparison_cpa: Optional[float], min_roas: float) -> bool:
        if campaign["conversions"] < 1:
            return False
        good_roas = campaign["roas"] > min_roas
        good_cpa = bool(comparison_cpa) and campaign["cpa"] is not None and campaign["cpa"] < comparison_cpa
        has_volume = campaign["conversions"] >= self.MIN_CONVERSIONS or campaign["revenue"] > self.MIN_REVENUE
        return (good_roas or good_cpa) and has_volume
