"""FatigueDetector: Detects creative fatigue via frequency, CTR and CPC trends.

Compares each entity's recent window against the baseline window that
immediately precedes it and grades the combined movement of three signals:
rising frequency, falling CTR and rising CPC. A single moving metric can only
produce a low/medium signal; high and critical need corroboration.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

from ...core.config import today_in_timezone
from .helpers import group_by_entity, pct_change, safe_ratio
from .metric_source import MetricSource
from .models import (
    AlertChannel,
    AlertSeverity,
    ClientMonitoringConfig,
    DateRange,
    EntityType,
    FatigueSignal,
    FatigueThresholds,
    MetricRow,
)

logger = logging.getLogger(__name__)


class SignalGrade(IntEnum):
    NONE = 0
    MODERATE = 1
    LARGE = 2


def grade(adverse_change: float, moderate: float, large: float) -> SignalGrade:
    """Grade an adverse percentage movement (positive = worse)."""
    if adverse_change >= large:
        return SignalGrade.LARGE
    if adverse_change >= moderate:
        return SignalGrade.MODERATE
    return SignalGrade.NONE


def classify_fatigue_severity(
    frequency_change: float,
    ctr_change: float,
    cpc_change: float,
    thresholds: Optional[FatigueThresholds] = None,
) -> Tuple[Optional[AlertSeverity], Dict[str, SignalGrade]]:
    """Classify combined fatigue signals.

    Percent changes are signed as measured: frequency and CPC are adverse when
    positive, CTR when negative.

    Returns:
        (severity or None when nothing triggered, per-signal grades)
    """
    t = thresholds or FatigueThresholds()
    grades = {
        "frequency": grade(frequency_change, t.frequency_moderate, t.frequency_large),
        "ctr": grade(-ctr_change, t.ctr_moderate, t.ctr_large),
        "cpc": grade(cpc_change, t.cpc_moderate, t.cpc_large),
    }
    triggered = [g for g in grades.values() if g > SignalGrade.NONE]

    if (
        grades["frequency"] == SignalGrade.LARGE
        and grades["ctr"] > SignalGrade.NONE
        and grades["cpc"] > SignalGrade.NONE
    ):
        severity = AlertSeverity.CRITICAL
    elif len(triggered) >= 2:
        severity = AlertSeverity.HIGH
    elif len(triggered) == 1:
        severity = AlertSeverity.MEDIUM if triggered[0] == SignalGrade.LARGE else AlertSeverity.LOW
    else:
        severity = None

    return severity, grades


class FatigueDetector:
    """Detects creative fatigue for ads, ad sets and campaigns.

    Windows (defaults):
    - current: the 7 days ending at the anchor date
    - baseline: the 14 days immediately before the current window

    Entities are skipped when the baseline has fewer than `min_baseline_days`
    data points, when any baseline denominator is zero, or when current
    spend is below `min_current_spend`.
    """

    ENTITY_TYPES = (EntityType.AD, EntityType.AD_SET, EntityType.CAMPAIGN)

    def __init__(self, metric_source: MetricSource, thresholds: Optional[FatigueThresholds] = None):
        """Initialize with a metric source.

        Args:
            metric_source: Source of daily entity metrics.
            thresholds: Tunable windows and grade thresholds.
        """
        self.metric_source = metric_source
        self.thresholds = thresholds or FatigueThresholds()

    @property
    def lookback_days(self) -> int:
        return self.thresholds.current_window_days + self.thresholds.baseline_window_days

    def windows(self, as_of: date) -> Tuple[DateRange, DateRange]:
        """(current, baseline) windows anchored at as_of."""
        current = DateRange.trailing(as_of, self.thresholds.current_window_days)
        baseline_end = current.start - timedelta(days=1)
        baseline = DateRange.trailing(baseline_end, self.thresholds.baseline_window_days)
        return current, baseline

    async def detect(
        self,
        config: ClientMonitoringConfig,
        channel: AlertChannel = AlertChannel.META,
        as_of: Optional[date] = None,
        entity_types: Optional[Sequence[EntityType]] = None,
        metric_source: Optional[MetricSource] = None,
    ) -> List[FatigueSignal]:
        """Detect fatigue for every entity in the client's account on `channel`.

        Uses the anchor date (not the wall clock) for reproducibility: the same
        rows and as_of always yield the same signals.

        Args:
            config: Client monitoring config.
            channel: Ad channel whose account is analyzed.
            as_of: Anchor date for the windows (defaults to today in the client's timezone).
            entity_types: Entity levels to analyze.
            metric_source: Read from this source instead of the detector's own
                (the orchestrator passes its per-client snapshot).

        Returns:
            All signals, most severe first. Only high/critical are promotable.
        """
        account_ref = config.account_for(channel)
        if not account_ref:
            return []

        as_of = as_of or today_in_timezone(config.timezone)
        current_window, baseline_window = self.windows(as_of)
        full_window = DateRange(start=baseline_window.start, end=current_window.end)

        source = metric_source or self.metric_source
        signals: List[FatigueSignal] = []
        for entity_type in entity_types or self.ENTITY_TYPES:
            rows = await source.get_metrics(account_ref, entity_type, full_window)
            for entity_id, entity_rows in group_by_entity(rows).items():
                signal = self._evaluate_entity(
                    config, channel, account_ref, entity_type, entity_id,
                    entity_rows, current_window, baseline_window,
                )
                if signal is not None:
                    signals.append(signal)

        signals.sort(key=lambda s: (-s.severity.rank, s.entity_type.value, s.entity_id))
        logger.info(
            f"Fatigue check for {config.client_name} ({channel.value}): "
            f"{len(signals)} signals, {sum(1 for s in signals if s.is_promotable)} promotable"
        )
        return signals

    def _evaluate_entity(
        self,
        config: ClientMonitoringConfig,
        channel: AlertChannel,
        account_ref: str,
        entity_type: EntityType,
        entity_id: str,
        rows: List[MetricRow],
        current_window: DateRange,
        baseline_window: DateRange,
    ) -> Optional[FatigueSignal]:
        current_rows = [r for r in rows if current_window.contains(r.day)]
        baseline_rows = [r for r in rows if baseline_window.contains(r.day)]

        if len(baseline_rows) < self.thresholds.min_baseline_days or not current_rows:
            return None

        current = self._aggregate(current_rows)
        baseline = self._aggregate(baseline_rows)
        if current is None or baseline is None:
            return None
        if current["spend"] < self.thresholds.min_current_spend:
            return None

        frequency_change = pct_change(current["frequency"], baseline["frequency"])
        ctr_change = pct_change(current["ctr"], baseline["ctr"])
        cpc_change = pct_change(current["cpc"], baseline["cpc"])
        if frequency_change is None or ctr_change is None or cpc_change is None:
            return None

        severity, grades = classify_fatigue_severity(
            frequency_change, ctr_change, cpc_change, self.thresholds
        )
        if severity is None:
            return None

        latest = rows[-1]
        reasons = self._build_reasons(grades, current, baseline, frequency_change, ctr_change, cpc_change)
        return FatigueSignal(
            client_id=config.client_id,
            channel=channel,
            account_ref=account_ref,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=latest.entity_name,
            campaign_name=latest.campaign_name,
            ad_set_name=latest.ad_set_name,
            current_frequency=round(current["frequency"], 2),
            baseline_frequency=round(baseline["frequency"], 2),
            current_ctr=round(current["ctr"], 4),
            baseline_ctr=round(baseline["ctr"], 4),
            current_cpc=round(current["cpc"], 4),
            baseline_cpc=round(baseline["cpc"], 4),
            frequency_change=round(frequency_change, 2),
            ctr_change=round(ctr_change, 2),
            cpc_change=round(cpc_change, 2),
            current_spend=round(current["spend"], 2),
            baseline_days=len(baseline_rows),
            severity=severity,
            reasons=reasons,
            suggested_actions=self._build_actions(severity, grades, entity_type),
        )

    @staticmethod
    def _aggregate(rows: List[MetricRow]) -> Optional[Dict[str, float]]:
        """Window aggregates; None when a denominator is zero."""
        impressions = sum(r.impressions for r in rows)
        clicks = sum(r.clicks for r in rows)
        spend = sum(r.spend for r in rows)
        frequencies = [r.frequency for r in rows if r.frequency is not None]

        ctr = safe_ratio(clicks * 100, impressions)
        cpc = safe_ratio(spend, clicks)
        if ctr is None or cpc is None or not frequencies:
            return None

        frequency = sum(frequencies) / len(frequencies)
        if frequency <= 0 or ctr <= 0 or cpc <= 0:
            return None

        return {"frequency": frequency, "ctr": ctr, "cpc": cpc, "spend": spend}

    @staticmethod
    def _build_reasons(
        grades: Dict[str, SignalGrade],
        current: Dict[str, float],
        baseline: Dict[str, float],
        frequency_change: float,
        ctr_change: float,
        cpc_change: float,
    ) -> List[str]:
        reasons = []
        if grades["frequency"]:
            reasons.append(
                f"Frequency up {frequency_change:.1f}% "
                f"({baseline['frequency']:.2f} -> {current['frequency']:.2f})"
            )
        if grades["ctr"]:
            reasons.append(
                f"CTR down {abs(ctr_change):.1f}% "
                f"({baseline['ctr']:.2f}% -> {current['ctr']:.2f}%)"
            )
        if grades["cpc"]:
            reasons.append(
                f"CPC up {cpc_change:.1f}% "
                f"({baseline['cpc']:.2f} -> {current['cpc']:.2f})"
            )
        return reasons

    @staticmethod
    def _build_actions(
        severity: AlertSeverity,
        grades: Dict[str, SignalGrade],
        entity_type: EntityType,
    ) -> List[str]:
        actions = []
        if severity == AlertSeverity.CRITICAL:
            actions.append("Pause the underperforming creative and shift budget to fresh variants")
        if grades["frequency"] or grades["ctr"]:
            actions.append("Refresh the creative with a new hook, visual or format")
        if entity_type == EntityType.AD:
            actions.append("Rotate in a new ad variant within the same ad set")
        if grades["frequency"] == SignalGrade.LARGE:
            actions.append("Broaden or refresh the audience to lower frequency")
        if grades["cpc"]:
            actions.append("Review bids and placements for rising click costs")

        deduped: List[str] = []
        for action in actions:
            if action not in deduped:
                deduped.append(action)
        return deduped
