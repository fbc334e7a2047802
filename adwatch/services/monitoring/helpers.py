"""Shared helpers for the monitoring service layer.

Numeric coercion, fingerprints and period-over-period math used by the
checks, the fatigue detector and the alert engine.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError

from .models import EntityType, MetricRow

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


# =============================================================================
# Safe Numeric Coercion
# =============================================================================

def _safe_numeric(value: Any) -> Optional[float]:
    """Coerce str/int/float to float. Returns None on failure (no exceptions).

    Handles platform values that may be strings, ints, or floats:
    - "12" -> 12.0
    - 12 -> 12.0
    - "abc", None, [], {} -> None
    """
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def safe_ratio(numerator: float, denominator: float) -> Optional[float]:
    """numerator / denominator, or None when the denominator is zero."""
    if not denominator:
        return None
    return numerator / denominator


def pct_change(current: float, baseline: float) -> Optional[float]:
    """Percentage change from baseline to current, None for a zero baseline."""
    ratio = safe_ratio(current - baseline, baseline)
    return None if ratio is None else ratio * 100


# =============================================================================
# Fingerprints
# =============================================================================

def build_fingerprint(check_id: str, day: date) -> str:
    """Dedup key for a check alert: one per check per calendar day."""
    return f"{check_id}:{day.isoformat()}"


def build_fatigue_fingerprint(entity_type: EntityType, entity_id: str, day: date) -> str:
    """Dedup key for a promoted fatigue signal: one per entity per day."""
    return f"fatigue:{entity_type.value}:{entity_id}:{day.isoformat()}"


# =============================================================================
# Storage errors
# =============================================================================

def is_unique_violation(error: Exception) -> bool:
    """True when a Supabase/PostgREST error is a Postgres unique violation."""
    if isinstance(error, APIError) and error.code == UNIQUE_VIOLATION:
        return True
    return UNIQUE_VIOLATION in str(error)


# =============================================================================
# Metric row helpers
# =============================================================================

def group_by_entity(rows: Iterable[MetricRow]) -> Dict[str, List[MetricRow]]:
    """Group rows by entity id, each group sorted by day."""
    grouped: Dict[str, List[MetricRow]] = {}
    for row in rows:
        grouped.setdefault(row.entity_id, []).append(row)
    for entity_rows in grouped.values():
        entity_rows.sort(key=lambda r: r.day)
    return grouped


def totals(rows: Iterable[MetricRow]) -> Dict[str, float]:
    """Summed spend, clicks, impressions, conversions and conversion value."""
    summed = {"spend": 0.0, "clicks": 0.0, "impressions": 0.0, "conversions": 0.0, "conversion_value": 0.0}
    for row in rows:
        summed["spend"] += row.spend
        summed["clicks"] += row.clicks
        summed["impressions"] += row.impressions
        summed["conversions"] += row.conversions
        summed["conversion_value"] += row.conversion_value
    return summed


def latest_day(rows: Iterable[MetricRow]) -> Optional[date]:
    days = [row.day for row in rows]
    return max(days) if days else None
