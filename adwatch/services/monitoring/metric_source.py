"""Metric sources: where checks and the fatigue detector read performance data.

Platform sync clients (outside this package) write daily entity metrics into
`ad_insights_daily`; SupabaseMetricSource reads them back. MetricSnapshot
caches one client's lookback window so every check in a pass sees the same
data and the source is hit once per (account, entity type).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from tenacity import retry, stop_after_attempt, wait_exponential

from .exceptions import MetricFetchError
from .helpers import _safe_numeric
from .models import ClientMonitoringConfig, DateRange, EntityType, MetricRow

logger = logging.getLogger(__name__)


class MetricSource(ABC):
    """Read-only access to daily entity metrics."""

    @abstractmethod
    async def get_metrics(
        self,
        account_ref: str,
        entity_type: EntityType,
        date_range: DateRange,
    ) -> List[MetricRow]:
        """Return all rows for the account and entity type inside the range."""


class MetricSyncer(ABC):
    """Optional hook that refreshes a client's metrics before checks run."""

    @abstractmethod
    async def sync_client(self, config: ClientMonitoringConfig, date_range: DateRange) -> None:
        """Pull fresh data for the client into the metric store."""


class SupabaseMetricSource(MetricSource):
    """Reads `ad_insights_daily` rows written by the platform sync clients."""

    TABLE = "ad_insights_daily"
    PAGE_SIZE = 1000

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    async def get_metrics(
        self,
        account_ref: str,
        entity_type: EntityType,
        date_range: DateRange,
    ) -> List[MetricRow]:
        try:
            raw_rows = await asyncio.to_thread(self._fetch_rows, account_ref, entity_type, date_range)
        except Exception as e:
            raise MetricFetchError(
                f"Failed to fetch {entity_type.value} metrics for account {account_ref}: {e}"
            ) from e

        rows = []
        for raw in raw_rows:
            row = self._to_metric_row(raw, entity_type)
            if row is not None:
                rows.append(row)
        return rows

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=2, min=2, max=8), reraise=True)
    def _fetch_rows(self, account_ref: str, entity_type: EntityType, date_range: DateRange) -> List[Dict]:
        rows: List[Dict] = []
        offset = 0
        while True:
            result = self.supabase.table(self.TABLE).select("*").eq(
                "account_ref", account_ref
            ).eq(
                "entity_type", entity_type.value
            ).gte(
                "date", date_range.start.isoformat()
            ).lte(
                "date", date_range.end.isoformat()
            ).order("date").range(offset, offset + self.PAGE_SIZE - 1).execute()

            page = result.data or []
            rows.extend(page)
            if len(page) < self.PAGE_SIZE:
                return rows
            offset += self.PAGE_SIZE

    @staticmethod
    def _to_metric_row(raw: Dict, entity_type: EntityType) -> Optional[MetricRow]:
        """Normalize a database row. Rows without id or date are dropped."""
        entity_id = raw.get("entity_id")
        day = raw.get("date")
        if not entity_id or not day:
            logger.debug(f"Skipping metric row without entity_id/date: {raw}")
            return None

        audience_count = _safe_numeric(raw.get("audience_count"))
        return MetricRow(
            day=day,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_name=raw.get("entity_name"),
            campaign_id=raw.get("campaign_id"),
            campaign_name=raw.get("campaign_name"),
            ad_set_id=raw.get("ad_set_id"),
            ad_set_name=raw.get("ad_set_name"),
            impressions=int(_safe_numeric(raw.get("impressions")) or 0),
            clicks=int(_safe_numeric(raw.get("clicks")) or 0),
            spend=_safe_numeric(raw.get("spend")) or 0.0,
            conversions=_safe_numeric(raw.get("conversions")) or 0.0,
            conversion_value=_safe_numeric(raw.get("conversion_value")) or 0.0,
            frequency=_safe_numeric(raw.get("frequency")),
            status=raw.get("status"),
            review_status=raw.get("review_status"),
            policy_topics=raw.get("policy_topics") or [],
            daily_budget=_safe_numeric(raw.get("daily_budget")),
            audience_count=int(audience_count) if audience_count is not None else None,
            start_date=raw.get("start_date"),
        )


class InMemoryMetricSource(MetricSource):
    """Serves rows from memory, keyed by (account_ref, entity_type)."""

    def __init__(self, rows: Optional[Dict[Tuple[str, EntityType], List[MetricRow]]] = None):
        self.rows: Dict[Tuple[str, EntityType], List[MetricRow]] = rows or {}
        self.calls: List[Tuple[str, EntityType, DateRange]] = []

    def add_rows(self, account_ref: str, rows: List[MetricRow]) -> None:
        for row in rows:
            self.rows.setdefault((account_ref, row.entity_type), []).append(row)

    async def get_metrics(
        self,
        account_ref: str,
        entity_type: EntityType,
        date_range: DateRange,
    ) -> List[MetricRow]:
        self.calls.append((account_ref, entity_type, date_range))
        return [
            row for row in self.rows.get((account_ref, entity_type), [])
            if date_range.contains(row.day)
        ]


class MetricSnapshot(MetricSource):
    """Per-client cache over a wrapped source for one prefetched window.

    Reads inside the window are served from the cache; anything outside
    falls through to the wrapped source.
    """

    def __init__(self, source: MetricSource, window: DateRange):
        self.source = source
        self.window = window
        self._cache: Dict[Tuple[str, EntityType], List[MetricRow]] = {}

    async def prefetch(self, config: ClientMonitoringConfig, entity_types: Tuple[EntityType, ...] = tuple(EntityType)) -> int:
        """Load every configured ad account for the window. Returns rows loaded.

        Raises:
            MetricFetchError: if any fetch fails.
        """
        loaded = 0
        for channel in config.ad_channels:
            account_ref = config.accounts[channel]
            for entity_type in entity_types:
                key = (account_ref, entity_type)
                if key in self._cache:
                    continue
                try:
                    rows = await self.source.get_metrics(account_ref, entity_type, self.window)
                except MetricFetchError:
                    raise
                except Exception as e:
                    raise MetricFetchError(
                        f"Failed to prefetch {entity_type.value} metrics for {channel.value} account {account_ref}: {e}"
                    ) from e
                self._cache[key] = rows
                loaded += len(rows)
        logger.debug(f"Prefetched {loaded} metric rows for {config.client_name} ({self.window.start} - {self.window.end})")
        return loaded

    async def get_metrics(
        self,
        account_ref: str,
        entity_type: EntityType,
        date_range: DateRange,
    ) -> List[MetricRow]:
        key = (account_ref, entity_type)
        if key in self._cache and self.window.covers(date_range):
            return [row for row in self._cache[key] if date_range.contains(row.day)]
        return await self.source.get_metrics(account_ref, entity_type, date_range)

