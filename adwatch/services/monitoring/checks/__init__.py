"""Check registry and the default check battery."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..models import AD_CHANNELS, AlertChannel
from .audience import AudienceIssuesCheck
from .base import BaseCheck
from .delivery import BudgetDepletedCheck, DisapprovedAdsCheck, NoDeliveryCheck
from .performance import (
    CpaIncreaseCheck,
    CpcSpikeCheck,
    PausedHighPerformersCheck,
    PerformanceDropCheck,
    RoasDecreaseCheck,
    SpendWithoutValueCheck,
)
from .tracking import ConversionTrackingBrokenCheck

DEFAULT_CHECK_CLASSES = (
    DisapprovedAdsCheck,
    NoDeliveryCheck,
    BudgetDepletedCheck,
    ConversionTrackingBrokenCheck,
    CpcSpikeCheck,
    CpaIncreaseCheck,
    SpendWithoutValueCheck,
    RoasDecreaseCheck,
    PerformanceDropCheck,
    PausedHighPerformersCheck,
    AudienceIssuesCheck,
)


class CheckRegistry:
    """Ordered collection of checks with unique ids."""

    def __init__(self, checks: Optional[Iterable[BaseCheck]] = None):
        self._checks: Dict[str, BaseCheck] = {}
        for check in checks or []:
            self.register(check)

    def register(self, check: BaseCheck) -> None:
        if check.id in self._checks:
            raise ValueError(f"Duplicate check id: {check.id}")
        self._checks[check.id] = check

    def get(self, check_id: str) -> Optional[BaseCheck]:
        return self._checks.get(check_id)

    def ids(self) -> List[str]:
        return list(self._checks)

    def for_channel(self, channel: AlertChannel) -> List[BaseCheck]:
        return [check for check in self._checks.values() if check.channel == channel]

    def select(self, check_ids: Sequence[str]) -> "CheckRegistry":
        """Registry restricted to the given ids. Unknown ids raise ValueError."""
        unknown = [check_id for check_id in check_ids if check_id not in self._checks]
        if unknown:
            raise ValueError(f"Unknown check ids: {', '.join(unknown)}")
        return CheckRegistry(self._checks[check_id] for check_id in check_ids)

    @property
    def max_lookback_days(self) -> int:
        return max((check.lookback_days for check in self._checks.values()), default=0)

    def __iter__(self) -> Iterator[BaseCheck]:
        return iter(self._checks.values())

    def __len__(self) -> int:
        return len(self._checks)


def build_default_registry(
    channels: Sequence[AlertChannel] = AD_CHANNELS,
    enabled: Optional[Sequence[str]] = None,
) -> CheckRegistry:
    """The full check battery for each ad channel.

    Args:
        channels: Channels to build checks for.
        enabled: Optional list of check keys (e.g. "cpc_spike") to keep.
    """
    registry = CheckRegistry()
    for channel in channels:
        for check_class in DEFAULT_CHECK_CLASSES:
            if enabled is not None and check_class.key not in enabled:
                continue
            registry.register(check_class(channel))
    return registry


__all__ = [
    "BaseCheck",
    "CheckRegistry",
    "build_default_registry",
    "DEFAULT_CHECK_CLASSES",
    "AudienceIssuesCheck",
    "BudgetDepletedCheck",
    "ConversionTrackingBrokenCheck",
    "CpaIncreaseCheck",
    "CpcSpikeCheck",
    "DisapprovedAdsCheck",
    "NoDeliveryCheck",
    "PausedHighPerformersCheck",
    "PerformanceDropCheck",
    "RoasDecreaseCheck",
    "SpendWithoutValueCheck",
]
