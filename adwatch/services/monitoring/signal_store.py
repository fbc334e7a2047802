"""Persistence for fatigue signals.

Signals are kept for display independently of alerts: every detected
signal is stored, while only high/critical ones become alerts. Within one
detection day an entity keeps a single unacknowledged row that later runs
refresh; acknowledged rows are never overwritten.

The detection day is the client-local day the monitoring pass ran for,
the same day used in alert fingerprints.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .models import AlertSeverity, FatigueSignal

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FatigueSignalStore(ABC):

    @abstractmethod
    async def save_signals(self, signals: Sequence[FatigueSignal], detection_date: Optional[date] = None) -> int:
        """Insert or refresh signals for a detection day (default: today, UTC).

        Returns the number written; less than len(signals) when some writes failed.
        """

    @abstractmethod
    async def list_signals(
        self,
        client_id: str,
        severities: Optional[Sequence[AlertSeverity]] = None,
        include_acknowledged: bool = False,
    ) -> List[FatigueSignal]:
        """Signals for a client, most recent first."""

    @abstractmethod
    async def get_signal(self, signal_id: str) -> Optional[FatigueSignal]:
        """A single signal by id."""

    @abstractmethod
    async def acknowledge(self, signal_id: str, user_id: Optional[str] = None) -> bool:
        """Mark a signal acknowledged. False when the id is unknown."""


class SupabaseFatigueSignalStore(FatigueSignalStore):
    """Stores signals in the `fatigue_signals` table."""

    TABLE = "fatigue_signals"

    def __init__(self, supabase_client, clock: Callable[[], datetime] = _utcnow):
        self.supabase = supabase_client
        self.clock = clock

    async def save_signals(self, signals: Sequence[FatigueSignal], detection_date: Optional[date] = None) -> int:
        day = detection_date or self.clock().date()
        written = 0
        for signal in signals:
            try:
                await asyncio.to_thread(self._save_one, signal, day)
                written += 1
            except Exception as e:
                logger.error(f"Failed to save fatigue signal for {signal.entity_type.value} {signal.entity_id}: {e}")
        return written

    def _save_one(self, signal: FatigueSignal, day: date) -> None:
        payload = signal.model_dump(
            mode="json",
            exclude={"id", "is_acknowledged", "acknowledged_at", "acknowledged_by", "detected_at", "detection_date"},
        )
        payload["detected_at"] = self.clock().isoformat()
        payload["detection_date"] = day.isoformat()

        existing = self.supabase.table(self.TABLE).select("id").eq(
            "client_id", signal.client_id
        ).eq(
            "entity_type", signal.entity_type.value
        ).eq(
            "entity_id", signal.entity_id
        ).eq(
            "is_acknowledged", False
        ).eq(
            "detection_date", day.isoformat()
        ).limit(1).execute()

        if existing.data:
            self.supabase.table(self.TABLE).update(payload).eq("id", existing.data[0]["id"]).execute()
        else:
            self.supabase.table(self.TABLE).insert(payload).execute()

    async def list_signals(
        self,
        client_id: str,
        severities: Optional[Sequence[AlertSeverity]] = None,
        include_acknowledged: bool = False,
    ) -> List[FatigueSignal]:
        def _query():
            query = self.supabase.table(self.TABLE).select("*").eq("client_id", client_id)
            if severities:
                query = query.in_("severity", [s.value for s in severities])
            if not include_acknowledged:
                query = query.eq("is_acknowledged", False)
            return query.order("detected_at", desc=True).execute()

        result = await asyncio.to_thread(_query)
        return [FatigueSignal.model_validate(row) for row in result.data or []]

    async def get_signal(self, signal_id: str) -> Optional[FatigueSignal]:
        result = await asyncio.to_thread(
            lambda: self.supabase.table(self.TABLE).select("*").eq("id", signal_id).limit(1).execute()
        )
        if not result.data:
            return None
        return FatigueSignal.model_validate(result.data[0])

    async def acknowledge(self, signal_id: str, user_id: Optional[str] = None) -> bool:
        payload = {
            "is_acknowledged": True,
            "acknowledged_at": self.clock().isoformat(),
            "acknowledged_by": user_id,
        }
        try:
            result = await asyncio.to_thread(
                lambda: self.supabase.table(self.TABLE).update(payload).eq("id", signal_id).execute()
            )
        except Exception as e:
            logger.error(f"Failed to acknowledge fatigue signal {signal_id}: {e}")
            return False
        return bool(result.data)


class InMemoryFatigueSignalStore(FatigueSignalStore):
    """Process-local signal store for dry runs and tests."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self._signals: Dict[str, FatigueSignal] = {}
        self._lock = threading.Lock()

    async def save_signals(self, signals: Sequence[FatigueSignal], detection_date: Optional[date] = None) -> int:
        now = self.clock()
        day = detection_date or now.date()
        with self._lock:
            for signal in signals:
                existing = self._find_open_same_day(signal, day)
                signal_id = existing.id if existing else str(uuid.uuid4())
                self._signals[signal_id] = signal.model_copy(update={
                    "id": signal_id,
                    "detected_at": now,
                    "detection_date": day,
                    "is_acknowledged": False,
                    "acknowledged_at": None,
                    "acknowledged_by": None,
                })
        return len(signals)

    def _find_open_same_day(self, signal: FatigueSignal, day: date) -> Optional[FatigueSignal]:
        for stored in self._signals.values():
            if (
                stored.client_id == signal.client_id
                and stored.entity_type == signal.entity_type
                and stored.entity_id == signal.entity_id
                and not stored.is_acknowledged
                and stored.detection_date == day
            ):
                return stored
        return None

    async def list_signals(
        self,
        client_id: str,
        severities: Optional[Sequence[AlertSeverity]] = None,
        include_acknowledged: bool = False,
    ) -> List[FatigueSignal]:
        with self._lock:
            signals = [
                s for s in self._signals.values()
                if s.client_id == client_id
                and (not severities or s.severity in severities)
                and (include_acknowledged or not s.is_acknowledged)
            ]
        return sorted(signals, key=lambda s: s.detected_at, reverse=True)

    async def get_signal(self, signal_id: str) -> Optional[FatigueSignal]:
        return self._signals.get(signal_id)

    async def acknowledge(self, signal_id: str, user_id: Optional[str] = None) -> bool:
        with self._lock:
            signal = self._signals.get(signal_id)
            if signal is None:
                return False
            self._signals[signal_id] = signal.model_copy(update={
                "is_acknowledged": True,
                "acknowledged_at": self.clock(),
                "acknowledged_by": user_id,
            })
        return True
