"""Alert persistence.

The store owns the `(client_id, fingerprint)` uniqueness rule: `insert`
raises DuplicateAlertError when a row with the same key exists, whatever
its status. The AlertEngine builds its dedup semantics on top of that.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .exceptions import DuplicateAlertError
from .helpers import is_unique_violation
from .models import (
    Alert,
    AlertChannel,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertType,
    CreateAlertInput,
)

logger = logging.getLogger(__name__)


class AlertStore(ABC):

    @abstractmethod
    async def insert(self, alert_input: CreateAlertInput, detected_at: datetime) -> Alert:
        """Insert an open alert.

        Raises:
            DuplicateAlertError: if (client_id, fingerprint) already exists.
        """

    @abstractmethod
    async def find_by_fingerprint(self, client_id: str, fingerprint: str) -> Optional[Alert]:
        """The alert with this dedup key, if any."""

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        """The alert with this id, if any."""

    @abstractmethod
    async def update(
        self,
        alert_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[AlertStatus] = None,
    ) -> Optional[Alert]:
        """Apply changes; when expected_status is given only if the row still has it.

        Returns the updated alert, or None when nothing matched.
        """

    @abstractmethod
    async def resolve_open(
        self,
        client_id: str,
        channel: AlertChannel,
        check_id: str,
        resolved_at: datetime,
    ) -> int:
        """Resolve every open alert matching the triple. Returns the count."""

    @abstractmethod
    async def list_open(
        self,
        client_ids: Optional[Sequence[str]] = None,
        channel: Optional[AlertChannel] = None,
        types: Optional[Sequence[AlertType]] = None,
        severities: Optional[Sequence[AlertSeverity]] = None,
    ) -> List[Alert]:
        """Open alerts, newest first."""

    @abstractmethod
    async def query(self, filters: AlertFilters) -> Tuple[List[Alert], int]:
        """One page of alerts matching the filters, newest first, plus the total count."""


def _insert_payload(alert_input: CreateAlertInput, detected_at: datetime) -> Dict[str, Any]:
    payload = alert_input.model_dump(mode="json")
    payload.update({
        "status": AlertStatus.OPEN.value,
        "detected_at": detected_at.isoformat(),
        "updated_at": detected_at.isoformat(),
    })
    return payload


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


class SupabaseAlertStore(AlertStore):
    """Alerts in the `alerts` table (UNIQUE(client_id, fingerprint))."""

    TABLE = "alerts"

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    def _table(self):
        return self.supabase.table(self.TABLE)

    async def insert(self, alert_input: CreateAlertInput, detected_at: datetime) -> Alert:
        payload = _insert_payload(alert_input, detected_at)
        try:
            result = await asyncio.to_thread(lambda: self._table().insert(payload).execute())
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateAlertError(alert_input.client_id, alert_input.fingerprint) from e
            raise
        return Alert.model_validate(result.data[0])

    async def find_by_fingerprint(self, client_id: str, fingerprint: str) -> Optional[Alert]:
        result = await asyncio.to_thread(
            lambda: self._table().select("*").eq(
                "client_id", client_id
            ).eq(
                "fingerprint", fingerprint
            ).limit(1).execute()
        )
        return Alert.model_validate(result.data[0]) if result.data else None

    async def get(self, alert_id: str) -> Optional[Alert]:
        result = await asyncio.to_thread(
            lambda: self._table().select("*").eq("id", alert_id).limit(1).execute()
        )
        return Alert.model_validate(result.data[0]) if result.data else None

    async def update(
        self,
        alert_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[AlertStatus] = None,
    ) -> Optional[Alert]:
        payload = {key: _json_value(value) for key, value in changes.items()}

        def _update():
            query = self._table().update(payload).eq("id", alert_id)
            if expected_status is not None:
                query = query.eq("status", expected_status.value)
            return query.execute()

        result = await asyncio.to_thread(_update)
        return Alert.model_validate(result.data[0]) if result.data else None

    async def resolve_open(
        self,
        client_id: str,
        channel: AlertChannel,
        check_id: str,
        resolved_at: datetime,
    ) -> int:
        payload = {
            "status": AlertStatus.RESOLVED.value,
            "resolved_at": resolved_at.isoformat(),
            "updated_at": resolved_at.isoformat(),
        }
        result = await asyncio.to_thread(
            lambda: self._table().update(payload).eq(
                "client_id", client_id
            ).eq(
                "channel", channel.value
            ).eq(
                "check_id", check_id
            ).eq(
                "status", AlertStatus.OPEN.value
            ).execute()
        )
        return len(result.data or [])

    async def list_open(
        self,
        client_ids: Optional[Sequence[str]] = None,
        channel: Optional[AlertChannel] = None,
        types: Optional[Sequence[AlertType]] = None,
        severities: Optional[Sequence[AlertSeverity]] = None,
    ) -> List[Alert]:
        def _query():
            query = self._table().select("*").eq("status", AlertStatus.OPEN.value)
            if client_ids is not None:
                query = query.in_("client_id", list(client_ids))
            if channel:
                query = query.eq("channel", channel.value)
            if types:
                query = query.in_("type", [t.value for t in types])
            if severities:
                query = query.in_("severity", [s.value for s in severities])
            return query.order("detected_at", desc=True).execute()

        result = await asyncio.to_thread(_query)
        return [Alert.model_validate(row) for row in result.data or []]

    async def query(self, filters: AlertFilters) -> Tuple[List[Alert], int]:
        def _query():
            query = self._table().select("*", count="exact")
            if filters.client_ids is not None:
                query = query.in_("client_id", filters.client_ids)
            if filters.channel:
                query = query.eq("channel", filters.channel.value)
            if filters.type:
                query = query.eq("type", filters.type.value)
            if filters.severity:
                query = query.eq("severity", filters.severity.value)
            if filters.status:
                query = query.eq("status", filters.status.value)
            if filters.check_id:
                query = query.eq("check_id", filters.check_id)
            return query.order("detected_at", desc=True).range(
                filters.offset, filters.offset + filters.per_page - 1
            ).execute()

        result = await asyncio.to_thread(_query)
        alerts = [Alert.model_validate(row) for row in result.data or []]
        total = result.count if result.count is not None else len(alerts)
        return alerts, total


class InMemoryAlertStore(AlertStore):
    """Process-local store with the same uniqueness rule, for dry runs and tests."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._by_key: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()
        self.insert_attempts = 0

    async def insert(self, alert_input: CreateAlertInput, detected_at: datetime) -> Alert:
        with self._lock:
            self.insert_attempts += 1
            key = (alert_input.client_id, alert_input.fingerprint)
            if key in self._by_key:
                raise DuplicateAlertError(alert_input.client_id, alert_input.fingerprint)
            alert = Alert(
                id=str(uuid.uuid4()),
                status=AlertStatus.OPEN,
                detected_at=detected_at,
                updated_at=detected_at,
                **alert_input.model_dump(exclude={"details"}),
                details=alert_input.details,
            )
            self._alerts[alert.id] = alert
            self._by_key[key] = alert.id
            return alert

    async def find_by_fingerprint(self, client_id: str, fingerprint: str) -> Optional[Alert]:
        alert_id = self._by_key.get((client_id, fingerprint))
        return self._alerts.get(alert_id) if alert_id else None

    async def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def update(
        self,
        alert_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[AlertStatus] = None,
    ) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            if expected_status is not None and alert.status != expected_status:
                return None
            updated = alert.model_copy(update=changes)
            self._alerts[alert_id] = updated
            return updated

    async def resolve_open(
        self,
        client_id: str,
        channel: AlertChannel,
        check_id: str,
        resolved_at: datetime,
    ) -> int:
        resolved = 0
        with self._lock:
            for alert_id, alert in list(self._alerts.items()):
                if (
                    alert.client_id == client_id
                    and alert.channel == channel
                    and alert.check_id == check_id
                    and alert.status == AlertStatus.OPEN
                ):
                    self._alerts[alert_id] = alert.model_copy(update={
                        "status": AlertStatus.RESOLVED,
                        "resolved_at": resolved_at,
                        "updated_at": resolved_at,
                    })
                    resolved += 1
        return resolved

    async def list_open(
        self,
        client_ids: Optional[Sequence[str]] = None,
        channel: Optional[AlertChannel] = None,
        types: Optional[Sequence[AlertType]] = None,
        severities: Optional[Sequence[AlertSeverity]] = None,
    ) -> List[Alert]:
        alerts = [
            a for a in self._alerts.values()
            if a.status == AlertStatus.OPEN
            and (client_ids is None or a.client_id in client_ids)
            and (channel is None or a.channel == channel)
            and (not types or a.type in types)
            and (not severities or a.severity in severities)
        ]
        return sorted(alerts, key=lambda a: a.detected_at, reverse=True)

    async def query(self, filters: AlertFilters) -> Tuple[List[Alert], int]:
        alerts = [
            a for a in self._alerts.values()
            if (filters.client_ids is None or a.client_id in filters.client_ids)
            and (filters.channel is None or a.channel == filters.channel)
            and (filters.type is None or a.type == filters.type)
            and (filters.severity is None or a.severity == filters.severity)
            and (filters.status is None or a.status == filters.status)
            and (filters.check_id is None or a.check_id == filters.check_id)
        ]
        alerts.sort(key=lambda a: a.detected_at, reverse=True)
        return alerts[filters.offset:filters.offset + filters.per_page], len(alerts)

    def all(self) -> List[Alert]:
        return list(self._alerts.values())
