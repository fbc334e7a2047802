"""AlertEngine: the only writer of alerts.

Creates deduplicated alerts from check results and fatigue signals, resolves
alerts whose check reports healthy again, applies manual status transitions
and serves the read paths used by the API and CLI.

Lifecycle: open -> acknowledged -> resolved, or open -> resolved directly.
Resolved is terminal; a recurrence on a later day gets a new fingerprint
and therefore a new alert.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .alert_store import AlertStore
from .exceptions import DuplicateAlertError
from .helpers import build_fatigue_fingerprint, build_fingerprint
from .models import (
    Alert,
    AlertChannel,
    AlertCreationResult,
    AlertFilters,
    AlertPreview,
    AlertSeverity,
    AlertStatus,
    AlertSummary,
    AlertType,
    ChannelSummary,
    CheckResult,
    ClientMonitoringConfig,
    CreateAlertInput,
    CreativeFatigueDetails,
    FatigueSignal,
    SkipReason,
)

logger = logging.getLogger(__name__)

FATIGUE_CHECK_ID = "creative_fatigue"

ALLOWED_TRANSITIONS = {
    AlertStatus.OPEN: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),
}


def is_allowed_transition(current: AlertStatus, target: AlertStatus) -> bool:
    """True when `target` can be reached from `current` (same-state included)."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


SUMMARY_TYPES = (AlertType.FUNDAMENTAL, AlertType.PERFORMANCE)
SUMMARY_SEVERITIES = (AlertSeverity.CRITICAL, AlertSeverity.HIGH)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    """Creates, resolves and reads alerts on top of an AlertStore."""

    SUMMARY_PREVIEW_SIZE = 3

    def __init__(
        self,
        store: AlertStore,
        clock: Callable[[], datetime] = _utcnow,
        summary_preview_size: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock
        self.summary_preview_size = summary_preview_size or self.SUMMARY_PREVIEW_SIZE

    # =========================================================================
    # Create
    # =========================================================================

    async def create_alert(self, alert_input: CreateAlertInput) -> AlertCreationResult:
        """Create an alert unless one with the same (client_id, fingerprint) exists.

        The insert is attempted first; the uniqueness constraint decides. On a
        collision the existing row is looked up once to report why:
        - open or acknowledged -> skipped(already_open)
        - resolved (same day bucket) -> skipped(duplicate), not reopened

        Storage errors are reported as failed, never raised.
        """
        try:
            alert = await self.store.insert(alert_input, self.clock())
        except DuplicateAlertError:
            return await self._skip_existing(alert_input)
        except Exception as e:
            logger.error(
                f"Failed to create alert {alert_input.fingerprint} for client {alert_input.client_id}: {e}"
            )
            return AlertCreationResult.failed(str(e))

        logger.info(
            f"Created {alert.severity.value} alert {alert.check_id} for client {alert.client_id} ({alert.id})"
        )
        return AlertCreationResult.created(alert.id)

    async def _skip_existing(self, alert_input: CreateAlertInput) -> AlertCreationResult:
        try:
            existing = await self.store.find_by_fingerprint(alert_input.client_id, alert_input.fingerprint)
        except Exception as e:
            logger.warning(f"Lookup after duplicate insert failed for {alert_input.fingerprint}: {e}")
            return AlertCreationResult.skipped(SkipReason.DUPLICATE)

        if existing is None:
            return AlertCreationResult.skipped(SkipReason.DUPLICATE)

        if existing.status in (AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED):
            logger.debug(f"Alert {alert_input.fingerprint} already open for client {alert_input.client_id}")
            return AlertCreationResult.skipped(SkipReason.ALREADY_OPEN, existing.id)

        logger.debug(
            f"Alert {alert_input.fingerprint} for client {alert_input.client_id} was resolved today, not reopening"
        )
        return AlertCreationResult.skipped(SkipReason.DUPLICATE, existing.id)

    def build_check_alert(
        self,
        config: ClientMonitoringConfig,
        channel: AlertChannel,
        result: CheckResult,
        as_of: date,
        alert_type: AlertType = AlertType.FUNDAMENTAL,
    ) -> Optional[CreateAlertInput]:
        """Alert input for a non-ok check result; None when the result carries no alert data."""
        if result.alert_data is None:
            return None

        details = result.details.model_copy(update={
            "client_name": config.client_name,
            "check_count": result.count,
        })
        data = result.alert_data
        return CreateAlertInput(
            client_id=config.client_id,
            channel=channel,
            type=alert_type,
            severity=data.severity,
            check_id=result.check_id,
            title=data.title,
            short_description=data.short_description,
            impact=data.impact,
            suggested_actions=data.suggested_actions,
            details=details,
            fingerprint=build_fingerprint(result.check_id, as_of),
        )

    async def create_alert_from_check_result(
        self,
        config: ClientMonitoringConfig,
        channel: AlertChannel,
        result: CheckResult,
        as_of: date,
        alert_type: AlertType = AlertType.FUNDAMENTAL,
    ) -> AlertCreationResult:
        """Create the day's alert for a non-ok check result.

        Fingerprint: "<check_id>:<YYYY-MM-DD>".
        """
        alert_input = self.build_check_alert(config, channel, result, as_of, alert_type)
        if alert_input is None:
            return AlertCreationResult.skipped(SkipReason.DUPLICATE)
        return await self.create_alert(alert_input)

    def build_fatigue_alert(self, signal: FatigueSignal, as_of: date) -> Optional[CreateAlertInput]:
        """Alert input for a promotable fatigue signal; None for low/medium signals."""
        if not signal.is_promotable:
            return None

        entity_label = signal.entity_name or signal.entity_id
        details = CreativeFatigueDetails(
            entity_type=signal.entity_type,
            entity_id=signal.entity_id,
            entity_name=signal.entity_name,
            account_ref=signal.account_ref,
            current_frequency=signal.current_frequency,
            baseline_frequency=signal.baseline_frequency,
            current_ctr=signal.current_ctr,
            baseline_ctr=signal.baseline_ctr,
            current_cpc=signal.current_cpc,
            baseline_cpc=signal.baseline_cpc,
            frequency_change=signal.frequency_change,
            ctr_change=signal.ctr_change,
            cpc_change=signal.cpc_change,
            reasons=signal.reasons,
        )
        return CreateAlertInput(
            client_id=signal.client_id,
            channel=signal.channel,
            type=AlertType.FATIGUE,
            severity=signal.severity,
            check_id=FATIGUE_CHECK_ID,
            title=f"Creative fatigue: {entity_label}",
            short_description="; ".join(signal.reasons),
            impact="The audience is tiring of this creative and results per unit of spend are declining.",
            suggested_actions=signal.suggested_actions,
            details=details,
            fingerprint=build_fatigue_fingerprint(signal.entity_type, signal.entity_id, as_of),
        )

    async def create_alert_from_fatigue_signal(self, signal: FatigueSignal, as_of: date) -> AlertCreationResult:
        """Promote a high/critical fatigue signal to an alert.

        Fingerprint: "fatigue:<entity_type>:<entity_id>:<YYYY-MM-DD>".
        """
        alert_input = self.build_fatigue_alert(signal, as_of)
        if alert_input is None:
            return AlertCreationResult.skipped(SkipReason.DUPLICATE)
        return await self.create_alert(alert_input)

    # =========================================================================
    # Resolve / transition
    # =========================================================================

    async def auto_resolve_if_fixed(self, client_id: str, channel: AlertChannel, check_id: str) -> int:
        """Resolve all open alerts for (client, channel, check). Returns the count resolved."""
        try:
            resolved = await self.store.resolve_open(client_id, channel, check_id, self.clock())
        except Exception as e:
            logger.error(f"Auto-resolve failed for {client_id}/{channel.value}/{check_id}: {e}")
            return 0

        if resolved:
            logger.info(f"Auto-resolved {resolved} {check_id} alert(s) for client {client_id}")
        return resolved

    async def resolve_recovered_fatigue(
        self,
        client_id: str,
        channel: AlertChannel,
        fatigued: Iterable[FatigueSignal],
    ) -> int:
        """Resolve open creative_fatigue alerts whose entity is no longer fatigued.

        `fatigued` are this pass's promotable signals; alerts for any other
        entity on the channel are resolved. Returns the count resolved.
        """
        still_fatigued = {(s.entity_type.value, s.entity_id) for s in fatigued}
        try:
            open_alerts = await self.store.list_open(
                client_ids=[client_id], channel=channel, types=[AlertType.FATIGUE]
            )
        except Exception as e:
            logger.error(f"Failed to load open fatigue alerts for {client_id}/{channel.value}: {e}")
            return 0

        now = self.clock()
        resolved = 0
        for alert in open_alerts:
            if alert.check_id != FATIGUE_CHECK_ID:
                continue
            entity_type = getattr(alert.details, "entity_type", None)
            entity_key = (getattr(entity_type, "value", entity_type), getattr(alert.details, "entity_id", None))
            if entity_key in still_fatigued:
                continue
            try:
                updated = await self.store.update(
                    alert.id,
                    {"status": AlertStatus.RESOLVED, "resolved_at": now, "updated_at": now},
                    expected_status=AlertStatus.OPEN,
                )
            except Exception as e:
                logger.error(f"Failed to resolve fatigue alert {alert.id}: {e}")
                continue
            if updated is not None:
                resolved += 1

        if resolved:
            logger.info(f"Auto-resolved {resolved} recovered fatigue alert(s) for client {client_id}")
        return resolved

    async def update_alert_status(
        self,
        alert_id: str,
        status: AlertStatus,
        acting_user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Apply a manual transition.

        Returns True when the alert ends in `status` (including when it was
        already there), False for unknown ids, disallowed transitions
        (anything out of resolved, anything back to open) and storage errors.
        """
        try:
            alert = await self.store.get(alert_id)
        except Exception as e:
            logger.error(f"Failed to load alert {alert_id}: {e}")
            return False

        if alert is None:
            logger.warning(f"Alert {alert_id} not found")
            return False

        if alert.status == status:
            return True

        if not is_allowed_transition(alert.status, status):
            logger.warning(f"Rejected transition {alert.status.value} -> {status.value} for alert {alert_id}")
            return False

        now = self.clock()
        changes: Dict[str, object] = {"status": status, "updated_at": now}
        if status == AlertStatus.ACKNOWLEDGED:
            changes["acknowledged_at"] = now
            changes["acknowledged_by"] = acting_user_id
        elif status == AlertStatus.RESOLVED:
            changes["resolved_at"] = now
            changes["resolved_by"] = acting_user_id
        if reason:
            changes["status_reason"] = reason

        try:
            updated = await self.store.update(alert_id, changes, expected_status=alert.status)
        except Exception as e:
            logger.error(f"Failed to update alert {alert_id} to {status.value}: {e}")
            return False

        if updated is None:
            # Changed underneath us; succeed only if it landed where we wanted.
            current = await self.store.get(alert_id)
            return current is not None and current.status == status

        logger.info(f"Alert {alert_id}: {alert.status.value} -> {status.value}")
        return True

    # =========================================================================
    # Read paths
    # =========================================================================

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        return await self.store.get(alert_id)

    async def get_open_alerts(
        self,
        client_id: str,
        channel: Optional[AlertChannel] = None,
        alert_type: Optional[AlertType] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[Alert]:
        """Open alerts for a client, newest first."""
        return await self.store.list_open(
            client_ids=[client_id],
            channel=channel,
            types=[alert_type] if alert_type else None,
            severities=[severity] if severity else None,
        )

    async def list_alerts(self, filters: AlertFilters) -> Tuple[List[Alert], int]:
        return await self.store.query(filters)

    async def get_alert_summary(
        self,
        client_id: Optional[str] = None,
        client_ids: Optional[Sequence[str]] = None,
    ) -> AlertSummary:
        """Open critical/high fundamental and performance alerts grouped by channel.

        Each channel keeps its full count but only the newest
        `summary_preview_size` alerts as preview items. Without a client
        scope the summary covers every client.
        """
        if client_id is not None:
            client_ids = [client_id]
        alerts = await self.store.list_open(
            client_ids=client_ids,
            types=SUMMARY_TYPES,
            severities=SUMMARY_SEVERITIES,
        )

        summary = AlertSummary()
        for alert in alerts:
            if alert.severity == AlertSeverity.CRITICAL:
                summary.total_critical += 1
            else:
                summary.total_high += 1

            channel = summary.by_channel.setdefault(alert.channel.value, ChannelSummary())
            channel.count += 1
            if len(channel.items) < self.summary_preview_size:
                channel.items.append(AlertPreview(
                    id=alert.id,
                    client_id=alert.client_id,
                    check_id=alert.check_id,
                    title=alert.title,
                    severity=alert.severity,
                    detected_at=alert.detected_at,
                ))
        return summary
