"""MonitoringService: the single entry point used by the API, CLI and scheduler.

Every operation authorizes the principal through the configured
AccessPolicy before touching any store.
"""

from __future__ import annotations

import copy
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ...core.config import Config, load_monitoring_defaults
from ...core.database import create_supabase_client
from .access import AccessPolicy, Action, AllowAllPolicy, MembershipAccessPolicy, Principal
from .alert_engine import AlertEngine, is_allowed_transition
from .alert_store import SupabaseAlertStore
from .checks import build_default_registry
from .config_provider import ConfigProvider, SupabaseConfigProvider
from .exceptions import (
    AccessDeniedError,
    AlertNotFoundError,
    AlertUpdateError,
    InvalidStatusTransitionError,
    SignalNotFoundError,
)
from .fatigue_detector import FatigueDetector
from .metric_source import SupabaseMetricSource
from .models import (
    Alert,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertSummary,
    FatigueSignal,
    FatigueThresholds,
    MonitoringRunResult,
)
from .orchestrator import MonitoringOrchestrator
from .signal_store import FatigueSignalStore, SupabaseFatigueSignalStore

logger = logging.getLogger(__name__)


class MonitoringService:
    """Authorized facade over the orchestrator, alert engine and signal store."""

    def __init__(
        self,
        orchestrator: MonitoringOrchestrator,
        alert_engine: AlertEngine,
        signal_store: Optional[FatigueSignalStore] = None,
        policy: Optional[AccessPolicy] = None,
    ):
        self.orchestrator = orchestrator
        self.alert_engine = alert_engine
        self.signal_store = signal_store
        self.policy = policy or MembershipAccessPolicy()

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_now(
        self,
        principal: Principal,
        client_ids: Optional[Sequence[str]] = None,
        as_of: Optional[date] = None,
        check_ids: Optional[Sequence[str]] = None,
        dry_run: bool = False,
    ) -> MonitoringRunResult:
        """Trigger a monitoring pass immediately.

        Without client_ids the pass covers every enabled client, which only
        privileged principals may request.
        """
        if client_ids:
            for client_id in client_ids:
                self.policy.authorize(principal, Action.RUN_MONITORING, client_id)
        else:
            self.policy.authorize(principal, Action.RUN_MONITORING)

        orchestrator = self.orchestrator
        if dry_run and not orchestrator.dry_run:
            orchestrator = copy.copy(orchestrator)
            orchestrator.dry_run = True

        logger.info(
            f"Monitoring run requested by {principal.user_id or 'anonymous'}"
            f" for {', '.join(client_ids) if client_ids else 'all clients'}"
        )
        return await orchestrator.run(client_ids=client_ids, as_of=as_of, check_ids=check_ids)

    # =========================================================================
    # Alerts
    # =========================================================================

    async def list_alerts(self, principal: Principal, filters: AlertFilters) -> Tuple[List[Alert], int]:
        """One page of alerts plus the total, scoped to what the principal may read."""
        filters = filters.model_copy(update={"client_ids": self._read_scope(principal, Action.READ_ALERTS, filters.client_ids)})
        return await self.alert_engine.list_alerts(filters)

    async def get_alert(self, principal: Principal, alert_id: str) -> Alert:
        alert = await self.alert_engine.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        self.policy.authorize(principal, Action.READ_ALERTS, alert.client_id)
        return alert

    async def update_alert_status(
        self,
        principal: Principal,
        alert_id: str,
        status: AlertStatus,
        reason: Optional[str] = None,
    ) -> Alert:
        """Acknowledge or resolve an alert on behalf of the principal.

        Raises:
            AlertNotFoundError: unknown alert id.
            AccessDeniedError: the principal may not touch this client's alerts.
            InvalidStatusTransitionError: the transition is not allowed.
            AlertUpdateError: an allowed change could not be written.
        """
        alert = await self.alert_engine.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        self.policy.authorize(principal, Action.UPDATE_ALERT, alert.client_id)

        if not is_allowed_transition(alert.status, status):
            raise InvalidStatusTransitionError(
                f"Cannot change alert {alert_id} from {alert.status.value} to {status.value}"
            )

        updated = await self.alert_engine.update_alert_status(alert_id, status, principal.user_id, reason)
        if not updated:
            current = await self._reload(alert_id)
            if current is not None and current.status != alert.status:
                raise InvalidStatusTransitionError(
                    f"Alert {alert_id} changed to {current.status.value} before it could be set to {status.value}"
                )
            raise AlertUpdateError(f"Alert {alert_id} could not be updated to {status.value}")

        return await self.alert_engine.get_alert(alert_id) or alert

    async def _reload(self, alert_id: str) -> Optional[Alert]:
        try:
            return await self.alert_engine.get_alert(alert_id)
        except Exception as e:
            logger.error(f"Failed to reload alert {alert_id}: {e}")
            return None

    async def get_summary(self, principal: Principal, client_id: Optional[str] = None) -> AlertSummary:
        client_ids = self._read_scope(principal, Action.READ_ALERTS, [client_id] if client_id else None)
        return await self.alert_engine.get_alert_summary(client_ids=client_ids)

    # =========================================================================
    # Fatigue signals
    # =========================================================================

    async def list_fatigue_signals(
        self,
        principal: Principal,
        client_id: str,
        severities: Optional[Sequence[AlertSeverity]] = None,
        include_acknowledged: bool = False,
    ) -> List[FatigueSignal]:
        self.policy.authorize(principal, Action.READ_SIGNALS, client_id)
        if self.signal_store is None:
            return []
        return await self.signal_store.list_signals(client_id, severities, include_acknowledged)

    async def acknowledge_fatigue_signal(self, principal: Principal, signal_id: str) -> FatigueSignal:
        signal = await self.signal_store.get_signal(signal_id) if self.signal_store else None
        if signal is None:
            raise SignalNotFoundError(f"Fatigue signal {signal_id} not found")
        self.policy.authorize(principal, Action.ACKNOWLEDGE_SIGNAL, signal.client_id)

        if not await self.signal_store.acknowledge(signal_id, principal.user_id):
            raise SignalNotFoundError(f"Fatigue signal {signal_id} could not be acknowledged")
        return await self.signal_store.get_signal(signal_id) or signal

    # =========================================================================
    # Helpers
    # =========================================================================

    def _read_scope(
        self,
        principal: Principal,
        action: Action,
        client_ids: Optional[Sequence[str]],
    ) -> Optional[List[str]]:
        """Client ids a read is allowed to cover; None means every client."""
        if client_ids:
            for client_id in client_ids:
                self.policy.authorize(principal, action, client_id)
            return list(client_ids)

        self.policy.authorize(principal, action)
        if principal.is_privileged or isinstance(self.policy, AllowAllPolicy):
            return None
        if not principal.client_ids:
            raise AccessDeniedError("No client memberships")
        return list(principal.client_ids)


def build_monitoring_service(
    supabase_client=None,
    config_provider: Optional[ConfigProvider] = None,
    settings: Optional[Dict[str, Any]] = None,
    policy: Optional[AccessPolicy] = None,
    max_concurrency: Optional[int] = None,
    client_timeout_seconds: Optional[float] = None,
) -> MonitoringService:
    """Wire the Supabase-backed pipeline from environment configuration.

    Args:
        supabase_client: Client to use (created from Config when omitted).
        config_provider: Override the client list source (e.g. a YAML file).
        settings: Monitoring defaults (loaded from MONITORING_CONFIG_PATH when omitted).
        policy: Access policy (membership-based when omitted).
        max_concurrency: Clients processed in parallel.
        client_timeout_seconds: Per-client time budget.
    """
    settings = settings or load_monitoring_defaults()
    supabase = supabase_client or create_supabase_client()

    alert_engine = AlertEngine(
        SupabaseAlertStore(supabase),
        summary_preview_size=settings.get("alerts", {}).get("summary_preview_size"),
    )
    metric_source = SupabaseMetricSource(supabase)
    signal_store = SupabaseFatigueSignalStore(supabase)

    orchestrator = MonitoringOrchestrator(
        config_provider=config_provider or SupabaseConfigProvider(supabase),
        metric_source=metric_source,
        alert_engine=alert_engine,
        registry=build_default_registry(enabled=settings.get("checks", {}).get("enabled")),
        fatigue_detector=FatigueDetector(metric_source, FatigueThresholds(**settings.get("fatigue", {}))),
        signal_store=signal_store,
        max_concurrency=max_concurrency or Config.MONITORING_MAX_CONCURRENCY,
        client_timeout_seconds=client_timeout_seconds or Config.MONITORING_CLIENT_TIMEOUT,
    )
    return MonitoringService(orchestrator, alert_engine, signal_store, policy)
