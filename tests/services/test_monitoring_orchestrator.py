"""
Tests for MonitoringOrchestrator: per-client isolation, auto-resolve,
timeouts, dry runs and fatigue promotion.

Uses in-memory stores and metric sources throughout.
"""

import asyncio
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from adwatch.services.monitoring.alert_engine import AlertEngine
from adwatch.services.monitoring.alert_store import InMemoryAlertStore
from adwatch.services.monitoring.checks import BaseCheck, CheckRegistry, DisapprovedAdsCheck, NoDeliveryCheck
from adwatch.services.monitoring.config_provider import StaticConfigProvider
from adwatch.services.monitoring.exceptions import ConfigProviderError
from adwatch.services.monitoring.fatigue_detector import FatigueDetector
from adwatch.services.monitoring.metric_source import InMemoryMetricSource
from adwatch.services.monitoring.models import (
    AlertChannel,
    AlertStatus,
    AlertType,
    ClientMonitoringConfig,
    EntityType,
    MetricRow,
    RunErrorKind,
)
from adwatch.services.monitoring.orchestrator import MonitoringOrchestrator
from adwatch.services.monitoring.signal_store import InMemoryFatigueSignalStore, SupabaseFatigueSignalStore

AS_OF = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FailingMetricSource(InMemoryMetricSource):
    """Raises for selected accounts, serves the rest from memory."""

    def __init__(self, failing_accounts):
        super().__init__()
        self.failing_accounts = set(failing_accounts)

    async def get_metrics(self, account_ref, entity_type, date_range):
        if account_ref in self.failing_accounts:
            raise RuntimeError("API quota exceeded")
        return await super().get_metrics(account_ref, entity_type, date_range)


class SlowMetricSource(InMemoryMetricSource):

    async def get_metrics(self, account_ref, entity_type, date_range):
        await asyncio.sleep(1)
        return []


class ExplodingCheck(BaseCheck):
    key = "exploding"
    name = "Exploding"

    async def evaluate(self, metric_source, account_ref, config, as_of):
        raise RuntimeError("unexpected report shape")


def _client(n, credentials_ref="vault://ads/client", accounts=None):
    return ClientMonitoringConfig(
        client_id=f"client-{n}",
        client_name=f"Client {n}",
        accounts=accounts if accounts is not None else {AlertChannel.GOOGLE_ADS: f"acct-{n}"},
        credentials_ref=credentials_ref,
    )


def _ad_row(review_status="disapproved", day=AS_OF):
    return MetricRow(
        day=day,
        entity_type=EntityType.AD,
        entity_id="ad-1",
        entity_name="Spring Sale RSA",
        status="enabled",
        review_status=review_status,
    )


def _disapproved_everywhere(source, clients):
    for client in clients:
        source.add_rows(client.accounts[AlertChannel.GOOGLE_ADS], [_ad_row()])
    return source


def _orchestrator(clients, source, store=None, registry=None, **kwargs):
    store = store if store is not None else InMemoryAlertStore()
    orchestrator = MonitoringOrchestrator(
        config_provider=StaticConfigProvider(clients),
        metric_source=source,
        alert_engine=AlertEngine(store, clock=lambda: NOW),
        registry=registry if registry is not None else CheckRegistry([DisapprovedAdsCheck()]),
        **kwargs,
    )
    return orchestrator, store


# ============================================================================
# Isolation
# ============================================================================

class TestClientIsolation:

    @pytest.mark.asyncio
    async def test_one_failing_client_does_not_stop_the_batch(self):
        clients = [_client(n) for n in range(1, 6)]
        source = _disapproved_everywhere(FailingMetricSource({"acct-3"}), clients)
        orchestrator, store = _orchestrator(clients, source, max_concurrency=2)

        result = await orchestrator.run(as_of=AS_OF)

        assert result.clients_processed == 5
        assert result.clients_failed == 1
        assert result.alerts_created == 4
        assert len(store.all()) == 4
        assert not result.success

        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.client_id == "client-3"
        assert error.kind == RunErrorKind.DATA_FETCH
        assert "API quota exceeded" in error.message

        assert [c.client_id for c in result.clients] == [c.client_id for c in clients]
        assert {a.client_id for a in store.all()} == {"client-1", "client-2", "client-4", "client-5"}

    @pytest.mark.asyncio
    async def test_raising_check_does_not_stop_sibling_checks(self):
        clients = [_client(1)]
        source = _disapproved_everywhere(InMemoryMetricSource(), clients)
        orchestrator, store = _orchestrator(
            clients, source, registry=CheckRegistry([ExplodingCheck(), DisapprovedAdsCheck()]),
        )

        result = await orchestrator.run(as_of=AS_OF)

        assert not result.success
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.kind == RunErrorKind.CHECK
        assert error.check_id == "exploding"
        assert "unexpected report shape" in error.message

        assert result.alerts_created == 1
        assert store.all()[0].check_id == "disapproved_ads"

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_per_client(self):
        orchestrator, _ = _orchestrator([_client(1)], SlowMetricSource(), client_timeout_seconds=0.05)

        result = await orchestrator.run(as_of=AS_OF)

        assert result.clients_failed == 1
        assert result.errors[0].kind == RunErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_credentials_skips_client(self):
        clients = [_client(1), _client(2, credentials_ref=None)]
        source = _disapproved_everywhere(InMemoryMetricSource(), clients)
        orchestrator, _ = _orchestrator(clients, source)

        result = await orchestrator.run(as_of=AS_OF)

        assert result.success
        assert result.clients_skipped == 1
        assert result.alerts_created == 1
        skipped = result.clients[1]
        assert skipped.skipped
        assert "credentials" in skipped.skip_reason
        assert skipped.skip_kind == RunErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_syncer_failure_is_a_fetch_error(self):
        syncer = MagicMock()
        syncer.sync_client = AsyncMock(side_effect=RuntimeError("token expired"))
        orchestrator, _ = _orchestrator([_client(1)], InMemoryMetricSource(), metric_syncer=syncer)

        result = await orchestrator.run(as_of=AS_OF)

        assert result.errors[0].kind == RunErrorKind.DATA_FETCH
        assert "token expired" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_provider_failure_aborts_the_run(self):
        provider = MagicMock()
        provider.list_enabled_clients = AsyncMock(side_effect=RuntimeError("clients table unavailable"))
        orchestrator = MonitoringOrchestrator(
            config_provider=provider,
            metric_source=InMemoryMetricSource(),
            alert_engine=AlertEngine(InMemoryAlertStore()),
        )

        with pytest.raises(ConfigProviderError):
            await orchestrator.run(as_of=AS_OF)


# ============================================================================
# Alert lifecycle through runs
# ============================================================================

class TestAlertLifecycle:

    @pytest.mark.asyncio
    async def test_rerun_same_day_does_not_duplicate(self):
        clients = [_client(1)]
        source = _disapproved_everywhere(InMemoryMetricSource(), clients)
        orchestrator, store = _orchestrator(clients, source)

        first = await orchestrator.run(as_of=AS_OF)
        second = await orchestrator.run(as_of=AS_OF)

        assert first.alerts_created == 1
        assert second.alerts_created == 0
        assert second.alerts_skipped == 1
        assert len(store.all()) == 1

    @pytest.mark.asyncio
    async def test_fixed_issue_is_auto_resolved(self):
        clients = [_client(1)]
        orchestrator, store = _orchestrator(clients, _disapproved_everywhere(InMemoryMetricSource(), clients))
        await orchestrator.run(as_of=AS_OF)

        healthy = InMemoryMetricSource()
        healthy.add_rows("acct-1", [_ad_row("approved", day=AS_OF + timedelta(days=1))])
        orchestrator.metric_source = healthy
        result = await orchestrator.run(as_of=AS_OF + timedelta(days=1))

        assert result.alerts_resolved == 1
        assert store.all()[0].status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_check_id_and_alert_type_are_carried(self):
        rows = [
            MetricRow(day=AS_OF - timedelta(days=i), entity_type=EntityType.CAMPAIGN, entity_id="cmp-1",
                      status="enabled", impressions=0 if i == 0 else 500, clicks=5, spend=5.0)
            for i in range(3)
        ]
        source = InMemoryMetricSource()
        source.add_rows("acct-1", rows)
        orchestrator, store = _orchestrator([_client(1)], source, registry=CheckRegistry([NoDeliveryCheck()]))

        await orchestrator.run(as_of=AS_OF)

        assert store.all()[0].type == AlertType.FUNDAMENTAL
        assert store.all()[0].check_id == "no_delivery"


# ============================================================================
# Run options
# ============================================================================

class TestRunOptions:

    @pytest.mark.asyncio
    async def test_dry_run_creates_nothing(self):
        clients = [_client(1), _client(2)]
        source = _disapproved_everywhere(InMemoryMetricSource(), clients)
        orchestrator, store = _orchestrator(clients, source, dry_run=True)

        result = await orchestrator.run(as_of=AS_OF)

        assert result.dry_run
        assert result.alerts_created == 0
        assert result.alerts_skipped == 2
        assert store.all() == []
        assert store.insert_attempts == 0

    @pytest.mark.asyncio
    async def test_client_filter(self):
        clients = [_client(1), _client(2)]
        source = _disapproved_everywhere(InMemoryMetricSource(), clients)
        orchestrator, store = _orchestrator(clients, source)

        result = await orchestrator.run(client_ids=["client-2", "client-9"], as_of=AS_OF)

        assert result.clients_processed == 1
        assert [a.client_id for a in store.all()] == ["client-2"]

    @pytest.mark.asyncio
    async def test_unknown_check_id_is_rejected(self):
        orchestrator, _ = _orchestrator([_client(1)], InMemoryMetricSource())

        with pytest.raises(ValueError):
            await orchestrator.run(as_of=AS_OF, check_ids=["disapproved_ads", "not_a_check"])

    @pytest.mark.asyncio
    async def test_disabled_clients_are_not_processed(self):
        disabled = _client(2).model_copy(update={"enabled": False})
        orchestrator, _ = _orchestrator([_client(1), disabled], InMemoryMetricSource())

        result = await orchestrator.run(as_of=AS_OF)

        assert result.clients_processed == 1
        assert result.checks_run == 1


# ============================================================================
# Fatigue
# ============================================================================

class TestFatigueIntegration:

    FATIGUE_AS_OF = date(2025, 3, 21)

    def _rows(self, entity_id="ad-1", fatigued=True):
        rows = []
        for i in range(21):
            day = date(2025, 3, 1) + timedelta(days=i)
            current = fatigued and day >= date(2025, 3, 15)
            rows.append(MetricRow(
                day=day,
                entity_type=EntityType.AD,
                entity_id=entity_id,
                entity_name="Spring promo video",
                impressions=1000,
                clicks=10 if current else 20,
                spend=20.0,
                frequency=2.5 if current else 1.5,
            ))
        return rows

    @pytest.mark.asyncio
    async def test_signals_are_stored_and_promoted(self):
        client = _client(1, accounts={AlertChannel.META: "act_1"})
        source = InMemoryMetricSource()
        source.add_rows("act_1", self._rows())
        signal_store = InMemoryFatigueSignalStore()
        orchestrator, store = _orchestrator(
            [client], source,
            registry=CheckRegistry(),
            fatigue_detector=FatigueDetector(source),
            signal_store=signal_store,
        )

        result = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert result.success
        assert result.fatigue_signals == 1
        assert result.alerts_created == 1

        alert = store.all()[0]
        assert alert.type == AlertType.FATIGUE
        assert alert.fingerprint == "fatigue:ad:ad-1:2025-03-21"

        stored = await signal_store.list_signals("client-1")
        assert len(stored) == 1
        assert stored[0].entity_id == "ad-1"

    @pytest.mark.asyncio
    async def test_fatigue_reads_come_from_the_prefetched_snapshot(self):
        client = _client(1, accounts={AlertChannel.META: "act_1"})
        source = InMemoryMetricSource()
        source.add_rows("act_1", self._rows())
        orchestrator, _ = _orchestrator(
            [client], source, registry=CheckRegistry(), fatigue_detector=FatigueDetector(source),
        )

        await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        # one prefetch per entity type, nothing afterwards
        assert len(source.calls) == len(EntityType)

    def _fatigue_orchestrator(self, source, **kwargs):
        client = _client(1, accounts={AlertChannel.META: "act_1"})
        kwargs.setdefault("fatigue_detector", FatigueDetector(source))
        return _orchestrator([client], source, registry=CheckRegistry(), **kwargs)

    @staticmethod
    def _source(rows):
        source = InMemoryMetricSource()
        source.add_rows("act_1", rows)
        return source

    @pytest.mark.asyncio
    async def test_only_recovered_entities_are_resolved(self):
        orchestrator, store = self._fatigue_orchestrator(self._source(self._rows("ad-1") + self._rows("ad-2")))
        first = await orchestrator.run(as_of=self.FATIGUE_AS_OF)
        assert first.alerts_created == 2

        orchestrator.metric_source = self._source(self._rows("ad-1", fatigued=False) + self._rows("ad-2"))
        second = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert second.success
        assert second.alerts_resolved == 1
        assert second.alerts_skipped == 1
        statuses = {alert.details.entity_id: alert.status for alert in store.all()}
        assert statuses == {"ad-1": AlertStatus.RESOLVED, "ad-2": AlertStatus.OPEN}

    @pytest.mark.asyncio
    async def test_persisting_fatigue_keeps_alerts_open(self):
        orchestrator, store = self._fatigue_orchestrator(self._source(self._rows("ad-1")))
        await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        second = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert second.alerts_resolved == 0
        assert store.all()[0].status == AlertStatus.OPEN

    @pytest.mark.asyncio
    async def test_full_recovery_resolves_every_fatigue_alert(self):
        orchestrator, store = self._fatigue_orchestrator(self._source(self._rows("ad-1") + self._rows("ad-2")))
        await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        orchestrator.metric_source = self._source(
            self._rows("ad-1", fatigued=False) + self._rows("ad-2", fatigued=False)
        )
        second = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert second.fatigue_signals == 0
        assert second.alerts_resolved == 2
        assert {alert.status for alert in store.all()} == {AlertStatus.RESOLVED}

    @pytest.mark.asyncio
    async def test_signal_store_failure_is_a_detector_error(self):
        supabase = MagicMock()
        supabase.table.side_effect = RuntimeError("db down")
        orchestrator, store = self._fatigue_orchestrator(
            self._source(self._rows()),
            signal_store=SupabaseFatigueSignalStore(supabase, clock=lambda: NOW),
        )

        result = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert not result.success
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.kind == RunErrorKind.DETECTOR
        assert error.check_id == "creative_fatigue"
        assert error.message == "Stored 0 of 1 fatigue signals"
        # the alert is still promoted
        assert result.alerts_created == 1
        assert len(store.all()) == 1

    @pytest.mark.asyncio
    async def test_raising_detector_is_a_detector_error(self):
        detector = MagicMock()
        detector.lookback_days = 21
        detector.detect = AsyncMock(side_effect=RuntimeError("frequency column missing"))
        orchestrator, store = self._fatigue_orchestrator(self._source(self._rows()), fatigue_detector=detector)

        result = await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        assert not result.success
        assert result.errors[0].kind == RunErrorKind.DETECTOR
        assert result.errors[0].channel == AlertChannel.META
        assert "frequency column missing" in result.errors[0].message
        assert store.all() == []

    @pytest.mark.asyncio
    async def test_signals_are_bucketed_by_the_client_day_of_the_run(self):
        late_evening_utc = datetime(2025, 3, 20, 23, 30, tzinfo=timezone.utc)
        signal_store = InMemoryFatigueSignalStore(clock=lambda: late_evening_utc)
        orchestrator, _ = self._fatigue_orchestrator(self._source(self._rows()), signal_store=signal_store)

        await orchestrator.run(as_of=self.FATIGUE_AS_OF)

        stored = await signal_store.list_signals("client-1")
        assert [s.detection_date for s in stored] == [self.FATIGUE_AS_OF]
