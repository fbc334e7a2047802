"""
Tests for the AdWatch REST API.

The Supabase-backed service is replaced with an in-memory one through
FastAPI dependency overrides.
"""

import asyncio
import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from adwatch.api.app import app, get_monitoring_service
from adwatch.services.monitoring.alert_engine import AlertEngine
from adwatch.services.monitoring.alert_store import InMemoryAlertStore
from adwatch.services.monitoring.checks import CheckRegistry, DisapprovedAdsCheck
from adwatch.services.monitoring.config_provider import StaticConfigProvider
from adwatch.services.monitoring.metric_source import InMemoryMetricSource
from adwatch.services.monitoring.models import (
    AlertChannel,
    AlertSeverity,
    AlertType,
    ClientMonitoringConfig,
    CreateAlertInput,
    EntityType,
    FatigueSignal,
    MetricRow,
)
from adwatch.services.monitoring.orchestrator import MonitoringOrchestrator
from adwatch.services.monitoring.service import MonitoringService
from adwatch.services.monitoring.signal_store import InMemoryFatigueSignalStore

API_KEY = "test-api-key"
CRON_SECRET = "test-cron-secret"
AS_OF = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

HEADERS = {"X-API-Key": API_KEY}
MEMBER_HEADERS = {**HEADERS, "X-User-Id": "user-1", "X-Client-Ids": "client-a"}


def _client_config(client_id, account):
    return ClientMonitoringConfig(
        client_id=client_id,
        client_name=client_id.title(),
        accounts={AlertChannel.GOOGLE_ADS: account},
        credentials_ref="vault://ads/test",
    )


def _alert_input(client_id, check_id="disapproved_ads", severity=AlertSeverity.CRITICAL):
    return CreateAlertInput(
        client_id=client_id,
        channel=AlertChannel.GOOGLE_ADS,
        type=AlertType.FUNDAMENTAL,
        severity=severity,
        check_id=check_id,
        title=f"{check_id} for {client_id}",
        fingerprint=f"{check_id}:2025-03-10",
    )


@pytest.fixture
def service():
    source = InMemoryMetricSource()
    for account in ("acct-a", "acct-b"):
        source.add_rows(account, [MetricRow(
            day=AS_OF, entity_type=EntityType.AD, entity_id="ad-1",
            status="enabled", review_status="disapproved",
        )])
    engine = AlertEngine(InMemoryAlertStore(), clock=lambda: NOW)
    orchestrator = MonitoringOrchestrator(
        config_provider=StaticConfigProvider([
            _client_config("client-a", "acct-a"),
            _client_config("client-b", "acct-b"),
        ]),
        metric_source=source,
        alert_engine=engine,
        registry=CheckRegistry([DisapprovedAdsCheck()]),
    )
    return MonitoringService(orchestrator, engine, InMemoryFatigueSignalStore(clock=lambda: NOW))


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setenv("ADWATCH_API_KEY", API_KEY)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    app.dependency_overrides[get_monitoring_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _run(coro):
    return asyncio.run(coro)


# ============================================================================
# System
# ============================================================================

class TestSystem:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] in ("healthy", "degraded")
        assert data["services"]["cron"] == "configured"

    def test_root_lists_endpoints(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["endpoints"]["alerts"] == "/api/alerts"


# ============================================================================
# Authentication
# ============================================================================

class TestAuthentication:

    def test_missing_api_key(self, client):
        response = client.get("/api/alerts")

        assert response.status_code == 401
        assert "API key required" in response.json()["error"]

    def test_wrong_api_key(self, client):
        response = client.get("/api/alerts", headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_valid_api_key(self, client):
        assert client.get("/api/alerts", headers=HEADERS).status_code == 200

    def test_development_mode_without_key(self, client, monkeypatch):
        monkeypatch.delenv("ADWATCH_API_KEY")
        assert client.get("/api/alerts").status_code == 200


# ============================================================================
# Monitoring runs
# ============================================================================

class TestMonitoringRun:

    def test_run_with_date_alias(self, client, service):
        response = client.post(
            "/api/monitoring/run",
            json={"client_ids": ["client-a"], "date": "2025-03-10"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["as_of"] == "2025-03-10"
        assert data["clients_processed"] == 1
        assert data["alerts_created"] == 1
        assert data["success"] is True

    def test_member_cannot_run_all_clients(self, client):
        response = client.post("/api/monitoring/run", headers=MEMBER_HEADERS)

        assert response.status_code == 403
        assert response.json()["detail"] == "AccessDeniedError"

    def test_unknown_check_is_bad_request(self, client):
        response = client.post(
            "/api/monitoring/run",
            json={"check_ids": ["not_a_check"], "date": "2025-03-10"},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert "not_a_check" in response.json()["error"]

    def test_dry_run_writes_nothing(self, client, service):
        response = client.post(
            "/api/monitoring/run",
            json={"date": "2025-03-10", "dry_run": True},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["alerts_skipped"] == 2
        assert service.alert_engine.store.all() == []


class TestCron:

    def test_requires_bearer_secret(self, client):
        assert client.get("/api/cron/monitoring").status_code == 401
        assert client.get(
            "/api/cron/monitoring", headers={"Authorization": "Bearer wrong"}
        ).status_code == 401

    def test_runs_all_clients(self, client):
        response = client.post(
            "/api/cron/monitoring", headers={"Authorization": f"Bearer {CRON_SECRET}"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["summary"]["clients_processed"] == 2
        assert data["errors"] is None


# ============================================================================
# Alerts
# ============================================================================

class TestAlerts:

    def test_list_is_scoped_for_members(self, client, service):
        _run(service.alert_engine.create_alert(_alert_input("client-a")))
        _run(service.alert_engine.create_alert(_alert_input("client-b")))

        everything = client.get("/api/alerts", headers=HEADERS).json()
        scoped = client.get("/api/alerts", headers=MEMBER_HEADERS).json()

        assert everything["total"] == 2
        assert scoped["total"] == 1
        assert scoped["items"][0]["client_id"] == "client-a"

    def test_list_filters_and_pagination(self, client, service):
        _run(service.alert_engine.create_alert(_alert_input("client-a", "no_delivery")))
        _run(service.alert_engine.create_alert(_alert_input("client-a", "audience_issues", AlertSeverity.LOW)))

        response = client.get(
            "/api/alerts",
            params={"client_id": "client-a", "severity": "low", "page": 1, "per_page": 10},
            headers=HEADERS,
        )

        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["check_id"] == "audience_issues"
        assert data["per_page"] == 10

    def test_member_cannot_filter_to_foreign_client(self, client):
        response = client.get("/api/alerts", params={"client_id": "client-b"}, headers=MEMBER_HEADERS)
        assert response.status_code == 403

    def test_summary(self, client, service):
        _run(service.alert_engine.create_alert(_alert_input("client-a")))
        _run(service.alert_engine.create_alert(_alert_input("client-b", "no_delivery", AlertSeverity.HIGH)))

        data = client.get("/api/alerts/summary", headers=HEADERS).json()

        assert data["total_critical"] == 1
        assert data["total_high"] == 1
        assert data["by_channel"]["google_ads"]["count"] == 2

    def test_get_alert(self, client, service):
        created = _run(service.alert_engine.create_alert(_alert_input("client-a")))

        response = client.get(f"/api/alerts/{created.alert_id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["fingerprint"] == "disapproved_ads:2025-03-10"

    def test_acknowledge_then_reopen_conflicts(self, client, service):
        created = _run(service.alert_engine.create_alert(_alert_input("client-a")))
        url = f"/api/alerts/{created.alert_id}"

        acked = client.patch(url, json={"status": "acknowledged", "reason": "on it"}, headers=MEMBER_HEADERS)
        assert acked.status_code == 200
        assert acked.json()["status"] == "acknowledged"
        assert acked.json()["acknowledged_by"] == "user-1"

        reopened = client.patch(url, json={"status": "open"}, headers=MEMBER_HEADERS)
        assert reopened.status_code == 409

    def test_storage_failure_is_service_unavailable(self, client, service, monkeypatch):
        created = _run(service.alert_engine.create_alert(_alert_input("client-a")))
        monkeypatch.setattr(service.alert_engine.store, "update", AsyncMock(side_effect=RuntimeError("db down")))

        response = client.patch(
            f"/api/alerts/{created.alert_id}", json={"status": "acknowledged"}, headers=MEMBER_HEADERS,
        )

        assert response.status_code == 503

    def test_update_unknown_alert(self, client):
        response = client.patch("/api/alerts/missing", json={"status": "resolved"}, headers=HEADERS)
        assert response.status_code == 404

    def test_update_validates_body(self, client):
        response = client.patch("/api/alerts/any", json={"status": "snoozed"}, headers=HEADERS)
        assert response.status_code == 422


# ============================================================================
# Fatigue
# ============================================================================

class TestFatigueSignals:

    def _store_signal(self, service, client_id="client-a"):
        signal = FatigueSignal(
            client_id=client_id,
            entity_type=EntityType.AD,
            entity_id="ad-1",
            current_frequency=3.0,
            baseline_frequency=1.5,
            current_ctr=1.0,
            baseline_ctr=2.0,
            current_cpc=2.0,
            baseline_cpc=1.0,
            frequency_change=100.0,
            ctr_change=-50.0,
            cpc_change=100.0,
            severity=AlertSeverity.CRITICAL,
        )
        _run(service.signal_store.save_signals([signal]))
        return _run(service.signal_store.list_signals(client_id))[0].id

    def test_list_and_acknowledge(self, client, service):
        signal_id = self._store_signal(service)

        listed = client.get("/api/fatigue/signals", params={"client_id": "client-a"}, headers=MEMBER_HEADERS)
        assert listed.json()["total"] == 1

        acked = client.post(f"/api/fatigue/signals/{signal_id}/acknowledge", headers=MEMBER_HEADERS)
        assert acked.status_code == 200
        assert acked.json()["is_acknowledged"] is True

        after = client.get("/api/fatigue/signals", params={"client_id": "client-a"}, headers=MEMBER_HEADERS)
        assert after.json()["total"] == 0

    def test_foreign_client_is_forbidden(self, client, service):
        self._store_signal(service, "client-b")

        response = client.get("/api/fatigue/signals", params={"client_id": "client-b"}, headers=MEMBER_HEADERS)
        assert response.status_code == 403

    def test_unknown_signal(self, client):
        response = client.post("/api/fatigue/signals/missing/acknowledge", headers=HEADERS)
        assert response.status_code == 404
