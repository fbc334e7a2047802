"""
Tests for SupabaseAlertStore: query shape, duplicate mapping, row parsing.

All Supabase calls are mocked.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from postgrest.exceptions import APIError

from adwatch.services.monitoring.alert_store import SupabaseAlertStore
from adwatch.services.monitoring.exceptions import DuplicateAlertError
from adwatch.services.monitoring.models import (
    AlertChannel,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertType,
    CreateAlertInput,
    NoDeliveryDetails,
)

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def _make_execute_result(data=None, count=None):
    """Create a mock execute() result."""
    result = MagicMock()
    result.data = data or []
    result.count = count
    return result


def _chain(result):
    """A query builder mock where every filter returns the builder itself."""
    chain = MagicMock()
    for name in ("select", "insert", "update", "eq", "in_", "order", "range", "limit"):
        getattr(chain, name).return_value = chain
    chain.execute.return_value = result
    return chain


def _store(result):
    supabase = MagicMock()
    chain = _chain(result)
    supabase.table.return_value = chain
    return SupabaseAlertStore(supabase), supabase, chain


def _row(**overrides):
    row = {
        "id": "alert-1",
        "client_id": "client-x",
        "channel": "google_ads",
        "check_id": "no_delivery",
        "type": "fundamental",
        "severity": "critical",
        "status": "open",
        "title": "Google Ads: campaigns not delivering",
        "short_description": "2 campaigns with zero impressions",
        "impact": "",
        "suggested_actions": None,
        "details": {
            "kind": "no_delivery",
            "total_no_delivery": 2,
            "campaigns": [{"id": "c1"}, {"id": "c2"}],
            "client_name": "Acme Outdoor",
        },
        "fingerprint": "no_delivery:2025-03-10",
        "detected_at": "2025-03-10T09:00:00+00:00",
    }
    row.update(overrides)
    return row


def _input():
    return CreateAlertInput(
        client_id="client-x",
        channel=AlertChannel.GOOGLE_ADS,
        type=AlertType.FUNDAMENTAL,
        severity=AlertSeverity.CRITICAL,
        check_id="no_delivery",
        title="Google Ads: campaigns not delivering",
        details=NoDeliveryDetails(total_no_delivery=2),
        fingerprint="no_delivery:2025-03-10",
    )


class TestInsert:

    @pytest.mark.asyncio
    async def test_insert_payload_and_parsed_row(self):
        store, supabase, chain = _store(_make_execute_result([_row()]))

        alert = await store.insert(_input(), NOW)

        supabase.table.assert_called_with("alerts")
        payload = chain.insert.call_args[0][0]
        assert payload["status"] == "open"
        assert payload["channel"] == "google_ads"
        assert payload["details"]["kind"] == "no_delivery"
        assert payload["detected_at"] == NOW.isoformat()
        assert alert.id == "alert-1"

    @pytest.mark.asyncio
    async def test_unique_violation_becomes_duplicate_error(self):
        store, _, chain = _store(_make_execute_result())
        chain.execute.side_effect = APIError({
            "code": "23505",
            "message": "duplicate key value violates unique constraint",
            "details": "Key (client_id, fingerprint) already exists.",
            "hint": None,
        })

        with pytest.raises(DuplicateAlertError) as exc_info:
            await store.insert(_input(), NOW)

        assert exc_info.value.fingerprint == "no_delivery:2025-03-10"

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        store, _, chain = _store(_make_execute_result())
        chain.execute.side_effect = RuntimeError("connection refused")

        with pytest.raises(RuntimeError, match="connection refused"):
            await store.insert(_input(), NOW)


class TestReads:

    @pytest.mark.asyncio
    async def test_row_details_parse_into_variant(self):
        store, _, _ = _store(_make_execute_result([_row()]))

        alert = await store.get("alert-1")

        assert isinstance(alert.details, NoDeliveryDetails)
        assert alert.details.total_no_delivery == 2
        assert alert.details.client_name == "Acme Outdoor"
        assert alert.suggested_actions == []

    @pytest.mark.asyncio
    async def test_unknown_details_kind_falls_back_to_generic(self):
        store, _, _ = _store(_make_execute_result([_row(details={"kind": "seo_rankings", "keyword": "tents"})]))

        alert = await store.get("alert-1")

        assert alert.details.kind == "seo_rankings"
        assert alert.details.model_extra["keyword"] == "tents"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self):
        store, _, _ = _store(_make_execute_result([]))
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_find_by_fingerprint_filters_both_keys(self):
        store, _, chain = _store(_make_execute_result([_row()]))

        alert = await store.find_by_fingerprint("client-x", "no_delivery:2025-03-10")

        assert alert.fingerprint == "no_delivery:2025-03-10"
        chain.eq.assert_any_call("client_id", "client-x")
        chain.eq.assert_any_call("fingerprint", "no_delivery:2025-03-10")

    @pytest.mark.asyncio
    async def test_list_open_scopes_and_orders(self):
        store, _, chain = _store(_make_execute_result([_row()]))

        alerts = await store.list_open(
            client_ids=["client-x"],
            types=[AlertType.FUNDAMENTAL],
            severities=[AlertSeverity.CRITICAL, AlertSeverity.HIGH],
        )

        assert len(alerts) == 1
        chain.eq.assert_any_call("status", "open")
        chain.in_.assert_any_call("client_id", ["client-x"])
        chain.in_.assert_any_call("severity", ["critical", "high"])
        chain.order.assert_called_with("detected_at", desc=True)

    @pytest.mark.asyncio
    async def test_query_uses_exact_count_and_range(self):
        store, _, chain = _store(_make_execute_result([_row()], count=42))

        alerts, total = await store.query(AlertFilters(page=2, per_page=10, channel=AlertChannel.GOOGLE_ADS))

        assert total == 42
        assert len(alerts) == 1
        chain.select.assert_called_with("*", count="exact")
        chain.range.assert_called_with(10, 19)
        chain.eq.assert_any_call("channel", "google_ads")
        chain.eq.assert_any_call("status", "open")


class TestWrites:

    @pytest.mark.asyncio
    async def test_update_guards_on_expected_status(self):
        store, _, chain = _store(_make_execute_result([_row(status="acknowledged")]))

        alert = await store.update(
            "alert-1",
            {"status": AlertStatus.ACKNOWLEDGED, "acknowledged_at": NOW},
            expected_status=AlertStatus.OPEN,
        )

        assert alert.status == AlertStatus.ACKNOWLEDGED
        payload = chain.update.call_args[0][0]
        assert payload == {"status": "acknowledged", "acknowledged_at": NOW.isoformat()}
        chain.eq.assert_any_call("id", "alert-1")
        chain.eq.assert_any_call("status", "open")

    @pytest.mark.asyncio
    async def test_update_with_no_match_returns_none(self):
        store, _, _ = _store(_make_execute_result([]))

        assert await store.update("alert-1", {"status": AlertStatus.RESOLVED}, AlertStatus.OPEN) is None

    @pytest.mark.asyncio
    async def test_resolve_open_counts_updated_rows(self):
        store, _, chain = _store(_make_execute_result([_row(id="a"), _row(id="b")]))

        resolved = await store.resolve_open("client-x", AlertChannel.GOOGLE_ADS, "no_delivery", NOW)

        assert resolved == 2
        payload = chain.update.call_args[0][0]
        assert payload["status"] == "resolved"
        chain.eq.assert_any_call("check_id", "no_delivery")
        chain.eq.assert_any_call("status", "open")
