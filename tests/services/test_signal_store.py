"""
Tests for the fatigue signal stores: same-day refresh, detection day
bucketing and write failure counting.

Supabase calls are mocked.
"""

import pytest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

from adwatch.services.monitoring.models import AlertSeverity, EntityType, FatigueSignal
from adwatch.services.monitoring.signal_store import InMemoryFatigueSignalStore, SupabaseFatigueSignalStore

# late evening UTC, already the next day for clients east of UTC
LATE_EVENING = datetime(2025, 3, 10, 23, 30, tzinfo=timezone.utc)
CLIENT_DAY = date(2025, 3, 11)


def _make_execute_result(data=None, count=None):
    """Create a mock execute() result."""
    result = MagicMock()
    result.data = data or []
    result.count = count
    return result


def _chain(result):
    chain = MagicMock()
    for name in ("select", "insert", "update", "eq", "in_", "order", "limit"):
        getattr(chain, name).return_value = chain
    chain.execute.return_value = result
    return chain


def _store(result=None):
    supabase = MagicMock()
    chain = _chain(result or _make_execute_result())
    supabase.table.return_value = chain
    return SupabaseFatigueSignalStore(supabase, clock=lambda: LATE_EVENING), chain


def _signal(entity_id="ad-1", severity=AlertSeverity.CRITICAL):
    return FatigueSignal(
        client_id="client-x",
        account_ref="act_1",
        entity_type=EntityType.AD,
        entity_id=entity_id,
        current_frequency=3.0,
        baseline_frequency=1.5,
        current_ctr=1.0,
        baseline_ctr=2.0,
        current_cpc=2.0,
        baseline_cpc=1.0,
        frequency_change=100.0,
        ctr_change=-50.0,
        cpc_change=100.0,
        severity=severity,
    )


# ============================================================================
# Supabase
# ============================================================================

class TestSupabaseSaveSignals:

    @pytest.mark.asyncio
    async def test_new_signal_is_inserted_for_the_detection_day(self):
        store, chain = _store()

        written = await store.save_signals([_signal()], detection_date=CLIENT_DAY)

        assert written == 1
        chain.eq.assert_any_call("detection_date", "2025-03-11")
        chain.eq.assert_any_call("is_acknowledged", False)
        payload = chain.insert.call_args[0][0]
        assert payload["detection_date"] == "2025-03-11"
        assert payload["detected_at"] == LATE_EVENING.isoformat()
        assert payload["entity_id"] == "ad-1"
        assert "id" not in payload
        chain.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_row_for_the_same_day_is_refreshed(self):
        store, chain = _store(_make_execute_result(data=[{"id": "sig-9"}]))

        await store.save_signals([_signal()], detection_date=CLIENT_DAY)

        chain.update.assert_called_once()
        chain.eq.assert_any_call("id", "sig-9")
        chain.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_detection_day_defaults_to_the_clock_day(self):
        store, chain = _store()

        await store.save_signals([_signal()])

        chain.eq.assert_any_call("detection_date", "2025-03-10")

    @pytest.mark.asyncio
    async def test_failed_writes_are_not_counted(self):
        store, chain = _store()
        chain.execute.side_effect = [
            _make_execute_result(),
            _make_execute_result(data=[{"id": "new"}]),
            RuntimeError("db down"),
        ]

        written = await store.save_signals([_signal("ad-1"), _signal("ad-2")], detection_date=CLIENT_DAY)

        assert written == 1

    @pytest.mark.asyncio
    async def test_every_write_failing_returns_zero(self):
        store, chain = _store()
        chain.execute.side_effect = RuntimeError("db down")

        assert await store.save_signals([_signal("ad-1"), _signal("ad-2")]) == 0


# ============================================================================
# In-memory
# ============================================================================

class TestInMemorySignalStore:

    @pytest.mark.asyncio
    async def test_same_day_refreshes_the_open_row(self):
        store = InMemoryFatigueSignalStore(clock=lambda: LATE_EVENING)
        await store.save_signals([_signal(severity=AlertSeverity.MEDIUM)], detection_date=CLIENT_DAY)
        first = (await store.list_signals("client-x"))[0]

        written = await store.save_signals([_signal(severity=AlertSeverity.CRITICAL)], detection_date=CLIENT_DAY)

        stored = await store.list_signals("client-x")
        assert written == 1
        assert len(stored) == 1
        assert stored[0].id == first.id
        assert stored[0].severity == AlertSeverity.CRITICAL
        assert stored[0].detection_date == CLIENT_DAY

    @pytest.mark.asyncio
    async def test_new_day_keeps_the_previous_row(self):
        store = InMemoryFatigueSignalStore(clock=lambda: LATE_EVENING)
        await store.save_signals([_signal()], detection_date=date(2025, 3, 10))

        await store.save_signals([_signal()], detection_date=CLIENT_DAY)

        stored = await store.list_signals("client-x")
        assert sorted(s.detection_date for s in stored) == [date(2025, 3, 10), CLIENT_DAY]

    @pytest.mark.asyncio
    async def test_acknowledged_row_is_never_overwritten(self):
        store = InMemoryFatigueSignalStore(clock=lambda: LATE_EVENING)
        await store.save_signals([_signal()], detection_date=CLIENT_DAY)
        signal_id = (await store.list_signals("client-x"))[0].id
        await store.acknowledge(signal_id, "user-1")

        await store.save_signals([_signal()], detection_date=CLIENT_DAY)

        stored = await store.list_signals("client-x", include_acknowledged=True)
        assert len(stored) == 2
        acknowledged = await store.get_signal(signal_id)
        assert acknowledged.is_acknowledged
        assert acknowledged.acknowledged_by == "user-1"
