import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from analytics_service import CarAnalyticsStore, AnalyticsRegistry, LOAD_ERROR_MESSAGE, build_config
from gateway import DataGateway, GatewayError
import analytics_service
import engine

NOW = datetime(2024, 6, 15, 12, 0, 0)


def car(car_id):
    return SimpleNamespace(id=car_id, make="Honda", model="Civic", year=2021, status="hosted")


def earning(car_id, client_amount, days_ago=1):
    start = NOW - timedelta(days=days_ago)
    return SimpleNamespace(
        car_id=car_id, trip_id=None, client_profit_amount=client_amount, gross_earnings=client_amount,
        earning_period_start=start, earning_period_end=start + timedelta(hours=12),
    )


class FakeGateway(DataGateway):
    """In-memory gateway. Gates let a test hold a refresh inside list_vehicles."""

    def __init__(self):
        self.cars = []
        self.earnings = []
        self.fixed = []
        self.fail = False
        self.gates = []
        self.vehicle_calls = 0
        self.fixed_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def list_vehicles(self, owner_id, role="client"):
        self.vehicle_calls += 1
        cars = list(self.cars)
        earnings = list(self.earnings)
        gate = self.gates.pop(0) if self.gates else None
        if gate is not None:
            await gate.wait()
        self._pending_earnings = earnings
        return cars

    async def _track(self, result):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return result

    async def list_earnings(self, car_ids, year=None):
        if self.fail:
            raise GatewayError("host_earnings: HTTP 503")
        ids = set(car_ids)
        return await self._track([e for e in self._pending_earnings if e.car_id in ids])

    async def list_expenses(self, car_ids, year=None):
        return await self._track([])

    async def list_claims(self, car_ids, year=None):
        return await self._track([])

    async def list_fixed_expenses(self, client_id):
        self.fixed_calls += 1
        return await self._track(list(self.fixed))


def make_store(gateway, role="client"):
    return CarAnalyticsStore(gateway, "client-1", role, clock=lambda: NOW)


def test_refresh_loads_snapshot_and_state():
    gw = FakeGateway()
    gw.cars = [car("a")]
    gw.earnings = [earning("a", 300), earning("a", 450, days_ago=2), earning("zz", 999)]
    store = make_store(gw)

    asyncio.run(store.refresh())

    state = store.state()
    assert state["loading"] is False
    assert state["error"] is None
    assert state["generation"] == 1
    assert state["refreshed_at"] == NOW
    perf = store.get_performance_for("a")
    assert perf["total_earnings"] == pytest.approx(750.0)
    assert perf["total_trips"] == 2


def test_fetches_run_concurrently():
    gw = FakeGateway()
    gw.cars = [car("a")]
    asyncio.run(make_store(gw).refresh())
    assert gw.max_in_flight == 4


def test_host_store_skips_fixed_expenses():
    gw = FakeGateway()
    gw.cars = [car("a")]
    store = make_store(gw, role="host")
    asyncio.run(store.refresh())
    assert gw.fixed_calls == 0
    assert store.snapshot.fixed_expenses == []


def test_stale_response_is_discarded():
    gw = FakeGateway()
    store = make_store(gw)

    async def scenario():
        gate = asyncio.Event()
        gw.cars = [car("old")]
        gw.gates = [gate]
        slow = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)

        gw.cars = [car("new")]
        await store.refresh()

        gate.set()
        await slow

    asyncio.run(scenario())

    assert [c.id for c in store.snapshot.cars] == ["new"]
    assert store.generation == 2
    assert store.applied_generation == 2
    assert store.loading is False


def test_failure_keeps_last_good_snapshot():
    gw = FakeGateway()
    gw.cars = [car("a")]
    gw.earnings = [earning("a", 100)]
    store = make_store(gw)
    asyncio.run(store.refresh())

    gw.fail = True
    asyncio.run(store.refresh())

    assert store.error == LOAD_ERROR_MESSAGE
    assert store.loading is False
    assert store.state()["generation"] == 1
    assert store.get_performance_for("a")["total_earnings"] == pytest.approx(100.0)

    gw.fail = False
    asyncio.run(store.refresh())
    assert store.error is None
    assert store.state()["generation"] == 3


def test_unknown_car_has_no_performance():
    gw = FakeGateway()
    gw.cars = [car("a")]
    store = make_store(gw)
    asyncio.run(store.refresh())
    assert store.get_performance_for("missing") is None
    assert store.get_car_data("missing") is None
    assert store.get_car_data("a") == {"earnings": [], "expenses": [], "claims": []}


def test_ensure_fresh_only_refetches_when_stale():
    gw = FakeGateway()
    store = make_store(gw)

    asyncio.run(store.ensure_fresh())
    asyncio.run(store.ensure_fresh())
    assert gw.vehicle_calls == 1

    store.set_year(2023)
    asyncio.run(store.ensure_fresh())
    assert gw.vehicle_calls == 2
    assert store.state()["year"] == 2023


def test_registry_invalidates_by_owner():
    gw = FakeGateway()
    registry = AnalyticsRegistry(gw, clock=lambda: NOW)
    a = registry.get_or_create("client-1")
    b = registry.get_or_create("client-1", "client", 2023)
    other = registry.get_or_create("host-9", "host")
    assert registry.get_or_create("client-1") is a

    for store in (a, b, other):
        asyncio.run(store.refresh())

    assert registry.invalidate("client-1") == 2
    assert a.stale and b.stale
    assert not other.stale


def test_build_config_rejects_unknown_roi_mode(monkeypatch):
    monkeypatch.setattr(analytics_service, "ROI_MODE", "gross")
    with pytest.raises(ValueError):
        build_config()

    monkeypatch.setattr(analytics_service, "ROI_MODE", engine.ROI_BEFORE_FIXED_COSTS)
    assert build_config().roi_mode == engine.ROI_BEFORE_FIXED_COSTS


def test_write_during_refresh_keeps_store_stale():
    gw = FakeGateway()
    gw.cars = [car("a")]
    store = make_store(gw)

    async def scenario():
        gate = asyncio.Event()
        gw.gates = [gate]
        in_flight = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)

        gw.earnings.append(earning("a", 100))
        store.invalidate()

        gate.set()
        await in_flight
        assert store.stale
        assert store.snapshot.earnings == []

        await store.ensure_fresh()

    asyncio.run(scenario())

    assert not store.stale
    assert len(store.snapshot.earnings) == 1
    assert store.get_performance_for("a")["total_trips"] == 1
