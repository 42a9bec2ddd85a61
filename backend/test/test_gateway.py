import asyncio
from datetime import date, datetime

import httpx
import pytest

from gateway import RestGateway, SqlGateway, GatewayError
from models import Car, CarAccess, HostEarning, ClientCarExpense, CarStatus, AccessPermission, ExpenseFrequency


def car_row(car_id, client_id="client-1", host_id=None):
    return {
        "id": car_id, "client_id": client_id, "host_id": host_id, "status": "available",
        "make": "Kia", "model": "EV6", "year": 2023, "mileage": 500,
    }


def rest_gateway(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://rest.test")
    return RestGateway("http://rest.test", client=client)


# ---------------------------------------------------------------------------
# REST backend
# ---------------------------------------------------------------------------
def test_rest_vehicles_merge_owned_and_shared():
    seen = []

    def handler(request):
        seen.append((request.url.path, dict(request.url.params)))
        params = request.url.params
        if request.url.path == "/car_access":
            return httpx.Response(200, json=[
                {"car_id": "own-1", "permission": "editor"},
                {"car_id": "shared-1", "permission": "viewer"},
            ])
        if params.get("client_id") == "eq.client-1":
            return httpx.Response(200, json=[car_row("own-1")])
        if params.get("id") == "in.(shared-1)":
            return httpx.Response(200, json=[car_row("shared-1", client_id="client-2")])
        return httpx.Response(404)

    cars = asyncio.run(rest_gateway(handler).list_vehicles("client-1"))

    assert [c.id for c in cars] == ["own-1", "shared-1"]
    assert cars[0].is_shared is False
    assert cars[1].is_shared is True
    assert cars[1].share_permission.value == "viewer"
    assert seen[0] == ("/cars", {"client_id": "eq.client-1", "order": "created_at.desc"})


def test_rest_earnings_use_in_filter_order_and_year_range():
    captured = {}

    def handler(request):
        captured["path"] = request.url.path
        captured["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{
            "id": "e-1", "host_id": "host-1", "car_id": "a", "trip_id": "T-1",
            "client_profit_amount": 70, "gross_earnings": 100,
            "earning_period_start": "2024-03-01T10:00:00", "earning_period_end": "2024-03-02T10:00:00",
        }])

    rows = asyncio.run(rest_gateway(handler).list_earnings(["a", "b"], 2024))

    assert captured["path"] == "/host_earnings"
    assert captured["params"]["car_id"] == "in.(a,b)"
    assert captured["params"]["order"] == "earning_period_start.desc"
    assert captured["params"]["and"] == (
        "(earning_period_start.gte.2024-01-01T00:00:00,earning_period_start.lte.2024-12-31T23:59:59)"
    )
    assert rows[0].client_profit_amount == 70
    assert rows[0].earning_period_start == datetime(2024, 3, 1, 10, 0)


def test_rest_date_columns_filter_on_plain_dates():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json=[])

    asyncio.run(rest_gateway(handler).list_claims(["a"], 2023))
    assert captured["and"] == "(incident_date.gte.2023-01-01,incident_date.lte.2023-12-31)"


def test_rest_skips_request_for_no_cars():
    def handler(request):
        raise AssertionError("no request expected")

    gw = rest_gateway(handler)
    assert asyncio.run(gw.list_expenses([])) == []


def test_rest_http_error_becomes_gateway_error():
    def handler(request):
        return httpx.Response(503, json={"message": "unavailable"})

    with pytest.raises(GatewayError):
        asyncio.run(rest_gateway(handler).list_fixed_expenses("client-1"))


def test_rest_transport_error_becomes_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        asyncio.run(rest_gateway(handler).list_vehicles("host-1", role="host"))


def test_rest_sends_api_key_headers():
    gw = RestGateway("http://rest.test", api_key="secret")
    assert gw.client.headers["apikey"] == "secret"
    assert gw.client.headers["Authorization"] == "Bearer secret"
    asyncio.run(gw.aclose())


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------
def test_sql_vehicles_dedupe_owned_cars_with_grants(session, session_factory):
    session.add_all([
        Car(id="own-1", client_id="client-1", make="Ford", model="Focus", year=2019, status=CarStatus.available),
        Car(id="shared-1", client_id="client-2", host_id="host-1", make="VW", model="Golf", year=2020,
            status=CarStatus.hosted),
        CarAccess(car_id="own-1", user_id="client-1", permission=AccessPermission.editor),
        CarAccess(car_id="shared-1", user_id="client-1", permission=AccessPermission.viewer),
    ])
    session.commit()

    gw = SqlGateway(session_factory)
    cars = asyncio.run(gw.list_vehicles("client-1"))

    assert sorted(c.id for c in cars) == ["own-1", "shared-1"]
    shared = next(c for c in cars if c.id == "shared-1")
    owned = next(c for c in cars if c.id == "own-1")
    assert shared.is_shared and shared.share_permission.value == "viewer"
    assert not owned.is_shared

    hosted = asyncio.run(gw.list_vehicles("host-1", role="host"))
    assert [c.id for c in hosted] == ["shared-1"]


def test_sql_earnings_filter_by_year(session, session_factory):
    session.add(Car(id="a", client_id="client-1", make="Ford", model="Focus", year=2019))
    for i, start in enumerate([datetime(2023, 12, 31, 23, 0), datetime(2024, 1, 1, 0, 0), datetime(2024, 7, 4, 9)]):
        session.add(HostEarning(
            id=f"e-{i}", host_id="host-1", car_id="a", trip_id=f"T-{i}",
            earning_period_start=start, earning_period_end=start,
        ))
    session.add(ClientCarExpense(
        car_id="a", client_id="client-1", expense_type="insurance", amount=1200,
        frequency=ExpenseFrequency.yearly, start_date=date(2024, 1, 1),
    ))
    session.commit()

    gw = SqlGateway(session_factory)
    rows = asyncio.run(gw.list_earnings(["a"], 2024))
    assert [r.id for r in rows] == ["e-2", "e-1"]
    assert len(asyncio.run(gw.list_earnings(["a"]))) == 3

    fixed = asyncio.run(gw.list_fixed_expenses("client-1"))
    assert fixed[0].frequency.value == "yearly"
