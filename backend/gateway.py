# backend/gateway.py - Remote Data Gateway
# Row-level reads over the named collections the analytics consume:
# cars, car_access, host_earnings, host_expenses, host_claims,
# client_car_expenses. Two backends share one async contract: the local
# database (SQLAlchemy) and a PostgREST-style HTTP backend (httpx).

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    SessionLocal, Car, CarAccess, HostEarning, HostExpense, HostClaim,
    ClientCarExpense,
)
from schemas import CarOut, EarningOut, ExpenseOut, ClaimOut, FixedExpenseOut
import engine

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """A query against the data backend failed (transport, HTTP or SQL)."""


class DataGateway:
    """Contract every data backend implements. All methods are coroutines."""

    async def list_vehicles(self, owner_id: str, role: str = "client") -> List[CarOut]:
        raise NotImplementedError

    async def list_earnings(self, car_ids: Iterable[str], year: Optional[int] = None) -> List[EarningOut]:
        raise NotImplementedError

    async def list_expenses(self, car_ids: Iterable[str], year: Optional[int] = None) -> List[ExpenseOut]:
        raise NotImplementedError

    async def list_claims(self, car_ids: Iterable[str], year: Optional[int] = None) -> List[ClaimOut]:
        raise NotImplementedError

    async def list_fixed_expenses(self, client_id: str) -> List[FixedExpenseOut]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# SQL BACKEND
# ---------------------------------------------------------------------------
class SqlGateway(DataGateway):
    """
    Reads from the service's own database. Each query runs on a fresh
    session in a worker thread, so concurrent fetches never share a session.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._in_session, fn, *args)

    def _in_session(self, fn, *args):
        db = self.session_factory()
        try:
            return fn(db, *args)
        except SQLAlchemyError as exc:
            logger.error("SQL gateway query %s failed: %s", fn.__name__, exc)
            raise GatewayError(str(exc)) from exc
        finally:
            db.close()

    # -- queries -----------------------------------------------------------
    @staticmethod
    def _vehicles(db: Session, owner_id: str, role: str) -> List[CarOut]:
        if role == "host":
            cars = db.query(Car).filter(Car.host_id == owner_id).order_by(Car.created_at.desc()).all()
            return [CarOut.model_validate(c) for c in cars]

        owned = db.query(Car).filter(Car.client_id == owner_id).order_by(Car.created_at.desc()).all()
        owned_ids = {c.id for c in owned}
        grants = db.query(CarAccess).filter(CarAccess.user_id == owner_id).all()
        perms = {g.car_id: g.permission for g in grants if g.car_id not in owned_ids}

        shared = []
        if perms:
            shared = db.query(Car).filter(Car.id.in_(list(perms))).all()

        out = [CarOut.model_validate(c) for c in owned]
        for c in shared:
            item = CarOut.model_validate(c)
            item.is_shared = True
            item.share_permission = perms[c.id]
            out.append(item)
        return out

    @staticmethod
    def _earnings(db: Session, car_ids: List[str], year: Optional[int]) -> List[EarningOut]:
        q = db.query(HostEarning).filter(HostEarning.car_id.in_(car_ids))
        bounds = engine.year_bounds(year)
        if bounds:
            q = q.filter(HostEarning.earning_period_start >= bounds[0],
                         HostEarning.earning_period_start <= bounds[1])
        rows = q.order_by(HostEarning.earning_period_start.desc()).all()
        return [EarningOut.model_validate(r) for r in rows]

    @staticmethod
    def _expenses(db: Session, car_ids: List[str], year: Optional[int]) -> List[ExpenseOut]:
        q = db.query(HostExpense).filter(HostExpense.car_id.in_(car_ids))
        bounds = engine.year_bounds(year)
        if bounds:
            q = q.filter(HostExpense.expense_date >= bounds[0].date(),
                         HostExpense.expense_date <= bounds[1].date())
        rows = q.order_by(HostExpense.expense_date.desc()).all()
        return [ExpenseOut.model_validate(r) for r in rows]

    @staticmethod
    def _claims(db: Session, car_ids: List[str], year: Optional[int]) -> List[ClaimOut]:
        q = db.query(HostClaim).filter(HostClaim.car_id.in_(car_ids))
        bounds = engine.year_bounds(year)
        if bounds:
            q = q.filter(HostClaim.incident_date >= bounds[0].date(),
                         HostClaim.incident_date <= bounds[1].date())
        rows = q.order_by(HostClaim.incident_date.desc()).all()
        return [ClaimOut.model_validate(r) for r in rows]

    @staticmethod
    def _fixed_expenses(db: Session, client_id: str) -> List[FixedExpenseOut]:
        rows = db.query(ClientCarExpense).filter(
            ClientCarExpense.client_id == client_id,
        ).order_by(ClientCarExpense.created_at.desc()).all()
        return [FixedExpenseOut.model_validate(r) for r in rows]

    # -- contract ------------------------------------------------------------
    async def list_vehicles(self, owner_id, role="client"):
        return await self._run(self._vehicles, owner_id, role)

    async def list_earnings(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        return await self._run(self._earnings, car_ids, year)

    async def list_expenses(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        return await self._run(self._expenses, car_ids, year)

    async def list_claims(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        return await self._run(self._claims, car_ids, year)

    async def list_fixed_expenses(self, client_id):
        return await self._run(self._fixed_expenses, client_id)


# ---------------------------------------------------------------------------
# REST BACKEND (PostgREST query syntax)
# ---------------------------------------------------------------------------
def _in_filter(values: Iterable[str]) -> str:
    return "in.(" + ",".join(values) + ")"


class RestGateway(DataGateway):
    """
    Reads the same collections from a hosted PostgREST endpoint, e.g.
    GET {base_url}/host_earnings?car_id=in.(a,b)&order=earning_period_start.desc
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def _get(self, table: str, params: list) -> list:
        try:
            resp = await self.client.get(f"/{table}", params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("GET %s returned %s", table, exc.response.status_code)
            raise GatewayError(f"{table}: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("GET %s failed: %s", table, exc)
            raise GatewayError(f"{table}: {exc}") from exc
        return resp.json()

    @staticmethod
    def _year_filter(column: str, year: Optional[int], with_time: bool) -> list:
        bounds = engine.year_bounds(year)
        if not bounds:
            return []
        lo, hi = bounds
        if with_time:
            lo_s, hi_s = lo.isoformat(), hi.isoformat()
        else:
            lo_s, hi_s = lo.date().isoformat(), hi.date().isoformat()
        return [("and", f"({column}.gte.{lo_s},{column}.lte.{hi_s})")]

    async def list_vehicles(self, owner_id, role="client"):
        if role == "host":
            rows = await self._get("cars", [("host_id", f"eq.{owner_id}"), ("order", "created_at.desc")])
            return [CarOut.model_validate(r) for r in rows]

        owned = await self._get("cars", [("client_id", f"eq.{owner_id}"), ("order", "created_at.desc")])
        owned_ids = {r["id"] for r in owned}
        grants = await self._get("car_access", [("user_id", f"eq.{owner_id}"), ("select", "car_id,permission")])
        perms = {g["car_id"]: g["permission"] for g in grants if g["car_id"] not in owned_ids}

        shared = []
        if perms:
            shared = await self._get("cars", [("id", _in_filter(perms))])

        out = [CarOut.model_validate(r) for r in owned]
        for r in shared:
            out.append(CarOut.model_validate({**r, "is_shared": True, "share_permission": perms[r["id"]]}))
        return out

    async def list_earnings(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        params = [("car_id", _in_filter(car_ids)), ("order", "earning_period_start.desc")]
        params += self._year_filter("earning_period_start", year, with_time=True)
        return [EarningOut.model_validate(r) for r in await self._get("host_earnings", params)]

    async def list_expenses(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        params = [("car_id", _in_filter(car_ids)), ("order", "expense_date.desc")]
        params += self._year_filter("expense_date", year, with_time=False)
        return [ExpenseOut.model_validate(r) for r in await self._get("host_expenses", params)]

    async def list_claims(self, car_ids, year=None):
        car_ids = list(car_ids)
        if not car_ids:
            return []
        params = [("car_id", _in_filter(car_ids)), ("order", "incident_date.desc")]
        params += self._year_filter("incident_date", year, with_time=False)
        return [ClaimOut.model_validate(r) for r in await self._get("host_claims", params)]

    async def list_fixed_expenses(self, client_id):
        rows = await self._get("client_car_expenses", [("client_id", f"eq.{client_id}"), ("order", "created_at.desc")])
        return [FixedExpenseOut.model_validate(r) for r in rows]

    async def aclose(self):
        await self.client.aclose()
