# backend/analytics_service.py - Per-owner analytics snapshots
# Holds one snapshot of each record collection per (owner, role, year),
# refreshes them concurrently, and derives per-car performance on demand.

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from models import ANALYTICS_BACKEND, REST_BASE_URL, REST_API_KEY, REST_TIMEOUT, ROI_MODE
from gateway import DataGateway, SqlGateway, RestGateway
import engine

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load analytics data"


@dataclass
class Snapshot:
    cars: List[Any] = field(default_factory=list)
    earnings: List[Any] = field(default_factory=list)
    expenses: List[Any] = field(default_factory=list)
    claims: List[Any] = field(default_factory=list)
    fixed_expenses: List[Any] = field(default_factory=list)


class CarAnalyticsStore:
    """
    Analytics state for one actor.

    Every refresh is tagged with a monotonically increasing generation;
    a response is applied only if no newer refresh was started after it,
    so a slow early fetch can never overwrite a later one. A failed refresh
    sets `error` and keeps the last good snapshot.
    """

    def __init__(
        self,
        gateway: DataGateway,
        owner_id: str,
        role: str = "client",
        year: Optional[int] = None,
        config: engine.AnalyticsConfig = engine.DEFAULT_CONFIG,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.gateway = gateway
        self.owner_id = owner_id
        self.role = role
        self.year = year
        self.config = config
        self.clock = clock

        self.snapshot = Snapshot()
        self.loading = False
        self.error: Optional[str] = None
        self.generation = 0
        self.applied_generation = 0
        self.refreshed_at: Optional[datetime] = None
        self.stale = True
        self.invalidations = 0

    # ------------------------------------------------------------------
    # REFRESH
    # ------------------------------------------------------------------
    async def _fixed_expenses(self) -> List[Any]:
        # Fixed costs are client-owned; hosts do not carry them
        if self.role != "client":
            return []
        return await self.gateway.list_fixed_expenses(self.owner_id)

    async def refresh(self) -> None:
        self.generation += 1
        generation = self.generation
        invalidations = self.invalidations
        self.loading = True
        self.error = None
        logger.info("Refreshing analytics for %s %s (generation %d, year=%s)",
                    self.role, self.owner_id, generation, self.year)

        try:
            cars = await self.gateway.list_vehicles(self.owner_id, self.role)
            car_ids = [c.id for c in cars]
            earnings, expenses, claims, fixed = await asyncio.gather(
                self.gateway.list_earnings(car_ids, self.year),
                self.gateway.list_expenses(car_ids, self.year),
                self.gateway.list_claims(car_ids, self.year),
                self._fixed_expenses(),
            )
        except Exception:
            logger.exception("Analytics refresh failed for %s %s (generation %d)",
                             self.role, self.owner_id, generation)
            if generation == self.generation:
                self.error = LOAD_ERROR_MESSAGE
                self.loading = False
            return

        if generation != self.generation:
            logger.info("Discarding stale analytics response (generation %d, latest %d)",
                        generation, self.generation)
            return

        self.snapshot = Snapshot(
            cars=list(cars),
            earnings=list(earnings),
            expenses=list(expenses),
            claims=list(claims),
            fixed_expenses=list(fixed),
        )
        self.applied_generation = generation
        self.refreshed_at = self.clock()
        self.loading = False
        # A write that landed mid-refresh may not be in these rows
        self.stale = self.invalidations != invalidations
        logger.info("Analytics refreshed for %s %s: %d cars, %d earnings, %d expenses, %d claims",
                    self.role, self.owner_id, len(cars), len(earnings), len(expenses), len(claims))

    async def ensure_fresh(self) -> None:
        """Refresh only when invalidated or never loaded."""
        if self.stale:
            await self.refresh()

    def invalidate(self) -> None:
        self.invalidations += 1
        self.stale = True

    def set_year(self, year: Optional[int]) -> None:
        if year != self.year:
            self.year = year
            self.invalidate()

    # ------------------------------------------------------------------
    # READS - computed from the current snapshot on every call
    # ------------------------------------------------------------------
    def _find_car(self, car_id: str) -> Optional[Any]:
        for c in self.snapshot.cars:
            if c.id == car_id:
                return c
        return None

    def get_performance_for(self, car_id: str) -> Optional[Dict[str, Any]]:
        car = self._find_car(car_id)
        if car is None:
            return None
        s = self.snapshot
        return engine.build_car_performance(
            car, s.earnings, s.expenses, s.claims, s.fixed_expenses, self.clock(), self.config,
        )

    def get_all_performances(self) -> List[Dict[str, Any]]:
        s = self.snapshot
        return engine.build_all_performances(
            s.cars, s.earnings, s.expenses, s.claims, s.fixed_expenses, self.clock(), self.config,
        )

    def get_car_data(self, car_id: str) -> Optional[Dict[str, List[Any]]]:
        if self._find_car(car_id) is None:
            return None
        s = self.snapshot
        return {
            "earnings": [e for e in s.earnings if e.car_id == car_id],
            "expenses": [e for e in s.expenses if e.car_id == car_id],
            "claims": [c for c in s.claims if c.car_id == car_id],
        }

    def client_summary(self) -> Dict[str, Any]:
        return engine.client_summary(self.snapshot.earnings, self.snapshot.expenses)

    def state(self) -> Dict[str, Any]:
        return {
            "loading": self.loading,
            "error": self.error,
            "generation": self.applied_generation,
            "refreshed_at": self.refreshed_at,
            "year": self.year,
        }


# ---------------------------------------------------------------------------
# REGISTRY - explicit cache keyed by owner, with explicit invalidation
# ---------------------------------------------------------------------------
StoreKey = Tuple[str, str, Optional[int]]


class AnalyticsRegistry:
    def __init__(
        self,
        gateway: DataGateway,
        config: engine.AnalyticsConfig = engine.DEFAULT_CONFIG,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self._stores: Dict[StoreKey, CarAnalyticsStore] = {}

    def get_or_create(self, owner_id: str, role: str = "client", year: Optional[int] = None) -> CarAnalyticsStore:
        key = (owner_id, role, year)
        store = self._stores.get(key)
        if store is None:
            store = CarAnalyticsStore(self.gateway, owner_id, role, year, self.config, self.clock)
            self._stores[key] = store
        return store

    def invalidate(self, *owner_ids: str) -> int:
        """Mark every store of the given owners stale. Returns how many were marked."""
        targets = set(owner_ids)
        count = 0
        for (owner_id, _, _), store in self._stores.items():
            if owner_id in targets:
                store.invalidate()
                count += 1
        if count:
            logger.debug("Invalidated %d analytics store(s) for %s", count, sorted(targets))
        return count

    def clear(self) -> None:
        self._stores.clear()

    async def aclose(self) -> None:
        await self.gateway.aclose()


def build_gateway() -> DataGateway:
    if ANALYTICS_BACKEND == "rest":
        logger.info("Analytics reading from REST backend %s", REST_BASE_URL)
        return RestGateway(REST_BASE_URL, REST_API_KEY, REST_TIMEOUT)
    return SqlGateway()


def build_config() -> engine.AnalyticsConfig:
    if ROI_MODE not in engine.ROI_MODES:
        raise ValueError(f"ROI_MODE must be one of {engine.ROI_MODES}, got {ROI_MODE!r}.")
    return engine.AnalyticsConfig(roi_mode=ROI_MODE)
