# backend/main.py - FastAPI App + All Routes

import logging
from datetime import date, datetime
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from models import (
    init_db, get_db, ALLOWED_ORIGINS, LOG_LEVEL,
    Car, CarAccess, HostEarning, HostExpense, HostClaim, ClientCarExpense,
    CarStatus, AccessPermission, PaymentStatus, ClaimStatus,
)
from schemas import (
    CarCreate, CarUpdate, CarOut, AssignHostRequest, ShareCarRequest, CarAccessOut,
    EarningCreate, EarningStatusUpdate, EarningOut,
    ExpenseCreate, ExpenseOut,
    ClaimUpsert, ClaimStatusUpdate, ClaimOut, ClaimStatusEnum,
    FixedExpenseCreate, FixedExpenseUpdate, FixedExpenseOut, MonthlyFixedCostOut,
    CarPerformanceOut, CarPerformanceList, CarPerformanceDetail, CarDataOut,
    ClientSummaryOut, HostSummaryOut, YearsOut, AnalyticsConfigOut,
    RoleEnum, MessageResponse,
)
from analytics_service import AnalyticsRegistry, build_gateway, build_config
import engine

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# APP INIT
# ---------------------------------------------------------------------------
app = FastAPI(title="Fleet Ledger", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

registry = AnalyticsRegistry(build_gateway(), build_config())


@app.on_event("startup")
def startup():
    init_db()
    logger.info("Fleet Ledger started")


@app.on_event("shutdown")
async def shutdown():
    await registry.aclose()


# ---------------------------------------------------------------------------
# HELPERS: identity, registry, lookups
# ---------------------------------------------------------------------------
def get_user_id(x_user_id: str = Header(...)) -> str:
    return x_user_id


def get_registry() -> AnalyticsRegistry:
    return registry


def _get_car_or_404(car_id: str, db: Session) -> Car:
    car = db.query(Car).filter(Car.id == car_id).first()
    if not car:
        raise HTTPException(404, "Car not found.")
    return car


def _access_for(car: Car, user_id: str, db: Session) -> Optional[CarAccess]:
    return db.query(CarAccess).filter(
        CarAccess.car_id == car.id,
        CarAccess.user_id == user_id,
    ).first()


def _get_visible_car_or_404(car_id: str, user_id: str, db: Session) -> Car:
    car = _get_car_or_404(car_id, db)
    if user_id in (car.client_id, car.host_id) or _access_for(car, user_id, db):
        return car
    raise HTTPException(404, "Car not found.")


def _require_owner(car: Car, user_id: str):
    if car.client_id != user_id:
        raise HTTPException(403, "Only the car owner can do this.")


def _car_audience(car: Car, db: Session) -> List[str]:
    """Everyone whose analytics include this car."""
    ids = {car.client_id}
    if car.host_id:
        ids.add(car.host_id)
    ids.update(a.user_id for a in db.query(CarAccess).filter(CarAccess.car_id == car.id).all())
    return sorted(ids)


def _invalidate_car(car: Optional[Car], db: Session, reg: AnalyticsRegistry, *extra: str):
    owners = list(extra)
    if car is not None:
        owners += _car_audience(car, db)
    reg.invalidate(*owners)


def _resplit_trip(db: Session, car_id: Optional[str], trip_id: Optional[str]) -> int:
    """Recompute the split of every unpaid earning of a trip after its expenses changed."""
    if not car_id or not trip_id:
        return 0
    expenses = db.query(HostExpense).filter(
        HostExpense.car_id == car_id,
        HostExpense.trip_id == trip_id,
    ).all()
    trip_cost = engine.trip_expenses_total(trip_id, expenses)

    earnings = db.query(HostEarning).filter(
        HostEarning.car_id == car_id,
        HostEarning.trip_id == trip_id,
        HostEarning.payment_status != PaymentStatus.paid,
    ).all()
    for e in earnings:
        split = engine.split_earning(
            e.gross_earnings, trip_cost, e.client_profit_percentage, e.host_profit_percentage,
        )
        for key, val in split.items():
            setattr(e, key, val)
    return len(earnings)


# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/api/health")
def health():
    return {"status": "ok", "app": "fleet-ledger", "version": "1.0.0"}


# ---------------------------------------------------------------------------
# CAR ROUTES
# ---------------------------------------------------------------------------
@app.post("/api/cars", response_model=CarOut)
def create_car(
    payload: CarCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = Car(client_id=user_id, status=CarStatus.pending, **payload.model_dump())
    db.add(car)
    db.commit()
    db.refresh(car)
    reg.invalidate(user_id)
    return car


@app.get("/api/cars", response_model=List[CarOut])
def list_cars(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    owned = db.query(Car).filter(Car.client_id == user_id).order_by(Car.created_at.desc()).all()
    owned_ids = {c.id for c in owned}
    grants = db.query(CarAccess).filter(CarAccess.user_id == user_id).all()
    perms = {g.car_id: g.permission for g in grants if g.car_id not in owned_ids}

    out = [CarOut.model_validate(c) for c in owned]
    if perms:
        for c in db.query(Car).filter(Car.id.in_(list(perms))).all():
            item = CarOut.model_validate(c)
            item.is_shared = True
            item.share_permission = perms[c.id]
            out.append(item)
    return out


@app.get("/api/cars/{car_id}", response_model=CarOut)
def get_car(
    car_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return _get_visible_car_or_404(car_id, user_id, db)


@app.put("/api/cars/{car_id}", response_model=CarOut)
def update_car(
    car_id: str,
    payload: CarUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_visible_car_or_404(car_id, user_id, db)
    if car.client_id != user_id:
        access = _access_for(car, user_id, db)
        if not access or access.permission != AccessPermission.editor:
            raise HTTPException(403, "Editor access required.")

    update_data = payload.model_dump(exclude_unset=True)
    for key, val in update_data.items():
        setattr(car, key, val)

    car.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(car)
    _invalidate_car(car, db, reg)
    return car


@app.post("/api/cars/{car_id}/assign-host", response_model=CarOut)
def assign_host(
    car_id: str,
    payload: AssignHostRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(car_id, db)
    _require_owner(car, user_id)
    if car.status == CarStatus.hosted:
        raise HTTPException(400, "Car is already hosted. Complete the return first.")

    car.host_id = payload.host_id
    car.status = CarStatus.hosted
    car.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(car)
    _invalidate_car(car, db, reg)
    logger.info("Car %s assigned to host %s", car.id, car.host_id)
    return car


@app.post("/api/cars/{car_id}/return", response_model=CarOut)
def return_car(
    car_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(car_id, db)
    if user_id not in (car.client_id, car.host_id):
        raise HTTPException(403, "Only the owner or the current host can return this car.")
    if car.status != CarStatus.hosted:
        raise HTTPException(400, "Car is not currently hosted.")

    previous_host = car.host_id
    car.host_id = None
    car.status = CarStatus.available
    car.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(car)
    _invalidate_car(car, db, reg, previous_host)
    logger.info("Car %s returned by host %s", car.id, previous_host)
    return car


@app.post("/api/cars/{car_id}/share", response_model=CarAccessOut)
def share_car(
    car_id: str,
    payload: ShareCarRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(car_id, db)
    _require_owner(car, user_id)
    if payload.user_id == user_id:
        raise HTTPException(400, "Cannot share a car with its owner.")

    access = _access_for(car, payload.user_id, db)
    if access:
        access.permission = payload.permission
    else:
        access = CarAccess(car_id=car.id, user_id=payload.user_id, permission=payload.permission)
        db.add(access)
    db.commit()
    db.refresh(access)
    reg.invalidate(payload.user_id)
    return access


@app.get("/api/cars/{car_id}/access", response_model=List[CarAccessOut])
def list_car_access(
    car_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    car = _get_car_or_404(car_id, db)
    _require_owner(car, user_id)
    return db.query(CarAccess).filter(CarAccess.car_id == car_id).order_by(CarAccess.created_at).all()


@app.delete("/api/cars/{car_id}/access/{grantee_id}", response_model=MessageResponse)
def revoke_car_access(
    car_id: str,
    grantee_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(car_id, db)
    _require_owner(car, user_id)
    access = _access_for(car, grantee_id, db)
    if not access:
        raise HTTPException(404, "Access grant not found.")
    db.delete(access)
    db.commit()
    reg.invalidate(grantee_id)
    return MessageResponse(message=f"Revoked access for {grantee_id}.")


# ---------------------------------------------------------------------------
# EARNING ROUTES
# ---------------------------------------------------------------------------
@app.post("/api/earnings", response_model=EarningOut)
def create_earning(
    payload: EarningCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(payload.car_id, db)
    if car.host_id != user_id:
        raise HTTPException(403, "Only the car's current host can record earnings.")

    trip_expenses = db.query(HostExpense).filter(
        HostExpense.car_id == car.id,
        HostExpense.trip_id == payload.trip_id,
    ).all()
    split = engine.split_earning(
        payload.gross_earnings,
        engine.trip_expenses_total(payload.trip_id, trip_expenses),
        payload.client_profit_percentage,
        payload.host_profit_percentage,
    )

    payment_date = payload.payment_date
    if payload.payment_status == PaymentStatus.paid and payment_date is None:
        payment_date = date.today()

    e = HostEarning(
        host_id=user_id,
        car_id=car.id,
        trip_id=payload.trip_id,
        guest_name=payload.guest_name,
        earning_type=payload.earning_type,
        amount=payload.gross_earnings,
        gross_earnings=payload.gross_earnings,
        payment_source=payload.payment_source,
        payment_status=payload.payment_status,
        payment_date=payment_date,
        earning_period_start=payload.earning_period_start,
        earning_period_end=payload.earning_period_end,
        **split,
    )
    db.add(e)
    db.commit()
    db.refresh(e)
    _invalidate_car(car, db, reg)
    return e


@app.get("/api/earnings", response_model=List[EarningOut])
def list_earnings(
    year: Optional[int] = Query(None),
    car_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    q = db.query(HostEarning).filter(HostEarning.host_id == user_id)
    if car_id:
        q = q.filter(HostEarning.car_id == car_id)
    bounds = engine.year_bounds(year)
    if bounds:
        q = q.filter(HostEarning.earning_period_start >= bounds[0],
                     HostEarning.earning_period_start <= bounds[1])
    return q.order_by(HostEarning.earning_period_start.desc()).all()


@app.put("/api/earnings/{earning_id}/status", response_model=EarningOut)
def update_earning_status(
    earning_id: str,
    payload: EarningStatusUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    e = db.query(HostEarning).filter(HostEarning.id == earning_id, HostEarning.host_id == user_id).first()
    if not e:
        raise HTTPException(404, "Earning not found.")

    e.payment_status = payload.payment_status
    if payload.payment_status == PaymentStatus.paid:
        e.payment_date = payload.payment_date or e.payment_date or date.today()
    elif payload.payment_date is not None:
        e.payment_date = payload.payment_date
    db.commit()
    db.refresh(e)
    _invalidate_car(db.query(Car).filter(Car.id == e.car_id).first(), db, reg, user_id)
    return e


# ---------------------------------------------------------------------------
# EXPENSE ROUTES
# ---------------------------------------------------------------------------
@app.post("/api/expenses", response_model=ExpenseOut)
def create_expense(
    payload: ExpenseCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(payload.car_id, db) if payload.car_id else None
    if car is not None and user_id not in (car.host_id, car.client_id):
        raise HTTPException(403, "Not allowed to record expenses for this car.")

    x = HostExpense(host_id=user_id, **payload.model_dump())
    db.add(x)
    db.flush()
    resplit = _resplit_trip(db, x.car_id, x.trip_id)
    db.commit()
    db.refresh(x)
    if resplit:
        logger.info("Re-split %d unpaid earning(s) of trip %s", resplit, x.trip_id)
    _invalidate_car(car, db, reg, user_id)
    return x


@app.get("/api/expenses", response_model=List[ExpenseOut])
def list_expenses(
    year: Optional[int] = Query(None),
    car_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    q = db.query(HostExpense).filter(HostExpense.host_id == user_id)
    if car_id:
        q = q.filter(HostExpense.car_id == car_id)
    bounds = engine.year_bounds(year)
    if bounds:
        q = q.filter(HostExpense.expense_date >= bounds[0].date(),
                     HostExpense.expense_date <= bounds[1].date())
    return q.order_by(HostExpense.expense_date.desc()).all()


@app.delete("/api/expenses/{expense_id}", response_model=MessageResponse)
def delete_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    x = db.query(HostExpense).filter(HostExpense.id == expense_id, HostExpense.host_id == user_id).first()
    if not x:
        raise HTTPException(404, "Expense not found.")

    car_id, trip_id = x.car_id, x.trip_id
    db.delete(x)
    db.flush()
    resplit = _resplit_trip(db, car_id, trip_id)
    db.commit()

    car = db.query(Car).filter(Car.id == car_id).first() if car_id else None
    _invalidate_car(car, db, reg, user_id)
    return MessageResponse(message="Expense deleted.", detail={"resplit_earnings": resplit})


# ---------------------------------------------------------------------------
# CLAIM ROUTES
# ---------------------------------------------------------------------------
def _has_hosted(car: Car, user_id: str, db: Session) -> bool:
    """Current host, or a former host with earnings recorded on the car."""
    if car.host_id == user_id:
        return True
    return db.query(HostEarning).filter(
        HostEarning.car_id == car.id,
        HostEarning.host_id == user_id,
    ).first() is not None


@app.post("/api/claims", response_model=ClaimOut)
def upsert_claim(
    payload: ClaimUpsert,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    """Create a claim, or update the one already filed for the same incident."""
    car = _get_car_or_404(payload.car_id, db)
    if not _has_hosted(car, user_id, db):
        raise HTTPException(403, "Only a host of this car can file claims for it.")

    claim = db.query(HostClaim).filter(HostClaim.incident_id == payload.incident_id).first()
    if claim and claim.host_id != user_id:
        raise HTTPException(403, "This incident was filed by another host.")

    previous_car = None
    if claim and claim.car_id != car.id:
        previous_car = db.query(Car).filter(Car.id == claim.car_id).first()

    data = payload.model_dump()
    if claim:
        for key, val in data.items():
            setattr(claim, key, val)
    else:
        claim = HostClaim(host_id=user_id, **data)
        db.add(claim)

    if claim.claim_status != ClaimStatus.approved:
        claim.approved_amount = None
    db.commit()
    db.refresh(claim)
    _invalidate_car(car, db, reg, user_id)
    if previous_car is not None:
        _invalidate_car(previous_car, db, reg)
    return claim


@app.get("/api/claims", response_model=List[ClaimOut])
def list_claims(
    year: Optional[int] = Query(None),
    status: Optional[ClaimStatusEnum] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    q = db.query(HostClaim).filter(HostClaim.host_id == user_id)
    if status:
        q = q.filter(HostClaim.claim_status == ClaimStatus(status.value))
    bounds = engine.year_bounds(year)
    if bounds:
        q = q.filter(HostClaim.incident_date >= bounds[0].date(),
                     HostClaim.incident_date <= bounds[1].date())
    return q.order_by(HostClaim.incident_date.desc()).all()


@app.put("/api/claims/{claim_id}/status", response_model=ClaimOut)
def update_claim_status(
    claim_id: str,
    payload: ClaimStatusUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    claim = db.query(HostClaim).filter(HostClaim.id == claim_id).first()
    if not claim:
        raise HTTPException(404, "Claim not found.")
    car = _get_car_or_404(claim.car_id, db)
    if user_id not in (claim.host_id, car.client_id):
        raise HTTPException(403, "Not allowed to review this claim.")

    claim.claim_status = payload.claim_status
    if payload.claim_status == ClaimStatus.approved:
        if payload.approved_amount is not None:
            claim.approved_amount = payload.approved_amount
        elif claim.approved_amount is None:
            claim.approved_amount = claim.claim_amount
    else:
        claim.approved_amount = None

    db.commit()
    db.refresh(claim)
    _invalidate_car(car, db, reg, claim.host_id)
    return claim


# ---------------------------------------------------------------------------
# FIXED EXPENSE ROUTES (client-owned recurring costs)
# ---------------------------------------------------------------------------
def _get_fixed_expense_or_404(expense_id: str, user_id: str, db: Session) -> ClientCarExpense:
    x = db.query(ClientCarExpense).filter(
        ClientCarExpense.id == expense_id,
        ClientCarExpense.client_id == user_id,
    ).first()
    if not x:
        raise HTTPException(404, "Fixed expense not found.")
    return x


@app.post("/api/fixed-expenses", response_model=FixedExpenseOut)
def create_fixed_expense(
    payload: FixedExpenseCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    car = _get_car_or_404(payload.car_id, db)
    _require_owner(car, user_id)

    x = ClientCarExpense(client_id=user_id, **payload.model_dump())
    db.add(x)
    db.commit()
    db.refresh(x)
    reg.invalidate(user_id)
    return x


@app.get("/api/fixed-expenses", response_model=List[FixedExpenseOut])
def list_fixed_expenses(
    car_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    q = db.query(ClientCarExpense).filter(ClientCarExpense.client_id == user_id)
    if car_id:
        q = q.filter(ClientCarExpense.car_id == car_id)
    return q.order_by(ClientCarExpense.created_at.desc()).all()


@app.get("/api/fixed-expenses/monthly", response_model=MonthlyFixedCostOut)
def get_monthly_fixed_costs(
    car_id: str = Query(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    rows = db.query(ClientCarExpense).filter(
        ClientCarExpense.client_id == user_id,
        ClientCarExpense.car_id == car_id,
    ).all()
    # Same clock as per-car analytics
    today = reg.clock().date()
    return MonthlyFixedCostOut(
        car_id=car_id,
        monthly_fixed_costs=engine.monthly_fixed_costs(car_id, rows, today),
        active_expenses=len([r for r in rows if engine.is_fixed_expense_active(r, today)]),
    )


@app.put("/api/fixed-expenses/{expense_id}", response_model=FixedExpenseOut)
def update_fixed_expense(
    expense_id: str,
    payload: FixedExpenseUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    x = _get_fixed_expense_or_404(expense_id, user_id, db)

    update_data = payload.model_dump(exclude_unset=True)
    start = update_data.get("start_date", x.start_date)
    end = update_data.get("end_date", x.end_date)
    if end is not None and end < start:
        raise HTTPException(400, "end_date must not be before start_date.")

    for key, val in update_data.items():
        setattr(x, key, val)

    x.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(x)
    reg.invalidate(user_id)
    return x


@app.delete("/api/fixed-expenses/{expense_id}", response_model=MessageResponse)
def delete_fixed_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    x = _get_fixed_expense_or_404(expense_id, user_id, db)
    db.delete(x)
    db.commit()
    reg.invalidate(user_id)
    return MessageResponse(message="Fixed expense deleted.")


# ---------------------------------------------------------------------------
# ANALYTICS ROUTES
# ---------------------------------------------------------------------------
@app.get("/api/analytics/cars", response_model=CarPerformanceList)
async def get_car_performances(
    year: Optional[int] = Query(None),
    role: RoleEnum = Query(RoleEnum.client),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    """Per-car performance for every car the actor owns, shares or hosts."""
    store = reg.get_or_create(user_id, role.value, year)
    await store.ensure_fresh()
    return CarPerformanceList(
        cars=[CarPerformanceOut(**p) for p in store.get_all_performances()],
        **store.state(),
    )


@app.get("/api/analytics/cars/{car_id}", response_model=CarPerformanceDetail)
async def get_car_performance(
    car_id: str,
    year: Optional[int] = Query(None),
    role: RoleEnum = Query(RoleEnum.client),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    store = reg.get_or_create(user_id, role.value, year)
    await store.ensure_fresh()

    perf = store.get_performance_for(car_id)
    if perf is None:
        raise HTTPException(404, "No analytics for this car.")

    data = store.get_car_data(car_id)
    return CarPerformanceDetail(
        performance=CarPerformanceOut(**perf),
        data=CarDataOut(**data),
        **store.state(),
    )


@app.post("/api/analytics/refresh", response_model=MessageResponse)
async def refresh_analytics(
    year: Optional[int] = Query(None),
    role: RoleEnum = Query(RoleEnum.client),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    store = reg.get_or_create(user_id, role.value, year)
    await store.refresh()
    state = store.state()
    if state["error"]:
        return MessageResponse(message=state["error"], detail=state)
    return MessageResponse(
        message=f"Refreshed analytics for {len(store.snapshot.cars)} cars.",
        detail=state,
    )


@app.get("/api/analytics/client/summary", response_model=ClientSummaryOut)
async def get_client_summary(
    year: Optional[int] = Query(None),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    store = reg.get_or_create(user_id, "client", year)
    await store.ensure_fresh()
    return ClientSummaryOut(**store.client_summary(), **store.state())


@app.get("/api/analytics/host/summary", response_model=HostSummaryOut)
def get_host_summary(
    year: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    reg: AnalyticsRegistry = Depends(get_registry),
):
    """
    Host totals over every record the host filed, including cars already
    returned to their owners.
    """
    earnings = list_earnings(year=year, car_id=None, db=db, user_id=user_id)
    expenses = list_expenses(year=year, car_id=None, db=db, user_id=user_id)
    claims = list_claims(year=year, status=None, db=db, user_id=user_id)
    summary = engine.host_summary(earnings, expenses, claims, reg.config)
    return HostSummaryOut(year=year, **summary)


@app.get("/api/analytics/years", response_model=YearsOut)
def get_available_years(
    role: RoleEnum = Query(RoleEnum.host),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    if role == RoleEnum.host:
        earnings = db.query(HostEarning).filter(HostEarning.host_id == user_id).all()
        expenses = db.query(HostExpense).filter(HostExpense.host_id == user_id).all()
        claims = db.query(HostClaim).filter(HostClaim.host_id == user_id).all()
    else:
        car_ids = [c.id for c in db.query(Car).filter(Car.client_id == user_id).all()]
        earnings = db.query(HostEarning).filter(HostEarning.car_id.in_(car_ids)).all()
        expenses = db.query(HostExpense).filter(HostExpense.car_id.in_(car_ids)).all()
        claims = db.query(HostClaim).filter(HostClaim.car_id.in_(car_ids)).all()
    return YearsOut(years=engine.available_years(earnings, expenses, claims, date.today().year))


@app.get("/api/analytics/config", response_model=AnalyticsConfigOut)
def get_analytics_config(reg: AnalyticsRegistry = Depends(get_registry)):
    return AnalyticsConfigOut(**reg.config.as_dict())
