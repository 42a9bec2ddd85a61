# backend/schemas.py - All Pydantic Schemas

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Any
from datetime import date, datetime
from enum import Enum


# ---------------------------------------------------------------------------
# ENUMS (mirror SQLAlchemy enums for Pydantic)
# ---------------------------------------------------------------------------
class CarStatusEnum(str, Enum):
    pending = "pending"
    available = "available"
    hosted = "hosted"


class AccessPermissionEnum(str, Enum):
    viewer = "viewer"
    editor = "editor"


class PaymentStatusEnum(str, Enum):
    pending = "pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"


class ClaimStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class FrequencyEnum(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class RecommendationEnum(str, Enum):
    keep_active = "keep_active"
    monitor = "monitor"
    return_car = "return"
    optimize = "optimize"


class RoleEnum(str, Enum):
    client = "client"
    host = "host"


# ---------------------------------------------------------------------------
# PARTIAL UPDATES
# ---------------------------------------------------------------------------
def reject_explicit_nulls(model: BaseModel, fields) -> None:
    """Omitted fields stay unchanged; an explicit null on a required column is an error."""
    nulls = [f for f in fields if f in model.model_fields_set and getattr(model, f) is None]
    if nulls:
        raise ValueError(f"{', '.join(nulls)} cannot be null")


# ---------------------------------------------------------------------------
# CAR
# ---------------------------------------------------------------------------
class CarCreate(BaseModel):
    make: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1900, le=2100)
    mileage: int = Field(0, ge=0)
    color: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


class CarUpdate(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(None, ge=1900, le=2100)
    mileage: Optional[int] = Field(None, ge=0)
    color: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    status: Optional[CarStatusEnum] = None

    @model_validator(mode="after")
    def check_required_not_null(self):
        reject_explicit_nulls(self, ("make", "model", "year", "status"))
        return self


class AssignHostRequest(BaseModel):
    host_id: str


class CarOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    host_id: Optional[str]
    status: CarStatusEnum
    make: str
    model: str
    year: int
    mileage: Optional[int] = 0
    color: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_shared: bool = False
    share_permission: Optional[AccessPermissionEnum] = None


class ShareCarRequest(BaseModel):
    user_id: str
    permission: AccessPermissionEnum = AccessPermissionEnum.viewer


class CarAccessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    car_id: str
    user_id: str
    permission: AccessPermissionEnum
    created_at: datetime


# ---------------------------------------------------------------------------
# HOST EARNINGS
# ---------------------------------------------------------------------------
class EarningCreate(BaseModel):
    car_id: str
    trip_id: str = Field(..., min_length=1)
    guest_name: Optional[str] = None
    gross_earnings: float = Field(..., gt=0)
    earning_period_start: datetime
    earning_period_end: datetime
    client_profit_percentage: Optional[float] = Field(None, ge=0, le=100)
    host_profit_percentage: Optional[float] = Field(None, ge=0, le=100)
    payment_source: str = "Turo"
    payment_status: PaymentStatusEnum = PaymentStatusEnum.pending
    payment_date: Optional[date] = None
    earning_type: str = "hosting"

    @model_validator(mode="after")
    def check_period(self):
        if self.earning_period_end < self.earning_period_start:
            raise ValueError("earning_period_end must not be before earning_period_start")
        return self


class EarningStatusUpdate(BaseModel):
    payment_status: PaymentStatusEnum
    payment_date: Optional[date] = None


class EarningOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host_id: str
    car_id: str
    trip_id: Optional[str] = None
    guest_name: Optional[str] = None
    earning_type: Optional[str] = "hosting"
    amount: Optional[float] = 0
    gross_earnings: Optional[float] = 0
    commission: Optional[float] = 0
    net_amount: Optional[float] = 0
    client_profit_percentage: Optional[float] = None
    host_profit_percentage: Optional[float] = None
    client_profit_amount: Optional[float] = 0
    host_profit_amount: Optional[float] = 0
    payment_source: Optional[str] = None
    payment_status: PaymentStatusEnum = PaymentStatusEnum.pending
    payment_date: Optional[date] = None
    earning_period_start: datetime
    earning_period_end: datetime
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# HOST EXPENSES
# ---------------------------------------------------------------------------
class ExpenseCreate(BaseModel):
    car_id: Optional[str] = None
    trip_id: Optional[str] = None
    guest_name: Optional[str] = None
    expense_type: str = Field(..., min_length=1)
    amount: float = Field(0, ge=0)
    toll_cost: float = Field(0, ge=0)
    delivery_cost: float = Field(0, ge=0)
    carwash_cost: float = Field(0, ge=0)
    ev_charge_cost: float = Field(0, ge=0)
    expense_date: date = Field(default_factory=date.today)
    description: Optional[str] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host_id: str
    car_id: Optional[str] = None
    trip_id: Optional[str] = None
    guest_name: Optional[str] = None
    expense_type: str
    amount: Optional[float] = 0
    toll_cost: Optional[float] = 0
    delivery_cost: Optional[float] = 0
    carwash_cost: Optional[float] = 0
    ev_charge_cost: Optional[float] = 0
    expense_date: Optional[date] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# HOST CLAIMS
# ---------------------------------------------------------------------------
class ClaimUpsert(BaseModel):
    incident_id: str = Field(..., min_length=1)
    car_id: str
    trip_id: Optional[str] = None
    guest_name: Optional[str] = None
    payment_source: Optional[str] = None
    claim_type: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    claim_amount: Optional[float] = Field(None, ge=0)
    incident_date: date
    claim_status: ClaimStatusEnum = ClaimStatusEnum.pending
    is_paid: bool = False


class ClaimStatusUpdate(BaseModel):
    claim_status: ClaimStatusEnum
    approved_amount: Optional[float] = Field(None, ge=0)


class ClaimOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host_id: str
    car_id: str
    incident_id: Optional[str] = None
    trip_id: Optional[str] = None
    guest_name: Optional[str] = None
    payment_source: Optional[str] = None
    claim_type: str
    description: Optional[str] = None
    claim_amount: Optional[float] = None
    approved_amount: Optional[float] = None
    claim_status: ClaimStatusEnum = ClaimStatusEnum.pending
    incident_date: date
    is_paid: bool = False
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# CLIENT FIXED EXPENSES
# ---------------------------------------------------------------------------
class FixedExpenseCreate(BaseModel):
    car_id: str
    expense_type: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    frequency: FrequencyEnum
    provider_name: Optional[str] = None
    policy_number: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class FixedExpenseUpdate(BaseModel):
    expense_type: Optional[str] = None
    amount: Optional[float] = Field(None, ge=0)
    frequency: Optional[FrequencyEnum] = None
    provider_name: Optional[str] = None
    policy_number: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_required_not_null(self):
        reject_explicit_nulls(self, ("expense_type", "amount", "frequency", "start_date"))
        return self


class FixedExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    car_id: str
    client_id: str
    expense_type: str
    amount: float
    frequency: FrequencyEnum
    provider_name: Optional[str] = None
    policy_number: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MonthlyFixedCostOut(BaseModel):
    car_id: str
    monthly_fixed_costs: float
    active_expenses: int


# ---------------------------------------------------------------------------
# ANALYTICS - Per-car performance
# ---------------------------------------------------------------------------
class CarPerformanceOut(BaseModel):
    car_id: str
    car_make: str
    car_model: str
    car_year: int
    car_status: str

    total_earnings: float
    gross_earnings: float
    total_expenses: float
    monthly_fixed_costs: float
    true_net_profit: float
    net_profit: float
    profit_margin: float

    total_trips: int
    average_per_trip: float
    active_days: int
    utilization_rate: float
    total_claims: int
    claims_amount: float
    last_trip_date: Optional[datetime] = None

    recommendation: RecommendationEnum
    recommendation_reason: str
    roi: float
    roi_mode: str
    risk_score: float
    claims_risk: float
    profitability_risk: float
    utilization_risk: float
    break_even_trips: int
    config_version: str


class AnalyticsState(BaseModel):
    """Refresh bookkeeping returned next to every analytics payload."""
    loading: bool
    error: Optional[str] = None
    generation: int
    refreshed_at: Optional[datetime] = None
    year: Optional[int] = None


class CarPerformanceList(AnalyticsState):
    cars: List[CarPerformanceOut]


class CarDataOut(BaseModel):
    earnings: List[EarningOut]
    expenses: List[ExpenseOut]
    claims: List[ClaimOut]


class CarPerformanceDetail(AnalyticsState):
    performance: CarPerformanceOut
    data: CarDataOut


# ---------------------------------------------------------------------------
# ANALYTICS - Dashboard summaries
# ---------------------------------------------------------------------------
class ClientSummaryOut(AnalyticsState):
    total_earnings: float
    total_expenses: float
    net_profit: float
    active_days: int
    total_trips: int
    average_per_trip: float


class HostSummaryOut(BaseModel):
    total_earnings: float
    total_expenses: float
    net_profit: float
    total_trips: int
    active_hosting_days: int
    total_claims: int
    total_claim_amount: float
    approved_claims_amount: float
    pending_claims: int
    average_trip_earning: float
    year: Optional[int] = None


class YearsOut(BaseModel):
    years: List[int]


class AnalyticsConfigOut(BaseModel):
    version: str
    claim_weight: float
    claims_risk_cap: float
    profitability_risk_cap: float
    utilization_risk_cap: float
    utilization_risk_weight: float
    risk_score_cap: float
    utilization_window_days: int
    return_risk_threshold: float
    return_loss_threshold: float
    monitor_risk_threshold: float
    monitor_margin_threshold: float
    monitor_utilization_threshold: float
    optimize_utilization_threshold: float
    default_client_profit_pct: float
    default_host_profit_pct: float
    roi_mode: str


# ---------------------------------------------------------------------------
# GENERIC RESPONSES
# ---------------------------------------------------------------------------
class MessageResponse(BaseModel):
    message: str
    detail: Optional[Any] = None
