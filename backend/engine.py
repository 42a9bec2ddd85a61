# backend/engine.py - The Fleet Ledger brain
# All math: fixed-cost normalization, per-trip aggregation, utilization,
# risk scoring, recommendations, earning splits and dashboard summaries.
# Every function here is pure: "now" is always passed in.

import math
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from typing import List, Optional, Dict, Any, Iterable


# ---------------------------------------------------------------------------
# CONSTANTS & DEFAULTS
# ---------------------------------------------------------------------------
DEFAULT_CLIENT_PROFIT_PCT = 70.0
DEFAULT_HOST_PROFIT_PCT = 30.0

ROI_NET_OF_FIXED_COSTS = "net_of_fixed_costs"
ROI_BEFORE_FIXED_COSTS = "before_fixed_costs"
ROI_MODES = (ROI_NET_OF_FIXED_COSTS, ROI_BEFORE_FIXED_COSTS)

# Months covered by one payment of each cadence
FREQUENCY_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


@dataclass(frozen=True)
class AnalyticsConfig:
    """
    Heuristic tuning values for risk scoring and recommendations.
    Bump `version` whenever a value changes so stored reports can be traced
    back to the weights that produced them.
    """
    version: str = "2024.1"

    # Risk sub-scores (each individually capped)
    claim_weight: float = 20.0
    claims_risk_cap: float = 50.0
    profitability_risk_cap: float = 30.0
    utilization_risk_cap: float = 20.0
    utilization_risk_weight: float = 0.2
    risk_score_cap: float = 100.0

    utilization_window_days: int = 30

    # Recommendation thresholds
    return_risk_threshold: float = 70.0
    return_loss_threshold: float = -500.0
    monitor_risk_threshold: float = 50.0
    monitor_margin_threshold: float = 10.0
    monitor_utilization_threshold: float = 30.0
    optimize_utilization_threshold: float = 50.0

    # Profit split applied when an earning carries no percentage
    default_client_profit_pct: float = DEFAULT_CLIENT_PROFIT_PCT
    default_host_profit_pct: float = DEFAULT_HOST_PROFIT_PCT

    roi_mode: str = ROI_NET_OF_FIXED_COSTS

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = AnalyticsConfig()


# ---------------------------------------------------------------------------
# HELPERS
# ---------------------------------------------------------------------------
def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def as_date(value: Any) -> Optional[date]:
    """Truncate a datetime / ISO string to its calendar date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def expense_total(expense: Any) -> float:
    """Primary amount plus the four itemized sub-costs."""
    return (
        (expense.amount or 0)
        + (expense.toll_cost or 0)
        + (expense.delivery_cost or 0)
        + (expense.carwash_cost or 0)
        + (expense.ev_charge_cost or 0)
    )


def _for_car(records: Iterable[Any], car_id: str) -> List[Any]:
    return [r for r in records if r.car_id == car_id]


# ---------------------------------------------------------------------------
# 1) FIXED-COST NORMALIZER
# ---------------------------------------------------------------------------
def normalized_monthly(amount: float, frequency: Any) -> float:
    """amount for monthly, amount/3 for quarterly, amount/12 for yearly."""
    freq = getattr(frequency, "value", frequency)
    return (amount or 0) / FREQUENCY_MONTHS[freq]


def is_fixed_expense_active(expense: Any, today: date) -> bool:
    start = as_date(expense.start_date)
    end = as_date(expense.end_date)
    return start <= today and (end is None or end >= today)


def monthly_fixed_costs(car_id: str, fixed_expenses: Iterable[Any], today: date) -> float:
    """Sum of monthly-equivalent amounts of the car's currently active fixed expenses."""
    total = 0.0
    for e in _for_car(fixed_expenses, car_id):
        if not is_fixed_expense_active(e, today):
            continue
        total += normalized_monthly(e.amount, e.frequency)
    return total


# ---------------------------------------------------------------------------
# 2) EARNING SPLIT + TRIP EXPENSE MATCHING
#    Trips are correlated by equality of a free-text trip id; zero or many
#    expenses may match one earning.
# ---------------------------------------------------------------------------
def trip_expenses_total(trip_id: Optional[str], expenses: Iterable[Any]) -> float:
    if not trip_id:
        return 0.0
    return sum(expense_total(e) for e in expenses if e.trip_id == trip_id)


def split_earning(
    gross: float,
    trip_expenses: float = 0.0,
    client_pct: Optional[float] = None,
    host_pct: Optional[float] = None,
) -> Dict[str, float]:
    """
    (gross - trip expenses) split by the agreed percentages. The two
    percentages are expected to add up to 100 but that is not enforced here.
    """
    client_pct = client_pct if client_pct is not None else DEFAULT_CLIENT_PROFIT_PCT
    host_pct = host_pct if host_pct is not None else DEFAULT_HOST_PROFIT_PCT
    net = (gross or 0) - (trip_expenses or 0)
    client_amount = net * client_pct / 100
    host_amount = net * host_pct / 100
    return {
        "client_profit_percentage": client_pct,
        "host_profit_percentage": host_pct,
        "client_profit_amount": client_amount,
        "host_profit_amount": host_amount,
        "commission": host_amount,
        "net_amount": client_amount,
    }


# ---------------------------------------------------------------------------
# 3) PER-TRIP AGGREGATOR
# ---------------------------------------------------------------------------
def claim_value(claim: Any) -> float:
    if claim.approved_amount is not None:
        return claim.approved_amount
    return claim.claim_amount or 0


def latest_earning(earnings: List[Any]) -> Optional[Any]:
    """Earning with the most recent period start; input order is not trusted."""
    if not earnings:
        return None
    return max(earnings, key=lambda e: as_datetime(e.earning_period_start))


def aggregate_trips(
    car_id: str,
    earnings: Iterable[Any],
    expenses: Iterable[Any],
    claims: Iterable[Any],
) -> Dict[str, Any]:
    car_earnings = _for_car(earnings, car_id)
    car_expenses = _for_car(expenses, car_id)
    car_claims = _for_car(claims, car_id)

    # client_profit_amount is already net of trip-level costs
    net_from_trips = sum((e.client_profit_amount or 0) for e in car_earnings)
    gross = sum((e.gross_earnings or 0) for e in car_earnings)

    # Display only - never subtracted from earnings again
    operational = sum(expense_total(e) for e in car_expenses)

    total_trips = len(car_earnings)
    last = latest_earning(car_earnings)

    return {
        "net_earnings_from_trips": net_from_trips,
        "gross_earnings": gross,
        "total_operational_expenses": operational,
        "total_trips": total_trips,
        "average_per_trip": net_from_trips / total_trips if total_trips > 0 else 0.0,
        "total_claims": len(car_claims),
        "claims_amount": sum(claim_value(c) for c in car_claims),
        "last_trip_date": last.earning_period_end if last else None,
    }


# ---------------------------------------------------------------------------
# 4) UTILIZATION & RISK SCORER
# ---------------------------------------------------------------------------
def active_dates(earnings: Iterable[Any]) -> set:
    return {as_date(e.earning_period_start) for e in earnings if e.earning_period_start}


def active_days(earnings: Iterable[Any]) -> int:
    return len(active_dates(earnings))


def utilization_rate(earnings: Iterable[Any], now: datetime, window_days: int = 30) -> float:
    """
    Share of the trailing window (the last `window_days` calendar days,
    today included) with at least one trip starting on it.
    """
    today = as_date(now)
    window_start = today - timedelta(days=window_days - 1)
    recent = {d for d in active_dates(earnings) if window_start <= d <= today}
    return len(recent) / window_days * 100


def break_even_trips(monthly_fixed: float, average_per_trip: float) -> int:
    if average_per_trip > 0:
        return math.ceil(monthly_fixed / average_per_trip)
    return 0


def profit_margin(true_net_profit: float, net_from_trips: float) -> float:
    if net_from_trips > 0:
        return true_net_profit / net_from_trips * 100
    return 0.0


def risk_breakdown(
    total_claims: int,
    true_net_profit: float,
    margin: float,
    utilization: float,
    config: AnalyticsConfig = DEFAULT_CONFIG,
) -> Dict[str, float]:
    claims_risk = min(total_claims * config.claim_weight, config.claims_risk_cap)

    if true_net_profit < 0:
        profitability_risk = config.profitability_risk_cap
    else:
        profitability_risk = clamp(
            config.profitability_risk_cap - margin, 0, config.profitability_risk_cap
        )

    utilization_risk = clamp(
        config.utilization_risk_cap - utilization * config.utilization_risk_weight,
        0, config.utilization_risk_cap,
    )

    score = clamp(claims_risk + profitability_risk + utilization_risk, 0, config.risk_score_cap)
    return {
        "claims_risk": claims_risk,
        "profitability_risk": profitability_risk,
        "utilization_risk": utilization_risk,
        "risk_score": score,
    }


def compute_roi(
    net_from_trips: float,
    true_net_profit: float,
    gross: float,
    mode: str = ROI_NET_OF_FIXED_COSTS,
) -> float:
    if mode not in ROI_MODES:
        raise ValueError(f"Unknown ROI mode {mode!r}; expected one of {ROI_MODES}.")
    if gross <= 0:
        return 0.0
    numerator = true_net_profit if mode == ROI_NET_OF_FIXED_COSTS else net_from_trips
    return numerator / gross * 100


# ---------------------------------------------------------------------------
# 5) RECOMMENDATION CLASSIFIER
#    Order-sensitive: the first matching rule wins.
# ---------------------------------------------------------------------------
def recommend(
    risk_score: float,
    true_net_profit: float,
    margin: float,
    utilization: float,
    break_even: int,
    total_trips: int,
    config: AnalyticsConfig = DEFAULT_CONFIG,
) -> Dict[str, str]:
    if risk_score > config.return_risk_threshold or true_net_profit < config.return_loss_threshold:
        return {
            "recommendation": "return",
            "recommendation_reason": (
                "High risk and significant losses including fixed costs. "
                "Consider returning this vehicle."
            ),
        }
    if risk_score > config.monitor_risk_threshold or (
        margin < config.monitor_margin_threshold
        and utilization < config.monitor_utilization_threshold
    ):
        return {
            "recommendation": "monitor",
            "recommendation_reason": (
                "Moderate risk or low performance. Monitor closely and consider improvements."
            ),
        }
    if utilization < config.optimize_utilization_threshold and true_net_profit > 0:
        return {
            "recommendation": "optimize",
            "recommendation_reason": (
                "Good profitability but low utilization. Optimize pricing or availability."
            ),
        }
    if true_net_profit < 0 and break_even > total_trips:
        return {
            "recommendation": "monitor",
            "recommendation_reason": (
                f"Not covering fixed costs. Need {break_even} trips/month to break even."
            ),
        }
    return {
        "recommendation": "keep_active",
        "recommendation_reason": "Good performance. Continue current strategy.",
    }


# ---------------------------------------------------------------------------
# 6) PER-CAR PERFORMANCE - Orchestrator
# ---------------------------------------------------------------------------
def build_car_performance(
    car: Any,
    earnings: Iterable[Any],
    expenses: Iterable[Any],
    claims: Iterable[Any],
    fixed_expenses: Iterable[Any],
    now: datetime,
    config: AnalyticsConfig = DEFAULT_CONFIG,
) -> Dict[str, Any]:
    """
    Master function. Takes one car plus the actor's full record collections
    and returns the derived performance record for that car.
    """
    earnings = list(earnings)
    totals = aggregate_trips(car.id, earnings, expenses, claims)
    car_earnings = _for_car(earnings, car.id)

    # 1) Fixed costs
    monthly_fixed = monthly_fixed_costs(car.id, fixed_expenses, as_date(now))

    # 2) Profit
    net_from_trips = totals["net_earnings_from_trips"]
    true_net = net_from_trips - monthly_fixed
    margin = profit_margin(true_net, net_from_trips)

    # 3) Utilization
    utilization = utilization_rate(car_earnings, now, config.utilization_window_days)
    break_even = break_even_trips(monthly_fixed, totals["average_per_trip"])

    # 4) Risk
    risk = risk_breakdown(totals["total_claims"], true_net, margin, utilization, config)

    # 5) Recommendation
    rec = recommend(
        risk["risk_score"], true_net, margin, utilization,
        break_even, totals["total_trips"], config,
    )

    return {
        "car_id": car.id,
        "car_make": car.make,
        "car_model": car.model,
        "car_year": car.year,
        "car_status": getattr(car.status, "value", car.status),
        "total_earnings": net_from_trips,
        "gross_earnings": totals["gross_earnings"],
        "total_expenses": totals["total_operational_expenses"],
        "monthly_fixed_costs": monthly_fixed,
        "true_net_profit": true_net,
        "net_profit": true_net,
        "profit_margin": margin,
        "total_trips": totals["total_trips"],
        "average_per_trip": totals["average_per_trip"],
        "active_days": active_days(car_earnings),
        "utilization_rate": utilization,
        "total_claims": totals["total_claims"],
        "claims_amount": totals["claims_amount"],
        "last_trip_date": totals["last_trip_date"],
        **rec,
        "roi": compute_roi(net_from_trips, true_net, totals["gross_earnings"], config.roi_mode),
        "roi_mode": config.roi_mode,
        **risk,
        "break_even_trips": break_even,
        "config_version": config.version,
    }


def build_all_performances(
    cars: Iterable[Any],
    earnings: Iterable[Any],
    expenses: Iterable[Any],
    claims: Iterable[Any],
    fixed_expenses: Iterable[Any],
    now: datetime,
    config: AnalyticsConfig = DEFAULT_CONFIG,
) -> List[Dict[str, Any]]:
    earnings, expenses = list(earnings), list(expenses)
    claims, fixed_expenses = list(claims), list(fixed_expenses)
    return [
        build_car_performance(c, earnings, expenses, claims, fixed_expenses, now, config)
        for c in cars
    ]


# ---------------------------------------------------------------------------
# 7) DASHBOARD SUMMARIES
# ---------------------------------------------------------------------------
def client_summary(earnings: Iterable[Any], expenses: Iterable[Any]) -> Dict[str, Any]:
    earnings, expenses = list(earnings), list(expenses)
    total_earnings = sum((e.client_profit_amount or 0) for e in earnings)
    total_expenses = sum((e.amount or 0) for e in expenses)
    total_trips = len(earnings)
    return {
        "total_earnings": total_earnings,
        "total_expenses": total_expenses,
        "net_profit": total_earnings - total_expenses,
        "active_days": active_days(earnings),
        "total_trips": total_trips,
        "average_per_trip": total_earnings / total_trips if total_trips > 0 else 0.0,
    }


def hosting_dates(earning: Any) -> List[date]:
    """Every calendar date covered by the earning period, both ends included."""
    start = as_date(earning.earning_period_start)
    end = as_date(earning.earning_period_end) or start
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def host_summary(
    earnings: Iterable[Any],
    expenses: Iterable[Any],
    claims: Iterable[Any],
    config: AnalyticsConfig = DEFAULT_CONFIG,
) -> Dict[str, Any]:
    earnings, expenses, claims = list(earnings), list(expenses), list(claims)

    total_earnings = 0.0
    for e in earnings:
        net = (e.amount or 0) - trip_expenses_total(e.trip_id, expenses)
        pct = e.host_profit_percentage or config.default_host_profit_pct
        total_earnings += net * pct / 100

    total_trips = len(earnings)
    hosted = set()
    for e in earnings:
        hosted.update(hosting_dates(e))

    total_expenses = sum(expense_total(e) for e in expenses)
    breakdown = claims_breakdown(claims)

    return {
        "total_earnings": total_earnings,
        "total_expenses": total_expenses,
        "net_profit": total_earnings - total_expenses,
        "total_trips": total_trips,
        "active_hosting_days": len(hosted),
        "total_claims": breakdown["total_claims"],
        "total_claim_amount": breakdown["total_amount"],
        "approved_claims_amount": breakdown["approved_amount"],
        "pending_claims": breakdown["pending_count"],
        "average_trip_earning": total_earnings / total_trips if total_trips > 0 else 0.0,
    }


def claims_breakdown(claims: Iterable[Any]) -> Dict[str, Any]:
    claims = list(claims)

    def status_of(c):
        return getattr(c.claim_status, "value", c.claim_status)

    by_status = {"pending": [], "approved": [], "rejected": []}
    for c in claims:
        by_status.setdefault(status_of(c), []).append(c)

    return {
        "total_claims": len(claims),
        "total_amount": sum((c.claim_amount or 0) for c in claims),
        "approved_amount": sum(claim_value(c) for c in by_status["approved"]),
        "pending_amount": sum((c.claim_amount or 0) for c in by_status["pending"]),
        "pending_count": len(by_status["pending"]),
        "approved_count": len(by_status["approved"]),
        "rejected_count": len(by_status["rejected"]),
    }


def available_years(
    earnings: Iterable[Any],
    expenses: Iterable[Any],
    claims: Iterable[Any],
    current_year: int,
) -> List[int]:
    years = {current_year}
    years.update(as_date(e.earning_period_start).year for e in earnings if e.earning_period_start)
    years.update(as_date(e.expense_date).year for e in expenses if e.expense_date)
    years.update(as_date(c.incident_date).year for c in claims if c.incident_date)
    return sorted(years, reverse=True)


def year_bounds(year: Optional[int]) -> Optional[tuple]:
    """Inclusive [Jan 1 00:00, Dec 31 23:59:59] range used by every year filter."""
    if not year:
        return None
    return datetime(year, 1, 1), datetime(year, 12, 31, 23, 59, 59)
