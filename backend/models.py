# backend/models.py - Config + Database + All Models

import os
import uuid
import enum
from datetime import datetime, date
from sqlalchemy import (
    create_engine, Column, Integer, String, Float, Text, Boolean,
    Date, DateTime, ForeignKey, Enum as SAEnum, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fleet_ledger.db")

# Hosted Postgres URLs start with postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]

# Where analytics read their rows from: the local database ("sql") or a
# PostgREST-style backend ("rest").
ANALYTICS_BACKEND = os.getenv("ANALYTICS_BACKEND", "sql")
REST_BASE_URL = os.getenv("REST_BASE_URL", "http://localhost:54321/rest/v1")
REST_API_KEY = os.getenv("REST_API_KEY", "")
REST_TIMEOUT = float(os.getenv("REST_TIMEOUT", "10"))

# net_of_fixed_costs | before_fixed_costs
ROI_MODE = os.getenv("ROI_MODE", "net_of_fixed_costs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# DATABASE ENGINE + SESSION
# ---------------------------------------------------------------------------
connect_args = {}
if "sqlite" in DATABASE_URL:
    connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, connect_args=connect_args, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency - yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------
class CarStatus(str, enum.Enum):
    pending = "pending"
    available = "available"
    hosted = "hosted"


class AccessPermission(str, enum.Enum):
    viewer = "viewer"
    editor = "editor"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"


class ClaimStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ExpenseFrequency(str, enum.Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


# ---------------------------------------------------------------------------
# MODELS
# ---------------------------------------------------------------------------

class Car(Base):
    __tablename__ = "cars"

    id = Column(String(36), primary_key=True, default=new_id)
    client_id = Column(String(36), nullable=False, index=True)  # owner
    host_id = Column(String(36), nullable=True, index=True)
    status = Column(SAEnum(CarStatus), default=CarStatus.pending)

    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    mileage = Column(Integer, default=0)
    color = Column(String(50))
    location = Column(String(255))
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    access = relationship("CarAccess", back_populates="car", cascade="all, delete-orphan")
    fixed_expenses = relationship("ClientCarExpense", back_populates="car", cascade="all, delete-orphan")


class CarAccess(Base):
    __tablename__ = "car_access"
    __table_args__ = (UniqueConstraint("car_id", "user_id", name="uq_car_access_user"),)

    id = Column(String(36), primary_key=True, default=new_id)
    car_id = Column(String(36), ForeignKey("cars.id"), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    permission = Column(SAEnum(AccessPermission), default=AccessPermission.viewer)
    created_at = Column(DateTime, default=datetime.utcnow)

    car = relationship("Car", back_populates="access")


class HostEarning(Base):
    __tablename__ = "host_earnings"

    id = Column(String(36), primary_key=True, default=new_id)
    host_id = Column(String(36), nullable=False, index=True)
    car_id = Column(String(36), ForeignKey("cars.id"), nullable=False, index=True)
    trip_id = Column(String(100), nullable=True, index=True)  # free text, not a foreign key
    guest_name = Column(String(255), nullable=True)
    earning_type = Column(String(50), default="hosting")

    amount = Column(Float, default=0)
    gross_earnings = Column(Float, default=0)
    commission = Column(Float, default=0)
    net_amount = Column(Float, default=0)
    client_profit_percentage = Column(Float, default=70)
    host_profit_percentage = Column(Float, default=30)
    client_profit_amount = Column(Float, default=0)
    host_profit_amount = Column(Float, default=0)

    payment_source = Column(String(50), default="Turo")
    payment_status = Column(SAEnum(PaymentStatus), default=PaymentStatus.pending)
    payment_date = Column(Date, nullable=True)
    earning_period_start = Column(DateTime, nullable=False)
    earning_period_end = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class HostExpense(Base):
    __tablename__ = "host_expenses"

    id = Column(String(36), primary_key=True, default=new_id)
    host_id = Column(String(36), nullable=False, index=True)
    car_id = Column(String(36), ForeignKey("cars.id"), nullable=True, index=True)
    trip_id = Column(String(100), nullable=True, index=True)
    guest_name = Column(String(255), nullable=True)
    expense_type = Column(String(50), nullable=False)

    amount = Column(Float, default=0)
    toll_cost = Column(Float, default=0)
    delivery_cost = Column(Float, default=0)
    carwash_cost = Column(Float, default=0)
    ev_charge_cost = Column(Float, default=0)

    expense_date = Column(Date, default=date.today)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class HostClaim(Base):
    __tablename__ = "host_claims"

    id = Column(String(36), primary_key=True, default=new_id)
    host_id = Column(String(36), nullable=False, index=True)
    car_id = Column(String(36), ForeignKey("cars.id"), nullable=False, index=True)
    incident_id = Column(String(100), nullable=False, unique=True)
    trip_id = Column(String(100), nullable=True)
    guest_name = Column(String(255), nullable=True)
    payment_source = Column(String(50), nullable=True)

    claim_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    claim_amount = Column(Float, nullable=True)
    approved_amount = Column(Float, nullable=True)  # only set while approved
    claim_status = Column(SAEnum(ClaimStatus), default=ClaimStatus.pending)
    incident_date = Column(Date, nullable=False)
    is_paid = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class ClientCarExpense(Base):
    __tablename__ = "client_car_expenses"

    id = Column(String(36), primary_key=True, default=new_id)
    car_id = Column(String(36), ForeignKey("cars.id"), nullable=False, index=True)
    client_id = Column(String(36), nullable=False, index=True)

    expense_type = Column(String(50), nullable=False)  # insurance, loan, registration...
    amount = Column(Float, nullable=False)
    frequency = Column(SAEnum(ExpenseFrequency), nullable=False)
    provider_name = Column(String(255), nullable=True)
    policy_number = Column(String(100), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    car = relationship("Car", back_populates="fixed_expenses")


# ---------------------------------------------------------------------------
# CREATE ALL TABLES
# ---------------------------------------------------------------------------
def init_db():
    Base.metadata.create_all(bind=engine)
