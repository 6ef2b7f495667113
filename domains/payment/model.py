from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCTimestamp(TypeDecorator):  # type: ignore[type-arg]
    """
    Timestamps are written as UTC and always read back timezone-aware.
    Naive values are taken to be UTC already (SQLite drops the offset on storage).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# status -> statuses it may move to; completed is terminal
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


class PaymentRecord(SQLModel, table=True):
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_code: str = Field(index=True, unique=True)
    amount: int
    description: Optional[str] = None
    status: str = Field(default=PaymentStatus.PENDING.value, index=True)
    payment_method: Optional[str] = None
    doctor_id: Optional[str] = Field(default=None, index=True)
    doctor_name: Optional[str] = None
    patient_id: Optional[str] = Field(default=None, index=True)
    transaction_id: Optional[str] = None
    payment_link_id: Optional[str] = None
    record_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True, sa_type=UTCTimestamp)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)
    paid_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)


class PaymentReview(SQLModel, table=True):
    """A gateway/local conflict parked for a human instead of being overwritten."""

    __tablename__ = "payment_reviews"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_code: str = Field(index=True)
    reason: str
    local_status: Optional[str] = None
    gateway_status: Optional[str] = None
    local_amount: Optional[int] = None
    gateway_amount: Optional[int] = None
    detail: Optional[str] = None
    resolved: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)


class PatientLinkRepair(SQLModel, table=True):
    __tablename__ = "patient_link_repairs"

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_id: int = Field(index=True)
    order_code: str
    previous_patient_id: Optional[str] = None
    patient_id: str
    source: str
    job_run_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)


OWNED_TABLES = ("payments", "payment_reviews", "patient_link_repairs")


# --- tables owned by the other services, read here for lookups ---


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: str = Field(primary_key=True)
    role: str
    full_name: Optional[str] = None
    email: Optional[str] = None


class Patient(SQLModel, table=True):
    __tablename__ = "patients"

    patient_id: str = Field(primary_key=True)
    profile_id: Optional[str] = Field(default=None, index=True)
    full_name: Optional[str] = None


class MedicalRecord(SQLModel, table=True):
    __tablename__ = "medical_records"

    record_id: str = Field(primary_key=True)
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    diagnosis: Optional[str] = None
    visit_date: Optional[date] = None


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"

    appointment_id: str = Field(primary_key=True)
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    payment_id: Optional[int] = Field(default=None, index=True)
