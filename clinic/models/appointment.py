"""Appointment (token) model definitions."""

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from clinic.database import Base


class AppointmentStatus(str, enum.Enum):
    BOOKED = "booked"
    IN_QUEUE = "in_queue"
    CONSULTED = "consulted"
    CANCELLED = "cancelled"
    CANCELLED_BY_HOSPITAL = "cancelled_by_hospital"
    MISSED = "missed"


ACTIVE_STATUSES = (AppointmentStatus.BOOKED, AppointmentStatus.IN_QUEUE)
CANCELLATION_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.CANCELLED_BY_HOSPITAL)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    REFUNDED = "refunded"


class Actor(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"


def _enum_values(enum_class):
    return [member.value for member in enum_class]


class Appointment(Base):
    """Represents a booked token with a doctor for one date and time slot.

    Rows are never deleted; cancellation is a status.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("doctor_id", "booking_date", "token_number", name="uq_appointments_doctor_date_token"),
        Index("idx_appointments_doctor_date", "doctor_id", "booking_date"),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    family_member_id = Column(Integer, nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    department = Column(String, default="")
    symptoms = Column(String, default="")

    booking_date = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=False)  # HH:MM
    token_number = Column(Integer, nullable=False)
    queue_position = Column(Integer, default=0)
    status = Column(
        Enum(AppointmentStatus, native_enum=False, length=32, values_callable=_enum_values),
        default=AppointmentStatus.BOOKED,
        nullable=False,
    )

    payment_status = Column(
        Enum(PaymentStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_method = Column(String, nullable=True)
    consultation_fee = Column(Numeric(10, 2), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(String, nullable=True)
    refund_method = Column(String, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    cancellation_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    consultation_started_at = Column(DateTime, nullable=True)
    consultation_completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    @property
    def scheduled_at(self) -> datetime:
        hours, minutes = self.time_slot.split(":")
        return datetime.combine(self.booking_date, datetime.min.time()).replace(
            hour=int(hours),
            minute=int(minutes),
        )

    @property
    def token_label(self) -> str:
        return f"T{self.token_number:03d}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
