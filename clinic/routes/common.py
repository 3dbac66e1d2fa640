from datetime import date, datetime
from decimal import Decimal

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from clinic.database import ensure_appointment_schema, ensure_availability_schema
from clinic.models.appointment import AppointmentStatus, PaymentStatus
from clinic.models.leave_request import LeaveStatus, LeaveType

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    family_member_id: int | None = None
    doctor_id: int
    department: str | None = None
    symptoms: str | None = None
    booking_date: date
    time_slot: str
    token_number: int
    token_label: str
    queue_position: int | None = None
    status: AppointmentStatus
    payment_status: PaymentStatus
    consultation_fee: Decimal | None = None
    refund_amount: Decimal | None = None
    refund_reason: str | None = None
    refund_method: str | None = None
    refunded_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class LeaveResponse(BaseModel):
    id: int
    doctor_id: int
    start_date: date
    end_date: date
    leave_type: LeaveType
    session: str | None = None
    reason: str | None = None
    status: LeaveStatus
    admin_comment: str | None = None
    decided_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ScheduleChangeResponse(BaseModel):
    id: int
    doctor_id: int
    request_type: str
    schedule_date: date
    reason: str
    new_morning_start: str | None = None
    new_morning_end: str | None = None
    new_afternoon_start: str | None = None
    new_afternoon_end: str | None = None
    status: str
    admin_comment: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class AvailabilityDayResponse(BaseModel):
    doctor_id: int
    date: date
    is_available: bool
    working_hours: dict[str, str]
    break_time: dict[str, str]
    morning_session: dict
    afternoon_session: dict
    leave_reason: str
    notes: str
    morning_booked: int
    afternoon_booked: int
    booked_slots: list[dict] = []


class DecisionRequest(BaseModel):
    admin_comment: str = ''


def availability_day_response(record, booked_slots: list[dict] | None = None) -> AvailabilityDayResponse:
    return AvailabilityDayResponse(
        **record.as_record(),
        morning_booked=record.morning_booked or 0,
        afternoon_booked=record.afternoon_booked or 0,
        booked_slots=booked_slots or [],
    )
