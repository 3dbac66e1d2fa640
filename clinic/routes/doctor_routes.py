from datetime import date

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic.auth.dependencies import require_roles
from clinic.core.errors import SchedulingError, to_http_exception
from clinic.database import get_db
from clinic.models.appointment import Actor, Appointment
from clinic.models.availability import SessionName
from clinic.models.leave_request import LeaveStatus, LeaveType
from clinic.models.schedule_change_request import ScheduleChangeType
from clinic.models.user import User, UserRole
from clinic.routes.common import (
    AppointmentResponse,
    AvailabilityDayResponse,
    LeaveResponse,
    ScheduleChangeResponse,
    availability_day_response,
    database_unavailable,
    ensure_database_ready,
)
from clinic.services import availability_store, registry, schedule_changes
from clinic.services.leave_cascade import LeaveCascadeProcessor
from clinic.services.lifecycle import AppointmentLifecycle

router = APIRouter(tags=['doctor'])

require_doctor = require_roles(UserRole.DOCTOR)


class SubmitLeaveRequest(BaseModel):
    leave_type: LeaveType
    start_date: date
    end_date: date | None = None
    session: SessionName | None = None
    reason: str

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('A reason for the leave is required.')
        return normalized


class UpdateDayRequest(BaseModel):
    is_available: bool | None = None
    working_start: str | None = None
    working_end: str | None = None
    break_start: str | None = None
    break_end: str | None = None
    morning_available: bool | None = None
    morning_start: str | None = None
    morning_end: str | None = None
    morning_max_patients: int | None = None
    afternoon_available: bool | None = None
    afternoon_start: str | None = None
    afternoon_end: str | None = None
    afternoon_max_patients: int | None = None
    notes: str | None = None


class ScheduleChangeCreateRequest(BaseModel):
    request_type: ScheduleChangeType
    schedule_date: date
    reason: str
    new_morning_start: str | None = None
    new_morning_end: str | None = None
    new_afternoon_start: str | None = None
    new_afternoon_end: str | None = None

    @model_validator(mode='after')
    def check_new_times(self):
        has_times = any([
            self.new_morning_start,
            self.new_morning_end,
            self.new_afternoon_start,
            self.new_afternoon_end,
        ])
        if self.request_type is ScheduleChangeType.RESCHEDULE and not has_times:
            raise ValueError('A reschedule request needs at least one new session time.')
        return self


@router.post('/leaves', response_model=LeaveResponse, status_code=status.HTTP_201_CREATED)
def submit_leave(
    data: SubmitLeaveRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    ensure_database_ready()

    try:
        return leave_processor.submit(
            db,
            current_user.id,
            data.leave_type,
            data.start_date,
            end_date=data.end_date,
            session=data.session,
            reason=data.reason,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/leaves', response_model=list[LeaveResponse])
def list_my_leaves(
    leave_status: LeaveStatus | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    ensure_database_ready()

    try:
        return leave_processor.list_requests(db, doctor_id=current_user.id, status=leave_status)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/leaves/{leave_id}/cancel', response_model=LeaveResponse)
def cancel_my_leave(
    leave_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    ensure_database_ready()

    try:
        return leave_processor.cancel(db, leave_id, current_user.id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/appointments', response_model=list[AppointmentResponse])
def list_day_appointments(
    on_date: date = Query(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
):
    ensure_database_ready()

    try:
        return db.query(Appointment).filter(
            Appointment.doctor_id == current_user.id,
            Appointment.booking_date == on_date,
        ).order_by(Appointment.token_number.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/start', response_model=AppointmentResponse)
def start_consultation(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    ensure_database_ready()

    try:
        return lifecycle.start_consultation(db, appointment_id, actor=Actor.DOCTOR, doctor_id=current_user.id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_consultation(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    ensure_database_ready()

    try:
        return lifecycle.complete_consultation(db, appointment_id, actor=Actor.DOCTOR, doctor_id=current_user.id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.put('/availability/{on_date}', response_model=AvailabilityDayResponse)
def update_my_day(
    on_date: date,
    data: UpdateDayRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
):
    ensure_database_ready()

    changes = data.model_dump(exclude_none=True)
    try:
        record = availability_store.update_day(db, current_user.id, on_date, changes)
        return availability_day_response(record, availability_store.booked_slots(db, current_user.id, on_date))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/schedule-changes', response_model=ScheduleChangeResponse, status_code=status.HTTP_201_CREATED)
def request_schedule_change(
    data: ScheduleChangeCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
):
    ensure_database_ready()

    try:
        return schedule_changes.create_request(
            db,
            current_user.id,
            data.request_type,
            data.schedule_date,
            data.reason,
            windows=data.model_dump(include=set(schedule_changes.WINDOW_FIELDS), exclude_none=True),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/schedule-changes', response_model=list[ScheduleChangeResponse])
def list_my_schedule_changes(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_doctor),
):
    ensure_database_ready()

    try:
        return schedule_changes.list_requests(db, doctor_id=current_user.id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
