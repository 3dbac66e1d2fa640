from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic.auth.dependencies import require_roles
from clinic.core.clock import clinic_today
from clinic.core.errors import InvalidSlot, SchedulingError, to_http_exception
from clinic.database import get_db
from clinic.models.appointment import Actor
from clinic.models.availability import BlockScope
from clinic.models.leave_request import LeaveStatus
from clinic.models.schedule_change_request import ScheduleChangeStatus
from clinic.models.user import User, UserRole
from clinic.routes.common import (
    AppointmentResponse,
    AvailabilityDayResponse,
    DecisionRequest,
    LeaveResponse,
    ScheduleChangeResponse,
    availability_day_response,
    database_unavailable,
    ensure_database_ready,
)
from clinic.services import availability_store, registry, schedule_changes
from clinic.services.leave_cascade import LeaveCascadeProcessor
from clinic.services.lifecycle import AppointmentLifecycle
from clinic.services.sessions import iterate_dates
from clinic.services.sweeper import CancellationSweeper, cancellation_stats

router = APIRouter(tags=['admin'])

require_admin = require_roles(UserRole.ADMIN)

BULK_SCHEDULE_MAX_DAYS = 90


class LeaveDecisionResponse(BaseModel):
    leave_request: LeaveResponse
    cancelled_count: int
    failed_count: int


class HospitalCancelRequest(BaseModel):
    reason: str

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('A cancellation reason is required.')
        return normalized


class AdminRescheduleRequest(BaseModel):
    new_date: date
    new_time: str


class SweepResponse(BaseModel):
    skipped: bool
    same_day: int
    stale: int
    failed: int
    total: int


class CancellationStatsResponse(BaseModel):
    date: date
    same_day: int
    stale: int
    still_open: int


class BulkScheduleRequest(BaseModel):
    start_date: date
    end_date: date
    is_available: bool = True
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
    leave_reason: str | None = None
    notes: str | None = None


class BulkScheduleResponse(BaseModel):
    updated_dates: list[date]
    cancelled_appointments: int
    failed_cancellations: int


class BulkDeleteResponse(BaseModel):
    deleted_dates: list[date]
    skipped_dates: list[date]


class ScheduleChangeDecisionResponse(BaseModel):
    request: ScheduleChangeResponse
    cancelled_count: int


def _check_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise InvalidSlot('End date must not be before start date.')
    if (end_date - start_date).days >= BULK_SCHEDULE_MAX_DAYS:
        raise InvalidSlot(f'Schedules can be changed for at most {BULK_SCHEDULE_MAX_DAYS} days at a time.')


@router.get('/leaves', response_model=list[LeaveResponse])
def list_leaves(
    leave_status: LeaveStatus | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    del current_user
    ensure_database_ready()

    try:
        return leave_processor.list_requests(db, status=leave_status)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/leaves/{leave_id}/approve', response_model=LeaveDecisionResponse)
def approve_leave(
    leave_id: int,
    data: DecisionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    del current_user
    ensure_database_ready()

    try:
        result = leave_processor.approve(db, leave_id, admin_comment=data.admin_comment)
        return LeaveDecisionResponse(
            leave_request=LeaveResponse.model_validate(result.leave_request),
            cancelled_count=result.cancelled_count,
            failed_count=result.failed_count,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/leaves/{leave_id}/reject', response_model=LeaveResponse)
def reject_leave(
    leave_id: int,
    data: DecisionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    del current_user
    ensure_database_ready()

    try:
        return leave_processor.reject(db, leave_id, admin_comment=data.admin_comment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_by_hospital(
    appointment_id: int,
    data: HospitalCancelRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    del current_user
    ensure_database_ready()

    try:
        return lifecycle.cancel_by_hospital(db, appointment_id, reason=data.reason, actor=Actor.ADMIN)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: AdminRescheduleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    del current_user
    ensure_database_ready()

    try:
        return lifecycle.reschedule(db, appointment_id, data.new_date, data.new_time, Actor.ADMIN)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/sweeps', response_model=SweepResponse)
def run_sweep(
    current_user: User = Depends(require_admin),
    sweeper: CancellationSweeper = Depends(registry.get_sweeper),
):
    del current_user
    ensure_database_ready()

    try:
        result = sweeper.run()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return SweepResponse(
        skipped=result.skipped,
        same_day=result.same_day,
        stale=result.stale,
        failed=result.failed,
        total=result.total,
    )


@router.get('/sweeps/stats', response_model=CancellationStatsResponse)
def get_cancellation_stats(
    on_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    del current_user
    ensure_database_ready()

    try:
        return cancellation_stats(db, on_date or clinic_today())
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/doctors/{doctor_id}/schedules', response_model=BulkScheduleResponse)
def bulk_create_schedules(
    doctor_id: int,
    data: BulkScheduleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    del current_user
    ensure_database_ready()

    try:
        _check_range(data.start_date, data.end_date)
        availability_store.require_doctor(db, doctor_id)

        if not data.is_available:
            reason = data.leave_reason or 'Doctor unavailable'
            cancelled = failed = 0
            for on_date in iterate_dates(data.start_date, data.end_date):
                result = leave_processor.block_and_cancel(
                    db,
                    doctor_id,
                    on_date,
                    BlockScope.FULL_DAY,
                    availability_reason=reason,
                    cancellation_reason=f'Doctor unavailable: {reason}',
                )
                cancelled += result.cancelled
                failed += result.failed
            return BulkScheduleResponse(
                updated_dates=list(iterate_dates(data.start_date, data.end_date)),
                cancelled_appointments=cancelled,
                failed_cancellations=failed,
            )

        template = data.model_dump(exclude={'start_date', 'end_date'}, exclude_none=True)
        template.setdefault('morning_available', True)
        template.setdefault('afternoon_available', True)
        template.setdefault('leave_reason', '')
        records = availability_store.bulk_upsert(db, doctor_id, data.start_date, data.end_date, template)
        return BulkScheduleResponse(
            updated_dates=[record.date for record in records],
            cancelled_appointments=0,
            failed_cancellations=0,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/doctors/{doctor_id}/schedules', response_model=BulkDeleteResponse)
def bulk_delete_schedules(
    doctor_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    del current_user
    ensure_database_ready()

    try:
        _check_range(start_date, end_date)
        availability_store.require_doctor(db, doctor_id)
        deleted, skipped = availability_store.bulk_delete(db, doctor_id, start_date, end_date)
        return BulkDeleteResponse(deleted_dates=deleted, skipped_dates=skipped)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/doctors/{doctor_id}/days/{on_date}/resync', response_model=AvailabilityDayResponse)
def resync_day(
    doctor_id: int,
    on_date: date,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    del current_user
    ensure_database_ready()

    try:
        record = availability_store.resync_counters(db, doctor_id, on_date)
        return availability_day_response(record, availability_store.booked_slots(db, doctor_id, on_date))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/schedule-changes', response_model=list[ScheduleChangeResponse])
def list_schedule_changes(
    change_status: ScheduleChangeStatus | None = Query(default=None, alias='status'),
    doctor_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    del current_user
    ensure_database_ready()

    try:
        return schedule_changes.list_requests(db, doctor_id=doctor_id, status=change_status)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/schedule-changes/{request_id}/approve', response_model=ScheduleChangeDecisionResponse)
def approve_schedule_change(
    request_id: int,
    data: DecisionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    leave_processor: LeaveCascadeProcessor = Depends(registry.get_leave_processor),
):
    del current_user
    ensure_database_ready()

    try:
        change, result = schedule_changes.approve_request(
            db, request_id, leave_processor, admin_comment=data.admin_comment,
        )
        return ScheduleChangeDecisionResponse(
            request=ScheduleChangeResponse.model_validate(change),
            cancelled_count=result.cancelled,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/schedule-changes/{request_id}/reject', response_model=ScheduleChangeResponse)
def reject_schedule_change(
    request_id: int,
    data: DecisionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    del current_user
    ensure_database_ready()

    try:
        return schedule_changes.reject_request(db, request_id, admin_comment=data.admin_comment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
