"""Doctor requests to cancel or move the sessions of a single working day."""

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from clinic.core.clock import clinic_now
from clinic.core.errors import InvalidSlot, InvalidTransition, NotFound
from clinic.models.availability import BlockScope
from clinic.models.schedule_change_request import ScheduleChangeRequest, ScheduleChangeStatus, ScheduleChangeType
from clinic.services import availability_store
from clinic.services.leave_cascade import CascadeResult, LeaveCascadeProcessor
from clinic.services.sessions import normalize_time_slot

logger = logging.getLogger(__name__)

WINDOW_FIELDS = ('new_morning_start', 'new_morning_end', 'new_afternoon_start', 'new_afternoon_end')
SCHEDULE_CANCELLATION_REASON = 'Doctor schedule cancelled'


def create_request(
    db: Session,
    doctor_id: int,
    request_type: ScheduleChangeType,
    schedule_date: date,
    reason: str,
    windows: dict | None = None,
    now: datetime | None = None,
) -> ScheduleChangeRequest:
    now = now or clinic_now()
    availability_store.require_doctor(db, doctor_id)
    if not (reason or '').strip():
        raise InvalidSlot('A reason is required.')
    if schedule_date < now.date():
        raise InvalidSlot('Schedule changes can only be requested for today or later.')

    cleaned = {}
    if request_type is ScheduleChangeType.RESCHEDULE:
        windows = windows or {}
        for field in WINDOW_FIELDS:
            if windows.get(field):
                try:
                    cleaned[field] = normalize_time_slot(windows[field])
                except ValueError as exc:
                    raise InvalidSlot(str(exc)) from exc
        if not cleaned:
            raise InvalidSlot('A reschedule request needs at least one new session time.')

    change = ScheduleChangeRequest(
        doctor_id=doctor_id,
        request_type=request_type.value,
        schedule_date=schedule_date,
        reason=reason.strip(),
        status=ScheduleChangeStatus.PENDING.value,
        admin_comment='',
        created_at=now,
        updated_at=now,
        **cleaned,
    )
    db.add(change)
    db.commit()
    db.refresh(change)
    logger.info(
        'Schedule %s request %s created by doctor %s for %s',
        request_type.value, change.id, doctor_id, schedule_date,
    )
    return change


def list_requests(
    db: Session,
    doctor_id: int | None = None,
    status: ScheduleChangeStatus | None = None,
) -> list[ScheduleChangeRequest]:
    query = db.query(ScheduleChangeRequest)
    if doctor_id is not None:
        query = query.filter(ScheduleChangeRequest.doctor_id == doctor_id)
    if status is not None:
        query = query.filter(ScheduleChangeRequest.status == status.value)
    return query.order_by(ScheduleChangeRequest.created_at.desc(), ScheduleChangeRequest.id.desc()).all()


def _load_pending(db: Session, request_id: int) -> ScheduleChangeRequest:
    change = db.query(ScheduleChangeRequest).filter(ScheduleChangeRequest.id == request_id).first()
    if change is None:
        raise NotFound('Schedule change request not found.')
    if change.status != ScheduleChangeStatus.PENDING.value:
        raise InvalidTransition(f'Schedule change request is already {change.status}.')
    return change


def reject_request(db: Session, request_id: int, admin_comment: str = '') -> ScheduleChangeRequest:
    change = _load_pending(db, request_id)
    change.status = ScheduleChangeStatus.REJECTED.value
    change.admin_comment = admin_comment or ''
    change.updated_at = clinic_now()
    db.commit()
    db.refresh(change)
    return change


def approve_request(
    db: Session,
    request_id: int,
    leave_processor: LeaveCascadeProcessor,
    admin_comment: str = '',
    now: datetime | None = None,
) -> tuple[ScheduleChangeRequest, CascadeResult]:
    """Apply a pending request.

    A cancel request closes the whole day and cancels its live appointments.
    A reschedule request rewrites the day's session windows; appointments
    already booked keep their slots.
    """
    now = now or clinic_now()
    change = _load_pending(db, request_id)

    result = CascadeResult(dates=[change.schedule_date])
    if change.request_type == ScheduleChangeType.RESCHEDULE.value:
        updates = {
            field.removeprefix('new_'): getattr(change, field)
            for field in WINDOW_FIELDS
            if getattr(change, field)
        }
        updates['notes'] = f'Rescheduled: {change.reason}'
        availability_store.update_day(db, change.doctor_id, change.schedule_date, updates)

    change.status = ScheduleChangeStatus.APPROVED.value
    change.admin_comment = admin_comment or ''
    change.updated_at = now
    db.commit()
    db.refresh(change)

    if change.request_type == ScheduleChangeType.CANCEL.value:
        result = leave_processor.block_and_cancel(
            db,
            change.doctor_id,
            change.schedule_date,
            BlockScope.FULL_DAY,
            availability_reason=change.reason,
            cancellation_reason=f'{SCHEDULE_CANCELLATION_REASON}: {change.reason}',
            now=now,
        )

    logger.info(
        'Schedule %s request %s approved for doctor %s on %s (%s appointments cancelled)',
        change.request_type, change.id, change.doctor_id, change.schedule_date, result.cancelled,
    )
    return change, result
