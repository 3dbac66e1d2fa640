"""Leave requests and the cancellations an approval cascades into.

Approving a leave closes the covered sessions on every date of the range and
cancels the live appointments that fall in them as ``cancelled_by_hospital``.
Appointments already in a terminal state are skipped, so approving the same
leave again only re-applies the blocks and cancels nothing twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.orm import Session

from clinic.core.clock import clinic_now
from clinic.core.errors import InvalidSlot, InvalidTransition, LeaveConflict, NotFound, PermissionDenied
from clinic.models.appointment import ACTIVE_STATUSES, Actor, Appointment
from clinic.models.availability import BlockScope, SessionName
from clinic.models.leave_request import LeaveRequest, LeaveStatus, LeaveType
from clinic.services import availability_store
from clinic.services.lifecycle import AppointmentLifecycle
from clinic.services.notifier import LeaveInfo
from clinic.services.sessions import classify_time_slot, iterate_dates

logger = logging.getLogger(__name__)

LEAVE_CANCELLATION_REASON = 'Doctor leave approved'


@dataclass
class CascadeResult:
    cancelled: int = 0
    failed: int = 0
    dates: list[date] = field(default_factory=list)


@dataclass
class LeaveApprovalResult:
    leave_request: LeaveRequest
    cancelled_count: int
    failed_count: int


def leave_scope(leave: LeaveRequest) -> BlockScope:
    if leave.leave_type is LeaveType.FULL_DAY:
        return BlockScope.FULL_DAY
    return BlockScope(leave.session or SessionName.MORNING.value)


class LeaveCascadeProcessor:
    def __init__(self, lifecycle: AppointmentLifecycle):
        self.lifecycle = lifecycle

    @staticmethod
    def load(db: Session, leave_id: int) -> LeaveRequest:
        leave = db.query(LeaveRequest).populate_existing().filter(LeaveRequest.id == leave_id).first()
        if leave is None:
            raise NotFound('Leave request not found.')
        return leave

    def submit(
        self,
        db: Session,
        doctor_id: int,
        leave_type: LeaveType,
        start_date: date,
        end_date: date | None = None,
        session: SessionName | None = None,
        reason: str = '',
        now: datetime | None = None,
    ) -> LeaveRequest:
        now = now or clinic_now()
        availability_store.require_doctor(db, doctor_id)

        if leave_type is LeaveType.HALF_DAY:
            end_date = start_date
            session = session or SessionName.MORNING
        else:
            end_date = end_date or start_date
            session = None

        if end_date < start_date:
            raise InvalidSlot('End date must not be before start date.')

        overlapping = db.query(LeaveRequest).filter(
            LeaveRequest.doctor_id == doctor_id,
            LeaveRequest.status.in_([LeaveStatus.PENDING, LeaveStatus.APPROVED]),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        ).first()
        if overlapping is not None:
            raise LeaveConflict('You already have a leave request for this date range.')

        leave = LeaveRequest(
            doctor_id=doctor_id,
            leave_type=leave_type,
            start_date=start_date,
            end_date=end_date,
            session=session.value if session else None,
            reason=reason or '',
            status=LeaveStatus.PENDING,
            admin_comment='',
            created_at=now,
        )
        db.add(leave)
        db.commit()
        db.refresh(leave)
        logger.info(
            'Leave request %s submitted by doctor %s (%s, %s to %s)',
            leave.id, doctor_id, leave_type.value, start_date, end_date,
        )
        return leave

    def list_requests(
        self,
        db: Session,
        doctor_id: int | None = None,
        status: LeaveStatus | None = None,
    ) -> list[LeaveRequest]:
        query = db.query(LeaveRequest)
        if doctor_id is not None:
            query = query.filter(LeaveRequest.doctor_id == doctor_id)
        if status is not None:
            query = query.filter(LeaveRequest.status == status)
        return query.order_by(LeaveRequest.start_date.desc(), LeaveRequest.created_at.desc()).all()

    def cancel(self, db: Session, leave_id: int, doctor_id: int, now: datetime | None = None) -> LeaveRequest:
        leave = self.load(db, leave_id)
        if leave.doctor_id != doctor_id:
            raise PermissionDenied('Only the requesting doctor can cancel this leave request.')
        if leave.status is not LeaveStatus.PENDING:
            raise InvalidTransition(f'Cannot cancel a {leave.status.value} leave request.')

        leave.status = LeaveStatus.CANCELLED
        leave.cancelled_at = now or clinic_now()
        leave.cancelled_by = Actor.DOCTOR.value
        db.commit()
        db.refresh(leave)
        return leave

    def reject(self, db: Session, leave_id: int, admin_comment: str = '', now: datetime | None = None) -> LeaveRequest:
        leave = self.load(db, leave_id)
        if leave.status is not LeaveStatus.PENDING:
            raise InvalidTransition(f'Cannot reject a {leave.status.value} leave request.')

        leave.status = LeaveStatus.REJECTED
        leave.admin_comment = admin_comment or ''
        leave.decided_at = now or clinic_now()
        db.commit()
        db.refresh(leave)
        logger.info('Leave request %s rejected', leave.id)
        return leave

    def approve(
        self,
        db: Session,
        leave_id: int,
        admin_comment: str = '',
        now: datetime | None = None,
    ) -> LeaveApprovalResult:
        now = now or clinic_now()
        leave = self.load(db, leave_id)

        if leave.status in (LeaveStatus.REJECTED, LeaveStatus.CANCELLED):
            raise InvalidTransition(f'Cannot approve a {leave.status.value} leave request.')
        if leave.status is LeaveStatus.APPROVED:
            logger.info('Leave request %s is already approved; re-applying its blocks', leave.id)
        else:
            leave.status = LeaveStatus.APPROVED
            leave.decided_at = now
        if admin_comment:
            leave.admin_comment = admin_comment
        db.commit()
        db.refresh(leave)

        scope = leave_scope(leave)
        leave_info = LeaveInfo(
            leave_request_id=leave.id,
            leave_type=leave.leave_type.value,
            session=leave.session,
            reason=leave.reason or '',
        )
        availability_reason = f'On leave: {leave.reason}' if leave.reason else 'On leave'
        cancellation_reason = f'{LEAVE_CANCELLATION_REASON}: {leave.reason}' if leave.reason else LEAVE_CANCELLATION_REASON

        total = CascadeResult()
        for on_date in iterate_dates(leave.start_date, leave.end_date):
            result = self.block_and_cancel(
                db,
                leave.doctor_id,
                on_date,
                scope,
                availability_reason=availability_reason,
                cancellation_reason=cancellation_reason,
                leave_info=leave_info,
                now=now,
            )
            total.cancelled += result.cancelled
            total.failed += result.failed
            total.dates.append(on_date)

        logger.info(
            'Leave request %s approved: %s appointments cancelled across %s dates, %s failed',
            leave.id, total.cancelled, len(total.dates), total.failed,
        )
        return LeaveApprovalResult(leave_request=leave, cancelled_count=total.cancelled, failed_count=total.failed)

    def block_and_cancel(
        self,
        db: Session,
        doctor_id: int,
        on_date: date,
        scope: BlockScope,
        availability_reason: str,
        cancellation_reason: str,
        leave_info: LeaveInfo | None = None,
        now: datetime | None = None,
    ) -> CascadeResult:
        """Close ``scope`` on one date and cancel the live appointments inside it."""
        record = availability_store.set_unavailable(db, doctor_id, on_date, scope, reason=availability_reason)

        appointments = db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.booking_date == on_date,
            Appointment.status.in_(ACTIVE_STATUSES),
        ).order_by(Appointment.time_slot.asc(), Appointment.id.asc()).all()

        if scope is not BlockScope.FULL_DAY:
            blocked_session = SessionName(scope.value)
            appointments = [
                appointment for appointment in appointments
                if classify_time_slot(appointment.time_slot, record) is blocked_session
            ]

        result = CascadeResult(dates=[on_date])
        for appointment_id in [appointment.id for appointment in appointments]:
            try:
                self.lifecycle.cancel_by_hospital(
                    db,
                    appointment_id,
                    reason=cancellation_reason,
                    actor=Actor.SYSTEM,
                    now=now,
                    leave_info=leave_info,
                )
                result.cancelled += 1
            except InvalidTransition:
                logger.info('Appointment %s is no longer live, skipping', appointment_id)
            except Exception:
                db.rollback()
                result.failed += 1
                logger.exception('Failed to cancel appointment %s for doctor %s on %s', appointment_id, doctor_id, on_date)
        return result
