"""Appointment status state machine.

``booked`` and ``in_queue`` are the only live states. Every status change is a
compare-and-set UPDATE guarded on the status the caller observed, so a second
concurrent change of the same appointment fails with ``InvalidTransition``
instead of applying twice. Refund fields are stamped in the same statement.
The refund ledger and notifier run only after the commit, and their failures
are logged without touching the committed row.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from clinic.core import config
from clinic.core.clock import clinic_now
from clinic.core.errors import (
    CapacityExceeded,
    CutoffViolation,
    DayUnavailable,
    InvalidTransition,
    NotFound,
    PermissionDenied,
)
from clinic.models.appointment import (
    ACTIVE_STATUSES,
    CANCELLATION_STATUSES,
    Actor,
    Appointment,
    AppointmentStatus,
    PaymentStatus,
)
from clinic.services import availability_store, slot_allocator
from clinic.services.notifier import AppointmentNotice, LeaveInfo, NotificationDispatcher, RefundInfo
from clinic.services.refund_ledger import RefundLedger
from clinic.services.sessions import classify_time_slot

logger = logging.getLogger(__name__)

_STAFF = frozenset({Actor.DOCTOR, Actor.ADMIN})
_LIVE_TRANSITIONS = {
    AppointmentStatus.IN_QUEUE: _STAFF,
    AppointmentStatus.CONSULTED: _STAFF,
    AppointmentStatus.CANCELLED: frozenset({Actor.PATIENT, Actor.SYSTEM}),
    AppointmentStatus.CANCELLED_BY_HOSPITAL: frozenset({Actor.ADMIN, Actor.SYSTEM}),
    AppointmentStatus.MISSED: frozenset({Actor.SYSTEM}),
}

# target status -> actors allowed to move an appointment there, per current status
ALLOWED_TRANSITIONS: dict[AppointmentStatus, dict[AppointmentStatus, frozenset]] = {
    AppointmentStatus.BOOKED: dict(_LIVE_TRANSITIONS),
    AppointmentStatus.IN_QUEUE: {
        target: actors for target, actors in _LIVE_TRANSITIONS.items() if target is not AppointmentStatus.IN_QUEUE
    },
    AppointmentStatus.CONSULTED: {},
    AppointmentStatus.CANCELLED: {},
    AppointmentStatus.CANCELLED_BY_HOSPITAL: {},
    AppointmentStatus.MISSED: {},
}

DEFAULT_REFUND_METHOD = 'original_payment_method'


class AppointmentLifecycle:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        refund_ledger: RefundLedger,
        cutoff_hours: float | None = None,
    ):
        self.dispatcher = dispatcher
        self.refund_ledger = refund_ledger
        self.cutoff = timedelta(hours=config.CANCELLATION_CUTOFF_HOURS if cutoff_hours is None else cutoff_hours)

    @staticmethod
    def load(db: Session, appointment_id: int) -> Appointment:
        appointment = db.query(Appointment).populate_existing().filter(Appointment.id == appointment_id).first()
        if appointment is None:
            raise NotFound('Appointment not found.')
        return appointment

    def check_cutoff(self, appointment: Appointment, now: datetime) -> None:
        if appointment.scheduled_at - now <= self.cutoff:
            hours = self.cutoff.total_seconds() / 3600
            raise CutoffViolation(
                f'Cancellations are only allowed up to {hours:g} hours before the appointment.'
            )

    def transition(
        self,
        db: Session,
        appointment: Appointment,
        target: AppointmentStatus,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
        leave_info: LeaveInfo | None = None,
    ) -> Appointment:
        now = now or clinic_now()
        current = appointment.status
        allowed = ALLOWED_TRANSITIONS[current]

        if target not in allowed:
            raise InvalidTransition(f'Cannot change a {current.value} appointment to {target.value}.')
        if actor not in allowed[target]:
            raise PermissionDenied(f'A {actor.value} cannot mark an appointment as {target.value}.')
        if target is AppointmentStatus.CANCELLED and actor is Actor.PATIENT:
            self.check_cutoff(appointment, now)

        values = {'status': target, 'updated_at': now}
        refund_info = None

        if target is AppointmentStatus.IN_QUEUE:
            values['consultation_started_at'] = now
        elif target is AppointmentStatus.CONSULTED:
            values['consultation_completed_at'] = now
        else:
            values.update(cancellation_reason=reason, cancelled_by=actor.value, cancelled_at=now)

        if target in CANCELLATION_STATUSES and appointment.payment_status is PaymentStatus.PAID:
            refund_info = RefundInfo(
                amount=appointment.consultation_fee if appointment.consultation_fee is not None else Decimal('0'),
                reason=reason or 'Appointment cancelled',
                method=appointment.payment_method or DEFAULT_REFUND_METHOD,
                refunded_at=now,
            )
            values.update(
                payment_status=PaymentStatus.REFUNDED,
                refund_amount=refund_info.amount,
                refund_reason=refund_info.reason,
                refund_method=refund_info.method,
                refunded_at=refund_info.refunded_at,
            )

        table = Appointment.__table__
        try:
            result = db.execute(
                update(table)
                .where(table.c.id == appointment.id, table.c.status == current)
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidTransition('The appointment was changed by another request; reload and retry.')

            if current in ACTIVE_STATUSES and target not in ACTIVE_STATUSES:
                self._release_seat(db, appointment)
            db.commit()
        except InvalidTransition:
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(appointment)
        logger.info(
            'Appointment %s: %s -> %s by %s%s',
            appointment.id, current.value, target.value, actor.value, f' ({reason})' if reason else '',
        )
        self._after_commit(appointment, target, refund_info, leave_info)
        return appointment

    def _release_seat(self, db: Session, appointment: Appointment) -> None:
        record = availability_store.get_record(db, appointment.doctor_id, appointment.booking_date)
        if record is None:
            return
        availability_store.release_capacity(db, record.id, classify_time_slot(appointment.time_slot, record))

    def _after_commit(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        refund_info: RefundInfo | None,
        leave_info: LeaveInfo | None,
    ) -> None:
        if target in ACTIVE_STATUSES or target is AppointmentStatus.CONSULTED:
            return

        notice = AppointmentNotice.from_appointment(appointment)
        if refund_info is not None:
            try:
                self.refund_ledger.record(notice, refund_info.amount, refund_info.reason)
            except Exception:
                logger.exception('Refund ledger failed for appointment %s', appointment.id)

        if leave_info is not None:
            self.dispatcher.dispatch('send_leave_cancellation', notice, leave_info)
        else:
            self.dispatcher.dispatch('send_cancellation', notice, refund_info)

    def cancel_by_patient(
        self,
        db: Session,
        appointment_id: int,
        patient_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Appointment:
        appointment = self.load(db, appointment_id)
        if appointment.patient_id != patient_id:
            raise PermissionDenied('Only the patient who booked this appointment can cancel it.')
        return self.transition(
            db,
            appointment,
            AppointmentStatus.CANCELLED,
            Actor.PATIENT,
            reason=reason or 'Cancelled by patient',
            now=now,
        )

    def cancel_by_hospital(
        self,
        db: Session,
        appointment_id: int,
        reason: str,
        actor: Actor = Actor.ADMIN,
        now: datetime | None = None,
        leave_info: LeaveInfo | None = None,
    ) -> Appointment:
        appointment = self.load(db, appointment_id)
        return self.transition(
            db,
            appointment,
            AppointmentStatus.CANCELLED_BY_HOSPITAL,
            actor,
            reason=reason,
            now=now,
            leave_info=leave_info,
        )

    def _staff_transition(
        self,
        db: Session,
        appointment_id: int,
        target: AppointmentStatus,
        actor: Actor,
        doctor_id: int | None,
        now: datetime | None,
    ) -> Appointment:
        appointment = self.load(db, appointment_id)
        if actor is Actor.DOCTOR and appointment.doctor_id != doctor_id:
            raise PermissionDenied('Unauthorized to access this appointment.')
        return self.transition(db, appointment, target, actor, now=now)

    def start_consultation(self, db, appointment_id, actor=Actor.DOCTOR, doctor_id=None, now=None) -> Appointment:
        return self._staff_transition(db, appointment_id, AppointmentStatus.IN_QUEUE, actor, doctor_id, now)

    def complete_consultation(self, db, appointment_id, actor=Actor.DOCTOR, doctor_id=None, now=None) -> Appointment:
        return self._staff_transition(db, appointment_id, AppointmentStatus.CONSULTED, actor, doctor_id, now)

    def reschedule(
        self,
        db: Session,
        appointment_id: int,
        new_date: date,
        new_time: str,
        actor: Actor,
        patient_id: int | None = None,
        now: datetime | None = None,
    ) -> Appointment:
        """Move a live appointment to another slot with the same doctor."""
        now = now or clinic_now()
        appointment = self.load(db, appointment_id)

        if actor not in (Actor.PATIENT, Actor.ADMIN):
            raise PermissionDenied('Only the patient or the clinic can reschedule an appointment.')
        if not appointment.is_active:
            raise InvalidTransition(f'Cannot reschedule a {appointment.status.value} appointment.')
        if actor is Actor.PATIENT:
            if appointment.patient_id != patient_id:
                raise PermissionDenied('Only the patient who booked this appointment can reschedule it.')
            self.check_cutoff(appointment, now)

        old_date, old_time, observed_status = appointment.booking_date, appointment.time_slot, appointment.status
        old_record = availability_store.get_record(db, appointment.doctor_id, old_date)
        old_session = classify_time_slot(old_time, old_record)

        record, session, new_time = slot_allocator.check_slot(db, appointment.doctor_id, new_date, new_time, now)
        if new_date == old_date and new_time == old_time:
            raise InvalidTransition('The appointment is already scheduled at this time.')
        slot_allocator.ensure_no_duplicate(
            db, appointment.patient_id, appointment.family_member_id, new_date, exclude_id=appointment.id,
        )

        values = {'booking_date': new_date, 'time_slot': new_time, 'status': AppointmentStatus.BOOKED, 'updated_at': now}
        table = Appointment.__table__
        try:
            if record.id != getattr(old_record, 'id', None) or session is not old_session:
                token_number = slot_allocator.reserve_seat(db, record.id, session)
                if token_number is None:
                    db.rollback()
                    slot_allocator.raise_reservation_failure(db, appointment.doctor_id, new_date, session)
                if old_record is not None:
                    availability_store.release_capacity(db, old_record.id, old_session)
                if new_date != old_date:
                    values['token_number'] = token_number

            result = db.execute(
                update(table)
                .where(table.c.id == appointment.id, table.c.status == observed_status)
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidTransition('The appointment was changed by another request; reload and retry.')

            db.refresh(appointment)
            appointment.queue_position = slot_allocator.compute_queue_position(db, appointment)
            db.commit()
        except (CapacityExceeded, DayUnavailable, InvalidTransition):
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(appointment)
        logger.info(
            'Appointment %s rescheduled from %s %s to %s %s by %s',
            appointment.id, old_date, old_time, new_date, new_time, actor.value,
        )
        self.dispatcher.dispatch('send_reschedule', AppointmentNotice.from_appointment(appointment), old_date, old_time)
        return appointment
