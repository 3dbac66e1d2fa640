"""Capacity-safe booking of one appointment into a doctor's session.

The seat reservation is a single conditional UPDATE on the availability row:
it increments the session counter and the day's token sequence only while the
session is open and below ``max_patients``. Concurrent callers are serialized
by the database's row write lock, so at most ``max_patients`` of them can win.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from clinic.core import config
from clinic.core.clock import clinic_now
from clinic.core.errors import (
    CapacityExceeded,
    CutoffViolation,
    DayUnavailable,
    DuplicateBooking,
    InvalidSlot,
    NotFound,
)
from clinic.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus, PaymentStatus
from clinic.models.availability import DoctorAvailability, SessionName
from clinic.services import availability_store
from clinic.services.sessions import normalize_time_slot, parse_time_slot, session_booking_cutoff

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    appointment: Appointment
    token_number: int
    queue_position: int


def _unavailable_detail(record: DoctorAvailability, session: SessionName) -> str:
    return (
        f'Doctor is not available for the {session.value} session on {record.date}. '
        f'Reason: {record.leave_reason or "Not specified"}'
    )


def check_slot(
    db: Session,
    doctor_id: int,
    booking_date: date,
    time_slot: str,
    now: datetime,
) -> tuple[DoctorAvailability, SessionName, str]:
    """Validate a requested slot and return the day's record, its session and the normalized slot."""
    try:
        time_slot = normalize_time_slot(time_slot)
    except ValueError as exc:
        raise InvalidSlot(str(exc)) from exc

    record = availability_store.get_or_create(db, doctor_id, booking_date, now=now)
    session = record.session_for_slot(time_slot)
    if session is None:
        morning = '-'.join(record.session_window(SessionName.MORNING))
        afternoon = '-'.join(record.session_window(SessionName.AFTERNOON))
        raise InvalidSlot(f'{time_slot} is outside the morning ({morning}) and afternoon ({afternoon}) sessions.')

    if not record.session_is_open(session):
        raise DayUnavailable(_unavailable_detail(record, session))

    if datetime.combine(booking_date, parse_time_slot(time_slot)) <= now:
        raise InvalidSlot('Appointments must be scheduled in the future.')

    session_start, _ = record.session_window(session)
    cutoff = session_booking_cutoff(booking_date, session_start)
    if booking_date == now.date() and now >= cutoff:
        raise CutoffViolation(
            f'{session.value.capitalize()} session booking has closed. '
            f'Booking for this session closes at {cutoff.strftime("%H:%M")}.'
        )

    return record, session, time_slot


def reserve_seat(db: Session, record_id: int, session: SessionName) -> int | None:
    """Atomically take one seat in ``session`` and draw the next token number.

    Returns the token number, or None when the session is closed or full.
    Must run inside the caller's transaction; the caller commits.
    """
    table = DoctorAvailability.__table__
    available_column = table.c[f'{session.value}_available']
    booked_column = table.c[f'{session.value}_booked']
    capacity_column = table.c[f'{session.value}_max_patients']

    statement = (
        update(table)
        .where(
            table.c.id == record_id,
            table.c.is_available.is_(True),
            available_column.is_(True),
            booked_column < capacity_column,
        )
        .values({
            booked_column: booked_column + 1,
            table.c.last_token_number: table.c.last_token_number + 1,
        })
        .returning(table.c.last_token_number)
    )
    return db.execute(statement).scalar_one_or_none()


def ensure_no_duplicate(
    db: Session,
    patient_id: int,
    family_member_id: int | None,
    booking_date: date,
    exclude_id: int | None = None,
) -> None:
    query = db.query(Appointment.id).filter(
        Appointment.patient_id == patient_id,
        Appointment.booking_date == booking_date,
        Appointment.status.in_(ACTIVE_STATUSES),
    )
    if family_member_id is None:
        query = query.filter(Appointment.family_member_id.is_(None))
    else:
        query = query.filter(Appointment.family_member_id == family_member_id)
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)

    if query.first() is not None:
        who = 'This family member' if family_member_id is not None else 'You'
        raise DuplicateBooking(f'{who} already have an appointment on {booking_date}.')


def compute_queue_position(db: Session, appointment: Appointment) -> int:
    """Number of unserved appointments ahead of ``appointment`` on its doctor's day."""
    ahead = or_(
        Appointment.time_slot < appointment.time_slot,
        and_(
            Appointment.time_slot == appointment.time_slot,
            or_(
                Appointment.created_at < appointment.created_at,
                and_(Appointment.created_at == appointment.created_at, Appointment.id < appointment.id),
            ),
        ),
    )
    return db.query(func.count(Appointment.id)).filter(
        Appointment.doctor_id == appointment.doctor_id,
        Appointment.booking_date == appointment.booking_date,
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.id != appointment.id,
        ahead,
    ).scalar() or 0


def raise_reservation_failure(db: Session, doctor_id: int, booking_date: date, session: SessionName) -> None:
    record = availability_store.get_record(db, doctor_id, booking_date)
    if record is None or not record.session_is_open(session):
        raise DayUnavailable(_unavailable_detail(record, session) if record else None)
    max_patients = getattr(record, f'{session.value}_max_patients')
    raise CapacityExceeded(
        f'The {session.value} session on {booking_date} is fully booked ({max_patients} patients).'
    )


def allocate(
    db: Session,
    *,
    doctor_id: int,
    booking_date: date,
    time_slot: str,
    patient_id: int,
    family_member_id: int | None = None,
    symptoms: str = '',
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    payment_method: str | None = None,
    now: datetime | None = None,
) -> Allocation:
    now = now or clinic_now()
    doctor = availability_store.require_doctor(db, doctor_id)
    record, session, time_slot = check_slot(db, doctor_id, booking_date, time_slot, now)
    ensure_no_duplicate(db, patient_id, family_member_id, booking_date)

    try:
        token_number = reserve_seat(db, record.id, session)
        if token_number is None:
            db.rollback()
            raise_reservation_failure(db, doctor_id, booking_date, session)

        appointment = Appointment(
            patient_id=patient_id,
            family_member_id=family_member_id,
            doctor_id=doctor_id,
            department=doctor.department or '',
            symptoms=symptoms,
            booking_date=booking_date,
            time_slot=time_slot,
            token_number=token_number,
            status=AppointmentStatus.BOOKED,
            payment_status=payment_status,
            payment_method=payment_method,
            consultation_fee=doctor.consultation_fee,
            created_at=now,
            updated_at=now,
        )
        db.add(appointment)
        db.flush()
        appointment.queue_position = compute_queue_position(db, appointment)
        db.commit()
    except (CapacityExceeded, DayUnavailable):
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info(
        'Booked token %s for doctor %s on %s at %s (%s session, queue position %s)',
        token_number, doctor_id, booking_date, time_slot, session.value, appointment.queue_position,
    )
    return Allocation(appointment=appointment, token_number=token_number, queue_position=appointment.queue_position)


def queue_status(db: Session, appointment_id: int) -> dict:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise NotFound('Appointment not found.')

    position = compute_queue_position(db, appointment) if appointment.is_active else None
    return {
        'appointment_id': appointment.id,
        'token_number': appointment.token_number,
        'status': appointment.status.value,
        'queue_position': position,
        'estimated_wait_minutes': position * config.AVG_CONSULTATION_MINUTES if position is not None else None,
    }
