"""Per-doctor, per-date availability records.

Reads that feed a capacity decision go through ``populate_existing`` so they
always reflect the last committed row instead of a stale identity-map copy.
"""

import logging
from collections import Counter
from datetime import date, datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic.core import config
from clinic.core.clock import clinic_now
from clinic.core.errors import InvalidSlot, NotFound
from clinic.models.appointment import ACTIVE_STATUSES, Appointment
from clinic.models.availability import BlockScope, DoctorAvailability, SessionName
from clinic.models.user import User, UserRole
from clinic.services.sessions import (
    classify_time_slot,
    default_session_window,
    format_time_slot,
    iterate_dates,
    normalize_time_slot,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    'is_available',
    'working_start',
    'working_end',
    'break_start',
    'break_end',
    'morning_available',
    'morning_start',
    'morning_end',
    'morning_max_patients',
    'afternoon_available',
    'afternoon_start',
    'afternoon_end',
    'afternoon_max_patients',
    'leave_reason',
    'notes',
}
TIME_FIELDS = {
    'working_start',
    'working_end',
    'break_start',
    'break_end',
    'morning_start',
    'morning_end',
    'afternoon_start',
    'afternoon_end',
}


def require_doctor(db: Session, doctor_id: int) -> User:
    doctor = db.query(User).filter(User.id == doctor_id).first()
    if doctor is None or doctor.role != UserRole.DOCTOR.value:
        raise NotFound('Doctor not found.')
    return doctor


def default_record(doctor_id: int, on_date: date, now: datetime | None = None) -> DoctorAvailability:
    now = now or clinic_now()
    morning_start, morning_end = default_session_window(SessionName.MORNING)
    afternoon_start, afternoon_end = default_session_window(SessionName.AFTERNOON)
    return DoctorAvailability(
        doctor_id=doctor_id,
        date=on_date,
        is_available=True,
        working_start=morning_start,
        working_end=afternoon_end,
        break_start=format_time_slot(config.BREAK_START),
        break_end=format_time_slot(config.BREAK_END),
        morning_available=True,
        morning_start=morning_start,
        morning_end=morning_end,
        morning_max_patients=config.DEFAULT_SESSION_CAPACITY,
        morning_booked=0,
        afternoon_available=True,
        afternoon_start=afternoon_start,
        afternoon_end=afternoon_end,
        afternoon_max_patients=config.DEFAULT_SESSION_CAPACITY,
        afternoon_booked=0,
        last_token_number=0,
        leave_reason='',
        notes='',
        created_at=now,
        updated_at=now,
    )


def last_issued_token(db: Session, doctor_id: int, on_date: date) -> int:
    """Highest token ever issued for the day, cancelled appointments included."""
    return db.query(func.max(Appointment.token_number)).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.booking_date == on_date,
    ).scalar() or 0


def get_record(db: Session, doctor_id: int, on_date: date) -> DoctorAvailability | None:
    return db.query(DoctorAvailability).populate_existing().filter(
        DoctorAvailability.doctor_id == doctor_id,
        DoctorAvailability.date == on_date,
    ).first()


def get_or_create(db: Session, doctor_id: int, on_date: date, now: datetime | None = None) -> DoctorAvailability:
    """Return the day's record, creating and committing a default one if absent."""
    record = get_record(db, doctor_id, on_date)
    if record is not None:
        return record

    record = default_record(doctor_id, on_date, now=now)
    record.last_token_number = last_issued_token(db, doctor_id, on_date)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the same (doctor, date) first.
        db.rollback()
        record = get_record(db, doctor_id, on_date)
        if record is None:
            raise
        return record

    db.refresh(record)
    logger.info('Created availability record for doctor %s on %s', doctor_id, on_date)
    return record


def set_unavailable(
    db: Session,
    doctor_id: int,
    on_date: date,
    scope: BlockScope,
    reason: str = '',
    commit: bool = True,
) -> DoctorAvailability:
    """Close the whole day or one session; the other session is untouched."""
    record = get_or_create(db, doctor_id, on_date)

    if scope is BlockScope.FULL_DAY:
        record.is_available = False
        record.morning_available = False
        record.afternoon_available = False
    elif scope is BlockScope.MORNING:
        record.morning_available = False
    else:
        record.afternoon_available = False

    if reason:
        record.leave_reason = reason
    record.updated_at = clinic_now()

    if commit:
        db.commit()
        db.refresh(record)
    else:
        db.flush()
    return record


def _validate_changes(changes: dict) -> dict:
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f'Unknown availability fields: {", ".join(sorted(unknown))}')

    cleaned = dict(changes)
    for field in TIME_FIELDS & set(cleaned):
        try:
            cleaned[field] = normalize_time_slot(cleaned[field])
        except ValueError as exc:
            raise InvalidSlot(str(exc)) from exc

    for field in ('morning_max_patients', 'afternoon_max_patients'):
        if field in cleaned and int(cleaned[field]) < 0:
            raise InvalidSlot('Session capacity cannot be negative.')
    return cleaned


def _check_windows(record: DoctorAvailability) -> None:
    if not record.morning_start < record.morning_end <= record.afternoon_start < record.afternoon_end:
        raise InvalidSlot('Session windows must be ordered morning before afternoon.')
    if record.working_start >= record.working_end:
        raise InvalidSlot('Working hours must end after they start.')


def _recount_sessions(db: Session, record: DoctorAvailability) -> None:
    """Re-place the day's live appointments under the record's current windows.

    Raises ``InvalidSlot`` when a live slot would fall outside both sessions or
    a session would hold more patients than its capacity; otherwise rewrites
    the booked counters to match.
    """
    counts: Counter = Counter()
    for slot in booked_slots(db, record.doctor_id, record.date):
        session = record.session_for_slot(slot['time'])
        if session is None:
            raise InvalidSlot(f'The booked slot {slot["time"]} would fall outside both sessions.')
        counts[session] += slot['patient_count']

    for session in SessionName:
        capacity = getattr(record, f'{session.value}_max_patients')
        if counts[session] > capacity:
            raise InvalidSlot(
                f'The {session.value} session would hold {counts[session]} booked patients '
                f'but allows only {capacity}.'
            )

    record.morning_booked = counts[SessionName.MORNING]
    record.afternoon_booked = counts[SessionName.AFTERNOON]


def update_day(db: Session, doctor_id: int, on_date: date, changes: dict) -> DoctorAvailability:
    cleaned = _validate_changes(changes)
    record = get_or_create(db, doctor_id, on_date)

    for field, value in cleaned.items():
        setattr(record, field, value)
    try:
        _check_windows(record)
        _recount_sessions(db, record)
    except InvalidSlot:
        db.rollback()
        raise

    record.updated_at = clinic_now()
    db.commit()
    db.refresh(record)
    return record


def bulk_upsert(
    db: Session,
    doctor_id: int,
    start_date: date,
    end_date: date,
    template: dict,
) -> list[DoctorAvailability]:
    """Create or update every record in [start_date, end_date] from ``template``."""
    if end_date < start_date:
        raise InvalidSlot('End date must not be before start date.')

    cleaned = _validate_changes(template)
    now = clinic_now()
    records: list[DoctorAvailability] = []

    for on_date in iterate_dates(start_date, end_date):
        record = get_record(db, doctor_id, on_date)
        if record is None:
            record = default_record(doctor_id, on_date, now=now)
            record.last_token_number = last_issued_token(db, doctor_id, on_date)
            db.add(record)
        for field, value in cleaned.items():
            setattr(record, field, value)
        try:
            _check_windows(record)
            _recount_sessions(db, record)
        except InvalidSlot:
            db.rollback()
            raise
        record.updated_at = now
        records.append(record)

    db.commit()
    for record in records:
        db.refresh(record)
    logger.info(
        'Upserted %s availability records for doctor %s (%s to %s)',
        len(records), doctor_id, start_date, end_date,
    )
    return records


def bulk_delete(db: Session, doctor_id: int, start_date: date, end_date: date) -> tuple[list[date], list[date]]:
    """Delete records in the range; dates still holding active appointments are skipped."""
    busy_dates = {
        row[0]
        for row in db.query(Appointment.booking_date).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.booking_date >= start_date,
            Appointment.booking_date <= end_date,
            Appointment.status.in_(ACTIVE_STATUSES),
        ).distinct().all()
    }

    records = db.query(DoctorAvailability).filter(
        DoctorAvailability.doctor_id == doctor_id,
        DoctorAvailability.date >= start_date,
        DoctorAvailability.date <= end_date,
    ).all()

    deleted: list[date] = []
    skipped: list[date] = []
    for record in records:
        if record.date in busy_dates:
            skipped.append(record.date)
            continue
        db.delete(record)
        deleted.append(record.date)

    db.commit()
    return sorted(deleted), sorted(skipped)


def release_capacity(db: Session, record_id: int, session: SessionName) -> None:
    """Give one seat back to ``session``; never drops the counter below zero."""
    table = DoctorAvailability.__table__
    booked_column = table.c[f'{session.value}_booked']
    db.execute(
        update(table)
        .where(table.c.id == record_id, booked_column > 0)
        .values({booked_column: booked_column - 1})
    )


def booked_slots(db: Session, doctor_id: int, on_date: date) -> list[dict]:
    rows = db.query(Appointment.time_slot, func.count(Appointment.id)).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.booking_date == on_date,
        Appointment.status.in_(ACTIVE_STATUSES),
    ).group_by(Appointment.time_slot).order_by(Appointment.time_slot.asc()).all()
    return [{'time': time_slot, 'patient_count': count} for time_slot, count in rows]


def resync_counters(db: Session, doctor_id: int, on_date: date) -> DoctorAvailability:
    """Recount active appointments per session and rewrite the stored counters."""
    record = get_record(db, doctor_id, on_date)
    if record is None:
        raise NotFound('Availability record not found.')

    counts: Counter = Counter()
    for slot in booked_slots(db, doctor_id, on_date):
        counts[classify_time_slot(slot['time'], record)] += slot['patient_count']

    max_token = last_issued_token(db, doctor_id, on_date)

    record.morning_booked = counts[SessionName.MORNING]
    record.afternoon_booked = counts[SessionName.AFTERNOON]
    record.last_token_number = max(record.last_token_number or 0, max_token)
    record.updated_at = clinic_now()
    db.commit()
    db.refresh(record)
    logger.info(
        'Resynced counters for doctor %s on %s: morning=%s afternoon=%s',
        doctor_id, on_date, record.morning_booked, record.afternoon_booked,
    )
    return record
