from datetime import date, datetime

import pytest

from clinic.core.errors import InvalidSlot, InvalidTransition, NotFound
from clinic.models.appointment import AppointmentStatus
from clinic.models.schedule_change_request import ScheduleChangeStatus, ScheduleChangeType
from clinic.models.user import UserRole
from clinic.services import availability_store, schedule_changes, slot_allocator
from clinic.services.leave_cascade import LeaveCascadeProcessor

BOOKING_DATE = date(2030, 1, 7)
DAY_BEFORE = datetime(2030, 1, 6, 10, 0)


@pytest.fixture
def processor(lifecycle):
    return LeaveCascadeProcessor(lifecycle)


def test_cancel_request_blocks_the_day_on_approval(db, doctor, patient, processor, lifecycle) -> None:
    appointment = slot_allocator.allocate(
        db, doctor_id=doctor.id, booking_date=BOOKING_DATE, time_slot='15:00', patient_id=patient.id, now=DAY_BEFORE,
    ).appointment
    change = schedule_changes.create_request(
        db, doctor.id, ScheduleChangeType.CANCEL, BOOKING_DATE, 'Family emergency', now=DAY_BEFORE,
    )
    assert change.status == ScheduleChangeStatus.PENDING.value

    approved, result = schedule_changes.approve_request(db, change.id, processor, now=DAY_BEFORE)

    assert approved.status == ScheduleChangeStatus.APPROVED.value
    assert result.cancelled == 1
    cancelled = lifecycle.load(db, appointment.id)
    assert cancelled.status is AppointmentStatus.CANCELLED_BY_HOSPITAL
    assert cancelled.cancellation_reason == 'Doctor schedule cancelled: Family emergency'
    assert availability_store.get_record(db, doctor.id, BOOKING_DATE).is_available is False


def test_reschedule_request_moves_session_windows(db, doctor, processor) -> None:
    change = schedule_changes.create_request(
        db,
        doctor.id,
        ScheduleChangeType.RESCHEDULE,
        BOOKING_DATE,
        'Ward round',
        windows={'new_morning_start': '10:00', 'new_afternoon_end': '19:00'},
        now=DAY_BEFORE,
    )

    schedule_changes.approve_request(db, change.id, processor, now=DAY_BEFORE)

    record = availability_store.get_record(db, doctor.id, BOOKING_DATE)
    assert record.session_window(record.session_for_slot('10:00')) == ('10:00', '13:00')
    assert record.afternoon_end == '19:00'
    assert record.notes == 'Rescheduled: Ward round'


def test_invalid_reschedule_stays_pending(db, doctor, processor) -> None:
    change = schedule_changes.create_request(
        db, doctor.id, ScheduleChangeType.RESCHEDULE, BOOKING_DATE, 'Swap',
        windows={'new_morning_end': '15:00'}, now=DAY_BEFORE,
    )

    with pytest.raises(InvalidSlot):
        schedule_changes.approve_request(db, change.id, processor, now=DAY_BEFORE)

    assert schedule_changes.list_requests(db, doctor_id=doctor.id)[0].status == ScheduleChangeStatus.PENDING.value


def test_reschedule_request_needs_new_times(db, doctor) -> None:
    with pytest.raises(InvalidSlot):
        schedule_changes.create_request(
            db, doctor.id, ScheduleChangeType.RESCHEDULE, BOOKING_DATE, 'Swap', now=DAY_BEFORE,
        )


def test_past_dates_are_rejected(db, doctor) -> None:
    with pytest.raises(InvalidSlot):
        schedule_changes.create_request(
            db, doctor.id, ScheduleChangeType.CANCEL, date(2030, 1, 5), 'Too late', now=DAY_BEFORE,
        )


def test_rejected_request_cannot_be_decided_again(db, doctor, processor) -> None:
    change = schedule_changes.create_request(
        db, doctor.id, ScheduleChangeType.CANCEL, BOOKING_DATE, 'Away', now=DAY_BEFORE,
    )

    rejected = schedule_changes.reject_request(db, change.id, admin_comment='Fully booked')

    assert rejected.status == ScheduleChangeStatus.REJECTED.value
    assert availability_store.get_record(db, doctor.id, BOOKING_DATE) is None
    with pytest.raises(InvalidTransition):
        schedule_changes.approve_request(db, change.id, processor)
    with pytest.raises(NotFound):
        schedule_changes.reject_request(db, change.id + 100)


def test_requests_are_scoped_by_doctor_and_newest_first(db, doctor, make_user) -> None:
    other_doctor = make_user(UserRole.DOCTOR)
    first = schedule_changes.create_request(
        db, doctor.id, ScheduleChangeType.CANCEL, BOOKING_DATE, 'One', now=DAY_BEFORE,
    )
    second = schedule_changes.create_request(
        db, doctor.id, ScheduleChangeType.CANCEL, date(2030, 1, 8), 'Two', now=datetime(2030, 1, 6, 11, 0),
    )
    schedule_changes.create_request(
        db, other_doctor.id, ScheduleChangeType.CANCEL, BOOKING_DATE, 'Other', now=DAY_BEFORE,
    )

    mine = schedule_changes.list_requests(db, doctor_id=doctor.id)

    assert [change.id for change in mine] == [second.id, first.id]
    assert len(schedule_changes.list_requests(db, status=ScheduleChangeStatus.PENDING)) == 3
