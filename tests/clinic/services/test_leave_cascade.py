from datetime import date, datetime

import pytest

from clinic.core.errors import DayUnavailable, InvalidSlot, InvalidTransition, LeaveConflict, PermissionDenied
from clinic.models.appointment import AppointmentStatus, PaymentStatus
from clinic.models.availability import SessionName
from clinic.models.leave_request import LeaveStatus, LeaveType
from clinic.models.user import UserRole
from clinic.services import availability_store, slot_allocator
from clinic.services.leave_cascade import LeaveCascadeProcessor
from clinic.services.lifecycle import AppointmentLifecycle
from clinic.services.notifier import NotificationDispatcher

BOOKING_DATE = date(2030, 1, 7)
NEXT_DAY = date(2030, 1, 8)
DAY_BEFORE = datetime(2030, 1, 6, 10, 0)


class BrokenLifecycle(AppointmentLifecycle):
    def __init__(self, notifier, ledger, broken_id: int):
        super().__init__(NotificationDispatcher(notifier), ledger)
        self.broken_id = broken_id

    def transition(self, db, appointment, target, actor, reason=None, now=None, leave_info=None):
        if appointment.id == self.broken_id:
            raise RuntimeError('deadlock detected')
        return super().transition(db, appointment, target, actor, reason=reason, now=now, leave_info=leave_info)


def book(db, doctor, patient, time_slot, booking_date=BOOKING_DATE, **fields):
    return slot_allocator.allocate(
        db,
        doctor_id=doctor.id,
        booking_date=booking_date,
        time_slot=time_slot,
        patient_id=patient.id,
        now=DAY_BEFORE,
        **fields,
    ).appointment


@pytest.fixture
def processor(lifecycle):
    return LeaveCascadeProcessor(lifecycle)


@pytest.fixture
def day(db, doctor, make_user):
    return {
        '09:00': book(db, doctor, make_user(), '09:00'),
        '11:00': book(db, doctor, make_user(), '11:00'),
        '14:00': book(db, doctor, make_user(), '14:00'),
        '16:00': book(db, doctor, make_user(), '16:00'),
    }


def statuses(lifecycle, db, appointments) -> dict:
    return {key: lifecycle.load(db, appointment.id).status for key, appointment in appointments.items()}


def test_morning_half_day_leave_only_cancels_morning(db, doctor, day, processor, lifecycle, notifier) -> None:
    leave = processor.submit(
        db, doctor.id, LeaveType.HALF_DAY, BOOKING_DATE,
        session=SessionName.MORNING, reason='Training', now=DAY_BEFORE,
    )

    result = processor.approve(db, leave.id, admin_comment='ok', now=DAY_BEFORE)

    assert result.cancelled_count == 2
    assert result.failed_count == 0
    assert result.leave_request.status is LeaveStatus.APPROVED
    assert statuses(lifecycle, db, day) == {
        '09:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
        '11:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
        '14:00': AppointmentStatus.BOOKED,
        '16:00': AppointmentStatus.BOOKED,
    }

    cancelled = lifecycle.load(db, day['09:00'].id)
    assert cancelled.cancelled_by == 'system'
    assert cancelled.cancellation_reason == 'Doctor leave approved: Training'

    record = availability_store.get_record(db, doctor.id, BOOKING_DATE)
    assert record.is_available is True
    assert record.morning_available is False
    assert record.afternoon_available is True
    assert record.leave_reason == 'On leave: Training'
    assert (record.morning_booked, record.afternoon_booked) == (0, 2)

    assert [call[0] for call in notifier.calls] == ['send_leave_cancellation', 'send_leave_cancellation']
    assert notifier.calls[0][2].leave_request_id == leave.id
    assert notifier.calls[0][2].session == 'morning'


def test_afternoon_half_day_leave_only_cancels_afternoon(db, doctor, day, processor, lifecycle) -> None:
    leave = processor.submit(
        db, doctor.id, LeaveType.HALF_DAY, BOOKING_DATE,
        session=SessionName.AFTERNOON, reason='School pickup', now=DAY_BEFORE,
    )

    result = processor.approve(db, leave.id, now=DAY_BEFORE)

    assert result.cancelled_count == 2
    assert statuses(lifecycle, db, day) == {
        '09:00': AppointmentStatus.BOOKED,
        '11:00': AppointmentStatus.BOOKED,
        '14:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
        '16:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
    }


def test_full_day_leave_covers_every_date_and_refunds(db, doctor, make_user, day, processor, lifecycle, ledger) -> None:
    paid = book(db, doctor, make_user(), '10:00', booking_date=NEXT_DAY, payment_status=PaymentStatus.PAID)
    leave = processor.submit(
        db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, end_date=NEXT_DAY, reason='Conference', now=DAY_BEFORE,
    )

    result = processor.approve(db, leave.id, now=DAY_BEFORE)

    assert result.cancelled_count == 5
    assert set(statuses(lifecycle, db, day).values()) == {AppointmentStatus.CANCELLED_BY_HOSPITAL}
    refunded = lifecycle.load(db, paid.id)
    assert refunded.payment_status is PaymentStatus.REFUNDED
    assert refunded.refunded_at == DAY_BEFORE
    assert [entry[0] for entry in ledger.entries] == [paid.id]

    for on_date in (BOOKING_DATE, NEXT_DAY):
        record = availability_store.get_record(db, doctor.id, on_date)
        assert record.is_available is False
        assert record.morning_available is False
        assert record.afternoon_available is False

    with pytest.raises(DayUnavailable):
        book(db, doctor, make_user(), '15:00', booking_date=NEXT_DAY)


def test_approving_twice_cancels_nothing_new(db, doctor, day, processor, lifecycle, notifier) -> None:
    leave = processor.submit(db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, reason='Sick', now=DAY_BEFORE)
    processor.approve(db, leave.id, now=DAY_BEFORE)
    first_cancelled_at = lifecycle.load(db, day['09:00'].id).cancelled_at
    sent = len(notifier.calls)

    again = processor.approve(db, leave.id, now=datetime(2030, 1, 6, 11, 0))

    assert again.cancelled_count == 0
    assert again.leave_request.status is LeaveStatus.APPROVED
    assert lifecycle.load(db, day['09:00'].id).cancelled_at == first_cancelled_at
    assert len(notifier.calls) == sent


def test_rejecting_a_leave_touches_no_appointment(db, doctor, day, processor, lifecycle) -> None:
    leave = processor.submit(db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, reason='Holiday', now=DAY_BEFORE)

    rejected = processor.reject(db, leave.id, admin_comment='Short staffed')

    assert rejected.status is LeaveStatus.REJECTED
    assert rejected.admin_comment == 'Short staffed'
    assert set(statuses(lifecycle, db, day).values()) == {AppointmentStatus.BOOKED}
    assert availability_store.get_record(db, doctor.id, BOOKING_DATE).is_available is True

    with pytest.raises(InvalidTransition):
        processor.approve(db, leave.id)


def test_half_day_leave_is_a_single_date(db, doctor, processor) -> None:
    leave = processor.submit(
        db, doctor.id, LeaveType.HALF_DAY, BOOKING_DATE, end_date=date(2030, 1, 10), now=DAY_BEFORE,
    )

    assert leave.end_date == BOOKING_DATE
    assert leave.session == 'morning'


def test_end_date_before_start_is_rejected(db, doctor, processor) -> None:
    with pytest.raises(InvalidSlot):
        processor.submit(db, doctor.id, LeaveType.FULL_DAY, NEXT_DAY, end_date=BOOKING_DATE, now=DAY_BEFORE)


def test_overlapping_leave_is_rejected_until_cancelled(db, doctor, processor) -> None:
    first = processor.submit(
        db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, end_date=date(2030, 1, 9), now=DAY_BEFORE,
    )

    with pytest.raises(LeaveConflict):
        processor.submit(db, doctor.id, LeaveType.HALF_DAY, NEXT_DAY, now=DAY_BEFORE)

    cancelled = processor.cancel(db, first.id, doctor.id)
    assert cancelled.status is LeaveStatus.CANCELLED
    assert cancelled.cancelled_by == 'doctor'

    second = processor.submit(db, doctor.id, LeaveType.HALF_DAY, NEXT_DAY, now=DAY_BEFORE)
    assert second.status is LeaveStatus.PENDING


def test_only_own_pending_leave_can_be_cancelled(db, doctor, make_user, processor) -> None:
    leave = processor.submit(db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, now=DAY_BEFORE)
    other_doctor = make_user(UserRole.DOCTOR)

    with pytest.raises(PermissionDenied):
        processor.cancel(db, leave.id, other_doctor.id)

    processor.approve(db, leave.id, now=DAY_BEFORE)
    with pytest.raises(InvalidTransition):
        processor.cancel(db, leave.id, doctor.id)


def test_list_requests_filters_by_doctor_and_status(db, doctor, make_user, processor) -> None:
    other_doctor = make_user(UserRole.DOCTOR)
    mine = processor.submit(db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, now=DAY_BEFORE)
    processor.submit(db, other_doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, now=DAY_BEFORE)
    processor.reject(db, mine.id)

    assert [leave.id for leave in processor.list_requests(db, doctor_id=doctor.id)] == [mine.id]
    assert processor.list_requests(db, doctor_id=doctor.id, status=LeaveStatus.PENDING) == []
    assert len(processor.list_requests(db)) == 2


def test_one_failed_cancellation_does_not_stop_the_cascade(db, doctor, day, notifier, ledger, lifecycle) -> None:
    processor = LeaveCascadeProcessor(BrokenLifecycle(notifier, ledger, broken_id=day['11:00'].id))
    leave = processor.submit(db, doctor.id, LeaveType.FULL_DAY, BOOKING_DATE, reason='Surgery', now=DAY_BEFORE)

    result = processor.approve(db, leave.id, now=DAY_BEFORE)

    assert result.cancelled_count == 3
    assert result.failed_count == 1
    assert processor.load(db, leave.id).status is LeaveStatus.APPROVED
    assert statuses(lifecycle, db, day) == {
        '09:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
        '11:00': AppointmentStatus.BOOKED,
        '14:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
        '16:00': AppointmentStatus.CANCELLED_BY_HOSPITAL,
    }
    assert availability_store.get_record(db, doctor.id, BOOKING_DATE).is_available is False
