from datetime import date, datetime
from decimal import Decimal

import pytest

from clinic.core.errors import CapacityExceeded, CutoffViolation, InvalidTransition, PermissionDenied
from clinic.models.appointment import Actor, AppointmentStatus, PaymentStatus
from clinic.models.user import UserRole
from clinic.services import availability_store, slot_allocator
from clinic.services.lifecycle import ALLOWED_TRANSITIONS

BOOKING_DATE = date(2030, 1, 7)
DAY_BEFORE = datetime(2030, 1, 6, 10, 0)
TERMINAL_STATUSES = [
    AppointmentStatus.CONSULTED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.CANCELLED_BY_HOSPITAL,
    AppointmentStatus.MISSED,
]


def book(db, doctor, patient, time_slot='09:00', **fields):
    return slot_allocator.allocate(
        db,
        doctor_id=doctor.id,
        booking_date=fields.pop('booking_date', BOOKING_DATE),
        time_slot=time_slot,
        patient_id=patient.id,
        now=DAY_BEFORE,
        **fields,
    ).appointment


def morning_booked(db, doctor, on_date=BOOKING_DATE) -> int:
    return availability_store.get_record(db, doctor.id, on_date).morning_booked


def test_transition_table_covers_every_status() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(AppointmentStatus)
    for status in TERMINAL_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == {}


def test_patient_cancellation_releases_the_seat(db, doctor, patient, lifecycle, notifier, ledger) -> None:
    appointment = book(db, doctor, patient)

    cancelled = lifecycle.cancel_by_patient(db, appointment.id, patient.id, now=DAY_BEFORE)

    assert cancelled.status is AppointmentStatus.CANCELLED
    assert cancelled.cancelled_by == 'patient'
    assert cancelled.cancelled_at == DAY_BEFORE
    assert cancelled.payment_status is PaymentStatus.PENDING
    assert morning_booked(db, doctor) == 0
    assert ledger.entries == []
    assert [call[0] for call in notifier.calls] == ['send_cancellation']
    assert notifier.calls[0][2] is None


def test_patient_cancellation_inside_cutoff_is_rejected(db, doctor, patient, lifecycle, notifier) -> None:
    appointment = book(db, doctor, patient, '09:00')

    with pytest.raises(CutoffViolation) as exception_info:
        lifecycle.cancel_by_patient(db, appointment.id, patient.id, now=datetime(2030, 1, 7, 7, 30))

    assert exception_info.value.detail == 'Cancellations are only allowed up to 2 hours before the appointment.'
    assert lifecycle.load(db, appointment.id).status is AppointmentStatus.BOOKED
    assert morning_booked(db, doctor) == 1
    assert notifier.calls == []


def test_only_the_booking_patient_can_cancel(db, doctor, patient, make_user, lifecycle) -> None:
    appointment = book(db, doctor, patient)
    stranger = make_user()

    with pytest.raises(PermissionDenied):
        lifecycle.cancel_by_patient(db, appointment.id, stranger.id, now=DAY_BEFORE)


def test_cancelling_twice_reports_invalid_transition_and_changes_nothing(db, doctor, patient, lifecycle) -> None:
    appointment = book(db, doctor, patient, payment_status=PaymentStatus.PAID, payment_method='upi')
    first = lifecycle.cancel_by_hospital(db, appointment.id, reason='Clinic closed', now=DAY_BEFORE)
    snapshot = (first.status, first.payment_status, first.refund_amount, first.refunded_at, first.cancelled_at)

    with pytest.raises(InvalidTransition):
        lifecycle.cancel_by_hospital(db, appointment.id, reason='Again', now=datetime(2030, 1, 6, 12, 0))

    again = lifecycle.load(db, appointment.id)
    assert (again.status, again.payment_status, again.refund_amount, again.refunded_at, again.cancelled_at) == snapshot
    assert again.cancellation_reason == 'Clinic closed'
    assert morning_booked(db, doctor) == 0


def test_paid_hospital_cancellation_is_refunded_even_when_notifier_fails(
    db, doctor, patient, failing_lifecycle, ledger,
) -> None:
    appointment = book(db, doctor, patient, payment_status=PaymentStatus.PAID, payment_method='card')

    cancelled = failing_lifecycle.cancel_by_hospital(db, appointment.id, reason='Doctor emergency', now=DAY_BEFORE)

    assert cancelled.status is AppointmentStatus.CANCELLED_BY_HOSPITAL
    assert cancelled.payment_status is PaymentStatus.REFUNDED
    assert cancelled.refunded_at == DAY_BEFORE
    assert cancelled.refund_amount == Decimal('500.00')
    assert cancelled.refund_method == 'card'
    assert cancelled.refund_reason == 'Doctor emergency'
    assert ledger.entries == [(appointment.id, Decimal('500.00'), 'Doctor emergency')]


def test_consultation_flow_holds_seat_until_completed(db, doctor, patient, lifecycle, notifier) -> None:
    appointment = book(db, doctor, patient)

    started = lifecycle.start_consultation(db, appointment.id, doctor_id=doctor.id, now=datetime(2030, 1, 7, 9, 5))
    assert started.status is AppointmentStatus.IN_QUEUE
    assert started.consultation_started_at == datetime(2030, 1, 7, 9, 5)
    assert morning_booked(db, doctor) == 1

    completed = lifecycle.complete_consultation(db, appointment.id, doctor_id=doctor.id, now=datetime(2030, 1, 7, 9, 20))
    assert completed.status is AppointmentStatus.CONSULTED
    assert completed.consultation_completed_at == datetime(2030, 1, 7, 9, 20)
    assert morning_booked(db, doctor) == 0
    assert notifier.calls == []


def test_doctor_cannot_touch_another_doctors_appointment(db, doctor, patient, make_user, lifecycle) -> None:
    appointment = book(db, doctor, patient)
    other_doctor = make_user(UserRole.DOCTOR)

    with pytest.raises(PermissionDenied):
        lifecycle.start_consultation(db, appointment.id, doctor_id=other_doctor.id)


def test_patient_cannot_mark_consulted(db, doctor, patient, lifecycle) -> None:
    appointment = book(db, doctor, patient)

    with pytest.raises(PermissionDenied):
        lifecycle.transition(db, appointment, AppointmentStatus.CONSULTED, Actor.PATIENT, now=DAY_BEFORE)


def test_in_queue_appointment_cannot_go_back_in_queue(db, doctor, patient, lifecycle) -> None:
    appointment = book(db, doctor, patient)
    lifecycle.start_consultation(db, appointment.id, doctor_id=doctor.id)

    with pytest.raises(InvalidTransition):
        lifecycle.start_consultation(db, appointment.id, doctor_id=doctor.id)


@pytest.mark.parametrize('current', TERMINAL_STATUSES)
@pytest.mark.parametrize('target', list(AppointmentStatus))
def test_terminal_appointments_never_change(db, doctor, patient, lifecycle, current, target) -> None:
    appointment = book(db, doctor, patient)
    appointment.status = current
    db.commit()

    with pytest.raises(InvalidTransition):
        lifecycle.transition(db, appointment, target, Actor.SYSTEM, now=DAY_BEFORE)

    assert lifecycle.load(db, appointment.id).status is current


def test_patient_reschedule_to_another_day_draws_new_token(db, doctor, patient, make_user, lifecycle, notifier) -> None:
    book(db, doctor, make_user(), '09:00', booking_date=date(2030, 1, 8))
    appointment = book(db, doctor, patient, '09:00')
    original_token = appointment.token_number

    moved = lifecycle.reschedule(
        db, appointment.id, date(2030, 1, 8), '14:00', Actor.PATIENT, patient_id=patient.id, now=DAY_BEFORE,
    )

    assert moved.booking_date == date(2030, 1, 8)
    assert moved.time_slot == '14:00'
    assert moved.token_number == 2
    assert original_token == 1
    assert morning_booked(db, doctor) == 0
    assert availability_store.get_record(db, doctor.id, date(2030, 1, 8)).afternoon_booked == 1
    assert notifier.calls[-1][0] == 'send_reschedule'
    assert notifier.calls[-1][2:] == (BOOKING_DATE, '09:00')


def test_reschedule_within_a_session_keeps_token_and_counters(db, doctor, patient, lifecycle) -> None:
    appointment = book(db, doctor, patient, '09:00')

    moved = lifecycle.reschedule(db, appointment.id, BOOKING_DATE, '11:30', Actor.ADMIN, now=DAY_BEFORE)

    assert moved.time_slot == '11:30'
    assert moved.token_number == appointment.token_number
    assert morning_booked(db, doctor) == 1


def test_reschedule_into_full_session_leaves_appointment_in_place(db, doctor, patient, make_user, lifecycle) -> None:
    availability_store.get_or_create(db, doctor.id, BOOKING_DATE, now=DAY_BEFORE)
    availability_store.update_day(db, doctor.id, BOOKING_DATE, {'afternoon_max_patients': 1})
    book(db, doctor, make_user(), '14:00')
    appointment = book(db, doctor, patient, '09:00')

    with pytest.raises(CapacityExceeded):
        lifecycle.reschedule(db, appointment.id, BOOKING_DATE, '15:00', Actor.ADMIN, now=DAY_BEFORE)

    unchanged = lifecycle.load(db, appointment.id)
    assert unchanged.time_slot == '09:00'
    record = availability_store.get_record(db, doctor.id, BOOKING_DATE)
    assert (record.morning_booked, record.afternoon_booked) == (1, 1)


def test_doctor_cannot_reschedule(db, doctor, patient, lifecycle) -> None:
    appointment = book(db, doctor, patient)

    with pytest.raises(PermissionDenied):
        lifecycle.reschedule(db, appointment.id, BOOKING_DATE, '10:00', Actor.DOCTOR, now=DAY_BEFORE)
