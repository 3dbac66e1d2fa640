"""Outbound notification collaborator.

Delivery (email, SMS, chat) lives outside this service. Calls are handed to a
dispatcher after the triggering status change is committed; a failing sender
is logged and never retried inline.
"""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from clinic.models.appointment import Appointment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppointmentNotice:
    """Detached copy of the appointment fields a sender needs."""

    appointment_id: int
    patient_id: int
    family_member_id: int | None
    doctor_id: int
    booking_date: date
    time_slot: str
    token_number: int
    status: str
    cancellation_reason: str | None

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> 'AppointmentNotice':
        return cls(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            family_member_id=appointment.family_member_id,
            doctor_id=appointment.doctor_id,
            booking_date=appointment.booking_date,
            time_slot=appointment.time_slot,
            token_number=appointment.token_number,
            status=appointment.status.value,
            cancellation_reason=appointment.cancellation_reason,
        )


@dataclass(frozen=True)
class RefundInfo:
    amount: Decimal
    reason: str
    method: str
    refunded_at: datetime


@dataclass(frozen=True)
class LeaveInfo:
    leave_request_id: int | None
    leave_type: str
    session: str | None
    reason: str


class Notifier:
    """Interface for patient/doctor communication about appointment changes."""

    def send_cancellation(self, appointment: AppointmentNotice, refund_info: RefundInfo | None) -> None:
        raise NotImplementedError

    def send_reschedule(self, appointment: AppointmentNotice, old_date: date, old_time: str) -> None:
        raise NotImplementedError

    def send_leave_cancellation(self, appointment: AppointmentNotice, leave_info: LeaveInfo) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier that only records what would have been sent."""

    def send_cancellation(self, appointment, refund_info):
        logger.info(
            'Cancellation notice for appointment %s (token %s, %s %s)%s',
            appointment.appointment_id,
            appointment.token_number,
            appointment.booking_date,
            appointment.time_slot,
            f', refund {refund_info.amount} via {refund_info.method}' if refund_info else '',
        )

    def send_reschedule(self, appointment, old_date, old_time):
        logger.info(
            'Reschedule notice for appointment %s: %s %s -> %s %s',
            appointment.appointment_id,
            old_date,
            old_time,
            appointment.booking_date,
            appointment.time_slot,
        )

    def send_leave_cancellation(self, appointment, leave_info):
        logger.info(
            'Leave cancellation notice for appointment %s (leave %s, %s)',
            appointment.appointment_id,
            leave_info.leave_request_id,
            leave_info.leave_type,
        )


class NotificationDispatcher:
    """Fire-and-forget front for a ``Notifier``.

    With an executor the call runs in the background; without one it runs
    inline. Either way exceptions are logged and swallowed here.
    """

    def __init__(self, notifier: Notifier, executor: Executor | None = None):
        self.notifier = notifier
        self.executor = executor

    def dispatch(self, method_name: str, *args) -> None:
        if self.executor is None:
            self._call(method_name, *args)
            return

        try:
            future = self.executor.submit(self._call, method_name, *args)
        except RuntimeError:
            logger.exception('Notifier executor rejected %s', method_name)
            return
        future.add_done_callback(_log_unexpected_failure)

    def _call(self, method_name: str, *args) -> None:
        try:
            getattr(self.notifier, method_name)(*args)
        except Exception:
            logger.exception('Notifier %s failed', method_name)

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False)


def _log_unexpected_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error('Notification task crashed: %s', exc)


def build_background_dispatcher(notifier: Notifier | None = None, max_workers: int = 4) -> NotificationDispatcher:
    return NotificationDispatcher(
        notifier or LoggingNotifier(),
        executor=ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='notifier'),
    )
