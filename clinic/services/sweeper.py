"""Automatic no-show cancellation.

A sweep has two passes:

- same-day: live appointments dated today whose session has reached its fixed
  end boundary (13:00 for morning, 18:00 for afternoon by default);
- stale: live appointments dated before today, regardless of session.

Each appointment is handled in its own transaction so one failure does not
stop the batch. Overlapping invocations are skipped, not queued.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinic.core import config
from clinic.core.clock import clinic_now
from clinic.core.errors import InvalidTransition
from clinic.database import SessionLocal
from clinic.models.appointment import ACTIVE_STATUSES, Actor, Appointment, AppointmentStatus
from clinic.services.lifecycle import AppointmentLifecycle
from clinic.services.sessions import session_end_boundary

logger = logging.getLogger(__name__)

SAME_DAY_REASON = 'no-show: automatic'
STALE_REASON = 'no-show: date passed'


@dataclass
class SweepResult:
    same_day: int = 0
    stale: int = 0
    failed: int = 0
    skipped: bool = False

    @property
    def total(self) -> int:
        return self.same_day + self.stale


class CancellationSweeper:
    def __init__(
        self,
        lifecycle: AppointmentLifecycle,
        session_factory=SessionLocal,
        no_show_status: str | None = None,
    ):
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.no_show_status = AppointmentStatus(no_show_status or config.SWEEP_NO_SHOW_STATUS)
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def run(self, now: datetime | None = None) -> SweepResult:
        if not self._lock.acquire(blocking=False):
            logger.info('Cancellation sweep already running, skipping')
            return SweepResult(skipped=True)

        try:
            now = now or clinic_now()
            logger.info('Starting cancellation sweep at %s', now.isoformat(timespec='minutes'))
            result = SweepResult()
            db = self.session_factory()
            try:
                self._same_day_pass(db, now, result)
                self._stale_pass(db, now, result)
            finally:
                db.close()

            logger.info(
                'Cancellation sweep finished: %s cancelled (%s today, %s from previous days), %s failed',
                result.total, result.same_day, result.stale, result.failed,
            )
            return result
        finally:
            self._lock.release()

    def _same_day_pass(self, db: Session, now: datetime, result: SweepResult) -> None:
        candidates = db.query(Appointment.id, Appointment.time_slot).filter(
            Appointment.booking_date == now.date(),
            Appointment.status.in_(ACTIVE_STATUSES),
        ).order_by(Appointment.time_slot.asc(), Appointment.id.asc()).all()

        due_ids = []
        for appointment_id, time_slot in candidates:
            try:
                boundary = session_end_boundary(time_slot)
            except ValueError:
                logger.warning('Appointment %s has an unreadable time slot %r', appointment_id, time_slot)
                continue
            if boundary is not None and now.time() >= boundary:
                due_ids.append(appointment_id)

        logger.info('Same-day pass: %s of %s live appointments are past session end', len(due_ids), len(candidates))
        for appointment_id in due_ids:
            if self._cancel_one(db, appointment_id, SAME_DAY_REASON, now, result):
                result.same_day += 1

    def _stale_pass(self, db: Session, now: datetime, result: SweepResult) -> None:
        stale_ids = [
            row[0]
            for row in db.query(Appointment.id).filter(
                Appointment.booking_date < now.date(),
                Appointment.status.in_(ACTIVE_STATUSES),
            ).order_by(Appointment.booking_date.asc(), Appointment.id.asc()).all()
        ]

        logger.info('Stale pass: %s live appointments from previous days', len(stale_ids))
        for appointment_id in stale_ids:
            if self._cancel_one(db, appointment_id, STALE_REASON, now, result):
                result.stale += 1

    def _cancel_one(self, db: Session, appointment_id: int, reason: str, now: datetime, result: SweepResult) -> bool:
        try:
            appointment = self.lifecycle.load(db, appointment_id)
            if not appointment.is_active:
                return False
            self.lifecycle.transition(db, appointment, self.no_show_status, Actor.SYSTEM, reason=reason, now=now)
            return True
        except InvalidTransition:
            logger.info('Appointment %s changed during the sweep, leaving it', appointment_id)
            return False
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception('Failed to auto-cancel appointment %s', appointment_id)
            return False


def cancellation_stats(db: Session, on_date: date) -> dict:
    """Automatic cancellations stamped on ``on_date``, split by sweep pass."""
    day_start = datetime.combine(on_date, time.min)
    rows = db.query(Appointment.cancellation_reason, func.count(Appointment.id)).filter(
        Appointment.cancelled_by == Actor.SYSTEM.value,
        Appointment.cancellation_reason.in_([SAME_DAY_REASON, STALE_REASON]),
        Appointment.cancelled_at >= day_start,
        Appointment.cancelled_at < day_start + timedelta(days=1),
    ).group_by(Appointment.cancellation_reason).all()
    counts = dict(rows)

    still_open = db.query(func.count(Appointment.id)).filter(
        Appointment.booking_date == on_date,
        Appointment.status.in_(ACTIVE_STATUSES),
    ).scalar() or 0

    return {
        'date': on_date,
        'same_day': counts.get(SAME_DAY_REASON, 0),
        'stale': counts.get(STALE_REASON, 0),
        'still_open': still_open,
    }
