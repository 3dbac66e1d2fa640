"""Refund bookkeeping collaborator.

The payment side is implemented elsewhere; the lifecycle calls ``record``
synchronously after a paid appointment has been cancelled and committed.
"""

import logging
from decimal import Decimal

from clinic.services.notifier import AppointmentNotice

logger = logging.getLogger(__name__)


class RefundLedger:
    def record(self, appointment: AppointmentNotice, amount: Decimal, reason: str) -> None:
        raise NotImplementedError


class LoggingRefundLedger(RefundLedger):
    def record(self, appointment, amount, reason):
        logger.info(
            'Refund of %s recorded for appointment %s: %s',
            amount,
            appointment.appointment_id,
            reason,
        )
