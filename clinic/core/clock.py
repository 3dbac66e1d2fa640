"""Wall-clock helpers pinned to the clinic time zone.

Every cutoff and session-end comparison goes through these so that booking,
cancellation and the sweeper agree on what "now" is.
"""

from datetime import date, datetime

import pytz

from clinic.core import config


def clinic_timezone():
    return pytz.timezone(config.CLINIC_TIMEZONE)


def clinic_now() -> datetime:
    """Current clinic-local time as a naive datetime."""
    return datetime.now(clinic_timezone()).replace(tzinfo=None)


def clinic_today() -> date:
    return clinic_now().date()
