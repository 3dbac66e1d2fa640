from datetime import date, datetime, time, timedelta

from clinic.core import config
from clinic.models.availability import DoctorAvailability, SessionName


TIME_SLOT_FORMAT = '%H:%M'


def parse_time_slot(value: str) -> time:
    """Parse ``HH:MM`` (also accepts ``H:MM``) into a ``time``."""
    try:
        return datetime.strptime(value.strip(), TIME_SLOT_FORMAT).time()
    except (AttributeError, ValueError) as exc:
        raise ValueError(f'Invalid time slot {value!r}; expected HH:MM.') from exc


def format_time_slot(value: time) -> str:
    return value.strftime(TIME_SLOT_FORMAT)


def normalize_time_slot(value: str) -> str:
    return format_time_slot(parse_time_slot(value))


def default_session_window(session: SessionName) -> tuple[str, str]:
    if session is SessionName.MORNING:
        return format_time_slot(config.MORNING_SESSION_START), format_time_slot(config.MORNING_SESSION_END)
    return format_time_slot(config.AFTERNOON_SESSION_START), format_time_slot(config.AFTERNOON_SESSION_END)


def classify_time_slot(time_slot: str, record: DoctorAvailability | None = None) -> SessionName:
    """Session a slot belongs to, preferring the day's own session windows.

    Slots outside both windows fall on the side of the afternoon start.
    """
    if record is not None:
        session = record.session_for_slot(time_slot)
        if session is not None:
            return session
    afternoon_start = format_time_slot(config.AFTERNOON_SESSION_START)
    return SessionName.MORNING if time_slot < afternoon_start else SessionName.AFTERNOON


def session_end_boundary(time_slot: str) -> time | None:
    """Fixed end of the session that owns ``time_slot``, used by the sweeper.

    Returns None for slots after the last session, which are left to the
    stale pass on the following day.
    """
    slot = parse_time_slot(time_slot)
    if slot < config.MORNING_SESSION_END:
        return config.MORNING_SESSION_END
    if slot < config.AFTERNOON_SESSION_END:
        return config.AFTERNOON_SESSION_END
    return None


def session_booking_cutoff(booking_date: date, session_start: str) -> datetime:
    """Latest moment a session on ``booking_date`` accepts new bookings."""
    start = datetime.combine(booking_date, parse_time_slot(session_start))
    return start - timedelta(minutes=config.BOOKING_LEAD_MINUTES)


def iterate_dates(start_date: date, end_date: date):
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)
