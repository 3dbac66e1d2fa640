from datetime import date, datetime, time

import pytest

from clinic.models.availability import SessionName
from clinic.services.sessions import (
    classify_time_slot,
    iterate_dates,
    normalize_time_slot,
    session_booking_cutoff,
    session_end_boundary,
)


def test_normalize_pads_hours_and_rejects_garbage() -> None:
    assert normalize_time_slot(' 9:05 ') == '09:05'

    with pytest.raises(ValueError):
        normalize_time_slot('nine')
    with pytest.raises(ValueError):
        normalize_time_slot('25:00')


@pytest.mark.parametrize(
    ('time_slot', 'expected'),
    [
        ('09:00', SessionName.MORNING),
        ('12:59', SessionName.MORNING),
        ('13:30', SessionName.AFTERNOON),
        ('17:45', SessionName.AFTERNOON),
    ],
)
def test_classify_without_record_uses_default_windows(time_slot: str, expected: SessionName) -> None:
    assert classify_time_slot(time_slot) is expected


@pytest.mark.parametrize(
    ('time_slot', 'boundary'),
    [('09:00', time(13, 0)), ('12:45', time(13, 0)), ('14:00', time(18, 0)), ('18:30', None)],
)
def test_session_end_boundary(time_slot: str, boundary) -> None:
    assert session_end_boundary(time_slot) == boundary


def test_booking_cutoff_and_date_ranges() -> None:
    assert session_booking_cutoff(date(2030, 1, 7), '14:00') <= datetime(2030, 1, 7, 14, 0)
    assert list(iterate_dates(date(2030, 1, 30), date(2030, 2, 1))) == [
        date(2030, 1, 30),
        date(2030, 1, 31),
        date(2030, 2, 1),
    ]
    assert list(iterate_dates(date(2030, 1, 2), date(2030, 1, 1))) == []
