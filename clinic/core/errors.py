"""Scheduling error taxonomy."""

from fastapi import HTTPException, status


class SchedulingError(Exception):
    """Base class for errors the scheduling engine reports to callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Scheduling request could not be completed.'

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Record not found.'


class CapacityExceeded(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This session is fully booked.'


class DayUnavailable(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The doctor is not available for this session.'


class InvalidTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This status change is not allowed.'


class CutoffViolation(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The cutoff for this action has passed.'


class InvalidSlot(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The requested time is not inside an open session.'


class DuplicateBooking(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'An appointment already exists for this patient on this date.'


class LeaveConflict(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'A leave request already exists for this date range.'


class PermissionDenied(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You are not allowed to perform this action.'


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
