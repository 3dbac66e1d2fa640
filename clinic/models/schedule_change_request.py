"""Schedule change request model definitions."""

import enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String
from clinic.database import Base


class ScheduleChangeType(str, enum.Enum):
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"


class ScheduleChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScheduleChangeRequest(Base):
    """A doctor's request to cancel or move the sessions of one working day."""
    __tablename__ = "schedule_change_requests"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    request_type = Column(String(16), nullable=False)
    schedule_date = Column(Date, nullable=False)
    reason = Column(String, nullable=False)
    # Replacement session windows for reschedule requests, "HH:MM" strings.
    new_morning_start = Column(String(5), nullable=True)
    new_morning_end = Column(String(5), nullable=True)
    new_afternoon_start = Column(String(5), nullable=True)
    new_afternoon_end = Column(String(5), nullable=True)
    status = Column(String(16), default=ScheduleChangeStatus.PENDING.value, nullable=False)
    admin_comment = Column(String, default="")
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)
