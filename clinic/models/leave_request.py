"""Leave request model definitions."""

import enum

from sqlalchemy import Column, Date, DateTime, Enum, ForeignKey, Index, Integer, String
from clinic.database import Base


class LeaveType(str, enum.Enum):
    FULL_DAY = "full_day"
    HALF_DAY = "half_day"


class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


def _enum_values(enum_class):
    return [member.value for member in enum_class]


class LeaveRequest(Base):
    """A doctor's request to be away for a date range or one half day."""
    __tablename__ = "leave_requests"
    __table_args__ = (
        Index("idx_leave_doctor_range", "doctor_id", "start_date", "end_date"),
        Index("idx_leave_doctor_status", "doctor_id", "status"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    leave_type = Column(
        Enum(LeaveType, native_enum=False, length=16, values_callable=_enum_values),
        default=LeaveType.FULL_DAY,
        nullable=False,
    )
    session = Column(String(16), nullable=True)  # morning/afternoon for half_day
    reason = Column(String, default="")
    status = Column(
        Enum(LeaveStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=LeaveStatus.PENDING,
        nullable=False,
    )
    admin_comment = Column(String, default="")
    decided_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
