"""Doctor daily availability model definitions."""

import enum

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from clinic.database import Base


class SessionName(str, enum.Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"


class BlockScope(str, enum.Enum):
    FULL_DAY = "full_day"
    MORNING = "morning"
    AFTERNOON = "afternoon"


class DoctorAvailability(Base):
    """One doctor's working day: hours, two bookable sessions and their capacity.

    ``morning_booked`` and ``afternoon_booked`` hold the number of active
    (booked or in-queue) appointments per session. They are only changed by
    conditional UPDATE statements so that a reservation is a single
    compare-and-increment against this row.
    """
    __tablename__ = "doctor_availability"
    __table_args__ = (
        UniqueConstraint("doctor_id", "date", name="uq_availability_doctor_date"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    working_start = Column(String(5), default="09:00", nullable=False)
    working_end = Column(String(5), default="18:00", nullable=False)
    break_start = Column(String(5), default="13:00", nullable=False)
    break_end = Column(String(5), default="14:00", nullable=False)

    morning_available = Column(Boolean, default=True, nullable=False)
    morning_start = Column(String(5), default="09:00", nullable=False)
    morning_end = Column(String(5), default="13:00", nullable=False)
    morning_max_patients = Column(Integer, default=20, nullable=False)
    morning_booked = Column(Integer, default=0, nullable=False)

    afternoon_available = Column(Boolean, default=True, nullable=False)
    afternoon_start = Column(String(5), default="14:00", nullable=False)
    afternoon_end = Column(String(5), default="18:00", nullable=False)
    afternoon_max_patients = Column(Integer, default=20, nullable=False)
    afternoon_booked = Column(Integer, default=0, nullable=False)

    last_token_number = Column(Integer, default=0, nullable=False)
    leave_reason = Column(String, default="")
    notes = Column(String, default="")
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def session_is_open(self, session: SessionName) -> bool:
        return bool(self.is_available and getattr(self, f"{session.value}_available"))

    def session_window(self, session: SessionName) -> tuple[str, str]:
        return getattr(self, f"{session.value}_start"), getattr(self, f"{session.value}_end")

    def session_for_slot(self, time_slot: str) -> SessionName | None:
        """Return the session whose [start, end) window contains ``time_slot``."""
        for session in SessionName:
            start, end = self.session_window(session)
            if start <= time_slot < end:
                return session
        return None

    def as_record(self) -> dict:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date,
            "is_available": self.is_available,
            "working_hours": {"start": self.working_start, "end": self.working_end},
            "break_time": {"start": self.break_start, "end": self.break_end},
            "morning_session": {
                "available": self.morning_available,
                "start": self.morning_start,
                "end": self.morning_end,
                "max_patients": self.morning_max_patients,
            },
            "afternoon_session": {
                "available": self.afternoon_available,
                "start": self.afternoon_start,
                "end": self.afternoon_end,
                "max_patients": self.afternoon_max_patients,
            },
            "leave_reason": self.leave_reason or "",
            "notes": self.notes or "",
        }
