"""User model definitions."""

import enum

from sqlalchemy import Column, Integer, Numeric, String
from clinic.database import Base


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class User(Base):
    """Represents a patient, doctor or clinic administrator."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String, default="")
    phone = Column(String, default="")
    role = Column(String, default=UserRole.PATIENT.value)  # patient/doctor/admin
    department = Column(String, nullable=True)  # doctors only
    consultation_fee = Column(Numeric(10, 2), nullable=True)  # doctors only
