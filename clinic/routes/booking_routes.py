from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic.auth.dependencies import get_current_user, require_roles
from clinic.core.errors import PermissionDenied, SchedulingError, to_http_exception
from clinic.database import get_db
from clinic.models.appointment import ACTIVE_STATUSES, Actor, Appointment, AppointmentStatus, PaymentStatus
from clinic.models.user import User, UserRole
from clinic.routes.common import (
    AppointmentResponse,
    AvailabilityDayResponse,
    availability_day_response,
    database_unavailable,
    ensure_database_ready,
)
from clinic.services import availability_store, registry, slot_allocator
from clinic.services.lifecycle import AppointmentLifecycle

router = APIRouter(tags=['appointments'])

MAX_SYMPTOMS_LENGTH = 1000


class BookAppointmentRequest(BaseModel):
    doctor_id: int
    booking_date: date
    time_slot: str
    family_member_id: int | None = None
    symptoms: str = ''
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str | None = None

    @field_validator('symptoms')
    @classmethod
    def validate_symptoms(cls, value: str) -> str:
        normalized = (value or '').strip()
        if len(normalized) > MAX_SYMPTOMS_LENGTH:
            raise ValueError(f'Symptoms must be {MAX_SYMPTOMS_LENGTH} characters or fewer.')
        return normalized

    @field_validator('payment_status')
    @classmethod
    def validate_payment_status(cls, value: PaymentStatus) -> PaymentStatus:
        if value is PaymentStatus.REFUNDED:
            raise ValueError('A new appointment cannot start as refunded.')
        return value


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None


class RescheduleRequest(BaseModel):
    new_date: date
    new_time: str


class QueueStatusResponse(BaseModel):
    appointment_id: int
    token_number: int
    status: AppointmentStatus
    queue_position: int | None = None
    estimated_wait_minutes: int | None = None


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: BookAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
):
    ensure_database_ready()

    try:
        allocation = slot_allocator.allocate(
            db,
            doctor_id=data.doctor_id,
            booking_date=data.booking_date,
            time_slot=data.time_slot,
            patient_id=current_user.id,
            family_member_id=data.family_member_id,
            symptoms=data.symptoms,
            payment_status=data.payment_status,
            payment_method=data.payment_method,
        )
        return allocation.appointment
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    upcoming_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
):
    ensure_database_ready()

    try:
        query = db.query(Appointment).filter(Appointment.patient_id == current_user.id)
        if upcoming_only:
            query = query.filter(Appointment.status.in_(ACTIVE_STATUSES))
        return query.order_by(Appointment.booking_date.desc(), Appointment.time_slot.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_my_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    ensure_database_ready()

    try:
        return lifecycle.cancel_by_patient(db, appointment_id, current_user.id, reason=data.reason)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_my_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
    lifecycle: AppointmentLifecycle = Depends(registry.get_lifecycle),
):
    ensure_database_ready()

    try:
        return lifecycle.reschedule(
            db,
            appointment_id,
            data.new_date,
            data.new_time,
            Actor.PATIENT,
            patient_id=current_user.id,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{appointment_id}/queue', response_model=QueueStatusResponse)
def get_queue_status(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()

    try:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if appointment is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Appointment not found.',
            )

        can_view = (
            current_user.role == UserRole.ADMIN.value
            or (current_user.role == UserRole.PATIENT.value and appointment.patient_id == current_user.id)
            or (current_user.role == UserRole.DOCTOR.value and appointment.doctor_id == current_user.id)
        )
        if not can_view:
            raise PermissionDenied('Unauthorized to access this appointment.')

        return slot_allocator.queue_status(db, appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/doctors/{doctor_id}/days/{on_date}', response_model=AvailabilityDayResponse)
def get_doctor_day(
    doctor_id: int,
    on_date: date,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    del current_user
    ensure_database_ready()

    try:
        availability_store.require_doctor(db, doctor_id)
        record = availability_store.get_record(db, doctor_id, on_date)
        if record is None:
            record = availability_store.default_record(doctor_id, on_date)
        return availability_day_response(record, availability_store.booked_slots(db, doctor_id, on_date))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
