"""Appointment router - FastAPI endpoints for booking and lifecycle actions"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user, require_roles
from ...database import get_db
from ...models import User
from ...shared.constants import Role
from ...shared.timeutils import to_naive_utc
from .schemas import (
    AppointmentDetailResponse,
    AppointmentResponse,
    BookingRequest,
    CancelRequest,
    ConsultationNotes,
    RejectRequest,
    RescheduleRequest,
)
from .service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def get_appointment_service(db: Session = Depends(get_db)) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db)


@router.post("", response_model=AppointmentResponse, status_code=201)
async def book_appointment(
    body: BookingRequest,
    patient: User = Depends(require_roles(Role.PATIENT)),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Book a consultation; the referral code (if any) is priced in at booking time"""
    return service.book_appointment(patient, body)


@router.get("", response_model=list[AppointmentResponse])
async def list_appointments(
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.list_appointments(user, status, to_naive_utc(date_from), to_naive_utc(date_to))


@router.get("/{appointment_id}", response_model=AppointmentDetailResponse)
async def get_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    view = service.get_appointment(appointment_id, user)
    return {"appointment": view.appointment, "patient": view.patient, "doctor": view.doctor}


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.confirm(appointment_id, user)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: int,
    body: RescheduleRequest,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.reschedule(appointment_id, user, body.appointment_date)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.cancel(appointment_id, user, body.reason)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: int,
    body: Optional[ConsultationNotes] = None,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.complete(appointment_id, user, body)


@router.post("/{appointment_id}/reject", response_model=AppointmentResponse)
async def reject_appointment(
    appointment_id: int,
    body: RejectRequest,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.reject(appointment_id, user, body.reason)


@router.post("/{appointment_id}/no-show", response_model=AppointmentResponse)
async def mark_no_show(
    appointment_id: int,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.mark_no_show(appointment_id, user)


@router.post("/{appointment_id}/notes", response_model=AppointmentResponse)
async def add_consultation_notes(
    appointment_id: int,
    body: ConsultationNotes,
    user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.add_consultation_notes(appointment_id, user, body)
