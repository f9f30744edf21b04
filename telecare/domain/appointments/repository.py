"""Appointment repository - Database operations for appointments"""

from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload

from ...models import Appointment, User
from ...shared.constants import AppointmentStatus


class AppointmentWithParties(NamedTuple):
    appointment: Appointment
    patient: User
    doctor: User


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def create(db: Session, **fields) -> Appointment:
        """Insert and flush; the partial unique index rejects a taken doctor timeslot"""
        appointment = Appointment(**fields)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def get_by_id(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def get_with_parties(db: Session, appointment_id: int) -> Optional[AppointmentWithParties]:
        appointment = (
            db.query(Appointment)
            .options(joinedload(Appointment.patient), joinedload(Appointment.doctor))
            .filter(Appointment.id == appointment_id)
            .populate_existing()
            .first()
        )
        if not appointment:
            return None
        return AppointmentWithParties(appointment, appointment.patient, appointment.doctor)

    @staticmethod
    def find_conflicting(
        db: Session, doctor_id: int, when: datetime, exclude_id: Optional[int] = None
    ) -> Optional[Appointment]:
        """Active appointment holding this doctor's exact timestamp"""
        query = db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == when,
            Appointment.status.in_(AppointmentStatus.ACTIVE),
        )
        if exclude_id is not None:
            query = query.filter(Appointment.id != exclude_id)
        return query.first()

    @staticmethod
    def update_status(
        db: Session, appointment_id: int, expected_status: str, new_status: str, **fields
    ) -> bool:
        """Conditional update; False when the status changed since it was read"""
        result = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.status == expected_status)
            .values(status=new_status, **fields)
        )
        return result.rowcount == 1

    @staticmethod
    def update_fields(db: Session, appointment: Appointment, **fields) -> Appointment:
        for field, value in fields.items():
            setattr(appointment, field, value)
        db.flush()
        return appointment

    @staticmethod
    def list_appointments(
        db: Session,
        patient_id: Optional[int] = None,
        doctor_id: Optional[int] = None,
        status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Appointment]:
        query = db.query(Appointment)
        if patient_id is not None:
            query = query.filter(Appointment.patient_id == patient_id)
        if doctor_id is not None:
            query = query.filter(Appointment.doctor_id == doctor_id)
        if status:
            query = query.filter(Appointment.status == status)
        if date_from:
            query = query.filter(Appointment.appointment_date >= date_from)
        if date_to:
            query = query.filter(Appointment.appointment_date <= date_to)
        return query.order_by(Appointment.appointment_date.desc()).all()
