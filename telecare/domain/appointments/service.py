"""Appointment service - booking and lifecycle transitions"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_CONSULTATION_FEE
from ...errors import (
    ConcurrentModificationError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflictError,
    ValidationFailedError,
)
from ...models import Appointment, User
from ...shared.constants import AppointmentStatus, PaymentStatus, Role
from ...shared.retry import retry_on_conflict
from ...shared.timeutils import utcnow
from ..directory.repository import UserRepository
from ..referrals.service import ReferralService
from .lifecycle import REVERSING_ACTIONS, Action, Actor, AppointmentState, plan_transition
from .pricing import price
from .repository import AppointmentRepository, AppointmentWithParties
from .schemas import BookingRequest, ConsultationNotes

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "Doctor already has an appointment at this time"


class AppointmentService:
    """Service layer for appointment business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = AppointmentRepository()
        self.users = UserRepository()
        self.referrals = ReferralService(db)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_appointment(self, appointment_id: int, user: User) -> AppointmentWithParties:
        """Appointment with its patient and doctor, if the user may see it"""
        view = self.repo.get_with_parties(self.db, appointment_id)
        if not view:
            raise NotFoundError("Appointment not found")

        if user.role == Role.ADMIN:
            return view
        if user.role == Role.PATIENT and view.appointment.patient_id == user.id:
            return view
        if user.role == Role.DOCTOR and view.appointment.doctor_id == user.id:
            return view
        raise PermissionDeniedError("You do not have access to this appointment")

    def list_appointments(
        self,
        user: User,
        status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Appointment]:
        filters = {"status": status, "date_from": date_from, "date_to": date_to}
        if user.role == Role.PATIENT:
            return self.repo.list_appointments(self.db, patient_id=user.id, **filters)
        if user.role == Role.DOCTOR:
            return self.repo.list_appointments(self.db, doctor_id=user.id, **filters)
        if user.role == Role.ADMIN:
            return self.repo.list_appointments(self.db, **filters)
        raise PermissionDeniedError("Agents cannot list appointments")

    # ========================================================================
    # BOOKING
    # ========================================================================

    def book_appointment(
        self,
        patient: User,
        data: BookingRequest,
        base_fee: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Book a consultation in `scheduled` with a frozen pricing snapshot.

        The base fee defaults to the doctor's consultation fee. Raises
        InvalidReferralError for a rejected code and SlotConflictError when
        the doctor's timeslot is taken, including by a concurrent booking.
        """
        now = now or utcnow()
        logger.info(f"📥 Booking request from patient {patient.id} with doctor {data.doctor_id}")

        if patient.role != Role.PATIENT:
            raise PermissionDeniedError("Only patients can book appointments")
        if data.appointment_date <= now:
            raise ValidationFailedError("Appointment date must be in the future")

        doctor = self.users.get_bookable_doctor(self.db, data.doctor_id)
        if not doctor:
            raise NotFoundError("Doctor not found or not available")

        if base_fee is None:
            base_fee = doctor.consultation_fee if doctor.consultation_fee is not None else DEFAULT_CONSULTATION_FEE

        decision = None
        if data.referral_code:
            decision = self.referrals.validate(data.referral_code, patient, base_fee, now)
        snapshot = price(base_fee, decision)

        if self.repo.find_conflicting(self.db, doctor.id, data.appointment_date):
            raise SlotConflictError(SLOT_TAKEN_MESSAGE)

        try:
            appointment = self.repo.create(
                self.db,
                patient_id=patient.id,
                doctor_id=doctor.id,
                appointment_date=data.appointment_date,
                status=AppointmentStatus.SCHEDULED,
                symptoms=data.symptoms,
                payment_method=data.payment_method,
                payment_status=PaymentStatus.PENDING,
                **snapshot.model_dump(),
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Slot conflict for doctor {doctor.id} at {data.appointment_date}")
            raise SlotConflictError(SLOT_TAKEN_MESSAGE) from e
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(appointment)
        logger.info(
            f"✅ Appointment {appointment.id} booked: fee={snapshot.consultation_fee}, "
            f"discount={snapshot.discount}, final={snapshot.final_amount}"
        )
        return appointment

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    @retry_on_conflict
    def _apply(
        self,
        appointment_id: int,
        action: str,
        actor: Optional[User],
        now: Optional[datetime] = None,
        new_date: Optional[datetime] = None,
        **fields,
    ) -> Appointment:
        now = now or utcnow()
        try:
            appointment = self.repo.get_by_id(self.db, appointment_id)
            if not appointment:
                raise NotFoundError("Appointment not found")

            state = AppointmentState.model_validate(appointment)
            target = plan_transition(
                state, action, Actor.model_validate(actor) if actor else None, now, new_date
            )

            if action == Action.RESCHEDULE:
                if self.repo.find_conflicting(self.db, state.doctor_id, new_date, exclude_id=state.id):
                    raise SlotConflictError(SLOT_TAKEN_MESSAGE)
                fields.update(appointment_date=new_date, rescheduled_from=state.appointment_date)

            if not self.repo.update_status(self.db, state.id, state.status, target, **fields):
                raise ConcurrentModificationError(f"Appointment {state.id} changed during {action}")

            if action in REVERSING_ACTIONS:
                self.referrals.reverse_usage(state.id, f"appointment {target}", now)

            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise SlotConflictError(SLOT_TAKEN_MESSAGE) from e
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(appointment)
        logger.info(f"✅ Appointment {appointment.id}: {action} -> {appointment.status}")
        return appointment

    def confirm(self, appointment_id: int, doctor: User) -> Appointment:
        return self._apply(appointment_id, Action.CONFIRM, doctor, confirmed_at=utcnow())

    def reschedule(self, appointment_id: int, actor: User, new_date: datetime) -> Appointment:
        return self._apply(appointment_id, Action.RESCHEDULE, actor, new_date=new_date)

    def cancel(self, appointment_id: int, actor: User, reason: Optional[str] = None) -> Appointment:
        """Cancel and give back any referral counted for the appointment"""
        return self._apply(
            appointment_id,
            Action.CANCEL,
            actor,
            cancelled_at=utcnow(),
            cancelled_by=actor.id,
            cancellation_reason=reason or f"Cancelled by {actor.role}",
        )

    def complete(
        self, appointment_id: int, doctor: User, notes: Optional[ConsultationNotes] = None
    ) -> Appointment:
        record = notes.model_dump(exclude_none=True) if notes else {}
        return self._apply(appointment_id, Action.COMPLETE, doctor, completed_at=utcnow(), **record)

    def reject(self, appointment_id: int, doctor: User, reason: str = "Doctor unavailable") -> Appointment:
        return self._apply(appointment_id, Action.REJECT, doctor, rejection_reason=reason)

    def mark_no_show(self, appointment_id: int, doctor: User) -> Appointment:
        return self._apply(appointment_id, Action.MARK_NO_SHOW, doctor)

    def add_consultation_notes(
        self, appointment_id: int, doctor: User, notes: ConsultationNotes
    ) -> Appointment:
        record = notes.model_dump(exclude_none=True)
        if not record:
            raise ValidationFailedError("Nothing to record")
        return self._apply(appointment_id, Action.ADD_NOTES, doctor, **record)

    # ========================================================================
    # SYSTEM TRANSITIONS (run inside the caller's transaction, no commit)
    # ========================================================================

    def confirm_for_payment(self, appointment: Appointment, now: datetime) -> bool:
        """
        Record a completed payment on the appointment. Returns False when the
        appointment already left the active statuses, so the payment needs a refund.
        """
        if appointment.status == AppointmentStatus.SCHEDULED:
            plan_transition(AppointmentState.model_validate(appointment), Action.CONFIRM, None, now)
            if not self.repo.update_status(
                self.db,
                appointment.id,
                AppointmentStatus.SCHEDULED,
                AppointmentStatus.CONFIRMED,
                confirmed_at=now,
                payment_status=PaymentStatus.COMPLETED,
            ):
                raise ConcurrentModificationError(f"Appointment {appointment.id} changed during payment")
            return True

        self.repo.update_fields(self.db, appointment, payment_status=PaymentStatus.COMPLETED)
        if appointment.status == AppointmentStatus.CONFIRMED:
            return True

        logger.warning(
            f"⚠️ Payment completed for appointment {appointment.id} in status "
            f"'{appointment.status}' - refund required"
        )
        return False

    def cancel_for_refund(self, appointment: Appointment, now: datetime) -> bool:
        """Cancel after a full refund; appointments already closed keep their status"""
        if appointment.status not in AppointmentStatus.ACTIVE:
            return False

        target = plan_transition(AppointmentState.model_validate(appointment), Action.CANCEL, None, now)
        if not self.repo.update_status(
            self.db,
            appointment.id,
            appointment.status,
            target,
            cancelled_at=now,
            cancellation_reason="payment refunded",
        ):
            raise ConcurrentModificationError(f"Appointment {appointment.id} changed during refund")
        return True
