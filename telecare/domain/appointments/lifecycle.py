"""
Appointment state machine

Statuses: scheduled (initial) -> confirmed -> completed, with the terminal
exits cancelled, rejected and no_show. Rescheduling re-enters scheduled.

`plan_transition` checks who may act, the allowed source statuses and the
time-based preconditions, then returns the target status. It never writes;
the service applies the result with a conditional update.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...config import PATIENT_CANCELLATION_WINDOW_HOURS
from ...errors import InvalidStateTransition, PermissionDeniedError
from ...shared.constants import AppointmentStatus as S
from ...shared.constants import Role


class Action:
    CONFIRM = "confirm"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    COMPLETE = "complete"
    REJECT = "reject"
    MARK_NO_SHOW = "mark_no_show"
    ADD_NOTES = "add_notes"


ALLOWED_FROM = {
    Action.CONFIRM: (S.SCHEDULED,),
    Action.RESCHEDULE: (S.SCHEDULED, S.CONFIRMED),
    Action.CANCEL: (S.SCHEDULED, S.CONFIRMED),
    Action.COMPLETE: (S.CONFIRMED,),
    Action.REJECT: (S.SCHEDULED, S.CONFIRMED),
    Action.MARK_NO_SHOW: (S.SCHEDULED,),
    Action.ADD_NOTES: (S.COMPLETED,),
}

TARGET_STATUS = {
    Action.CONFIRM: S.CONFIRMED,
    Action.RESCHEDULE: S.SCHEDULED,
    Action.CANCEL: S.CANCELLED,
    Action.COMPLETE: S.COMPLETED,
    Action.REJECT: S.REJECTED,
    Action.MARK_NO_SHOW: S.NO_SHOW,
    Action.ADD_NOTES: S.COMPLETED,
}

ALLOWED_ROLES = {
    Action.CONFIRM: (Role.DOCTOR,),
    Action.RESCHEDULE: (Role.DOCTOR, Role.PATIENT),
    Action.CANCEL: (Role.PATIENT, Role.DOCTOR, Role.ADMIN),
    Action.COMPLETE: (Role.DOCTOR,),
    Action.REJECT: (Role.DOCTOR,),
    Action.MARK_NO_SHOW: (Role.DOCTOR,),
    Action.ADD_NOTES: (Role.DOCTOR,),
}

# Transitions after which a counted referral is given back
REVERSING_ACTIONS = (Action.CANCEL, Action.REJECT)


class AppointmentState(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    status: str
    patient_id: int
    doctor_id: int
    appointment_date: datetime


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    role: str


def check_actor(appointment: AppointmentState, action: str, actor: Actor) -> None:
    if actor.role not in ALLOWED_ROLES[action]:
        raise PermissionDeniedError(f"A {actor.role} cannot {action.replace('_', ' ')} an appointment")
    if actor.role == Role.PATIENT and actor.id != appointment.patient_id:
        raise PermissionDeniedError("Appointment does not belong to you")
    if actor.role == Role.DOCTOR and actor.id != appointment.doctor_id:
        raise PermissionDeniedError("Only the assigned doctor can do this")


def plan_transition(
    appointment: AppointmentState,
    action: str,
    actor: Optional[Actor],
    now: datetime,
    new_date: Optional[datetime] = None,
) -> str:
    """
    Validate a transition and return the resulting status.

    `actor=None` is the system itself (payment reconciliation, refunds) and
    skips the role and cancellation-window checks.
    """
    if actor is not None:
        check_actor(appointment, action, actor)

    allowed = ALLOWED_FROM[action]
    if appointment.status not in allowed:
        if action == Action.CANCEL and appointment.status == S.CANCELLED:
            precondition = "appointment is already cancelled"
        else:
            precondition = f"status must be one of: {', '.join(allowed)}"
        raise InvalidStateTransition(appointment.status, action, precondition)

    if action == Action.CANCEL and actor is not None and actor.role == Role.PATIENT:
        deadline = appointment.appointment_date - timedelta(hours=PATIENT_CANCELLATION_WINDOW_HOURS)
        if now > deadline:
            raise InvalidStateTransition(
                appointment.status,
                action,
                f"patients must cancel at least {PATIENT_CANCELLATION_WINDOW_HOURS} hours before the appointment",
            )

    if action == Action.RESCHEDULE:
        if new_date is None or new_date <= now:
            raise InvalidStateTransition(appointment.status, action, "new date must be in the future")

    if action == Action.MARK_NO_SHOW and now < appointment.appointment_date:
        raise InvalidStateTransition(
            appointment.status, action, "appointment time has not passed yet"
        )

    return TARGET_STATUS[action]
