from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from telecare.domain.appointments.lifecycle import Action, Actor, AppointmentState, plan_transition
from telecare.domain.appointments.schemas import ConsultationNotes
from telecare.domain.payments.schemas import CashPaymentRequest
from telecare.errors import InvalidStateTransition, PermissionDeniedError
from telecare.models import ReferralCode
from telecare.shared.constants import AppointmentStatus, Role
from telecare.shared.timeutils import utcnow

NOW = datetime(2026, 3, 1, 12, 0, 0)
PATIENT = Actor(id=1, role=Role.PATIENT)
DOCTOR = Actor(id=2, role=Role.DOCTOR)
ADMIN = Actor(id=3, role=Role.ADMIN)


def state(status=AppointmentStatus.SCHEDULED, hours_ahead=48):
    return AppointmentState(
        id=10,
        status=status,
        patient_id=PATIENT.id,
        doctor_id=DOCTOR.id,
        appointment_date=NOW + timedelta(hours=hours_ahead),
    )


# ============================================================================
# PURE STATE MACHINE
# ============================================================================


def test_complete_requires_confirmed():
    with pytest.raises(InvalidStateTransition) as exc:
        plan_transition(state(), Action.COMPLETE, DOCTOR, NOW)

    assert exc.value.current == AppointmentStatus.SCHEDULED
    assert exc.value.attempted == Action.COMPLETE
    assert plan_transition(state(AppointmentStatus.CONFIRMED), Action.COMPLETE, DOCTOR, NOW) == (
        AppointmentStatus.COMPLETED
    )


@pytest.mark.parametrize(
    "action, source, target",
    [
        (Action.CONFIRM, AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED),
        (Action.REJECT, AppointmentStatus.SCHEDULED, AppointmentStatus.REJECTED),
        (Action.REJECT, AppointmentStatus.CONFIRMED, AppointmentStatus.REJECTED),
        (Action.CANCEL, AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED),
        (Action.ADD_NOTES, AppointmentStatus.COMPLETED, AppointmentStatus.COMPLETED),
    ],
)
def test_allowed_transitions(action, source, target):
    assert plan_transition(state(source), action, DOCTOR, NOW) == target


@pytest.mark.parametrize("terminal", AppointmentStatus.TERMINAL)
def test_terminal_statuses_cannot_be_cancelled(terminal):
    with pytest.raises(InvalidStateTransition):
        plan_transition(state(terminal), Action.CANCEL, ADMIN, NOW)


def test_cancel_already_cancelled_names_the_precondition():
    with pytest.raises(InvalidStateTransition) as exc:
        plan_transition(state(AppointmentStatus.CANCELLED), Action.CANCEL, ADMIN, NOW)
    assert exc.value.precondition == "appointment is already cancelled"


def test_patient_cancellation_window():
    assert plan_transition(state(hours_ahead=3), Action.CANCEL, PATIENT, NOW) == AppointmentStatus.CANCELLED
    with pytest.raises(InvalidStateTransition):
        plan_transition(state(hours_ahead=1), Action.CANCEL, PATIENT, NOW)
    # Doctors and admins are not bound by the window
    assert plan_transition(state(hours_ahead=1), Action.CANCEL, DOCTOR, NOW) == AppointmentStatus.CANCELLED
    assert plan_transition(state(hours_ahead=1), Action.CANCEL, ADMIN, NOW) == AppointmentStatus.CANCELLED


def test_reschedule_needs_a_future_date_and_returns_to_scheduled():
    confirmed = state(AppointmentStatus.CONFIRMED)
    assert plan_transition(confirmed, Action.RESCHEDULE, PATIENT, NOW, NOW + timedelta(days=5)) == (
        AppointmentStatus.SCHEDULED
    )
    with pytest.raises(InvalidStateTransition):
        plan_transition(confirmed, Action.RESCHEDULE, PATIENT, NOW, NOW - timedelta(hours=1))
    with pytest.raises(InvalidStateTransition):
        plan_transition(confirmed, Action.RESCHEDULE, PATIENT, NOW, None)


def test_no_show_only_after_the_appointment_time():
    with pytest.raises(InvalidStateTransition):
        plan_transition(state(hours_ahead=2), Action.MARK_NO_SHOW, DOCTOR, NOW)
    assert plan_transition(state(hours_ahead=-1), Action.MARK_NO_SHOW, DOCTOR, NOW) == AppointmentStatus.NO_SHOW


def test_roles_and_ownership():
    with pytest.raises(PermissionDeniedError):
        plan_transition(state(), Action.CONFIRM, PATIENT, NOW)
    with pytest.raises(PermissionDeniedError):
        plan_transition(state(), Action.CONFIRM, Actor(id=99, role=Role.DOCTOR), NOW)
    with pytest.raises(PermissionDeniedError):
        plan_transition(state(), Action.CANCEL, Actor(id=98, role=Role.PATIENT), NOW)
    with pytest.raises(PermissionDeniedError):
        plan_transition(state(), Action.CANCEL, Actor(id=97, role=Role.AGENT), NOW)


def test_system_actor_skips_role_checks():
    assert plan_transition(state(), Action.CONFIRM, None, NOW) == AppointmentStatus.CONFIRMED


# ============================================================================
# SERVICE TRANSITIONS
# ============================================================================


def test_doctor_cannot_complete_unconfirmed_appointment(appointment_service, doctor, book):
    appointment = book()
    with pytest.raises(InvalidStateTransition):
        appointment_service.complete(appointment.id, doctor)
    assert appointment_service.repo.get_by_id(appointment_service.db, appointment.id).status == (
        AppointmentStatus.SCHEDULED
    )


def test_confirm_complete_and_record_notes(appointment_service, doctor, book):
    appointment = book()
    confirmed = appointment_service.confirm(appointment.id, doctor)
    assert confirmed.status == AppointmentStatus.CONFIRMED
    assert confirmed.confirmed_at is not None

    completed = appointment_service.complete(
        appointment.id, doctor, ConsultationNotes(diagnosis="Seasonal flu")
    )
    assert completed.status == AppointmentStatus.COMPLETED
    assert completed.diagnosis == "Seasonal flu"

    noted = appointment_service.add_consultation_notes(
        appointment.id, doctor, ConsultationNotes(prescription="Rest and fluids")
    )
    assert noted.prescription == "Rest and fluids"
    assert noted.diagnosis == "Seasonal flu"


def test_reject_records_reason(appointment_service, doctor, book):
    appointment = book()
    rejected = appointment_service.reject(appointment.id, doctor, "On leave")
    assert rejected.status == AppointmentStatus.REJECTED
    assert rejected.rejection_reason == "On leave"


def test_reschedule_moves_the_slot(appointment_service, patient, book):
    appointment = book()
    original = appointment.appointment_date
    new_date = (utcnow() + timedelta(days=6)).replace(microsecond=0)

    moved = appointment_service.reschedule(appointment.id, patient, new_date)
    assert moved.status == AppointmentStatus.SCHEDULED
    assert moved.appointment_date == new_date
    assert moved.rescheduled_from == original


async def test_cancel_confirmed_reverses_commission_exactly_once(
    db, appointment_service, payment_service, patient, admin, make_code, book
):
    code = make_code("HALF50", commission_type="fixed", commission_value=Decimal("50"))
    appointment = book(referral_code="HALF50")
    assert appointment.agent_commission == Decimal("50.00")

    # A completed cash payment confirms the appointment and counts the referral
    await payment_service.record_cash_payment(
        CashPaymentRequest(appointment_id=appointment.id, amount=appointment.final_amount, agent_code="AGT001")
    )
    db.refresh(code)
    assert code.total_commission_earned == Decimal("50.00")
    assert code.usage_count == 1

    cancelled = appointment_service.cancel(appointment.id, admin, "clinic closed")
    assert cancelled.status == AppointmentStatus.CANCELLED
    assert cancelled.cancelled_by == admin.id
    db.refresh(code)
    assert code.total_commission_earned == Decimal("0.00")
    assert code.usage_count == 0

    with pytest.raises(InvalidStateTransition):
        appointment_service.cancel(appointment.id, admin, "again")
    code = db.query(ReferralCode).filter(ReferralCode.id == code.id).populate_existing().one()
    assert code.total_commission_earned == Decimal("0.00")
    assert code.usage_count == 0

