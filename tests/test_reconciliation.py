import hashlib
import hmac
from decimal import Decimal

import pytest

from telecare.domain.payments.gateways import CashAdapter, PayUAdapter, RazorpayAdapter
from telecare.domain.payments.schemas import CashPaymentRequest, RazorpayCallback
from telecare.domain.payments.service import PaymentService
from telecare.errors import (
    AmountMismatchError,
    DuplicatePaymentError,
    InvalidStateTransition,
    NotFoundError,
    PermissionDeniedError,
    SignatureVerificationFailed,
    ValidationFailedError,
)
from telecare.models import Payment, ReferralCode, ReferralUsage
from telecare.shared.constants import AppointmentStatus, NotificationCategory, PaymentStatus

from .conftest import PAYU_KEY, PAYU_SALT, RAZORPAY_KEY_ID, RAZORPAY_SECRET, FakeDispatcher


def razorpay_payload(order_id, payment_id="pay_001", secret=RAZORPAY_SECRET):
    signature = hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    return {"razorpay_order_id": order_id, "razorpay_payment_id": payment_id, "razorpay_signature": signature}


def payu_payload(fields, status="success", amount=None, **extra):
    payload = {
        "txnid": fields["txnid"],
        "status": status,
        "amount": amount or fields["amount"],
        "productinfo": fields["productinfo"],
        "firstname": fields["firstname"],
        "email": fields["email"],
        "key": PAYU_KEY,
        "mihpayid": "4039937155",
        "udf1": fields["udf1"],
        "udf2": fields["udf2"],
        "udf3": fields["udf3"],
        "udf4": fields["udf4"],
        "udf5": fields["udf5"],
    }
    payload.update(extra)
    parts = [PAYU_SALT, status, "", "", "", "", "",
             payload["udf5"], payload["udf4"], payload["udf3"], payload["udf2"], payload["udf1"],
             payload["email"], payload["firstname"], payload["productinfo"], payload["amount"],
             payload["txnid"], PAYU_KEY]
    payload["hash"] = hashlib.sha512("|".join(parts).encode()).hexdigest()
    return payload


def refetch_code(db, code_id):
    return db.query(ReferralCode).filter(ReferralCode.id == code_id).populate_existing().one()


# ============================================================================
# RAZORPAY
# ============================================================================


async def test_razorpay_order_uses_frozen_final_amount(db, payment_service, razorpay_client, patient, make_code, book):
    make_code("SAVE20")
    appointment = book(referral_code="SAVE20")

    order = await payment_service.initiate_razorpay(appointment.id, patient)

    assert order["amount"] == 80000
    assert order["currency"] == "INR"
    assert razorpay_client.orders[0]["receipt"] == f"apt_{appointment.id}"
    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway_order_id == order["order_id"]
    assert payment.amount == Decimal("800.00")
    assert payment.agent_commission == Decimal("80.00")


async def test_razorpay_success_confirms_and_counts_referral(db, payment_service, dispatcher, patient, make_code, book):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")
    order = await payment_service.initiate_razorpay(appointment.id, patient)

    outcome = await payment_service.reconcile_payment("razorpay", razorpay_payload(order["order_id"]))

    assert outcome == {
        "appointment_id": appointment.id,
        "payment_id": order["payment_id"],
        "payment_status": PaymentStatus.COMPLETED,
        "appointment_status": AppointmentStatus.CONFIRMED,
        "referral_counted": True,
    }
    code = refetch_code(db, code.id)
    assert code.usage_count == 1
    assert code.successful_referrals == 1
    assert code.total_commission_earned == Decimal("80.00")
    assert code.total_discount_given == Decimal("200.00")

    db.refresh(appointment)
    assert appointment.payment_status == PaymentStatus.COMPLETED
    assert appointment.payment_id == order["payment_id"]

    categories = dispatcher.categories()
    assert categories.count(NotificationCategory.APPOINTMENT_CONFIRMATION) == 2
    assert NotificationCategory.PAYMENT_CONFIRMATION in categories
    assert NotificationCategory.APPOINTMENT_REMINDER in categories
    assert NotificationCategory.REFERRAL_REWARD in categories
    reminder = next(n for n in dispatcher.sent if n["category"] == NotificationCategory.APPOINTMENT_REMINDER)
    assert reminder["defer_until"] < appointment.appointment_date


async def test_replayed_callback_is_idempotent(db, payment_service, dispatcher, patient, make_code, book):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")
    order = await payment_service.initiate_razorpay(appointment.id, patient)
    payload = razorpay_payload(order["order_id"])

    first = await payment_service.reconcile_payment("razorpay", payload)
    sent_after_first = len(dispatcher.sent)
    second = await payment_service.reconcile_payment("razorpay", payload)

    assert second == first
    assert len(dispatcher.sent) == sent_after_first
    assert refetch_code(db, code.id).usage_count == 1
    assert db.query(ReferralUsage).count() == 1


async def test_bad_signature_fails_payment_and_allows_a_new_attempt(db, payment_service, patient, book):
    appointment = book()
    order = await payment_service.initiate_razorpay(appointment.id, patient)

    with pytest.raises(SignatureVerificationFailed):
        await payment_service.reconcile_payment(
            "razorpay", razorpay_payload(order["order_id"], secret="not-the-secret")
        )

    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Invalid payment signature"
    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED
    assert appointment.payment_status == PaymentStatus.FAILED

    retry = await payment_service.initiate_razorpay(appointment.id, patient)
    assert retry["payment_id"] != order["payment_id"]


async def test_callback_from_another_patient_leaves_payment_pending(
    db, payment_service, patient, other_patient, admin, book
):
    appointment = book()
    order = await payment_service.initiate_razorpay(appointment.id, patient)
    forged = razorpay_payload(order["order_id"], secret="not-the-secret")

    with pytest.raises(NotFoundError):
        await payment_service.reconcile_payment("razorpay", forged, actor=other_patient)
    # A correctly signed callback is still not theirs to settle
    with pytest.raises(NotFoundError):
        await payment_service.reconcile_payment("razorpay", razorpay_payload(order["order_id"]), actor=other_patient)

    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.PENDING
    assert payment.failure_reason is None

    outcome = await payment_service.reconcile_payment(
        "razorpay", razorpay_payload(order["order_id"]), actor=patient
    )
    assert outcome["payment_status"] == PaymentStatus.COMPLETED
    assert outcome["appointment_status"] == AppointmentStatus.CONFIRMED

    # Admins may settle on a patient's behalf; the replay returns the recorded outcome
    replay = await payment_service.reconcile_razorpay(
        RazorpayCallback(**razorpay_payload(order["order_id"])), admin
    )
    assert replay == outcome


async def test_second_initiation_while_pending_is_rejected(payment_service, patient, book):
    appointment = book()
    await payment_service.initiate_razorpay(appointment.id, patient)
    with pytest.raises(DuplicatePaymentError):
        await payment_service.initiate_razorpay(appointment.id, patient)
    with pytest.raises(DuplicatePaymentError):
        payment_service.initiate_payu(appointment.id, patient)


async def test_initiation_guards(payment_service, appointment_service, patient, other_patient, book):
    appointment = book()
    with pytest.raises(PermissionDeniedError):
        await payment_service.initiate_razorpay(appointment.id, other_patient)

    appointment_service.cancel(appointment.id, patient, "no longer needed")
    with pytest.raises(InvalidStateTransition):
        await payment_service.initiate_razorpay(appointment.id, patient)

    with pytest.raises(NotFoundError):
        await payment_service.initiate_razorpay(9999, patient)


async def test_malformed_or_unknown_callbacks(payment_service):
    with pytest.raises(ValidationFailedError):
        await payment_service.reconcile_payment("razorpay", {"razorpay_order_id": "order_1"})
    with pytest.raises(ValidationFailedError):
        await payment_service.reconcile_payment("stripe", {})
    with pytest.raises(NotFoundError):
        await payment_service.reconcile_payment("razorpay", razorpay_payload("order_missing"))


async def test_payment_after_cancellation_is_recorded_but_not_counted(
    db, payment_service, appointment_service, patient, make_code, book
):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")
    order = await payment_service.initiate_razorpay(appointment.id, patient)
    appointment_service.cancel(appointment.id, patient, "found another doctor")

    outcome = await payment_service.reconcile_payment("razorpay", razorpay_payload(order["order_id"]))

    assert outcome["payment_status"] == PaymentStatus.COMPLETED
    assert outcome["appointment_status"] == AppointmentStatus.CANCELLED
    assert outcome["referral_counted"] is False
    assert refetch_code(db, code.id).usage_count == 0


async def test_notification_failure_does_not_undo_payment(db, razorpay_client, patient, book):
    service = PaymentService(
        db,
        razorpay_client=razorpay_client,
        dispatcher=FakeDispatcher(fail=True),
        razorpay=RazorpayAdapter(RAZORPAY_KEY_ID, RAZORPAY_SECRET),
        payu=PayUAdapter(PAYU_KEY, PAYU_SALT),
        cash=CashAdapter(),
    )
    appointment = book()
    order = await service.initiate_razorpay(appointment.id, patient)

    outcome = await service.reconcile_payment("razorpay", razorpay_payload(order["order_id"]))
    assert outcome["payment_status"] == PaymentStatus.COMPLETED
    assert outcome["appointment_status"] == AppointmentStatus.CONFIRMED


# ============================================================================
# PAYU
# ============================================================================


async def test_payu_success_confirms(db, payment_service, patient, make_code, book):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")
    checkout = payment_service.initiate_payu(appointment.id, patient)
    fields = checkout["fields"]
    assert fields["txnid"].startswith(f"TXN_{appointment.id}_")

    outcome = await payment_service.reconcile_payment("payu", payu_payload(fields, bank_ref_num="ignored"))

    assert outcome["payment_status"] == PaymentStatus.COMPLETED
    assert outcome["appointment_status"] == AppointmentStatus.CONFIRMED
    assert refetch_code(db, code.id).total_commission_earned == Decimal("80.00")


async def test_payu_failure_and_pending(db, payment_service, patient, book, other_doctor):
    first = book()
    fields = payment_service.initiate_payu(first.id, patient)["fields"]
    outcome = await payment_service.reconcile_payment(
        "payu", payu_payload(fields, status="failure", error_Message="Card declined")
    )
    assert outcome["payment_status"] == PaymentStatus.FAILED
    assert outcome["appointment_status"] == AppointmentStatus.SCHEDULED
    failed = db.query(Payment).filter(Payment.gateway_order_id == fields["txnid"]).one()
    assert failed.failure_reason == "Card declined"

    second = book(with_doctor=other_doctor)
    fields = payment_service.initiate_payu(second.id, patient)["fields"]
    outcome = await payment_service.reconcile_payment("payu", payu_payload(fields, status="pending"))
    assert outcome["payment_status"] == PaymentStatus.PENDING


async def test_payu_amount_mismatch_fails(db, payment_service, patient, book):
    appointment = book()
    fields = payment_service.initiate_payu(appointment.id, patient)["fields"]

    outcome = await payment_service.reconcile_payment("payu", payu_payload(fields, amount="1.00"))

    assert outcome["payment_status"] == PaymentStatus.FAILED
    assert db.query(Payment).one().failure_reason == "Amount mismatch"


async def test_payu_bad_hash_raises(db, payment_service, patient, book):
    appointment = book()
    fields = payment_service.initiate_payu(appointment.id, patient)["fields"]
    payload = payu_payload(fields)
    payload["hash"] = "0" * 128

    with pytest.raises(SignatureVerificationFailed):
        await payment_service.reconcile_payment("payu", payload)
    assert db.query(Payment).one().status == PaymentStatus.FAILED


# ============================================================================
# CASH VIA AGENT
# ============================================================================


async def test_cash_by_owning_agent_counts_commission(db, payment_service, agent, make_code, book):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")

    outcome = await payment_service.record_cash_payment(
        CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("800"), agent_code="agt001",
                           receipt_number="R-1"),
        agent,
    )

    assert outcome["payment_status"] == PaymentStatus.COMPLETED
    assert outcome["appointment_status"] == AppointmentStatus.CONFIRMED
    assert outcome["referral_counted"] is True
    payment = db.query(Payment).one()
    assert payment.gateway_order_id.startswith(f"CASH_{appointment.id}_")
    assert payment.collected_by == agent.id
    assert payment.agent_commission == Decimal("80.00")
    assert refetch_code(db, code.id).total_commission_earned == Decimal("80.00")


async def test_cash_by_other_agent_earns_no_commission(db, payment_service, other_agent, make_code, book):
    code = make_code("SAVE20")
    appointment = book(referral_code="SAVE20")

    outcome = await payment_service.record_cash_payment(
        CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("800"), agent_code="AGT002"),
        other_agent,
    )

    assert outcome["appointment_status"] == AppointmentStatus.CONFIRMED
    assert outcome["referral_counted"] is False
    assert db.query(Payment).one().agent_commission == Decimal("0.00")
    assert refetch_code(db, code.id).usage_count == 0


async def test_cash_rejections(db, payment_service, agent, other_agent, book):
    appointment = book()

    with pytest.raises(AmountMismatchError):
        await payment_service.record_cash_payment(
            CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("900"), agent_code="AGT001"), agent
        )
    with pytest.raises(ValidationFailedError):
        await payment_service.record_cash_payment(
            CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("1000"), agent_code="NOBODY")
        )
    with pytest.raises(PermissionDeniedError):
        await payment_service.record_cash_payment(
            CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("1000"), agent_code="AGT001"),
            other_agent,
        )

    other_agent.is_active = False
    db.commit()
    with pytest.raises(ValidationFailedError):
        await payment_service.record_cash_payment(
            CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("1000"), agent_code="AGT002")
        )
    assert db.query(Payment).count() == 0


async def test_cash_twice_is_a_duplicate(payment_service, agent, book):
    appointment = book()
    request = CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("1000"), agent_code="AGT001")
    await payment_service.record_cash_payment(request, agent)
    with pytest.raises(DuplicatePaymentError):
        await payment_service.record_cash_payment(request, agent)


async def test_payment_history_is_scoped_by_role(
    payment_service, patient, other_patient, doctor, other_doctor, agent, other_agent, admin, book
):
    appointment = book()
    await payment_service.record_cash_payment(
        CashPaymentRequest(appointment_id=appointment.id, amount=Decimal("1000"), agent_code="AGT001"), agent
    )

    for user in (patient, doctor, agent, admin):
        assert [p.appointment_id for p in payment_service.get_payment_history(user)] == [appointment.id]
    for user in (other_patient, other_doctor, other_agent):
        assert payment_service.get_payment_history(user) == []
