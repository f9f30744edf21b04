"""
Payment service - checkout initiation and gateway reconciliation

Every gateway outcome funnels through `_settle`, which moves a pending
payment to completed or failed exactly once (conditional update on status),
confirms the appointment and counts the referral. Replayed callbacks find
the payment already terminal and return the recorded outcome unchanged.
"""

import logging
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import CURRENCY, PAYU_MERCHANT_KEY, PAYU_MERCHANT_SALT, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, REMINDER_LEAD_HOURS
from ...errors import (
    ConcurrentModificationError,
    DuplicatePaymentError,
    InvalidStateTransition,
    NotFoundError,
    PermissionDeniedError,
    SignatureVerificationFailed,
    ValidationFailedError,
)
from ...models import Appointment, Payment, ReferralUsage, User
from ...services.notification_service import (
    NotificationDispatcher,
    NotificationRequest,
    dispatch_notifications,
    recipient_for,
)
from ...shared.constants import AppointmentStatus, NotificationCategory, PaymentMethod, PaymentStatus, Role
from ...shared.money import ZERO, format_amount, to_subunits
from ...shared.retry import retry_on_conflict
from ...shared.timeutils import epoch_millis, utcnow
from ..appointments.repository import AppointmentRepository
from ..appointments.service import AppointmentService
from ..directory.repository import UserRepository
from ..referrals.service import ReferralService
from .gateways import FAILURE, CashAdapter, GatewayResult, PayUAdapter, RazorpayAdapter
from .razorpay_client import RazorpayClient
from .repository import PaymentRepository
from .schemas import CashPaymentRequest, PayUCallback, RazorpayCallback

logger = logging.getLogger(__name__)

PAYLOAD_SCHEMAS = {
    PaymentMethod.RAZORPAY: RazorpayCallback,
    PaymentMethod.PAYU: PayUCallback,
    PaymentMethod.CASH: CashPaymentRequest,
}


class Settlement(NamedTuple):
    payment: Payment
    appointment: Appointment
    confirmed_now: bool
    usage: Optional[ReferralUsage]


class PaymentService:
    """Service layer for payment initiation and reconciliation"""

    def __init__(
        self,
        db: Session,
        razorpay_client: Optional[RazorpayClient] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        razorpay: Optional[RazorpayAdapter] = None,
        payu: Optional[PayUAdapter] = None,
        cash: Optional[CashAdapter] = None,
    ):
        self.db = db
        self.repo = PaymentRepository()
        self.appointments_repo = AppointmentRepository()
        self.users = UserRepository()
        self.appointments = AppointmentService(db)
        self.referrals = ReferralService(db)
        self.razorpay_client = razorpay_client or RazorpayClient()
        self.dispatcher = dispatcher
        self.razorpay = razorpay or RazorpayAdapter(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)
        self.payu = payu or PayUAdapter(PAYU_MERCHANT_KEY, PAYU_MERCHANT_SALT)
        self.cash = cash or CashAdapter()

    # ========================================================================
    # INITIATION
    # ========================================================================

    def _payable_appointment(self, appointment_id: int, patient: User) -> Appointment:
        appointment = self.appointments_repo.get_by_id(self.db, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found")
        if patient.role == Role.PATIENT and appointment.patient_id != patient.id:
            raise PermissionDeniedError("Appointment does not belong to you")
        if appointment.status not in AppointmentStatus.ACTIVE:
            raise InvalidStateTransition(
                appointment.status, "pay", "appointment must be scheduled or confirmed"
            )
        if self.repo.find_blocking_payment(self.db, appointment.id):
            raise DuplicatePaymentError("A payment for this appointment is already pending or paid")
        if appointment.final_amount <= ZERO:
            raise ValidationFailedError("Nothing to pay for this appointment")
        return appointment

    def _open_payment(self, appointment: Appointment, method: str, gateway_order_id: str, **fields) -> Payment:
        try:
            payment = self.repo.create(
                self.db,
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                doctor_id=appointment.doctor_id,
                payment_method=method,
                gateway_order_id=gateway_order_id,
                currency=CURRENCY,
                amount=appointment.final_amount,
                discount=appointment.discount,
                agent_commission=appointment.agent_commission,
                referral_code=appointment.referral_code,
                **fields,
            )
            self.appointments_repo.update_fields(
                self.db, appointment, payment_method=method, payment_id=payment.id
            )
            if fields.get("status") != PaymentStatus.COMPLETED:
                appointment.payment_status = PaymentStatus.PENDING
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicatePaymentError("A payment for this appointment is already pending or paid") from e
        return payment

    async def initiate_razorpay(self, appointment_id: int, patient: User) -> dict:
        """Create a Razorpay order and a pending payment for it"""
        appointment = self._payable_appointment(appointment_id, patient)
        amount_subunits = to_subunits(appointment.final_amount)

        order = await self.razorpay_client.create_order(
            amount_subunits,
            CURRENCY,
            receipt=f"apt_{appointment.id}",
            notes={
                "appointment_id": str(appointment.id),
                "patient_id": str(appointment.patient_id),
                "doctor_id": str(appointment.doctor_id),
                "referral_code": appointment.referral_code or "",
                "agent_commission": format_amount(appointment.agent_commission),
            },
        )

        try:
            payment = self._open_payment(appointment, PaymentMethod.RAZORPAY, order["id"])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"💳 Razorpay payment {payment.id} opened for appointment {appointment.id}")
        return {
            "payment_id": payment.id,
            "key_id": self.razorpay.key_id,
            "order_id": order["id"],
            "amount": amount_subunits,
            "currency": CURRENCY,
            "name": "Telecare Consultation",
            "description": f"Consultation #{appointment.id}",
            "prefill": {"name": patient.full_name, "email": patient.email, "contact": patient.phone},
            "notes": {"appointment_id": str(appointment.id)},
        }

    def initiate_payu(self, appointment_id: int, patient: User) -> dict:
        """Open a pending PayU payment and return the signed form fields"""
        appointment = self._payable_appointment(appointment_id, patient)
        txnid = f"TXN_{appointment.id}_{epoch_millis()}"

        try:
            payment = self._open_payment(appointment, PaymentMethod.PAYU, txnid)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        fields = self.payu.build_checkout(txnid, appointment, patient, appointment.final_amount)
        logger.info(f"💳 PayU payment {payment.id} opened for appointment {appointment.id} (txn {txnid})")
        return {"payment_id": payment.id, "action_url": self.payu.action_url, "fields": fields}

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    async def reconcile_payment(self, gateway: str, raw_payload: dict, actor: Optional[User] = None) -> dict:
        """
        Apply a gateway callback (or a cash receipt) to the payment it refers to.

        `actor` is the authenticated caller when there is one: the collecting
        agent for cash, the paying patient for a Razorpay checkout callback.

        Returns {appointment_id, payment_id, payment_status, appointment_status,
        referral_counted}. Raises SignatureVerificationFailed after recording a
        failed attempt when the signature or hash does not verify.
        """
        schema = PAYLOAD_SCHEMAS.get(gateway)
        if schema is None:
            raise ValidationFailedError(f"Unknown payment gateway: {gateway}")
        try:
            payload = schema.model_validate(raw_payload)
        except ValidationError as e:
            raise ValidationFailedError(
                f"Malformed {gateway} payload", errors=e.errors(include_url=False, include_context=False)
            ) from e

        if gateway == PaymentMethod.RAZORPAY:
            return await self.reconcile_razorpay(payload, actor)
        if gateway == PaymentMethod.PAYU:
            return await self.reconcile_payu(payload)
        return await self.record_cash_payment(payload, actor)

    async def reconcile_razorpay(self, callback: RazorpayCallback, actor: Optional[User] = None) -> dict:
        logger.info(f"📥 Razorpay callback for order {callback.razorpay_order_id}")
        payment = self._payment_for_order(callback.razorpay_order_id, PaymentMethod.RAZORPAY)
        if actor is not None and actor.role != Role.ADMIN and payment.patient_id != actor.id:
            # Indistinguishable from an unknown order
            logger.warning(
                f"🚫 User {actor.id} posted a Razorpay callback for payment {payment.id} "
                f"owned by patient {payment.patient_id}"
            )
            raise NotFoundError("Payment not found")
        result = self.razorpay.verify(callback, payment)
        return await self._reconcile(payment.id, result)

    async def reconcile_payu(self, callback: PayUCallback) -> dict:
        logger.info(f"📥 PayU callback for txn {callback.txnid}: status={callback.status}")
        payment = self._payment_for_order(callback.txnid, PaymentMethod.PAYU)
        if callback.udf1 and callback.udf1 != str(payment.appointment_id):
            logger.warning(f"🚫 PayU txn {callback.txnid} names appointment {callback.udf1}, expected {payment.appointment_id}")
            raise ValidationFailedError("Callback does not match the payment's appointment")
        result = self.payu.verify(callback)
        return await self._reconcile(payment.id, result)

    def _payment_for_order(self, gateway_order_id: str, method: str) -> Payment:
        payment = self.repo.get_by_gateway_order_id(self.db, gateway_order_id)
        if not payment or payment.payment_method != method:
            raise NotFoundError("Payment not found")
        return payment

    async def _reconcile(self, payment_id: int, result: GatewayResult) -> dict:
        settlement = self._settle(payment_id, result, utcnow())

        if not result.verified:
            logger.warning(f"🚫 {result.gateway} verification failed for {result.gateway_order_id}")
            raise SignatureVerificationFailed(
                result.failure_reason or "Payment verification failed",
                payment_id=settlement.payment.id,
            )

        if settlement.confirmed_now:
            await dispatch_notifications(self.dispatcher, self._payment_notifications(settlement))
        return self._outcome(settlement)

    @retry_on_conflict
    def _settle(self, payment_id: int, result: GatewayResult, now: datetime) -> Settlement:
        try:
            payment = self.repo.get_by_id(self.db, payment_id)
            appointment = self.appointments_repo.get_by_id(self.db, payment.appointment_id)

            if payment.status != PaymentStatus.PENDING:
                logger.info(f"🔁 Payment {payment.id} already {payment.status} - returning recorded outcome")
                return Settlement(payment, appointment, False, None)

            expected_subunits = to_subunits(payment.amount)
            if result.succeeded and result.amount_subunits not in (None, expected_subunits):
                result = result.model_copy(
                    update={"raw_status": FAILURE, "failure_reason": "Amount mismatch"}
                )

            if result.succeeded:
                settlement = self._complete(payment, appointment, result, now)
            elif result.failed:
                if not self.repo.transition(
                    self.db,
                    payment.id,
                    PaymentStatus.PENDING,
                    PaymentStatus.FAILED,
                    failure_reason=result.failure_reason,
                    gateway_payment_id=result.external_payment_id,
                    failed_at=now,
                ):
                    raise ConcurrentModificationError(f"Payment {payment.id} changed during reconciliation")
                if appointment.payment_status != PaymentStatus.COMPLETED:
                    appointment.payment_status = PaymentStatus.FAILED
                logger.warning(f"❌ Payment {payment.id} failed: {result.failure_reason}")
                settlement = Settlement(payment, appointment, False, None)
            else:
                logger.info(f"⏳ Payment {payment.id} still pending at gateway ({result.raw_status})")
                return Settlement(payment, appointment, False, None)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        self.db.refresh(appointment)
        return settlement

    def _complete(
        self, payment: Payment, appointment: Appointment, result: GatewayResult, now: datetime
    ) -> Settlement:
        """Mark a pending payment completed, confirm the appointment and count the referral"""
        if not self.repo.transition(
            self.db,
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.COMPLETED,
            gateway_payment_id=result.external_payment_id,
            completed_at=now,
        ):
            raise ConcurrentModificationError(f"Payment {payment.id} changed during reconciliation")
        return self._after_completion(payment, appointment, now)

    def _after_completion(self, payment: Payment, appointment: Appointment, now: datetime) -> Settlement:
        confirmed = self.appointments.confirm_for_payment(appointment, now)
        appointment.payment_id = payment.id

        usage = None
        if confirmed and payment.referral_code and payment.agent_commission > ZERO:
            usage = self.referrals.count_usage(appointment, payment.agent_commission, now)

        logger.info(f"✅ Payment {payment.id} completed for appointment {appointment.id}")
        return Settlement(payment, appointment, confirmed, usage)

    def _outcome(self, settlement: Settlement) -> dict:
        usage = self.referrals.repo.get_usage_for_appointment(self.db, settlement.appointment.id)
        return {
            "appointment_id": settlement.appointment.id,
            "payment_id": settlement.payment.id,
            "payment_status": settlement.payment.status,
            "appointment_status": settlement.appointment.status,
            "referral_counted": usage is not None and usage.reversed_at is None,
        }

    # ========================================================================
    # CASH VIA AGENT
    # ========================================================================

    async def record_cash_payment(self, receipt: CashPaymentRequest, collector: Optional[User] = None) -> dict:
        """
        Record cash collected by an agent. The payment completes immediately;
        commission counts only when the collecting agent owns the referral code.
        """
        now = utcnow()
        logger.info(f"📥 Cash receipt for appointment {receipt.appointment_id} via agent code {receipt.agent_code}")

        agent = self.users.find_active_agent_by_code(self.db, receipt.agent_code)
        if collector is not None and collector.role == Role.AGENT and agent is not None and agent.id != collector.id:
            raise PermissionDeniedError("Agent code does not belong to you")

        settlement = self._settle_cash(receipt, agent, now)
        await dispatch_notifications(self.dispatcher, self._payment_notifications(settlement))
        return self._outcome(settlement)

    @retry_on_conflict
    def _settle_cash(self, receipt: CashPaymentRequest, agent: Optional[User], now: datetime) -> Settlement:
        appointment = self.appointments_repo.get_by_id(self.db, receipt.appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found")

        txnid = f"CASH_{appointment.id}_{epoch_millis(now)}"
        result = self.cash.verify(agent, receipt.amount, appointment, txnid)
        if not result.verified:
            raise ValidationFailedError(result.failure_reason)

        appointment = self._payable_appointment(appointment.id, agent)

        commission = ZERO
        if appointment.referral_code_id:
            code = self.referrals.repo.get_code_by_id(self.db, appointment.referral_code_id)
            if code and code.agent_id == agent.id:
                commission = appointment.agent_commission

        try:
            payment = self._open_payment(
                appointment,
                PaymentMethod.CASH,
                txnid,
                gateway_payment_id=result.external_payment_id,
                status=PaymentStatus.COMPLETED,
                completed_at=now,
                collected_by=agent.id,
                receipt_number=receipt.receipt_number,
                notes=receipt.notes,
            )
            payment.agent_commission = commission
            settlement = self._after_completion(payment, appointment, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        self.db.refresh(appointment)
        logger.info(f"💵 Cash payment {payment.id} recorded by agent {agent.id}")
        return settlement

    # ========================================================================
    # NOTIFICATIONS / HISTORY
    # ========================================================================

    def _payment_notifications(self, settlement: Settlement) -> list[NotificationRequest]:
        """Notifications owed once a payment confirmed its appointment"""
        if not settlement.confirmed_now:
            return []

        payment, appointment = settlement.payment, settlement.appointment
        view = self.appointments_repo.get_with_parties(self.db, appointment.id)
        patient, doctor = view.patient, view.doctor
        appointment_details = {
            "appointment_id": appointment.id,
            "appointment_date": appointment.appointment_date.isoformat(),
            "doctor_name": doctor.full_name,
            "patient_name": patient.full_name,
        }

        notifications = [
            NotificationRequest(
                category=NotificationCategory.PAYMENT_CONFIRMATION,
                recipient=recipient_for(patient),
                payload={
                    "appointment_id": appointment.id,
                    "payment_id": payment.id,
                    "amount": format_amount(payment.amount),
                    "currency": payment.currency,
                    "payment_method": payment.payment_method,
                    "transaction_id": payment.gateway_payment_id or payment.gateway_order_id,
                },
            ),
            NotificationRequest(
                category=NotificationCategory.APPOINTMENT_CONFIRMATION,
                recipient=recipient_for(patient),
                payload=appointment_details,
            ),
            NotificationRequest(
                category=NotificationCategory.APPOINTMENT_CONFIRMATION,
                recipient=recipient_for(doctor),
                payload=appointment_details,
            ),
        ]

        remind_at = appointment.appointment_date - timedelta(hours=REMINDER_LEAD_HOURS)
        if remind_at > utcnow():
            notifications.append(
                NotificationRequest(
                    category=NotificationCategory.APPOINTMENT_REMINDER,
                    recipient=recipient_for(patient),
                    payload=appointment_details,
                    defer_until=remind_at,
                )
            )

        if settlement.usage is not None:
            code = self.referrals.repo.get_code_by_id(self.db, settlement.usage.referral_code_id)
            agent = self.users.get_user_by_id(self.db, code.agent_id) if code else None
            if agent:
                notifications.append(
                    NotificationRequest(
                        category=NotificationCategory.REFERRAL_REWARD,
                        recipient=recipient_for(agent),
                        payload={
                            "referral_code": code.code,
                            "appointment_id": appointment.id,
                            "commission": format_amount(settlement.usage.commission),
                        },
                    )
                )
        return notifications

    def get_payment_history(self, user: User, limit: int = 100) -> list[Payment]:
        if user.role == Role.ADMIN:
            return self.repo.list_payments(self.db, limit=limit)
        if user.role == Role.PATIENT:
            return self.repo.list_payments(self.db, patient_id=user.id, limit=limit)
        if user.role == Role.DOCTOR:
            return self.repo.list_payments(self.db, doctor_id=user.id, limit=limit)
        return self.repo.list_payments(self.db, collected_by=user.id, limit=limit)
