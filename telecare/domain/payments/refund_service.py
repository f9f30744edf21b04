"""
Refund service

Validates a refund against what is still refundable, executes it at the
gateway (Razorpay via API; PayU and cash go to the manual queue) and then
records it with a compare-and-swap on the payment's refunded amount. A full
refund cancels an active appointment and reverses its referral usage.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from ...errors import (
    ConcurrentModificationError,
    InvalidRefundAmountError,
    NotFoundError,
    PaymentNotRefundableError,
    PermissionDeniedError,
    RefundExceedsAvailableError,
    ValidationFailedError,
)
from ...models import Payment, PaymentRefund, User
from ...shared.constants import PaymentMethod, PaymentStatus, RefundStatus, Role
from ...shared.money import ZERO, to_money, to_subunits
from ...shared.retry import retry_on_conflict
from ...shared.timeutils import utcnow
from ..appointments.repository import AppointmentRepository
from ..appointments.service import AppointmentService
from ..referrals.service import ReferralService
from .razorpay_client import RazorpayClient
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

REFUND_CANCELLATION_REASON = "payment refunded"


class GatewayRefund(NamedTuple):
    status: str
    gateway_refund_id: Optional[str]


def refundable_balance(payment: Payment) -> Decimal:
    return to_money(payment.amount) - to_money(payment.refunded_amount or ZERO)


def check_refund(payment: Payment, amount: Decimal) -> Decimal:
    """Validate a refund request; returns the normalized amount"""
    if payment.status not in PaymentStatus.REFUNDABLE:
        raise PaymentNotRefundableError(
            f"Payment in status '{payment.status}' cannot be refunded", payment_status=payment.status
        )

    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidRefundAmountError("Refund amount must be positive")

    available = refundable_balance(payment)
    if amount > available:
        raise RefundExceedsAvailableError(
            f"Refund of {amount} exceeds refundable balance {available}",
            available=str(available),
        )
    return amount


class RefundService:
    """Service layer for refund execution and bookkeeping"""

    def __init__(self, db: Session, razorpay_client: Optional[RazorpayClient] = None):
        self.db = db
        self.repo = PaymentRepository()
        self.appointments_repo = AppointmentRepository()
        self.appointments = AppointmentService(db)
        self.referrals = ReferralService(db)
        self.razorpay_client = razorpay_client or RazorpayClient()

    def _authorize(self, payment: Payment, actor: User) -> None:
        if actor.role == Role.ADMIN:
            return
        if actor.role == Role.DOCTOR and payment.doctor_id == actor.id:
            return
        raise PermissionDeniedError("Only an admin or the assigned doctor can refund this payment")

    async def refund_payment(
        self, payment_id: int, amount: Decimal, reason: str, actor: User
    ) -> dict:
        """
        Refund part or all of the balance left on a completed or partially
        refunded payment.

        Raises PaymentNotRefundableError, InvalidRefundAmountError or
        RefundExceedsAvailableError before anything is sent to the gateway.
        """
        payment = self.repo.get_by_id(self.db, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        self._authorize(payment, actor)

        amount = check_refund(payment, amount)
        logger.info(f"💸 Refund of {amount} requested on payment {payment.id} by user {actor.id}")

        executed = await self._execute_at_gateway(payment, amount, reason)
        payment, refund, appointment_status = self._record_refund(
            payment.id, amount, reason, actor.id, executed, utcnow()
        )

        return {
            "payment_id": payment.id,
            "refunded_amount": payment.refunded_amount,
            "status": payment.status,
            "refund_id": refund.id,
            "refund_status": refund.status,
            "appointment_status": appointment_status,
        }

    async def _execute_at_gateway(self, payment: Payment, amount: Decimal, reason: str) -> GatewayRefund:
        if payment.payment_method == PaymentMethod.RAZORPAY:
            if not payment.gateway_payment_id:
                raise PaymentNotRefundableError("Payment has no Razorpay payment id to refund")
            result = await self.razorpay_client.refund(
                payment.gateway_payment_id,
                to_subunits(amount),
                notes={"payment_id": str(payment.id), "reason": reason},
            )
            return GatewayRefund(RefundStatus.PROCESSED, result.get("id"))

        # PayU refunds and cash hand-backs are settled by an operator
        logger.info(f"📝 Refund on {payment.payment_method} payment {payment.id} queued for manual processing")
        return GatewayRefund(RefundStatus.PENDING_MANUAL, None)

    @retry_on_conflict
    def _record_refund(
        self,
        payment_id: int,
        amount: Decimal,
        reason: str,
        requested_by: int,
        executed: GatewayRefund,
        now: datetime,
    ) -> tuple[Payment, PaymentRefund, str]:
        try:
            payment = self.repo.get_by_id(self.db, payment_id)
            amount = check_refund(payment, amount)

            before = to_money(payment.refunded_amount or ZERO)
            after = before + amount
            is_full = after >= to_money(payment.amount)
            new_status = PaymentStatus.REFUNDED if is_full else PaymentStatus.PARTIALLY_REFUNDED

            if not self.repo.apply_refund(
                self.db, payment.id, before, after, new_status, refunded_at=now
            ):
                raise ConcurrentModificationError(f"Payment {payment.id} refunded concurrently")

            refund = self.repo.add_refund(
                self.db,
                payment_id=payment.id,
                amount=amount,
                reason=reason,
                status=executed.status,
                gateway_refund_id=executed.gateway_refund_id,
                requested_by=requested_by,
                processed_at=now if executed.status == RefundStatus.PROCESSED else None,
                created_at=now,
            )

            appointment = self.appointments_repo.get_by_id(self.db, payment.appointment_id)
            self.appointments_repo.update_fields(self.db, appointment, payment_status=new_status)
            if is_full:
                self.appointments.cancel_for_refund(appointment, now)
                self.referrals.reverse_usage(appointment.id, REFUND_CANCELLATION_REASON, now)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        self.db.refresh(refund)
        self.db.refresh(appointment)
        logger.info(
            f"✅ Refund {refund.id} recorded on payment {payment.id}: {amount} "
            f"({payment.status}, {refund.status})"
        )
        return payment, refund, appointment.status

    # ========================================================================
    # MANUAL QUEUE
    # ========================================================================

    def list_pending_manual_refunds(self) -> list[PaymentRefund]:
        return self.repo.list_pending_manual_refunds(self.db)

    def mark_manual_refund_processed(
        self, refund_id: int, admin: User, gateway_refund_id: Optional[str] = None
    ) -> PaymentRefund:
        refund = self.repo.get_refund(self.db, refund_id)
        if not refund:
            raise NotFoundError("Refund not found")
        if refund.status != RefundStatus.PENDING_MANUAL:
            raise ValidationFailedError(f"Refund is already {refund.status}")

        try:
            refund.status = RefundStatus.PROCESSED
            refund.processed_by = admin.id
            refund.processed_at = utcnow()
            if gateway_refund_id:
                refund.gateway_refund_id = gateway_refund_id
            self.db.commit()
            self.db.refresh(refund)
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Manual refund {refund.id} marked processed by admin {admin.id}")
        return refund
