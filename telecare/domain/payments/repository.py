"""Payment repository - Database operations for payments and refunds"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload

from ...models import Payment, PaymentRefund
from ...shared.constants import PaymentStatus, RefundStatus


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def create(db: Session, **fields) -> Payment:
        """Insert and flush; the partial unique index rejects a second open attempt"""
        payment = Payment(**fields)
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def get_by_id(db: Session, payment_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.id == payment_id).populate_existing().first()

    @staticmethod
    def get_by_gateway_order_id(db: Session, gateway_order_id: str) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.gateway_order_id == gateway_order_id)
            .populate_existing()
            .first()
        )

    @staticmethod
    def find_blocking_payment(db: Session, appointment_id: int) -> Optional[Payment]:
        """A pending, completed or partially refunded attempt that blocks a new one"""
        return (
            db.query(Payment)
            .filter(
                Payment.appointment_id == appointment_id,
                Payment.status.in_(PaymentStatus.BLOCKING),
            )
            .first()
        )

    @staticmethod
    def transition(db: Session, payment_id: int, expected_status: str, new_status: str, **fields) -> bool:
        """Conditional status change; False when another request got there first"""
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == expected_status)
            .values(status=new_status, **fields)
        )
        return result.rowcount == 1

    @staticmethod
    def apply_refund(
        db: Session,
        payment_id: int,
        expected_refunded: Decimal,
        new_refunded: Decimal,
        new_status: str,
        **fields,
    ) -> bool:
        """Compare-and-swap on refunded_amount so concurrent refunds cannot both pass the limit"""
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_(PaymentStatus.REFUNDABLE),
                Payment.refunded_amount == expected_refunded,
            )
            .values(refunded_amount=new_refunded, status=new_status, **fields)
        )
        return result.rowcount == 1

    @staticmethod
    def list_payments(
        db: Session,
        patient_id: Optional[int] = None,
        doctor_id: Optional[int] = None,
        collected_by: Optional[int] = None,
        limit: int = 100,
    ) -> list[Payment]:
        query = db.query(Payment).options(selectinload(Payment.refunds))
        if patient_id is not None:
            query = query.filter(Payment.patient_id == patient_id)
        if doctor_id is not None:
            query = query.filter(Payment.doctor_id == doctor_id)
        if collected_by is not None:
            query = query.filter(Payment.collected_by == collected_by)
        return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()

    @staticmethod
    def add_refund(db: Session, **fields) -> PaymentRefund:
        refund = PaymentRefund(**fields)
        db.add(refund)
        db.flush()
        return refund

    @staticmethod
    def get_refund(db: Session, refund_id: int) -> Optional[PaymentRefund]:
        return db.query(PaymentRefund).filter(PaymentRefund.id == refund_id).first()

    @staticmethod
    def list_pending_manual_refunds(db: Session) -> list[PaymentRefund]:
        return (
            db.query(PaymentRefund)
            .filter(PaymentRefund.status == RefundStatus.PENDING_MANUAL)
            .order_by(PaymentRefund.created_at)
            .all()
        )
