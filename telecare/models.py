from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from .shared.timeutils import utcnow

MONEY = Numeric(12, 2)

_ACTIVE_SLOT = text("status IN ('scheduled', 'confirmed')")
_BLOCKING_PAYMENT = text("status IN ('pending', 'completed', 'partially_refunded')")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False, index=True)  # patient, doctor, agent, admin
    is_active = Column(Boolean, default=True, nullable=False)
    is_approved = Column(Boolean, default=False, nullable=False)  # Doctors need admin approval
    consultation_fee = Column(MONEY, nullable=True)  # Doctors only
    specialization = Column(String(255), nullable=True)  # Doctors only
    commission_rate = Column(MONEY, default=10, nullable=False)  # Agents only, percent
    agent_code = Column(String(50), unique=True, index=True, nullable=True)  # Agents only
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    referral_codes = relationship(
        "ReferralCode", back_populates="agent", foreign_keys="ReferralCode.agent_id"
    )


class ReferralCode(Base):
    __tablename__ = "referral_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, index=True, nullable=False)  # Stored uppercase
    agent_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    description = Column(String(500), nullable=True)

    discount_type = Column(String(20), nullable=False, default="percentage")  # percentage, fixed
    discount_value = Column(MONEY, nullable=False, default=0)
    max_discount_amount = Column(MONEY, nullable=True)  # Caps percentage discounts
    min_order_amount = Column(MONEY, nullable=False, default=0)

    commission_type = Column(String(20), nullable=False, default="percentage")
    commission_value = Column(MONEY, nullable=False, default=0)

    usage_count = Column(Integer, nullable=False, default=0)
    max_usage = Column(Integer, nullable=True)  # NULL = unlimited
    max_usage_per_user = Column(Integer, nullable=False, default=1)

    start_date = Column(DateTime, nullable=False, default=utcnow)
    expiration_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    target_roles = Column(JSON, nullable=False, default=list)  # Empty = every role

    # Aggregates - written only by usage counting and reversal
    total_referrals = Column(Integer, nullable=False, default=0)
    successful_referrals = Column(Integer, nullable=False, default=0)
    total_commission_earned = Column(MONEY, nullable=False, default=0)
    total_discount_given = Column(MONEY, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)

    # Compare-and-swap token for aggregate updates
    version = Column(Integer, nullable=False, default=1)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    agent = relationship("User", back_populates="referral_codes", foreign_keys=[agent_id])
    usages = relationship("ReferralUsage", back_populates="referral_code")


class ReferralUsage(Base):
    """One row per appointment whose referral was counted at payment time"""

    __tablename__ = "referral_usages"

    id = Column(Integer, primary_key=True, index=True)
    referral_code_id = Column(Integer, ForeignKey("referral_codes.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    discount = Column(MONEY, nullable=False, default=0)
    commission = Column(MONEY, nullable=False, default=0)
    used_at = Column(DateTime, nullable=False, default=utcnow)
    reversed_at = Column(DateTime, nullable=True)
    reversal_reason = Column(String(255), nullable=True)

    referral_code = relationship("ReferralCode", back_populates="usages")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # One active booking per doctor per exact timestamp
        Index(
            "uq_appointments_doctor_active_slot",
            "doctor_id",
            "appointment_date",
            unique=True,
            postgresql_where=_ACTIVE_SLOT,
            sqlite_where=_ACTIVE_SLOT,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    appointment_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="scheduled", index=True)
    symptoms = Column(Text, nullable=True)

    # Pricing snapshot - frozen at booking
    consultation_fee = Column(MONEY, nullable=False)
    discount = Column(MONEY, nullable=False, default=0)
    final_amount = Column(MONEY, nullable=False)
    referral_code = Column(String(50), nullable=True, index=True)
    referral_code_id = Column(Integer, ForeignKey("referral_codes.id"), nullable=True)
    agent_commission = Column(MONEY, nullable=False, default=0)

    payment_method = Column(String(30), nullable=True)  # razorpay, payu, cash_via_agent
    payment_status = Column(String(30), nullable=False, default="pending")
    payment_id = Column(Integer, nullable=True)  # Latest payment attempt

    # Consultation record
    notes = Column(Text, nullable=True)
    diagnosis = Column(Text, nullable=True)
    prescription = Column(Text, nullable=True)

    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    rescheduled_from = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one pending or paid attempt per appointment
        Index(
            "uq_payments_appointment_open_attempt",
            "appointment_id",
            unique=True,
            postgresql_where=_BLOCKING_PAYMENT,
            sqlite_where=_BLOCKING_PAYMENT,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    payment_method = Column(String(30), nullable=False)
    gateway_order_id = Column(String(255), unique=True, index=True, nullable=True)
    gateway_payment_id = Column(String(255), index=True, nullable=True)
    gateway_signature = Column(String(512), nullable=True)
    status = Column(String(30), nullable=False, default="pending", index=True)
    failure_reason = Column(String(500), nullable=True)

    currency = Column(String(3), nullable=False, default="INR")
    amount = Column(MONEY, nullable=False)
    discount = Column(MONEY, nullable=False, default=0)
    agent_commission = Column(MONEY, nullable=False, default=0)
    referral_code = Column(String(50), nullable=True)
    refunded_amount = Column(MONEY, nullable=False, default=0)

    # Cash collection details
    collected_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    receipt_number = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    appointment = relationship("Appointment", foreign_keys=[appointment_id])
    refunds = relationship("PaymentRefund", back_populates="payment", order_by="PaymentRefund.id")


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    reason = Column(String(500), nullable=True)
    status = Column(String(30), nullable=False)  # processed, pending_manual
    gateway_refund_id = Column(String(255), nullable=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    payment = relationship("Payment", back_populates="refunds")
