"""Status and type vocabularies stored in string columns"""


class Role:
    PATIENT = "patient"
    DOCTOR = "doctor"
    AGENT = "agent"
    ADMIN = "admin"

    ALL = (PATIENT, DOCTOR, AGENT, ADMIN)


class AppointmentStatus:
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no_show"

    ALL = (SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, REJECTED, NO_SHOW)
    # Statuses that hold the doctor's timeslot
    ACTIVE = (SCHEDULED, CONFIRMED)
    TERMINAL = (COMPLETED, CANCELLED, REJECTED, NO_SHOW)


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    ALL = (PENDING, COMPLETED, FAILED, REFUNDED, PARTIALLY_REFUNDED)
    # A new attempt is blocked while one of these exists
    BLOCKING = (PENDING, COMPLETED, PARTIALLY_REFUNDED)
    # Money received and not yet fully returned
    REFUNDABLE = (COMPLETED, PARTIALLY_REFUNDED)


class PaymentMethod:
    RAZORPAY = "razorpay"
    PAYU = "payu"
    CASH = "cash_via_agent"

    ALL = (RAZORPAY, PAYU, CASH)


class DiscountType:
    PERCENTAGE = "percentage"
    FIXED = "fixed"

    ALL = (PERCENTAGE, FIXED)


class RefundStatus:
    PROCESSED = "processed"
    PENDING_MANUAL = "pending_manual"


class NotificationCategory:
    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    APPOINTMENT_REMINDER = "appointment_reminder"
    REFERRAL_REWARD = "referral_reward"

    ALL = (APPOINTMENT_CONFIRMATION, PAYMENT_CONFIRMATION, APPOINTMENT_REMINDER, REFERRAL_REWARD)
