"""Analytics repository - aggregate queries over users, appointments, payments and referrals"""

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Appointment, Payment, ReferralCode, ReferralUsage, User
from ...shared.constants import AppointmentStatus, PaymentStatus, Role

# Payments where money was received, whatever has been refunded since
COLLECTED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)


class AnalyticsRepository:
    """Read-only aggregate queries"""

    @staticmethod
    def count_users_by_role(db: Session) -> dict[str, int]:
        rows = db.query(User.role, func.count(User.id)).group_by(User.role).all()
        return {role: count for role, count in rows}

    @staticmethod
    def get_user_activity(db: Session, since: datetime) -> dict:
        active = db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()
        inactive = db.query(func.count(User.id)).filter(User.is_active.is_(False)).scalar()
        new_users = db.query(func.count(User.id)).filter(User.created_at >= since).scalar()
        pending_doctors = (
            db.query(func.count(User.id))
            .filter(User.role == Role.DOCTOR, User.is_approved.is_(False))
            .scalar()
        )
        return {
            "active_users": active or 0,
            "inactive_users": inactive or 0,
            "new_users_in_period": new_users or 0,
            "doctors_pending_approval": pending_doctors or 0,
        }

    @staticmethod
    def count_appointments_by_status(db: Session) -> dict[str, int]:
        rows = (
            db.query(Appointment.status, func.count(Appointment.id))
            .group_by(Appointment.status)
            .all()
        )
        return {status: count for status, count in rows}

    @staticmethod
    def get_appointments_in_period(db: Session, since: datetime) -> dict:
        in_period = (
            db.query(func.count(Appointment.id))
            .filter(Appointment.appointment_date >= since)
            .scalar()
        )
        completed = (
            db.query(func.count(Appointment.id))
            .filter(
                Appointment.appointment_date >= since,
                Appointment.status == AppointmentStatus.COMPLETED,
            )
            .scalar()
        )
        return {"in_period": in_period or 0, "completed_in_period": completed or 0}

    @staticmethod
    def get_payments_by_status(db: Session) -> list[tuple]:
        """(status, count, amount, refunded_amount) per payment status"""
        return (
            db.query(
                Payment.status,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0),
                func.coalesce(func.sum(Payment.refunded_amount), 0),
            )
            .group_by(Payment.status)
            .all()
        )

    @staticmethod
    def get_collected_by_method(db: Session) -> list[tuple]:
        """(payment_method, count, amount) over payments where money was received"""
        return (
            db.query(
                Payment.payment_method,
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0),
            )
            .filter(Payment.status.in_(COLLECTED_STATUSES))
            .group_by(Payment.payment_method)
            .all()
        )

    @staticmethod
    def get_collected_since(db: Session, since: datetime):
        return (
            db.query(func.sum(Payment.amount))
            .filter(Payment.status.in_(COLLECTED_STATUSES), Payment.completed_at >= since)
            .scalar()
            or 0
        )

    @staticmethod
    def get_referral_totals(db: Session) -> dict:
        total_codes = db.query(func.count(ReferralCode.id)).scalar()
        active_codes = db.query(func.count(ReferralCode.id)).filter(ReferralCode.is_active.is_(True)).scalar()
        live = (
            db.query(
                func.count(ReferralUsage.id),
                func.coalesce(func.sum(ReferralUsage.commission), 0),
                func.coalesce(func.sum(ReferralUsage.discount), 0),
            )
            .filter(ReferralUsage.reversed_at.is_(None))
            .one()
        )
        reversed_count = (
            db.query(func.count(ReferralUsage.id)).filter(ReferralUsage.reversed_at.isnot(None)).scalar()
        )
        return {
            "total_codes": total_codes or 0,
            "active_codes": active_codes or 0,
            "counted_usages": live[0],
            "reversed_usages": reversed_count or 0,
            "total_commission": live[1],
            "total_discount": live[2],
        }

    @staticmethod
    def get_top_agents(db: Session, limit: int) -> list[tuple]:
        """(agent_id, full_name, agent_code, referrals, commission) ranked by live commission"""
        commission = func.sum(ReferralUsage.commission)
        return (
            db.query(
                User.id,
                User.full_name,
                User.agent_code,
                func.count(ReferralUsage.id),
                commission,
            )
            .join(ReferralCode, ReferralCode.agent_id == User.id)
            .join(ReferralUsage, ReferralUsage.referral_code_id == ReferralCode.id)
            .filter(ReferralUsage.reversed_at.is_(None))
            .group_by(User.id, User.full_name, User.agent_code)
            .order_by(commission.desc(), User.id)
            .limit(limit)
            .all()
        )
