"""Referral repository - Database operations for referral codes and the usage ledger"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from ...models import Appointment, ReferralCode, ReferralUsage
from ...shared.constants import AppointmentStatus
from .rules import ReferralCodeView, normalize_code

AGGREGATE_FIELDS = (
    "usage_count",
    "total_referrals",
    "successful_referrals",
    "total_commission_earned",
    "total_discount_given",
    "last_used_at",
)


class ReferralRepository:
    """Repository for referral database operations"""

    @staticmethod
    def get_code_by_id(db: Session, code_id: int, fresh: bool = False) -> Optional[ReferralCode]:
        query = db.query(ReferralCode).filter(ReferralCode.id == code_id)
        if fresh:
            query = query.populate_existing()
        return query.first()

    @staticmethod
    def get_code_by_value(db: Session, code: str) -> Optional[ReferralCode]:
        """Case-insensitive lookup; codes are stored uppercase"""
        return db.query(ReferralCode).filter(ReferralCode.code == normalize_code(code)).first()

    @staticmethod
    def list_codes(db: Session, agent_id: Optional[int] = None) -> list[ReferralCode]:
        query = db.query(ReferralCode)
        if agent_id is not None:
            query = query.filter(ReferralCode.agent_id == agent_id)
        return query.order_by(ReferralCode.created_at.desc(), ReferralCode.id.desc()).all()

    @staticmethod
    def create_code(db: Session, **fields) -> ReferralCode:
        code = ReferralCode(**fields)
        db.add(code)
        db.flush()
        return code

    @staticmethod
    def delete_code(db: Session, code: ReferralCode) -> None:
        db.delete(code)
        db.flush()

    @staticmethod
    def count_prior_usage(db: Session, patient_id: int, code: str) -> int:
        """Non-cancelled appointments this patient already booked with the code"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.patient_id == patient_id,
                Appointment.referral_code == normalize_code(code),
                Appointment.status != AppointmentStatus.CANCELLED,
            )
            .count()
        )

    @staticmethod
    def compare_and_swap(db: Session, before: ReferralCodeView, after: ReferralCodeView) -> bool:
        """Write new aggregates only if nobody else updated the row since `before` was read"""
        values = {field: getattr(after, field) for field in AGGREGATE_FIELDS}
        values["version"] = before.version + 1
        result = db.execute(
            update(ReferralCode)
            .where(ReferralCode.id == before.id, ReferralCode.version == before.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def get_usage_for_appointment(db: Session, appointment_id: int) -> Optional[ReferralUsage]:
        return db.query(ReferralUsage).filter(ReferralUsage.appointment_id == appointment_id).first()

    @staticmethod
    def add_usage(db: Session, **fields) -> ReferralUsage:
        usage = ReferralUsage(**fields)
        db.add(usage)
        db.flush()
        return usage

    @staticmethod
    def mark_usage_reversed(db: Session, usage_id: int, reversed_at: datetime, reason: str) -> bool:
        """Claim the reversal; False when another request already reversed this usage"""
        result = db.execute(
            update(ReferralUsage)
            .where(ReferralUsage.id == usage_id, ReferralUsage.reversed_at.is_(None))
            .values(reversed_at=reversed_at, reversal_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def get_agent_totals(db: Session, agent_id: int, now: datetime) -> dict:
        row = (
            db.query(
                func.count(ReferralCode.id),
                func.coalesce(func.sum(ReferralCode.usage_count), 0),
                func.coalesce(func.sum(ReferralCode.total_commission_earned), 0),
                func.coalesce(func.sum(ReferralCode.total_discount_given), 0),
            )
            .filter(ReferralCode.agent_id == agent_id)
            .one()
        )
        active_codes = (
            db.query(ReferralCode)
            .filter(
                ReferralCode.agent_id == agent_id,
                ReferralCode.is_active.is_(True),
                ReferralCode.start_date <= now,
                ReferralCode.expiration_date >= now,
                or_(ReferralCode.max_usage.is_(None), ReferralCode.usage_count < ReferralCode.max_usage),
            )
            .count()
        )
        return {
            "total_codes": row[0],
            "total_usage": row[1],
            "total_commission_earned": row[2],
            "total_discount_given": row[3],
            "active_codes": active_codes,
        }

    @staticmethod
    def list_usages_for_agent(db: Session, agent_id: int, limit: int = 200) -> list[tuple[ReferralUsage, str]]:
        """Ledger rows for every code the agent owns, newest first, with the code string"""
        return (
            db.query(ReferralUsage, ReferralCode.code)
            .join(ReferralCode, ReferralUsage.referral_code_id == ReferralCode.id)
            .filter(ReferralCode.agent_id == agent_id)
            .order_by(ReferralUsage.used_at.desc(), ReferralUsage.id.desc())
            .limit(limit)
            .all()
        )
