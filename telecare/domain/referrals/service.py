"""Referral service - validation, usage counting and code administration"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import DEFAULT_CODE_VALIDITY_DAYS
from ...errors import (
    ConcurrentModificationError,
    InvalidReferralError,
    NotFoundError,
    ValidationFailedError,
)
from ...models import Appointment, ReferralCode, ReferralUsage, User
from ...shared.constants import DiscountType, Role
from ...shared.money import ZERO, to_money
from ...shared.retry import retry_on_conflict
from ...shared.timeutils import utcnow
from ..directory.repository import UserRepository
from . import rules
from .repository import ReferralRepository
from .rules import ReferralCodeView
from .schemas import ReferralCodeCreate, ReferralCodeUpdate
from .validator import ReferralDecision, validate_referral

logger = logging.getLogger(__name__)


class ReferralService:
    """Service layer for referral business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = ReferralRepository()
        self.users = UserRepository()

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(
        self, code: str, requester: User, order_amount: Decimal, now: Optional[datetime] = None
    ) -> ReferralDecision:
        """Run the ordered referral checks for one requester"""
        now = now or utcnow()
        row = self.repo.get_code_by_value(self.db, code)
        view = ReferralCodeView.model_validate(row) if row else None
        prior_usage = self.repo.count_prior_usage(self.db, requester.id, code) if view else 0

        decision = validate_referral(view, requester.role, order_amount, prior_usage, now)
        if decision.accepted:
            logger.info(
                f"🎟️ Referral {view.code} accepted for user {requester.id}: "
                f"discount={decision.discount}, commission={decision.commission}"
            )
        else:
            logger.info(f"🎟️ Referral '{code}' rejected for user {requester.id}: {decision.reason}")
        return decision

    # ========================================================================
    # USAGE LEDGER
    # ========================================================================

    @retry_on_conflict
    def _apply_aggregates(
        self, code_id: int, mutate: Callable[[ReferralCodeView], ReferralCodeView]
    ) -> ReferralCodeView:
        row = self.repo.get_code_by_id(self.db, code_id, fresh=True)
        if not row:
            raise NotFoundError("Referral code not found")

        before = ReferralCodeView.model_validate(row)
        after = mutate(before)
        if not self.repo.compare_and_swap(self.db, before, after):
            raise ConcurrentModificationError(f"Referral code {before.code} was modified concurrently")

        self.db.expire(row)
        return after

    def count_usage(
        self, appointment: Appointment, commission: Decimal, now: Optional[datetime] = None
    ) -> Optional[ReferralUsage]:
        """
        Count a paid appointment's referral exactly once, using its frozen pricing.

        Runs inside the caller's transaction and does not commit. Returns None
        when there is nothing to count or the code's cap was reached after booking.
        """
        if not appointment.referral_code_id or to_money(commission) <= ZERO:
            return None

        existing = self.repo.get_usage_for_appointment(self.db, appointment.id)
        if existing:
            return existing

        now = now or utcnow()
        try:
            self._apply_aggregates(
                appointment.referral_code_id,
                lambda view: rules.record_usage(view, appointment.discount, commission, now),
            )
        except InvalidReferralError as e:
            logger.warning(
                f"⚠️ Referral {appointment.referral_code} not counted for appointment "
                f"{appointment.id}: {e.reason}"
            )
            return None

        usage = self.repo.add_usage(
            self.db,
            referral_code_id=appointment.referral_code_id,
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            discount=appointment.discount,
            commission=to_money(commission),
            used_at=now,
        )
        logger.info(
            f"🎟️ Referral {appointment.referral_code} counted for appointment {appointment.id} "
            f"(commission {usage.commission})"
        )
        return usage

    def reverse_usage(
        self, appointment_id: int, reason: str, now: Optional[datetime] = None
    ) -> Optional[ReferralUsage]:
        """Undo a counted referral once. Does not commit; None when nothing was counted."""
        usage = self.repo.get_usage_for_appointment(self.db, appointment_id)
        if not usage or usage.reversed_at is not None:
            return None

        if not self.repo.mark_usage_reversed(self.db, usage.id, now or utcnow(), reason):
            logger.info(f"Referral usage for appointment {appointment_id} already reversed")
            return None

        self._apply_aggregates(
            usage.referral_code_id,
            lambda view: rules.reverse(view, usage.discount, usage.commission),
        )
        self.db.expire(usage)
        logger.info(f"↩️ Referral usage reversed for appointment {appointment_id} ({reason})")
        return usage

    # ========================================================================
    # CODE ADMINISTRATION
    # ========================================================================

    def get_code(self, code_id: int) -> ReferralCode:
        code = self.repo.get_code_by_id(self.db, code_id)
        if not code:
            raise NotFoundError("Referral code not found")
        return code

    def create_code(self, data: ReferralCodeCreate, admin: User) -> ReferralCode:
        agent = self.users.get_user_by_id(self.db, data.agent_id)
        if not agent or agent.role != Role.AGENT:
            raise NotFoundError("Agent not found")
        if not agent.is_active:
            raise ValidationFailedError("Agent is not active")

        code_value = rules.normalize_code(data.code)
        if self.repo.get_code_by_value(self.db, code_value):
            raise ValidationFailedError(f"Referral code {code_value} already exists")

        start_date = data.start_date or utcnow()
        expiration_date = data.expiration_date or start_date + timedelta(days=DEFAULT_CODE_VALIDITY_DAYS)
        if expiration_date <= start_date:
            raise ValidationFailedError("Expiration date must be after start date")

        commission_value = data.commission_value
        if commission_value is None:
            commission_value = agent.commission_rate if data.commission_type == DiscountType.PERCENTAGE else ZERO

        try:
            code = self.repo.create_code(
                self.db,
                code=code_value,
                agent_id=agent.id,
                description=data.description,
                discount_type=data.discount_type,
                discount_value=to_money(data.discount_value),
                max_discount_amount=data.max_discount_amount,
                min_order_amount=to_money(data.min_order_amount),
                commission_type=data.commission_type,
                commission_value=to_money(commission_value),
                max_usage=data.max_usage,
                max_usage_per_user=data.max_usage_per_user,
                start_date=start_date,
                expiration_date=expiration_date,
                target_roles=data.target_roles,
                created_by=admin.id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(code)
        logger.info(f"✅ Referral code {code.code} created for agent {agent.id} by admin {admin.id}")
        return code

    def update_code(self, code_id: int, data: ReferralCodeUpdate) -> ReferralCode:
        code = self.get_code(code_id)
        updates = data.model_dump(exclude_unset=True)
        if not updates:
            return code

        if updates.get("max_usage") is not None and updates["max_usage"] < code.usage_count:
            raise ValidationFailedError(
                f"Max usage cannot be lower than current usage ({code.usage_count})"
            )

        discount_type = updates.get("discount_type", code.discount_type)
        discount_value = updates.get("discount_value", code.discount_value)
        if discount_type == DiscountType.PERCENTAGE and not (1 <= discount_value <= 100):
            raise ValidationFailedError("Percentage discount must be between 1 and 100")

        start_date = updates.get("start_date") or code.start_date
        expiration_date = updates.get("expiration_date") or code.expiration_date
        if expiration_date <= start_date:
            raise ValidationFailedError("Expiration date must be after start date")

        for field, value in updates.items():
            setattr(code, field, value)
        # Bump the CAS token so in-flight aggregate updates re-read the row
        code.version = ReferralCode.version + 1

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(code)
        logger.info(f"✅ Referral code {code.code} updated: {', '.join(sorted(updates))}")
        return code

    def delete_code(self, code_id: int) -> dict:
        """Hard delete an unused code; a code that has ever been used is deactivated instead"""
        code = self.get_code(code_id)
        referenced = (
            self.db.query(Appointment).filter(Appointment.referral_code_id == code.id).first() is not None
        )

        try:
            if code.usage_count > 0 or referenced:
                code.is_active = False
                code.version = ReferralCode.version + 1
                self.db.commit()
                logger.info(f"⚠️ Referral code {code.code} has usage history - deactivated instead of deleted")
                return {
                    "deleted": False,
                    "deactivated": True,
                    "message": "Code has been used and was deactivated instead of deleted",
                }

            self.repo.delete_code(self.db, code)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🗑️ Referral code {code_id} deleted")
        return {"deleted": True, "deactivated": False, "message": "Code deleted"}

    def list_codes(self, agent_id: Optional[int] = None) -> list[dict]:
        now = utcnow()
        return [self.describe_code(code, now) for code in self.repo.list_codes(self.db, agent_id)]

    def describe_code(self, code: ReferralCode, now: Optional[datetime] = None) -> dict:
        """Row fields plus derived status and performance figures"""
        view = ReferralCodeView.model_validate(code)
        summary = view.model_dump()
        summary.update(
            id=code.id,
            description=code.description,
            target_roles=list(view.target_roles),
            status=rules.code_status(view, now or utcnow()),
            conversion_rate=rules.conversion_rate(view),
            avg_commission_per_referral=rules.average_commission(view),
        )
        return summary

    def get_agent_earnings(self, agent_id: int) -> dict:
        agent = self._get_agent(agent_id)
        totals = self.repo.get_agent_totals(self.db, agent.id, utcnow())
        return {
            "agent_id": agent.id,
            "agent_name": agent.full_name,
            "agent_code": agent.agent_code,
            "total_codes": totals["total_codes"],
            "active_codes": totals["active_codes"],
            "total_usage": int(totals["total_usage"]),
            "total_commission_earned": to_money(totals["total_commission_earned"]),
            "total_discount_given": to_money(totals["total_discount_given"]),
        }

    def _get_agent(self, agent_id: int) -> User:
        agent = self.users.get_user_by_id(self.db, agent_id)
        if not agent or agent.role != Role.AGENT:
            raise NotFoundError("Agent not found")
        return agent

    def list_agent_commissions(self, agent_id: int, limit: int = 200) -> list[dict]:
        """
        Per-appointment commission ledger for an agent.

        Reversed usages stay in the list with their reversal time and reason;
        only rows with `reversed` False count towards the agent's earnings.
        """
        agent = self._get_agent(agent_id)
        return [
            {
                "id": usage.id,
                "code": code,
                "appointment_id": usage.appointment_id,
                "patient_id": usage.patient_id,
                "discount": to_money(usage.discount),
                "commission": to_money(usage.commission),
                "used_at": usage.used_at,
                "reversed": usage.reversed_at is not None,
                "reversed_at": usage.reversed_at,
                "reversal_reason": usage.reversal_reason,
            }
            for usage, code in self.repo.list_usages_for_agent(self.db, agent.id, limit)
        ]
