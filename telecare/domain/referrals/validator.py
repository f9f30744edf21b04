"""Referral validation - ordered checks against a code and the requester's context"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...shared.money import to_money
from . import rules
from .rules import ReferralCodeView, ReferralRejection

REJECTION_MESSAGES = {
    ReferralRejection.NOT_FOUND: "Invalid referral code",
    ReferralRejection.EXPIRED: "Referral code has expired or is inactive",
    ReferralRejection.USAGE_LIMIT_EXCEEDED: "Referral code usage limit exceeded",
    ReferralRejection.MINIMUM_AMOUNT_NOT_MET: "Order amount is below the minimum for this referral code",
    ReferralRejection.USER_USAGE_LIMIT_EXCEEDED: "You have already used this referral code",
    ReferralRejection.ROLE_NOT_ELIGIBLE: "This referral code is not valid for your account type",
}


class ReferralDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    accepted: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    referral: Optional[ReferralCodeView] = None
    discount: Decimal = Decimal("0.00")
    final_amount: Optional[Decimal] = None
    commission: Decimal = Decimal("0.00")

    @classmethod
    def reject(cls, reason: str, referral: Optional[ReferralCodeView] = None) -> "ReferralDecision":
        return cls(accepted=False, reason=reason, message=REJECTION_MESSAGES[reason], referral=referral)


def validate_referral(
    code: Optional[ReferralCodeView],
    requester_role: str,
    order_amount: Decimal,
    prior_usage: int,
    now: datetime,
) -> ReferralDecision:
    """
    Evaluate a referral code for one requester. The first failing check wins:
    not found, expired/inactive, global cap, minimum amount, per-user cap, role.

    Args:
        code: Code snapshot, or None when nothing matched
        requester_role: Role of the user applying the code
        order_amount: Amount the discount is applied to
        prior_usage: Requester's non-cancelled appointments already booked with this code
        now: Evaluation time (naive UTC)
    """
    order_amount = to_money(order_amount)

    if code is None:
        return ReferralDecision.reject(ReferralRejection.NOT_FOUND)
    if not rules.is_within_window(code, now):
        return ReferralDecision.reject(ReferralRejection.EXPIRED, code)
    if rules.is_exhausted(code):
        return ReferralDecision.reject(ReferralRejection.USAGE_LIMIT_EXCEEDED, code)
    if order_amount < code.min_order_amount:
        return ReferralDecision.reject(ReferralRejection.MINIMUM_AMOUNT_NOT_MET, code)
    if prior_usage >= code.max_usage_per_user:
        return ReferralDecision.reject(ReferralRejection.USER_USAGE_LIMIT_EXCEEDED, code)
    if code.target_roles and requester_role not in code.target_roles:
        return ReferralDecision.reject(ReferralRejection.ROLE_NOT_ELIGIBLE, code)

    pricing = rules.price_with_code(code, order_amount, now)
    return ReferralDecision(
        accepted=True,
        referral=code,
        discount=pricing.discount,
        final_amount=pricing.final_amount,
        commission=pricing.commission,
    )
