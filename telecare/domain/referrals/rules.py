"""
Referral code rules

Pure functions over an immutable ReferralCodeView. Nothing here touches the
database; the repository persists the views these functions return.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...errors import InvalidReferralError
from ...shared.constants import DiscountType
from ...shared.money import ZERO, to_money


class ReferralRejection:
    """Rejection reasons, listed in the order the validator checks them"""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    MINIMUM_AMOUNT_NOT_MET = "minimum_amount_not_met"
    USER_USAGE_LIMIT_EXCEEDED = "user_usage_limit_exceeded"
    ROLE_NOT_ELIGIBLE = "role_not_eligible"


class CodeStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


class ReferralCodeView(BaseModel):
    """Snapshot of a referral code row"""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    code: str
    agent_id: int
    discount_type: str = DiscountType.PERCENTAGE
    discount_value: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None
    min_order_amount: Decimal = ZERO
    commission_type: str = DiscountType.PERCENTAGE
    commission_value: Decimal = ZERO
    usage_count: int = 0
    max_usage: Optional[int] = None
    max_usage_per_user: int = 1
    start_date: datetime
    expiration_date: datetime
    is_active: bool = True
    target_roles: tuple[str, ...] = ()
    total_referrals: int = 0
    successful_referrals: int = 0
    total_commission_earned: Decimal = ZERO
    total_discount_given: Decimal = ZERO
    last_used_at: Optional[datetime] = None
    version: int = 1


class ReferralPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    discount: Decimal
    final_amount: Decimal
    commission: Decimal


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_within_window(code: ReferralCodeView, now: datetime) -> bool:
    return code.is_active and code.start_date <= now <= code.expiration_date


def is_exhausted(code: ReferralCodeView) -> bool:
    return code.max_usage is not None and code.usage_count >= code.max_usage


def is_valid(code: ReferralCodeView, now: datetime) -> bool:
    return is_within_window(code, now) and not is_exhausted(code)


def code_status(code: ReferralCodeView, now: datetime) -> str:
    if not code.is_active:
        return CodeStatus.INACTIVE
    if now < code.start_date:
        return CodeStatus.SCHEDULED
    if now > code.expiration_date:
        return CodeStatus.EXPIRED
    if is_exhausted(code):
        return CodeStatus.EXHAUSTED
    return CodeStatus.ACTIVE


def calculate_discount(code: ReferralCodeView, order_amount: Decimal, now: datetime) -> Decimal:
    order_amount = to_money(order_amount)
    if not is_valid(code, now) or order_amount < code.min_order_amount:
        return ZERO

    if code.discount_type == DiscountType.PERCENTAGE:
        discount = order_amount * code.discount_value / 100
        if code.max_discount_amount is not None:
            discount = min(discount, code.max_discount_amount)
    else:
        discount = code.discount_value

    return to_money(max(ZERO, min(discount, order_amount)))


def calculate_commission(code: ReferralCodeView, final_amount: Decimal) -> Decimal:
    # Fixed commissions are a flat fee, independent of the amount
    if code.commission_type == DiscountType.PERCENTAGE:
        return to_money(to_money(final_amount) * code.commission_value / 100)
    return to_money(code.commission_value)


def price_with_code(code: ReferralCodeView, order_amount: Decimal, now: datetime) -> ReferralPricing:
    order_amount = to_money(order_amount)
    discount = calculate_discount(code, order_amount, now)
    final_amount = order_amount - discount
    return ReferralPricing(
        discount=discount,
        final_amount=final_amount,
        commission=calculate_commission(code, final_amount),
    )


def record_usage(
    code: ReferralCodeView, discount: Decimal, commission: Decimal, now: datetime
) -> ReferralCodeView:
    """Count one use with already-frozen amounts. Raises if the cap is reached."""
    if is_exhausted(code):
        raise InvalidReferralError(ReferralRejection.USAGE_LIMIT_EXCEEDED)

    return code.model_copy(
        update={
            "usage_count": code.usage_count + 1,
            "total_referrals": code.total_referrals + 1,
            "successful_referrals": code.successful_referrals + 1,
            "total_discount_given": to_money(code.total_discount_given + discount),
            "total_commission_earned": to_money(code.total_commission_earned + commission),
            "last_used_at": now,
        }
    )


def use(
    code: ReferralCodeView, order_amount: Decimal, now: datetime
) -> tuple[ReferralCodeView, ReferralPricing]:
    """Price an order with the code and count the use"""
    if not is_within_window(code, now):
        raise InvalidReferralError(ReferralRejection.EXPIRED)
    if is_exhausted(code):
        raise InvalidReferralError(ReferralRejection.USAGE_LIMIT_EXCEEDED)

    pricing = price_with_code(code, order_amount, now)
    return record_usage(code, pricing.discount, pricing.commission, now), pricing


def reverse(code: ReferralCodeView, discount: Decimal, commission: Decimal) -> ReferralCodeView:
    """Undo one counted use; no aggregate drops below zero"""
    return code.model_copy(
        update={
            "usage_count": max(0, code.usage_count - 1),
            "total_referrals": max(0, code.total_referrals - 1),
            "successful_referrals": max(0, code.successful_referrals - 1),
            "total_discount_given": max(ZERO, to_money(code.total_discount_given - discount)),
            "total_commission_earned": max(ZERO, to_money(code.total_commission_earned - commission)),
        }
    )


def conversion_rate(code: ReferralCodeView) -> Decimal:
    if code.total_referrals == 0:
        return ZERO
    return to_money(Decimal(code.successful_referrals) / code.total_referrals * 100)


def average_commission(code: ReferralCodeView) -> Decimal:
    if code.successful_referrals == 0:
        return ZERO
    return to_money(code.total_commission_earned / code.successful_referrals)
