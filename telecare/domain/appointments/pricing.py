"""Pricing engine - turns a base fee and a referral decision into a frozen snapshot"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...errors import InvalidReferralError
from ...shared.money import ZERO, to_money
from ..referrals.validator import ReferralDecision


class PricingSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    consultation_fee: Decimal
    discount: Decimal
    final_amount: Decimal
    agent_commission: Decimal
    referral_code: Optional[str] = None
    referral_code_id: Optional[int] = None


def price(base_fee: Decimal, decision: Optional[ReferralDecision] = None) -> PricingSnapshot:
    """
    Price a consultation.

    A rejected decision raises InvalidReferralError carrying its reason; no
    decision means the booking carries no referral code.
    """
    fee = to_money(base_fee)
    if decision is None:
        return PricingSnapshot(
            consultation_fee=fee, discount=ZERO, final_amount=fee, agent_commission=ZERO
        )

    if not decision.accepted:
        raise InvalidReferralError(decision.reason, decision.message)

    discount = max(ZERO, min(to_money(decision.discount), fee))
    return PricingSnapshot(
        consultation_fee=fee,
        discount=discount,
        final_amount=fee - discount,
        agent_commission=to_money(decision.commission),
        referral_code=decision.referral.code,
        referral_code_id=decision.referral.id,
    )
