from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from telecare.domain.appointments.pricing import price
from telecare.domain.referrals.rules import ReferralCodeView, ReferralRejection
from telecare.domain.referrals.validator import ReferralDecision, validate_referral
from telecare.errors import InvalidReferralError
from telecare.shared.constants import Role

NOW = datetime(2026, 3, 1, 12, 0, 0)


def save20():
    return ReferralCodeView(
        id=11,
        code="SAVE20",
        agent_id=7,
        discount_type="percentage",
        discount_value=Decimal("20"),
        commission_type="percentage",
        commission_value=Decimal("10"),
        start_date=NOW - timedelta(days=1),
        expiration_date=NOW + timedelta(days=30),
    )


def test_price_without_code():
    snapshot = price(Decimal("750"))
    assert snapshot.consultation_fee == Decimal("750.00")
    assert snapshot.discount == Decimal("0.00")
    assert snapshot.final_amount == Decimal("750.00")
    assert snapshot.agent_commission == Decimal("0.00")
    assert snapshot.referral_code is None
    assert snapshot.referral_code_id is None


def test_price_with_accepted_code():
    decision = validate_referral(save20(), Role.PATIENT, Decimal("1000"), 0, NOW)
    snapshot = price(Decimal("1000"), decision)

    assert snapshot.discount == Decimal("200.00")
    assert snapshot.final_amount == Decimal("800.00")
    assert snapshot.agent_commission == Decimal("80.00")
    assert snapshot.referral_code == "SAVE20"
    assert snapshot.referral_code_id == 11
    assert snapshot.final_amount == snapshot.consultation_fee - snapshot.discount


def test_price_with_rejected_code_raises_with_reason():
    decision = ReferralDecision.reject(ReferralRejection.MINIMUM_AMOUNT_NOT_MET)
    with pytest.raises(InvalidReferralError) as exc:
        price(Decimal("300"), decision)

    assert exc.value.reason == ReferralRejection.MINIMUM_AMOUNT_NOT_MET
    assert exc.value.status_code == 400
    assert exc.value.to_dict()["reason"] == ReferralRejection.MINIMUM_AMOUNT_NOT_MET


def test_snapshot_is_frozen():
    snapshot = price(Decimal("500"))
    with pytest.raises(Exception):
        snapshot.final_amount = Decimal("1")
