from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from telecare.domain.referrals.rules import ReferralCodeView, ReferralRejection
from telecare.domain.referrals.service import ReferralService
from telecare.domain.referrals.validator import validate_referral
from telecare.shared.constants import Role

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_view(**overrides):
    fields = {
        "id": 1,
        "code": "SAVE20",
        "agent_id": 7,
        "discount_type": "percentage",
        "discount_value": Decimal("20"),
        "commission_type": "percentage",
        "commission_value": Decimal("10"),
        "start_date": NOW - timedelta(days=1),
        "expiration_date": NOW + timedelta(days=30),
    }
    fields.update(overrides)
    return ReferralCodeView(**fields)


def test_accepts_save20():
    decision = validate_referral(make_view(), Role.PATIENT, Decimal("1000"), 0, NOW)
    assert decision.accepted
    assert decision.reason is None
    assert decision.discount == Decimal("200.00")
    assert decision.final_amount == Decimal("800.00")
    assert decision.commission == Decimal("80.00")


def test_flat50_below_minimum_is_rejected():
    code = make_view(
        code="FLAT50",
        discount_type="fixed",
        discount_value=Decimal("50"),
        min_order_amount=Decimal("500"),
    )
    decision = validate_referral(code, Role.PATIENT, Decimal("300"), 0, NOW)
    assert not decision.accepted
    assert decision.reason == ReferralRejection.MINIMUM_AMOUNT_NOT_MET
    assert decision.message


def test_unknown_code():
    decision = validate_referral(None, Role.PATIENT, Decimal("1000"), 0, NOW)
    assert decision.reason == ReferralRejection.NOT_FOUND


@pytest.mark.parametrize(
    "overrides, role, amount, prior_usage, reason",
    [
        ({"is_active": False}, Role.PATIENT, "1000", 0, ReferralRejection.EXPIRED),
        ({"expiration_date": NOW - timedelta(days=1)}, Role.PATIENT, "1000", 0, ReferralRejection.EXPIRED),
        ({"max_usage": 5, "usage_count": 5}, Role.PATIENT, "1000", 0, ReferralRejection.USAGE_LIMIT_EXCEEDED),
        ({"min_order_amount": Decimal("2000")}, Role.PATIENT, "1000", 0, ReferralRejection.MINIMUM_AMOUNT_NOT_MET),
        ({}, Role.PATIENT, "1000", 1, ReferralRejection.USER_USAGE_LIMIT_EXCEEDED),
        ({"target_roles": ("doctor",)}, Role.PATIENT, "1000", 0, ReferralRejection.ROLE_NOT_ELIGIBLE),
    ],
)
def test_each_check_rejects_with_its_reason(overrides, role, amount, prior_usage, reason):
    decision = validate_referral(make_view(**overrides), role, Decimal(amount), prior_usage, NOW)
    assert not decision.accepted
    assert decision.reason == reason


def test_first_failing_check_wins():
    # Expired, exhausted, below minimum and role-mismatched at once
    code = make_view(
        expiration_date=NOW - timedelta(days=1),
        max_usage=1,
        usage_count=1,
        min_order_amount=Decimal("5000"),
        target_roles=("doctor",),
    )
    decision = validate_referral(code, Role.PATIENT, Decimal("100"), 3, NOW)
    assert decision.reason == ReferralRejection.EXPIRED

    code = make_view(max_usage=1, usage_count=1, min_order_amount=Decimal("5000"))
    assert validate_referral(code, Role.PATIENT, Decimal("100"), 0, NOW).reason == (
        ReferralRejection.USAGE_LIMIT_EXCEEDED
    )


def test_matching_target_role_is_accepted():
    decision = validate_referral(make_view(target_roles=("patient",)), Role.PATIENT, Decimal("1000"), 0, NOW)
    assert decision.accepted


def test_per_user_cap_counts_prior_bookings(db, patient, make_code, book):
    make_code("SAVE20", max_usage_per_user=1)
    service = ReferralService(db)

    assert service.validate("save20", patient, Decimal("1000")).accepted
    book(referral_code="SAVE20")

    decision = service.validate("SAVE20", patient, Decimal("1000"))
    assert decision.reason == ReferralRejection.USER_USAGE_LIMIT_EXCEEDED


def test_cancelled_bookings_do_not_count_against_per_user_cap(db, patient, make_code, book, appointment_service):
    make_code("SAVE20", max_usage_per_user=1)
    appointment = book(referral_code="SAVE20")
    appointment_service.cancel(appointment.id, patient, "changed plans")

    assert ReferralService(db).validate("SAVE20", patient, Decimal("1000")).accepted
