from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from telecare.domain.referrals import rules
from telecare.domain.referrals.rules import CodeStatus, ReferralCodeView, ReferralRejection
from telecare.errors import InvalidReferralError

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


@pytest.mark.parametrize("amount", ["0", "1", "99.99", "500", "1000", "123456.78"])
def test_percentage_discount_never_exceeds_amount_or_cap(amount):
    amount = Decimal(amount)
    uncapped = make_view(discount_value=Decimal("100"))
    capped = make_view(discount_value=Decimal("50"), max_discount_amount=Decimal("150"))

    assert rules.calculate_discount(uncapped, amount, NOW) <= amount
    discount = rules.calculate_discount(capped, amount, NOW)
    assert discount <= amount
    assert discount <= Decimal("150")


def test_fixed_discount_is_clamped_to_order_amount():
    code = make_view(discount_type="fixed", discount_value=Decimal("50"))
    assert rules.calculate_discount(code, Decimal("30"), NOW) == Decimal("30.00")
    assert rules.calculate_discount(code, Decimal("300"), NOW) == Decimal("50.00")


def test_discount_is_zero_below_minimum_or_outside_window():
    code = make_view(min_order_amount=Decimal("500"))
    assert rules.calculate_discount(code, Decimal("300"), NOW) == Decimal("0.00")
    assert rules.calculate_discount(make_view(), Decimal("1000"), NOW + timedelta(days=60)) == Decimal("0.00")
    assert rules.calculate_discount(make_view(is_active=False), Decimal("1000"), NOW) == Decimal("0.00")


def test_commission_percentage_applies_to_final_amount_and_fixed_is_flat():
    assert rules.calculate_commission(make_view(), Decimal("800")) == Decimal("80.00")
    flat = make_view(commission_type="fixed", commission_value=Decimal("75"))
    assert rules.calculate_commission(flat, Decimal("800")) == Decimal("75.00")
    assert rules.calculate_commission(flat, Decimal("10")) == Decimal("75.00")


def test_price_with_code_matches_booking_example():
    pricing = rules.price_with_code(make_view(), Decimal("1000"), NOW)
    assert pricing.discount == Decimal("200.00")
    assert pricing.final_amount == Decimal("800.00")
    assert pricing.commission == Decimal("80.00")


def test_n_uses_then_n_reversals_round_trip():
    original = make_view(usage_count=3, total_referrals=3, successful_referrals=3)
    code = original
    recorded = []
    for _ in range(5):
        code, pricing = rules.use(code, Decimal("1000"), NOW)
        recorded.append(pricing)

    assert code.usage_count == 8
    assert code.total_commission_earned == Decimal("400.00")
    assert code.total_discount_given == Decimal("1000.00")
    assert code.last_used_at == NOW

    for pricing in recorded:
        code = rules.reverse(code, pricing.discount, pricing.commission)

    assert code.usage_count == original.usage_count
    assert code.total_referrals == original.total_referrals
    assert code.total_commission_earned == original.total_commission_earned
    assert code.total_discount_given == original.total_discount_given


def test_reverse_never_goes_below_zero():
    code = rules.reverse(make_view(), Decimal("200"), Decimal("80"))
    assert code.usage_count == 0
    assert code.successful_referrals == 0
    assert code.total_commission_earned == Decimal("0.00")
    assert code.total_discount_given == Decimal("0.00")


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"expiration_date": NOW - timedelta(seconds=1)}, ReferralRejection.EXPIRED),
        ({"start_date": NOW + timedelta(days=1)}, ReferralRejection.EXPIRED),
        ({"is_active": False}, ReferralRejection.EXPIRED),
        ({"max_usage": 2, "usage_count": 2}, ReferralRejection.USAGE_LIMIT_EXCEEDED),
    ],
)
def test_use_on_unusable_code_fails_without_mutation(overrides, reason):
    code = make_view(**overrides)
    with pytest.raises(InvalidReferralError) as exc:
        rules.use(code, Decimal("1000"), NOW)
    assert exc.value.reason == reason
    # Views are immutable; the original is untouched
    assert code.usage_count == overrides.get("usage_count", 0)
    assert code.total_commission_earned == Decimal("0")


def test_record_usage_rejects_exhausted_code():
    with pytest.raises(InvalidReferralError):
        rules.record_usage(make_view(max_usage=1, usage_count=1), Decimal("0"), Decimal("10"), NOW)


def test_code_status():
    assert rules.code_status(make_view(), NOW) == CodeStatus.ACTIVE
    assert rules.code_status(make_view(is_active=False), NOW) == CodeStatus.INACTIVE
    assert rules.code_status(make_view(start_date=NOW + timedelta(hours=1)), NOW) == CodeStatus.SCHEDULED
    assert rules.code_status(make_view(), NOW + timedelta(days=31)) == CodeStatus.EXPIRED
    assert rules.code_status(make_view(max_usage=1, usage_count=1), NOW) == CodeStatus.EXHAUSTED


def test_performance_figures():
    code = make_view(total_referrals=4, successful_referrals=3, total_commission_earned=Decimal("240"))
    assert rules.conversion_rate(code) == Decimal("75.00")
    assert rules.average_commission(code) == Decimal("80.00")
    assert rules.conversion_rate(make_view()) == Decimal("0.00")
    assert rules.average_commission(make_view()) == Decimal("0.00")


def test_normalize_code():
    assert rules.normalize_code("  save20 ") == "SAVE20"
