"""
Tests for split calculation.
"""
from decimal import Decimal

import pytest

from app.core.errors import (
    InvalidAmount, InvalidParticipants, SplitMismatchError, UnsupportedSplitPolicy
)
from app.core.money import Money
from app.models.expense import SplitPolicy
from app.schemas.expense import CustomSplit, EqualSplit, NoSplit, PercentageSplit, SharesSplit
from app.services.split_calculator import (
    compute_splits, convert_splits, dump_split, parse_split
)

A, B, C = 1, 2, 3


def as_dict(lines):
    return {user_id: amount for user_id, amount in lines}


def test_equal_split_remainder_goes_to_first_participant():
    lines = compute_splits(Decimal("100.00"), "USD", EqualSplit(), [A, B, C])
    assert lines == [(A, Decimal("33.34")), (B, Decimal("33.33")), (C, Decimal("33.33"))]


def test_equal_split_zero_decimal_currency():
    lines = compute_splits(Decimal("10000"), "KRW", EqualSplit(), [A, B, C])
    assert as_dict(lines) == {A: Decimal("3334"), B: Decimal("3333"), C: Decimal("3333")}


def test_percentage_split():
    split = PercentageSplit(percentages={A: Decimal("60"), B: Decimal("40")})
    lines = compute_splits(Decimal("90.00"), "USD", split, [A, B])
    assert as_dict(lines) == {A: Decimal("54.00"), B: Decimal("36.00")}


def test_percentage_deficit_goes_to_last_participant():
    split = PercentageSplit(percentages={A: Decimal("33.33"), B: Decimal("33.33"), C: Decimal("33.34")})
    lines = compute_splits(Decimal("10.00"), "USD", split, [A, B, C])
    # 3.333 -> 3.33, 3.333 -> 3.33, 3.334 -> 3.33; deficit 0.01 on C
    assert as_dict(lines) == {A: Decimal("3.33"), B: Decimal("3.33"), C: Decimal("3.34")}


def test_percentage_deficit_goes_to_last_participant_at_zero_percent():
    split = PercentageSplit(percentages={A: Decimal("33.33"), B: Decimal("66.67"), C: Decimal("0")})
    lines = compute_splits(Decimal("10.00"), "USD", split, [A, B, C])
    # 3.333 -> 3.33, 6.667 -> 6.66; C has 0% but still takes the 0.01
    assert as_dict(lines) == {A: Decimal("3.33"), B: Decimal("6.66"), C: Decimal("0.01")}


def test_percentage_overshoot_skips_zero_percent_participant():
    split = PercentageSplit(percentages={A: Decimal("50.01"), B: Decimal("50"), C: Decimal("0")})
    lines = compute_splits(Decimal("10000.00"), "USD", split, [A, B, C])
    assert as_dict(lines) == {A: Decimal("5001.00"), B: Decimal("4999.00"), C: Decimal("0.00")}


def test_percentage_must_sum_to_100():
    split = PercentageSplit(percentages={A: Decimal("60"), B: Decimal("30")})
    with pytest.raises(SplitMismatchError):
        compute_splits(Decimal("90.00"), "USD", split, [A, B])


def test_negative_percentage_rejected():
    split = PercentageSplit(percentages={A: Decimal("110"), B: Decimal("-10")})
    with pytest.raises(SplitMismatchError):
        compute_splits(Decimal("90.00"), "USD", split, [A, B])


def test_custom_split_must_match_total():
    split = CustomSplit(amounts={A: Decimal("40"), B: Decimal("61")})
    with pytest.raises(SplitMismatchError):
        compute_splits(Decimal("100.00"), "USD", split, [A, B])


def test_custom_split_absorbs_sub_unit_residual():
    split = CustomSplit(amounts={A: Decimal("40.00"), B: Decimal("59.99")})
    lines = compute_splits(Decimal("100.00"), "USD", split, [A, B])
    assert as_dict(lines) == {A: Decimal("40.00"), B: Decimal("60.00")}


def test_custom_split_residual_never_goes_negative():
    split = CustomSplit(amounts={A: Decimal("100.01"), B: Decimal("0")})
    lines = compute_splits(Decimal("100.00"), "USD", split, [A, B])
    assert as_dict(lines) == {A: Decimal("100.00"), B: Decimal("0.00")}
    assert all(share >= 0 for _, share in lines)


def test_shares_split():
    split = SharesSplit(shares={A: 2, B: 1, C: 1})
    lines = compute_splits(Decimal("100.00"), "USD", split, [A, B, C])
    assert as_dict(lines) == {A: Decimal("50.00"), B: Decimal("25.00"), C: Decimal("25.00")}


def test_shares_remainder_skips_zero_weight():
    split = SharesSplit(shares={A: 0, B: 1, C: 2})
    lines = compute_splits(Decimal("10.00"), "USD", split, [A, B, C])
    assert as_dict(lines) == {A: Decimal("0.00"), B: Decimal("3.34"), C: Decimal("6.66")}


def test_shares_need_a_positive_weight():
    with pytest.raises(SplitMismatchError):
        compute_splits(Decimal("10.00"), "USD", SharesSplit(shares={A: 0}), [A, B])


def test_none_policy_assigns_everything_to_payer():
    lines = compute_splits(Decimal("42.50"), "USD", NoSplit(), [A, B], payer_id=C)
    assert lines == [(C, Decimal("42.50"))]


@pytest.mark.parametrize("split", [
    EqualSplit(),
    PercentageSplit(percentages={A: Decimal("12.5"), B: Decimal("50"), C: Decimal("37.5")}),
    CustomSplit(amounts={A: Decimal("0.01"), B: Decimal("77.76"), C: Decimal("22.00")}),
    SharesSplit(shares={A: 3, B: 5, C: 7}),
])
def test_split_amounts_sum_to_total(split):
    amount = Decimal("99.77")
    lines = compute_splits(amount, "USD", split, [A, B, C], payer_id=A)
    assert sum(share for _, share in lines) == amount


def test_parameters_for_non_participants_rejected():
    split = PercentageSplit(percentages={A: Decimal("50"), 9: Decimal("50")})
    with pytest.raises(InvalidParticipants):
        compute_splits(Decimal("10.00"), "USD", split, [A, B])


def test_empty_and_duplicate_participants_rejected():
    with pytest.raises(InvalidParticipants):
        compute_splits(Decimal("10.00"), "USD", EqualSplit(), [])
    with pytest.raises(InvalidParticipants):
        compute_splits(Decimal("10.00"), "USD", EqualSplit(), [A, A])


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00"), Decimal("1.005")])
def test_invalid_amounts_rejected(amount):
    with pytest.raises(InvalidAmount):
        compute_splits(amount, "USD", EqualSplit(), [A, B])


def test_parse_split_from_stored_params():
    policy, params = dump_split(PercentageSplit(percentages={A: Decimal("60"), B: Decimal("40")}))
    assert policy == SplitPolicy.PERCENTAGE
    assert set(params["percentages"]) == {"1", "2"}

    split = parse_split("percentage", params)
    assert isinstance(split, PercentageSplit)
    assert split.percentages == {A: Decimal("60"), B: Decimal("40")}


def test_parse_split_unknown_policy():
    with pytest.raises(UnsupportedSplitPolicy):
        parse_split("by_vibes", {})


def test_parse_split_bad_params():
    with pytest.raises(SplitMismatchError):
        parse_split("custom", {"amounts": "lots"})


def test_convert_splits_reconciles_to_base_total():
    lines = compute_splits(Decimal("100.00"), "EUR", EqualSplit(), [A, B, C])
    # 33.34 * 1.1 = 36.674 -> 36.67, 33.33 * 1.1 = 36.663 -> 36.66 (x2) = 109.99
    base = convert_splits(lines, "EUR", Decimal("1.1"), Money(Decimal("110.00"), "USD"))
    assert base == [Decimal("36.68"), Decimal("36.66"), Decimal("36.66")]
    assert sum(base) == Decimal("110.00")
