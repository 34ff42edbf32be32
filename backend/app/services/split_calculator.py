"""
Split calculation for shared expenses.

Pure functions: an amount, a split policy and the participant list go in,
per-participant amounts that add up exactly to the amount come out.

Rounding:
    equal / shares  - each share rounded down to the minor unit, the
                      remainder goes to the first participant (first with a
                      non-zero weight for shares)
    percentage      - each share rounded down, the deficit goes to the last
                      participant in list order, even one whose percentage
                      is 0
    custom          - amounts must match the total within one minor unit,
                      the residual goes to the last participant whose amount
                      stays non-negative after absorbing it
    none            - the payer carries the whole amount

A negative percentage residual (percentages summing slightly over 100) is
placed the same way as the custom one.
"""
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import TypeAdapter, ValidationError

from app.core.errors import (
    InvalidAmount, InvalidParticipants, SplitMismatchError, UnsupportedSplitPolicy
)
from app.core.money import Money, minor_unit, quantize, quantize_down, to_decimal
from app.models.expense import SplitPolicy
from app.schemas.expense import (
    CustomSplit, EqualSplit, NoSplit, PercentageSplit, SharesSplit, SplitSpec
)

SplitLine = Tuple[int, Decimal]

PERCENT_TOLERANCE = Decimal("0.01")

_split_adapter = TypeAdapter(SplitSpec)


def parse_split(policy: Any, params: Optional[Mapping[str, Any]] = None) -> SplitSpec:
    """Build typed split parameters from a policy name and raw parameters."""
    try:
        policy = SplitPolicy(policy)
    except ValueError:
        raise UnsupportedSplitPolicy(f"Unsupported split policy: {policy!r}")
    data = dict(params or {})
    data["policy"] = policy.value
    try:
        return _split_adapter.validate_python(data)
    except ValidationError as e:
        raise SplitMismatchError(
            f"Invalid parameters for {policy.value} split: {e.error_count()} error(s)"
        ) from e


def dump_split(split: SplitSpec) -> Tuple[SplitPolicy, Dict[str, Any]]:
    """Split parameters as (policy, JSON-safe params) for storage."""
    data = split.model_dump(mode="json")
    policy = SplitPolicy(data.pop("policy"))
    # JSON object keys are strings; store participant ids that way up front
    params = {
        name: {str(uid): v for uid, v in value.items()} if isinstance(value, dict) else value
        for name, value in data.items()
    }
    return policy, params


def compute_splits(
    amount: Any,
    currency: str,
    split: SplitSpec,
    participants: Sequence[int],
    payer_id: Optional[int] = None,
) -> List[SplitLine]:
    """
    Divide `amount` among `participants` according to `split`.

    Returns (participant_id, amount) pairs in participant order whose amounts
    sum exactly to `amount`. For the `none` policy a single line for the
    payer is returned.

    Raises:
        UnsupportedSplitPolicy: split is not one of the known policy shapes
        InvalidParticipants: empty or duplicate participants, parameters for
            non-participants, or no payer for the `none` policy
        InvalidAmount: amount <= 0 or finer than the currency's minor unit
        SplitMismatchError: parameters do not reconcile with the amount
    """
    if not isinstance(split, (EqualSplit, PercentageSplit, CustomSplit, SharesSplit, NoSplit)):
        raise UnsupportedSplitPolicy(f"Unsupported split policy: {split!r}")

    participants = list(participants)
    if not participants:
        raise InvalidParticipants("An expense needs at least one participant")
    if len(set(participants)) != len(participants):
        raise InvalidParticipants("Participants must not contain duplicates")

    amount = to_decimal(amount)
    if amount <= 0:
        raise InvalidAmount(f"Expense amount must be positive, got {amount}")
    if quantize(amount, currency) != amount:
        raise InvalidAmount(f"{amount} has more decimal places than {currency.upper()} allows")

    if isinstance(split, EqualSplit):
        return _distribute(amount, currency, participants, [1] * len(participants))
    if isinstance(split, SharesSplit):
        return _split_by_shares(amount, currency, participants, split.shares)
    if isinstance(split, PercentageSplit):
        return _split_by_percentage(amount, currency, participants, split.percentages)
    if isinstance(split, CustomSplit):
        return _split_custom(amount, currency, participants, split.amounts)
    if payer_id is None:
        raise InvalidParticipants("A payer is required for the 'none' split policy")
    return [(payer_id, amount)]


def convert_splits(
    lines: Sequence[SplitLine],
    currency: str,
    rate: Any,
    base_total: Money,
) -> List[Decimal]:
    """
    Convert split amounts into the base currency.

    Each line is converted with the frozen rate and rounded half-up; the
    residual against `base_total` is put on the largest line (first on ties)
    so the base amounts sum exactly to `base_total`.
    """
    converted = [Money(line_amount, currency).convert(rate, base_total.currency) for _, line_amount in lines]
    residual = base_total - sum(converted, Money.zero(base_total.currency))
    if not residual.is_zero() and converted:
        largest = max(range(len(lines)), key=lambda i: (lines[i][1], -i))
        converted[largest] += residual
    return [money.amount for money in converted]


def _check_keys(participants: Sequence[int], keys, what: str) -> None:
    unknown = set(keys) - set(participants)
    if unknown:
        raise InvalidParticipants(
            f"{what} given for users who are not participants: {sorted(unknown)}"
        )


def _distribute(
    amount: Decimal,
    currency: str,
    participants: Sequence[int],
    weights: Sequence[int],
) -> List[SplitLine]:
    """Proportional split; the remainder goes to the first non-zero weight."""
    total_weight = sum(weights)
    amounts = [quantize_down(amount * w / total_weight, currency) for w in weights]
    remainder = amount - sum(amounts, Decimal(0))
    if remainder:
        first = next(i for i, w in enumerate(weights) if w > 0)
        amounts[first] += remainder
    return list(zip(participants, amounts))


def _split_by_shares(
    amount: Decimal,
    currency: str,
    participants: Sequence[int],
    shares: Dict[int, int],
) -> List[SplitLine]:
    _check_keys(participants, shares, "Shares")
    weights = [shares.get(uid, 0) for uid in participants]
    if any(w < 0 for w in weights):
        raise SplitMismatchError("Share weights must not be negative")
    if sum(weights) <= 0:
        raise SplitMismatchError("At least one participant needs a positive share")
    return _distribute(amount, currency, participants, weights)


def _assign_residual(amounts: List[Decimal], residual: Decimal) -> None:
    """Put `residual` on the last participant whose amount stays non-negative."""
    if not residual:
        return
    for i in reversed(range(len(amounts))):
        if amounts[i] + residual >= 0:
            amounts[i] += residual
            return
    raise SplitMismatchError(f"Cannot absorb a rounding residual of {residual}")


def _split_by_percentage(
    amount: Decimal,
    currency: str,
    participants: Sequence[int],
    percentages: Dict[int, Decimal],
) -> List[SplitLine]:
    _check_keys(participants, percentages, "Percentages")
    pcts = [to_decimal(percentages.get(uid, 0)) for uid in participants]
    if any(p < 0 or p > 100 for p in pcts):
        raise SplitMismatchError("Percentages must be between 0 and 100")
    total_pct = sum(pcts, Decimal(0))
    if abs(total_pct - 100) > PERCENT_TOLERANCE:
        raise SplitMismatchError(f"Percentages sum to {total_pct}, expected 100")

    amounts = [quantize_down(amount * p / 100, currency) for p in pcts]
    _assign_residual(amounts, amount - sum(amounts, Decimal(0)))
    return list(zip(participants, amounts))


def _split_custom(
    amount: Decimal,
    currency: str,
    participants: Sequence[int],
    custom_amounts: Dict[int, Decimal],
) -> List[SplitLine]:
    _check_keys(participants, custom_amounts, "Amounts")
    amounts = [quantize(custom_amounts.get(uid, 0), currency) for uid in participants]
    if any(a < 0 for a in amounts):
        raise InvalidAmount("Custom split amounts must not be negative")
    declared = sum(amounts, Decimal(0))
    if abs(declared - amount) > minor_unit(currency):
        raise SplitMismatchError(
            f"Custom split amounts sum to {declared}, expected {amount}"
        )
    _assign_residual(amounts, amount - declared)
    return list(zip(participants, amounts))
