"""Turn one expense amount and a split policy into per-member shares.

Every function returns shares whose amounts add up to the total exactly:
the sub-cent residual left by rounding is pushed onto one member (the
first included member for equal splits, the largest share for custom
splits) instead of being dropped.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidSplit
from .money import CENT, ZERO, round_money, to_decimal

SPLIT_METHODS = ("equal", "custom", "exclude")

PERCENT_TOLERANCE = Decimal("0.01")
PER_SPLIT_TOLERANCE = Decimal("0.02")
HUNDRED = Decimal("100")


@dataclass
class SplitInput:
    member_id: int
    percentage: Optional[Decimal] = None


@dataclass
class SplitResult:
    member_id: int
    amount: Decimal
    percentage: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "amount": float(self.amount),
            "percentage": float(self.percentage),
        }


def _positive_total(total: Any) -> Decimal:
    try:
        amount = to_decimal(total)
    except ValueError:
        raise InvalidSplit("Total amount must be a number") from None
    if amount <= ZERO:
        raise InvalidSplit("Total amount must be positive")
    return amount


def calculate_equal_split(
    total: Any,
    member_ids: Sequence[int],
    excluded_ids: Iterable[int] = (),
) -> List[SplitResult]:
    amount = _positive_total(total)
    if not member_ids:
        raise InvalidSplit("At least one member is required")

    excluded = set(excluded_ids)
    included = [member_id for member_id in member_ids if member_id not in excluded]
    if not included:
        raise InvalidSplit("At least one member must be included in the split")

    count = len(included)
    share = round_money(amount / count)
    percentage = round_money(HUNDRED / count)
    residual = round_money(amount - share * count)

    splits = [SplitResult(member_id, share, percentage) for member_id in included]
    if residual != ZERO:
        splits[0].amount = round_money(splits[0].amount + residual)
        if splits[0].amount < ZERO:
            raise InvalidSplit(f"Amount {amount} is too small to split among {count} members")
    return splits


def calculate_custom_split(total: Any, custom_splits: Sequence[SplitInput]) -> List[SplitResult]:
    amount = _positive_total(total)
    if not custom_splits:
        raise InvalidSplit("At least one split is required")

    percentages: List[Decimal] = []
    for item in custom_splits:
        if item.percentage is None:
            raise InvalidSplit("All splits must have a percentage for custom split")
        try:
            percentage = Decimal(str(item.percentage))
        except ArithmeticError:
            raise InvalidSplit("Percentages must be numbers") from None
        if not percentage.is_finite():
            raise InvalidSplit("Percentages must be finite numbers")
        if percentage < ZERO or percentage > HUNDRED:
            raise InvalidSplit("Percentages must be between 0 and 100")
        percentages.append(percentage)

    total_percentage = sum(percentages, ZERO)
    if abs(total_percentage - HUNDRED) > PERCENT_TOLERANCE:
        raise InvalidSplit(
            f"Sum of percentages must equal 100% (current: {total_percentage.quantize(CENT)}%)"
        )

    results = [
        SplitResult(item.member_id, round_money(amount * percentage / HUNDRED), percentage)
        for item, percentage in zip(custom_splits, percentages)
    ]

    residual = round_money(amount - sum((r.amount for r in results), ZERO))
    if residual != ZERO:
        # max() returns the first of equal maxima, so ties go to input order.
        largest = max(results, key=lambda r: r.amount)
        largest.amount = round_money(largest.amount + residual)
    return results


def calculate_splits(
    method: str,
    total: Any,
    member_ids: Optional[Sequence[int]] = None,
    custom_splits: Optional[Sequence[SplitInput]] = None,
    excluded_ids: Optional[Sequence[int]] = None,
) -> List[SplitResult]:
    if method == "equal":
        if not member_ids:
            raise InvalidSplit("Member IDs are required for equal split")
        return calculate_equal_split(total, member_ids)

    if method == "custom":
        if not custom_splits:
            raise InvalidSplit("Splits are required for custom split")
        return calculate_custom_split(total, custom_splits)

    if method == "exclude":
        if not member_ids:
            raise InvalidSplit("Member IDs are required for exclude split")
        if not excluded_ids:
            raise InvalidSplit("Excluded member IDs are required for exclude split")
        return calculate_equal_split(total, member_ids, excluded_ids)

    raise InvalidSplit(f"Invalid split method: {method}")


def validate_split_total(total: Decimal, splits: Sequence[SplitResult]) -> None:
    """Reject split lists that drift from the expense amount.

    The allowance grows with the number of splits: two cents per share.
    """
    split_total = sum((split.amount for split in splits), ZERO)
    tolerance = PER_SPLIT_TOLERANCE * len(splits)
    if abs(split_total - total) > tolerance:
        raise InvalidSplit(
            f"Split amounts ({split_total}) must add up to the expense amount ({total})"
        )


def parse_custom_splits(payload: Any) -> List[SplitInput]:
    if not isinstance(payload, list):
        raise InvalidSplit("splits must be a list")

    parsed: List[SplitInput] = []
    seen = set()
    for item in payload:
        try:
            member_id = int(item["member_id"])
            raw_percentage = item.get("percentage")
            percentage = None if raw_percentage is None else Decimal(str(raw_percentage))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            raise InvalidSplit("invalid_split_payload") from None
        if member_id in seen:
            raise InvalidSplit("duplicate_split_entry")
        seen.add(member_id)
        parsed.append(SplitInput(member_id, percentage))
    return parsed
