"""Greedy settlement simplification.

Given one signed balance per member (positive: the mess owes them,
negative: they owe the mess) produce transfers that bring everybody back
to zero. The largest creditor is always matched with the largest debtor,
so every transfer settles at least one side and a vector of ``n``
unsettled members needs at most ``n - 1`` transfers.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence

from .money import CENT, ZERO, round_money


@dataclass
class Balance:
    user_id: Any
    amount: Decimal

    def __post_init__(self) -> None:
        self.amount = Decimal(str(self.amount))


@dataclass
class SettlementTransaction:
    from_user_id: Any
    to_user_id: Any
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_user_id,
            "to": self.to_user_id,
            "amount": float(self.amount),
        }


def simplify_settlements(balances: Iterable[Balance]) -> List[SettlementTransaction]:
    unsettled = [b for b in balances if abs(b.amount) > CENT]

    # sorted() is stable: equal magnitudes keep their input order.
    creditors = sorted(
        ([b.user_id, b.amount] for b in unsettled if b.amount > CENT),
        key=lambda entry: entry[1],
        reverse=True,
    )
    debtors = sorted(
        ([b.user_id, -b.amount] for b in unsettled if b.amount < -CENT),
        key=lambda entry: entry[1],
        reverse=True,
    )

    transactions: List[SettlementTransaction] = []
    creditor_idx = 0
    debtor_idx = 0

    while creditor_idx < len(creditors) and debtor_idx < len(debtors):
        creditor = creditors[creditor_idx]
        debtor = debtors[debtor_idx]

        transfer = min(creditor[1], debtor[1])
        transactions.append(
            SettlementTransaction(
                from_user_id=debtor[0],
                to_user_id=creditor[0],
                amount=round_money(transfer),
            )
        )

        creditor[1] -= transfer
        debtor[1] -= transfer

        if creditor[1] < CENT:
            creditor_idx += 1
        if debtor[1] < CENT:
            debtor_idx += 1

    return transactions


def validate_simplification(
    balances: Sequence[Balance],
    transactions: Sequence[SettlementTransaction],
) -> bool:
    """Re-check a transfer list against the balances it was built from.

    The list is valid when it moves exactly the money owed to creditors,
    leaves every member within a cent of zero, and uses no more than
    ``unsettled members - 1`` transfers.
    """
    total_positive = round_money(sum((b.amount for b in balances if b.amount > ZERO), ZERO))
    total_transferred = round_money(sum((t.amount for t in transactions), ZERO))
    if abs(total_positive - total_transferred) > CENT:
        return False

    final: Dict[Any, Decimal] = {}
    for b in balances:
        final[b.user_id] = final.get(b.user_id, ZERO) + b.amount
    for t in transactions:
        final[t.from_user_id] = final.get(t.from_user_id, ZERO) + t.amount
        final[t.to_user_id] = final.get(t.to_user_id, ZERO) - t.amount

    if any(abs(amount) > CENT for amount in final.values()):
        return False

    unsettled_count = sum(1 for b in balances if abs(b.amount) > CENT)
    return len(transactions) <= max(unsettled_count - 1, 0)
