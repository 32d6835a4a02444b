"""Member and pooled-fund balances, recomputed from raw rows on every call.

    balance = contributed - fair_share + paid_from_pocket

A positive balance means the mess owes the member; negative means the
member owes the mess. Nothing here is cached: adding, editing or
soft-deleting any record is visible on the next call.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List

from .errors import Forbidden, NotFound, Unauthorized
from .money import ZERO, as_float, round_money
from .settlements import Balance, SettlementTransaction, simplify_settlements

logger = logging.getLogger(__name__)

ELEVATED_ROLES = ("Owner", "Admin")
SETTLED_BAND = Decimal("1")


def balance_status(balance: Decimal) -> str:
    if balance > SETTLED_BAND:
        return "owed"
    if balance < -SETTLED_BAND:
        return "owes"
    return "settled"


@dataclass
class MemberBalance:
    user_id: int
    user_name: str
    contributed: Decimal
    fair_share: Decimal
    paid_from_pocket: Decimal
    balance: Decimal
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "contributed": as_float(self.contributed),
            "fair_share": as_float(self.fair_share),
            "paid_from_pocket": as_float(self.paid_from_pocket),
            "balance": as_float(self.balance),
            "status": self.status,
        }


@dataclass
class FundBalance:
    total_collected: Decimal
    total_expenses: Decimal
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_collected": as_float(self.total_collected),
            "total_expenses": as_float(self.total_expenses),
            "balance": as_float(self.balance),
        }


@dataclass
class LedgerEntry:
    type: str
    id: int
    description: str
    amount: Decimal
    date: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "description": self.description,
            "amount": as_float(self.amount),
            "date": self.date.isoformat() if hasattr(self.date, "isoformat") else self.date,
        }


@dataclass
class BalanceBreakdown:
    balance: MemberBalance
    transactions: List[LedgerEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        body = self.balance.to_dict()
        body["transactions"] = [entry.to_dict() for entry in self.transactions]
        return body


def _sort_key(entry: LedgerEntry):
    value = entry.date
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.min


class BalanceService:
    def __init__(self, store) -> None:
        self.store = store

    def require_member(self, mess_id: int, user_id: int) -> str:
        role = self.store.get_member_role(mess_id, user_id)
        if not role:
            logger.warning("User %s is not a member of mess %s", user_id, mess_id)
            raise Unauthorized("You are not a member of this mess")
        return role

    def require_elevated(self, mess_id: int, user_id: int) -> str:
        # Non-members have no role, so they are refused like plain Members.
        role = self.store.get_member_role(mess_id, user_id)
        if role not in ELEVATED_ROLES:
            logger.warning("User %s (%s) denied member balances of mess %s", user_id, role, mess_id)
            raise Forbidden("Only Owner or Admin can view all member balances")
        return role

    def calculate_member_balance(self, mess_id: int, member_id: int) -> MemberBalance:
        self.require_member(mess_id, member_id)
        user = self.store.get_user(member_id)
        if not user:
            raise NotFound("User not found")

        fund_totals = self.store.sum_fund_records(mess_id, member_id=member_id)
        contributed = round_money(fund_totals["contribution"] - fund_totals["refund"])

        fair_share = ZERO
        for expense in self.store.list_expenses(mess_id, split_member=member_id):
            for split in expense["splits"]:
                if split["user_id"] == member_id:
                    fair_share += split["amount"]
        fair_share = round_money(fair_share)

        paid_from_pocket = round_money(
            sum((expense["amount"] for expense in self.store.list_expenses(mess_id, paid_by=member_id)), ZERO)
        )

        balance = round_money(contributed - fair_share + paid_from_pocket)
        return MemberBalance(
            user_id=member_id,
            user_name=user["name"],
            contributed=contributed,
            fair_share=fair_share,
            paid_from_pocket=paid_from_pocket,
            balance=balance,
            status=balance_status(balance),
        )

    def get_all_balances(self, mess_id: int, requester_id: int) -> List[MemberBalance]:
        self.require_elevated(mess_id, requester_id)
        return self._roster_balances(mess_id)

    def get_mess_fund_balance(self, mess_id: int) -> FundBalance:
        fund_totals = self.store.sum_fund_records(mess_id)
        total_collected = round_money(fund_totals["contribution"] - fund_totals["refund"])
        total_expenses = round_money(self.store.sum_expenses(mess_id))
        return FundBalance(
            total_collected=total_collected,
            total_expenses=total_expenses,
            balance=round_money(total_collected - total_expenses),
        )

    def get_balance_breakdown(self, mess_id: int, member_id: int) -> BalanceBreakdown:
        """Member balance plus the ledger entries that produced it, newest first."""
        balance = self.calculate_member_balance(mess_id, member_id)
        entries: List[LedgerEntry] = []

        for record in self.store.list_fund_records(mess_id, member_id=member_id):
            if record["kind"] == "contribution":
                amount = record["amount"]
                default_description = "Contribution to mess"
            else:
                amount = -record["amount"]
                default_description = "Refund from mess"
            entries.append(
                LedgerEntry("fund", record["id"], record.get("description") or default_description, amount, record["record_date"])
            )

        for expense in self.store.list_expenses(mess_id, paid_by=member_id):
            entries.append(
                LedgerEntry(
                    "expense",
                    expense["id"],
                    f"Paid from pocket: {expense['description']}",
                    expense["amount"],
                    expense["expense_date"],
                )
            )

        for expense in self.store.list_expenses(mess_id, split_member=member_id):
            share = next((s for s in expense["splits"] if s["user_id"] == member_id), None)
            if share:
                entries.append(
                    LedgerEntry(
                        "expense",
                        expense["id"],
                        f"Your share: {expense['description']}",
                        -share["amount"],
                        expense["expense_date"],
                    )
                )

        entries.sort(key=_sort_key, reverse=True)
        return BalanceBreakdown(balance=balance, transactions=entries)

    def get_settlement_suggestions(self, mess_id: int, requester_id: int) -> List[Dict[str, Any]]:
        """Who should pay into or receive from the fund, largest amounts first."""
        self.require_member(mess_id, requester_id)
        suggestions = [
            {
                "user_id": b.user_id,
                "user_name": b.user_name,
                "action": "receive" if b.balance > ZERO else "pay",
                "amount": abs(b.balance),
            }
            for b in self._roster_balances(mess_id)
            if abs(b.balance) > SETTLED_BAND
        ]
        suggestions.sort(key=lambda s: s["amount"], reverse=True)
        return suggestions

    def get_settlement_plan(self, mess_id: int, requester_id: int) -> List[SettlementTransaction]:
        self.require_member(mess_id, requester_id)
        balances = [Balance(b.user_id, b.balance) for b in self._roster_balances(mess_id)]
        return simplify_settlements(balances)

    def _roster_balances(self, mess_id: int) -> List[MemberBalance]:
        return [
            self.calculate_member_balance(mess_id, member["user_id"])
            for member in self.store.list_members(mess_id)
        ]
