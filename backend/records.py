"""Create, change and list the raw records balances are computed from.

Expenses and fund records are never removed from the database; deleting
one sets ``is_deleted`` and every aggregate skips it from then on.
"""
from __future__ import annotations

import logging
import math
import secrets
import string
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .balances import ELEVATED_ROLES, BalanceService
from .config import config
from .errors import Conflict, Forbidden, InsufficientFunds, NotFound, Unauthorized, ValidationError
from .money import ZERO, as_float, has_at_most_two_places, to_decimal
from .splits import SPLIT_METHODS, SplitInput, calculate_splits, validate_split_total

logger = logging.getLogger(__name__)

EXPENSE_CATEGORIES = (
    "Groceries",
    "Utilities",
    "Rent",
    "Gas",
    "Internet",
    "Cleaning",
    "Food",
    "Entertainment",
    "Other",
)
FUND_RECORD_KINDS = ("contribution", "refund")
ROLES = ("Owner", "Admin", "Member")
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 8


def parse_amount(value: Any, field_name: str = "amount") -> Decimal:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(f"invalid_{field_name}")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(f"invalid_{field_name}") from None
    if not has_at_most_two_places(value):
        raise ValidationError(f"{field_name} must have at most 2 decimal places")
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be positive")
    return amount


def parse_date(value: Any, default: Optional[date] = None) -> date:
    if value in (None, ""):
        if default is None:
            raise ValidationError("date is required")
        return default
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"invalid date: {value}") from None


def paginate(page: Any = None, limit: Any = None) -> Tuple[int, int, int]:
    try:
        page_number = max(int(page or 1), 1)
        page_size = int(limit or config.DEFAULT_PAGE_SIZE)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers") from None
    page_size = min(max(page_size, 1), config.MAX_PAGE_SIZE)
    return page_number, page_size, (page_number - 1) * page_size


def paginated(data: List[Dict[str, Any]], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "data": data,
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit) if total else 0,
            "total_items": total,
            "items_per_page": limit,
        },
    }


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def serialize_expense(expense: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": expense["id"],
        "mess_id": expense["mess_id"],
        "amount": as_float(expense["amount"]),
        "description": expense["description"],
        "category": expense["category"],
        "date": _iso(expense["expense_date"]),
        "paid_by": expense["paid_by"],
        "paid_by_name": expense.get("paid_by_name"),
        "split_method": expense["split_method"],
        "splits": [
            {
                "user_id": split["user_id"],
                "name": split.get("name"),
                "amount": as_float(split["amount"]),
                "percentage": float(split["percentage"]),
            }
            for split in expense["splits"]
        ],
        "created_by": expense["created_by"],
        "created_at": _iso(expense.get("created_at")),
        "updated_at": _iso(expense.get("updated_at")),
    }


def serialize_fund_record(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "mess_id": record["mess_id"],
        "member_id": record["member_id"],
        "member_name": record.get("member_name"),
        "kind": record["kind"],
        "amount": as_float(record["amount"]),
        "description": record.get("description"),
        "date": _iso(record["record_date"]),
        "recorded_by": record["recorded_by"],
        "created_at": _iso(record.get("created_at")),
    }


class _MessScoped:
    def __init__(self, store) -> None:
        self.store = store

    def _role_of(self, mess_id: int, user_id: int) -> str:
        role = self.store.get_member_role(mess_id, user_id)
        if not role:
            logger.warning("User %s is not a member of mess %s", user_id, mess_id)
            raise Unauthorized("You are not a member of this mess")
        return role

    def _require_elevated(self, mess_id: int, user_id: int, action: str) -> str:
        role = self._role_of(mess_id, user_id)
        if role not in ELEVATED_ROLES:
            logger.warning("User %s (%s) may not %s in mess %s", user_id, role, action, mess_id)
            raise Forbidden(f"Only Owner or Admin can {action}")
        return role

    def _roster_ids(self, mess_id: int) -> List[int]:
        return [member["user_id"] for member in self.store.list_members(mess_id)]


class MessService(_MessScoped):
    def create_mess(
        self,
        user_id: int,
        name: str,
        description: Optional[str] = None,
        member_limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValidationError("missing_mess_name")

        limit = config.DEFAULT_MEMBER_LIMIT if member_limit is None else member_limit
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("member_limit must be an integer") from None
        if not config.MIN_MEMBER_LIMIT <= limit <= config.MAX_MEMBER_LIMIT:
            raise ValidationError(
                f"member_limit must be between {config.MIN_MEMBER_LIMIT} and {config.MAX_MEMBER_LIMIT}"
            )

        invite_code = self._new_invite_code()
        mess_id = self.store.create_mess(name, description, limit, invite_code, user_id)
        self.store.add_member(mess_id, user_id, "Owner")
        logger.info("User %s created mess %s", user_id, mess_id)
        return {
            "id": mess_id,
            "name": name,
            "description": description,
            "member_limit": limit,
            "invite_code": invite_code,
            "role": "Owner",
        }

    def join_mess(self, user_id: int, invite_code: str) -> Dict[str, Any]:
        mess = self.store.get_mess_by_invite_code((invite_code or "").strip().upper())
        if not mess:
            raise NotFound("Mess not found")

        if self.store.get_member_role(mess["id"], user_id):
            return {"status": "already_joined", "mess_id": mess["id"]}

        if len(self.store.list_members(mess["id"])) >= mess["member_limit"]:
            raise Conflict("Mess has reached its member limit")

        self.store.add_member(mess["id"], user_id, "Member")
        logger.info("User %s joined mess %s", user_id, mess["id"])
        return {"status": "joined", "mess_id": mess["id"]}

    def list_messes(self, user_id: int) -> List[Dict[str, Any]]:
        return self.store.list_user_messes(user_id)

    def list_members(self, user_id: int, mess_id: int) -> List[Dict[str, Any]]:
        self._role_of(mess_id, user_id)
        return self.store.list_members(mess_id)

    def set_role(self, user_id: int, mess_id: int, target_id: int, role: str) -> None:
        if role not in ROLES or role == "Owner":
            raise ValidationError("role must be Admin or Member")
        if self._role_of(mess_id, user_id) != "Owner":
            raise Forbidden("Only the Owner can assign roles")
        target_role = self.store.get_member_role(mess_id, target_id)
        if not target_role:
            raise NotFound("Member not found")
        if target_role == "Owner":
            raise Conflict("The Owner's role cannot be changed")
        self.store.set_member_role(mess_id, target_id, role)
        logger.info("User %s set role of %s to %s in mess %s", user_id, target_id, role, mess_id)

    def _new_invite_code(self) -> str:
        while True:
            code = "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))
            if not self.store.get_mess_by_invite_code(code):
                return code


class ExpenseService(_MessScoped):
    def create_expense(
        self,
        user_id: int,
        mess_id: int,
        amount: Any,
        description: str,
        category: str,
        expense_date: Any,
        paid_by: Optional[int] = None,
        split_method: str = "equal",
        custom_splits: Optional[Sequence[SplitInput]] = None,
        excluded_ids: Optional[Sequence[int]] = None,
    ) -> Dict[str, Any]:
        self._role_of(mess_id, user_id)
        fields = self._validated_fields(
            {
                "amount": amount,
                "description": description,
                "category": category,
                "expense_date": expense_date,
                "paid_by": user_id if paid_by is None else paid_by,
                "split_method": split_method,
            }
        )

        roster = self._roster_ids(mess_id)
        if fields["paid_by"] not in roster:
            raise ValidationError("Payer must be a member of the mess")

        self._check_split_inputs(fields["split_method"], custom_splits, excluded_ids)
        splits = self._split(fields["split_method"], fields["amount"], roster, custom_splits, excluded_ids)
        fields["created_by"] = user_id
        expense_id = self.store.create_expense(mess_id, fields, splits)
        logger.info("User %s created expense %s in mess %s", user_id, expense_id, mess_id)
        return self.store.get_expense(mess_id, expense_id)

    def update_expense(self, user_id: int, mess_id: int, expense_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        expense = self._editable_expense(user_id, mess_id, expense_id)

        fields = self._validated_fields(
            {key: value for key, value in changes.items() if key in (
                "amount", "description", "category", "expense_date", "paid_by", "split_method"
            )}
        )
        roster = self._roster_ids(mess_id)
        if "paid_by" in fields and fields["paid_by"] not in roster:
            raise ValidationError("Payer must be a member of the mess")

        splits = None
        resplit = any(key in changes for key in ("amount", "split_method", "splits", "excluded_members"))
        if resplit:
            method = fields.get("split_method", expense["split_method"])
            amount = fields.get("amount", expense["amount"])
            custom_splits = changes.get("splits")
            excluded_ids = changes.get("excluded_members")
            self._check_split_inputs(method, custom_splits, excluded_ids)
            if method == "custom" and custom_splits is None:
                # Rounded equal percentages need not add up to 100.
                if expense["split_method"] != "custom":
                    raise ValidationError("splits are required when switching to custom split")
                custom_splits = [SplitInput(s["user_id"], s["percentage"]) for s in expense["splits"]]
            if method == "exclude" and excluded_ids is None:
                split_members = {s["user_id"] for s in expense["splits"]}
                excluded_ids = [member_id for member_id in roster if member_id not in split_members]
            splits = self._split(method, amount, roster, custom_splits, excluded_ids)

        self.store.update_expense(mess_id, expense_id, fields, splits)
        logger.info("User %s updated expense %s in mess %s", user_id, expense_id, mess_id)
        return self.store.get_expense(mess_id, expense_id)

    def delete_expense(self, user_id: int, mess_id: int, expense_id: int) -> None:
        self._editable_expense(user_id, mess_id, expense_id)
        self.store.soft_delete_expense(mess_id, expense_id)
        logger.info("User %s deleted expense %s in mess %s", user_id, expense_id, mess_id)

    def get_expense(self, user_id: int, mess_id: int, expense_id: int) -> Dict[str, Any]:
        self._role_of(mess_id, user_id)
        expense = self.store.get_expense(mess_id, expense_id)
        if not expense:
            raise NotFound("Expense not found")
        return expense

    def list_expenses(
        self,
        user_id: int,
        mess_id: int,
        category: Optional[str] = None,
        member_id: Optional[int] = None,
        start_date: Any = None,
        end_date: Any = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        self._role_of(mess_id, user_id)
        if category and category not in EXPENSE_CATEGORIES:
            raise ValidationError(f"{category} is not a valid category")
        filters = {
            "category": category,
            "split_member": member_id,
            "start_date": parse_date(start_date) if start_date else None,
            "end_date": parse_date(end_date) if end_date else None,
        }
        page_number, page_size, offset = paginate(page, limit)
        expenses = self.store.list_expenses(mess_id, limit=page_size, offset=offset, **filters)
        total = self.store.count_expenses(mess_id, **filters)
        return paginated([serialize_expense(e) for e in expenses], total, page_number, page_size)

    def _editable_expense(self, user_id: int, mess_id: int, expense_id: int) -> Dict[str, Any]:
        role = self._role_of(mess_id, user_id)
        expense = self.store.get_expense(mess_id, expense_id)
        if not expense:
            raise NotFound("Expense not found")
        if expense["created_by"] != user_id and role not in ELEVATED_ROLES:
            logger.warning("User %s may not change expense %s in mess %s", user_id, expense_id, mess_id)
            raise Forbidden("You do not have permission to edit this expense")
        return expense

    def _validated_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if "amount" in raw:
            fields["amount"] = parse_amount(raw["amount"])
        if "description" in raw:
            description = (raw["description"] or "").strip()
            if not description:
                raise ValidationError("description is required")
            fields["description"] = description
        if "category" in raw:
            if raw["category"] not in EXPENSE_CATEGORIES:
                raise ValidationError(f"{raw['category']} is not a valid category")
            fields["category"] = raw["category"]
        if "expense_date" in raw:
            fields["expense_date"] = parse_date(raw["expense_date"])
        if "paid_by" in raw:
            try:
                fields["paid_by"] = int(raw["paid_by"])
            except (TypeError, ValueError):
                raise ValidationError("invalid_paid_by") from None
        if "split_method" in raw:
            if raw["split_method"] not in SPLIT_METHODS:
                raise ValidationError(f"{raw['split_method']} is not a valid split method")
            fields["split_method"] = raw["split_method"]
        return fields

    def _check_split_inputs(
        self,
        method: str,
        custom_splits: Optional[Sequence[SplitInput]],
        excluded_ids: Optional[Sequence[int]],
    ) -> None:
        if custom_splits is not None and method != "custom":
            raise ValidationError(f"splits can only be given for custom split, not {method}")
        if excluded_ids is not None and method != "exclude":
            raise ValidationError(f"excluded_members can only be given for exclude split, not {method}")

    def _split(
        self,
        method: str,
        amount: Decimal,
        roster: List[int],
        custom_splits: Optional[Sequence[SplitInput]],
        excluded_ids: Optional[Sequence[int]],
    ) -> List[Dict[str, Any]]:
        results = calculate_splits(method, amount, roster, custom_splits, excluded_ids)
        if any(result.member_id not in roster for result in results):
            raise ValidationError("All split members must be members of the mess")
        validate_split_total(amount, results)
        return [
            {"user_id": r.member_id, "amount": r.amount, "percentage": r.percentage}
            for r in results
        ]


class FundService(_MessScoped):
    def record_contribution(
        self,
        user_id: int,
        mess_id: int,
        member_id: int,
        amount: Any,
        description: Optional[str] = None,
        record_date: Any = None,
    ) -> Dict[str, Any]:
        self._role_of(mess_id, user_id)
        return self._record(user_id, mess_id, member_id, "contribution", amount, description, record_date)

    def record_refund(
        self,
        user_id: int,
        mess_id: int,
        member_id: int,
        amount: Any,
        description: Optional[str] = None,
        record_date: Any = None,
    ) -> Dict[str, Any]:
        self._require_elevated(mess_id, user_id, "issue refunds")
        requested = parse_amount(amount)
        fund = BalanceService(self.store).get_mess_fund_balance(mess_id)
        if fund.balance < requested:
            raise InsufficientFunds(
                f"Insufficient mess fund balance. Available: {fund.balance}, Requested: {requested}",
                {"available": as_float(fund.balance)},
            )
        return self._record(user_id, mess_id, member_id, "refund", requested, description, record_date)

    def delete_record(self, user_id: int, mess_id: int, record_id: int) -> None:
        self._require_elevated(mess_id, user_id, "delete fund records")
        if not self.store.get_fund_record(mess_id, record_id):
            raise NotFound("Fund record not found")
        self.store.soft_delete_fund_record(mess_id, record_id)
        logger.info("User %s deleted fund record %s in mess %s", user_id, record_id, mess_id)

    def list_records(
        self,
        user_id: int,
        mess_id: int,
        member_id: Optional[int] = None,
        kind: Optional[str] = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        role = self._role_of(mess_id, user_id)
        if kind and kind not in FUND_RECORD_KINDS:
            raise ValidationError(f"{kind} is not a valid record kind")
        if role not in ELEVATED_ROLES:
            if member_id is not None and member_id != user_id:
                raise Forbidden("Members can only view their own fund records")
            member_id = user_id

        page_number, page_size, offset = paginate(page, limit)
        records = self.store.list_fund_records(mess_id, member_id=member_id, kind=kind, limit=page_size, offset=offset)
        total = self.store.count_fund_records(mess_id, member_id=member_id, kind=kind)
        return paginated([serialize_fund_record(r) for r in records], total, page_number, page_size)

    def _record(
        self,
        user_id: int,
        mess_id: int,
        member_id: int,
        kind: str,
        amount: Any,
        description: Optional[str],
        record_date: Any,
    ) -> Dict[str, Any]:
        if not self.store.get_member_role(mess_id, member_id):
            raise ValidationError("Member must be a member of the mess")
        fields = {
            "member_id": member_id,
            "kind": kind,
            "amount": parse_amount(amount),
            "description": (description or "").strip() or None,
            "record_date": parse_date(record_date, default=date.today()),
            "recorded_by": user_id,
        }
        record_id = self.store.create_fund_record(mess_id, fields)
        logger.info("User %s recorded %s %s for member %s in mess %s", user_id, kind, record_id, member_id, mess_id)
        return self.store.get_fund_record(mess_id, record_id)
