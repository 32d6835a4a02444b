"""MySQL queries used by the services.

Every expense, split and fund-record query is keyed by ``mess_id`` so rows
of one mess never leak into another, even for a user who belongs to both.
Rows come back as plain dicts (``cursor(dictionary=True)``) with DECIMAL
columns as ``Decimal``.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .db import Database, db as default_db
from .money import ZERO, to_decimal


class Store:
    def __init__(self, database: Optional[Database] = None) -> None:
        self.db = database or default_db

    # -- users -------------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT id, name, email FROM users WHERE id=%s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT id, name, email, password FROM users WHERE email=%s", (email,))

    def create_user(self, name: str, email: str, password_hash: str) -> int:
        return self.db.execute(
            "INSERT INTO users (name, email, password) VALUES (%s, %s, %s)",
            (name, email, password_hash),
        )

    # -- messes and membership ----------------------------------------------

    def create_mess(
        self,
        name: str,
        description: Optional[str],
        member_limit: int,
        invite_code: str,
        created_by: int,
    ) -> int:
        return self.db.execute(
            """
            INSERT INTO messes (name, description, member_limit, invite_code, created_by)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (name, description, member_limit, invite_code, created_by),
        )

    def get_mess_by_invite_code(self, invite_code: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT id, name, description, member_limit, invite_code, created_by FROM messes WHERE invite_code=%s",
            (invite_code,),
        )

    def list_user_messes(self, user_id: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            """
            SELECT m.id, m.name, m.description, m.member_limit, m.invite_code, mm.role
            FROM messes m
            JOIN mess_members mm ON mm.mess_id = m.id
            WHERE mm.user_id = %s
            ORDER BY m.name
            """,
            (user_id,),
        )

    def add_member(self, mess_id: int, user_id: int, role: str) -> int:
        return self.db.execute(
            "INSERT INTO mess_members (mess_id, user_id, role) VALUES (%s, %s, %s)",
            (mess_id, user_id, role),
        )

    def list_members(self, mess_id: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            """
            SELECT u.id AS user_id, u.name, u.email, mm.role
            FROM mess_members mm
            JOIN users u ON mm.user_id = u.id
            WHERE mm.mess_id=%s
            ORDER BY mm.joined_at, mm.id
            """,
            (mess_id,),
        )

    def get_member_role(self, mess_id: int, user_id: int) -> Optional[str]:
        row = self.db.fetch_one(
            "SELECT role FROM mess_members WHERE mess_id=%s AND user_id=%s",
            (mess_id, user_id),
        )
        return row["role"] if row else None

    def set_member_role(self, mess_id: int, user_id: int, role: str) -> None:
        self.db.execute(
            "UPDATE mess_members SET role=%s WHERE mess_id=%s AND user_id=%s",
            (role, mess_id, user_id),
        )

    # -- expenses ------------------------------------------------------------

    def create_expense(self, mess_id: int, fields: Dict[str, Any], splits: Sequence[Dict[str, Any]]) -> int:
        expense_id = self.db.execute(
            """
            INSERT INTO expenses
                (mess_id, amount, description, category, expense_date, paid_by, split_method, created_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                mess_id,
                str(fields["amount"]),
                fields["description"],
                fields["category"],
                fields["expense_date"],
                fields["paid_by"],
                fields["split_method"],
                fields["created_by"],
            ),
        )
        self._insert_splits(mess_id, expense_id, splits)
        return expense_id

    def update_expense(
        self,
        mess_id: int,
        expense_id: int,
        fields: Dict[str, Any],
        splits: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> None:
        columns = ("amount", "description", "category", "expense_date", "paid_by", "split_method")
        assignments = [f"{column}=%s" for column in columns if column in fields]
        if assignments:
            params = [str(fields[c]) if c == "amount" else fields[c] for c in columns if c in fields]
            self.db.execute(
                f"UPDATE expenses SET {', '.join(assignments)} WHERE id=%s AND mess_id=%s AND is_deleted=0",
                (*params, expense_id, mess_id),
            )
        if splits is not None:
            self.db.execute(
                "DELETE FROM expense_splits WHERE expense_id=%s AND mess_id=%s",
                (expense_id, mess_id),
            )
            self._insert_splits(mess_id, expense_id, splits)

    def soft_delete_expense(self, mess_id: int, expense_id: int) -> None:
        self.db.execute(
            "UPDATE expenses SET is_deleted=1, deleted_at=NOW() WHERE id=%s AND mess_id=%s",
            (expense_id, mess_id),
        )

    def get_expense(self, mess_id: int, expense_id: int) -> Optional[Dict[str, Any]]:
        rows = self._select_expenses("e.mess_id=%s AND e.id=%s AND e.is_deleted=0", [mess_id, expense_id])
        return rows[0] if rows else None

    def list_expenses(
        self,
        mess_id: int,
        paid_by: Optional[int] = None,
        split_member: Optional[int] = None,
        category: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where, params = self._expense_filters(mess_id, paid_by, split_member, category, start_date, end_date)
        return self._select_expenses(where, params, limit=limit, offset=offset)

    def count_expenses(
        self,
        mess_id: int,
        paid_by: Optional[int] = None,
        split_member: Optional[int] = None,
        category: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> int:
        where, params = self._expense_filters(mess_id, paid_by, split_member, category, start_date, end_date)
        row = self.db.fetch_one(f"SELECT COUNT(*) AS total FROM expenses e WHERE {where}", params)
        return int(row["total"]) if row else 0

    def sum_expenses(self, mess_id: int) -> Decimal:
        row = self.db.fetch_one(
            "SELECT SUM(amount) AS total FROM expenses WHERE mess_id=%s AND is_deleted=0",
            (mess_id,),
        )
        return to_decimal(row["total"] or 0) if row else ZERO

    def _expense_filters(
        self,
        mess_id: int,
        paid_by: Optional[int],
        split_member: Optional[int],
        category: Optional[str],
        start_date: Optional[date],
        end_date: Optional[date],
    ) -> Tuple[str, List[Any]]:
        clauses = ["e.mess_id=%s", "e.is_deleted=0"]
        params: List[Any] = [mess_id]
        if paid_by is not None:
            clauses.append("e.paid_by=%s")
            params.append(paid_by)
        if split_member is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM expense_splits s WHERE s.expense_id=e.id AND s.mess_id=%s AND s.user_id=%s)"
            )
            params.extend([mess_id, split_member])
        if category:
            clauses.append("e.category=%s")
            params.append(category)
        if start_date:
            clauses.append("e.expense_date>=%s")
            params.append(start_date)
        if end_date:
            clauses.append("e.expense_date<=%s")
            params.append(end_date)
        return " AND ".join(clauses), params

    def _select_expenses(
        self,
        where: str,
        params: List[Any],
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = f"""
            SELECT e.id, e.mess_id, e.amount, e.description, e.category, e.expense_date,
                   e.paid_by, u.name AS paid_by_name, e.split_method, e.created_by,
                   e.created_at, e.updated_at
            FROM expenses e
            JOIN users u ON e.paid_by = u.id
            WHERE {where}
            ORDER BY e.expense_date DESC, e.id DESC
        """
        if limit is not None:
            query += " LIMIT %s OFFSET %s"
            params = [*params, limit, offset]
        expenses = self.db.fetch_all(query, params)
        if not expenses:
            return expenses

        expense_ids = [expense["id"] for expense in expenses]
        placeholders = ", ".join(["%s"] * len(expense_ids))
        splits = self.db.fetch_all(
            f"""
            SELECT s.expense_id, s.user_id, u.name, s.amount, s.percentage
            FROM expense_splits s
            JOIN users u ON s.user_id = u.id
            WHERE s.mess_id=%s AND s.expense_id IN ({placeholders})
            ORDER BY s.id
            """,
            [expenses[0]["mess_id"], *expense_ids],
        )
        splits_map: Dict[int, List[Dict[str, Any]]] = {}
        for split in splits:
            splits_map.setdefault(split["expense_id"], []).append(
                {
                    "user_id": split["user_id"],
                    "name": split["name"],
                    "amount": to_decimal(split["amount"]),
                    "percentage": to_decimal(split["percentage"]),
                }
            )
        for expense in expenses:
            expense["amount"] = to_decimal(expense["amount"])
            expense["splits"] = splits_map.get(expense["id"], [])
        return expenses

    def _insert_splits(self, mess_id: int, expense_id: int, splits: Sequence[Dict[str, Any]]) -> None:
        self.db.execute_many(
            """
            INSERT INTO expense_splits (expense_id, mess_id, user_id, amount, percentage)
            VALUES (%s, %s, %s, %s, %s)
            """,
            [
                (expense_id, mess_id, split["user_id"], str(split["amount"]), str(split["percentage"]))
                for split in splits
            ],
        )

    # -- pooled fund records --------------------------------------------------

    def create_fund_record(self, mess_id: int, fields: Dict[str, Any]) -> int:
        return self.db.execute(
            """
            INSERT INTO fund_records
                (mess_id, member_id, kind, amount, description, record_date, recorded_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                mess_id,
                fields["member_id"],
                fields["kind"],
                str(fields["amount"]),
                fields.get("description"),
                fields["record_date"],
                fields["recorded_by"],
            ),
        )

    def get_fund_record(self, mess_id: int, record_id: int) -> Optional[Dict[str, Any]]:
        rows = self._select_fund_records("f.mess_id=%s AND f.id=%s AND f.is_deleted=0", [mess_id, record_id])
        return rows[0] if rows else None

    def soft_delete_fund_record(self, mess_id: int, record_id: int) -> None:
        self.db.execute(
            "UPDATE fund_records SET is_deleted=1, deleted_at=NOW() WHERE id=%s AND mess_id=%s",
            (record_id, mess_id),
        )

    def list_fund_records(
        self,
        mess_id: int,
        member_id: Optional[int] = None,
        kind: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where, params = self._fund_filters(mess_id, member_id, kind)
        return self._select_fund_records(where, params, limit=limit, offset=offset)

    def count_fund_records(self, mess_id: int, member_id: Optional[int] = None, kind: Optional[str] = None) -> int:
        where, params = self._fund_filters(mess_id, member_id, kind)
        row = self.db.fetch_one(f"SELECT COUNT(*) AS total FROM fund_records f WHERE {where}", params)
        return int(row["total"]) if row else 0

    def sum_fund_records(self, mess_id: int, member_id: Optional[int] = None) -> Dict[str, Decimal]:
        where, params = self._fund_filters(mess_id, member_id, None)
        rows = self.db.fetch_all(
            f"SELECT f.kind, SUM(f.amount) AS total FROM fund_records f WHERE {where} GROUP BY f.kind",
            params,
        )
        totals = {"contribution": ZERO, "refund": ZERO}
        for row in rows:
            totals[row["kind"]] = to_decimal(row["total"] or 0)
        return totals

    def _fund_filters(self, mess_id: int, member_id: Optional[int], kind: Optional[str]) -> Tuple[str, List[Any]]:
        clauses = ["f.mess_id=%s", "f.is_deleted=0"]
        params: List[Any] = [mess_id]
        if member_id is not None:
            clauses.append("f.member_id=%s")
            params.append(member_id)
        if kind:
            clauses.append("f.kind=%s")
            params.append(kind)
        return " AND ".join(clauses), params

    def _select_fund_records(
        self,
        where: str,
        params: List[Any],
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = f"""
            SELECT f.id, f.mess_id, f.member_id, u.name AS member_name, f.kind, f.amount,
                   f.description, f.record_date, f.recorded_by, f.created_at
            FROM fund_records f
            JOIN users u ON f.member_id = u.id
            WHERE {where}
            ORDER BY f.record_date DESC, f.id DESC
        """
        if limit is not None:
            query += " LIMIT %s OFFSET %s"
            params = [*params, limit, offset]
        records = self.db.fetch_all(query, params)
        for record in records:
            record["amount"] = to_decimal(record["amount"])
        return records
