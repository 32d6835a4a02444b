import copy
from datetime import datetime

import pytest

from backend.app import create_app
from backend.money import ZERO, to_decimal


class FakeStore:
    """In-memory stand-in for ``backend.store.Store`` with the same methods."""

    def __init__(self):
        self.users = {}
        self.messes = {}
        self.members = []
        self.expenses = {}
        self.fund_records = {}
        self._ids = {}

    def _next_id(self, table):
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    # users

    def get_user(self, user_id):
        user = self.users.get(user_id)
        return {k: user[k] for k in ("id", "name", "email")} if user else None

    def get_user_by_email(self, email):
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    def create_user(self, name, email, password_hash):
        user_id = self._next_id("users")
        self.users[user_id] = {"id": user_id, "name": name, "email": email, "password": password_hash}
        return user_id

    # messes

    def create_mess(self, name, description, member_limit, invite_code, created_by):
        mess_id = self._next_id("messes")
        self.messes[mess_id] = {
            "id": mess_id,
            "name": name,
            "description": description,
            "member_limit": member_limit,
            "invite_code": invite_code,
            "created_by": created_by,
        }
        return mess_id

    def get_mess_by_invite_code(self, invite_code):
        for mess in self.messes.values():
            if mess["invite_code"] == invite_code:
                return dict(mess)
        return None

    def list_user_messes(self, user_id):
        rows = []
        for member in self.members:
            if member["user_id"] == user_id:
                mess = self.messes[member["mess_id"]]
                rows.append(dict(mess, role=member["role"]))
        return sorted(rows, key=lambda row: row["name"])

    def add_member(self, mess_id, user_id, role):
        self.members.append({"mess_id": mess_id, "user_id": user_id, "role": role})
        return len(self.members)

    def list_members(self, mess_id):
        return [
            {
                "user_id": m["user_id"],
                "name": self.users[m["user_id"]]["name"],
                "email": self.users[m["user_id"]]["email"],
                "role": m["role"],
            }
            for m in self.members
            if m["mess_id"] == mess_id
        ]

    def get_member_role(self, mess_id, user_id):
        for member in self.members:
            if member["mess_id"] == mess_id and member["user_id"] == user_id:
                return member["role"]
        return None

    def set_member_role(self, mess_id, user_id, role):
        for member in self.members:
            if member["mess_id"] == mess_id and member["user_id"] == user_id:
                member["role"] = role

    # expenses

    def _split_rows(self, splits):
        return [
            {
                "user_id": s["user_id"],
                "name": self.users[s["user_id"]]["name"],
                "amount": to_decimal(s["amount"]),
                "percentage": to_decimal(s["percentage"]),
            }
            for s in splits
        ]

    def create_expense(self, mess_id, fields, splits):
        expense_id = self._next_id("expenses")
        now = datetime(2026, 1, 1, 12, 0, 0)
        self.expenses[expense_id] = dict(
            fields,
            id=expense_id,
            mess_id=mess_id,
            amount=to_decimal(fields["amount"]),
            paid_by_name=self.users[fields["paid_by"]]["name"],
            splits=self._split_rows(splits),
            created_at=now,
            updated_at=now,
            is_deleted=False,
        )
        return expense_id

    def update_expense(self, mess_id, expense_id, fields, splits=None):
        expense = self.expenses.get(expense_id)
        if not expense or expense["mess_id"] != mess_id or expense["is_deleted"]:
            return
        expense.update(fields)
        if "paid_by" in fields:
            expense["paid_by_name"] = self.users[fields["paid_by"]]["name"]
        if splits is not None:
            expense["splits"] = self._split_rows(splits)

    def soft_delete_expense(self, mess_id, expense_id):
        expense = self.expenses.get(expense_id)
        if expense and expense["mess_id"] == mess_id:
            expense["is_deleted"] = True

    def get_expense(self, mess_id, expense_id):
        expense = self.expenses.get(expense_id)
        if not expense or expense["mess_id"] != mess_id or expense["is_deleted"]:
            return None
        return copy.deepcopy(expense)

    def _filtered_expenses(self, mess_id, paid_by=None, split_member=None, category=None,
                           start_date=None, end_date=None):
        rows = [
            e for e in self.expenses.values()
            if e["mess_id"] == mess_id and not e["is_deleted"]
            and (paid_by is None or e["paid_by"] == paid_by)
            and (split_member is None or any(s["user_id"] == split_member for s in e["splits"]))
            and (not category or e["category"] == category)
            and (not start_date or e["expense_date"] >= start_date)
            and (not end_date or e["expense_date"] <= end_date)
        ]
        return sorted(rows, key=lambda e: (e["expense_date"], e["id"]), reverse=True)

    def list_expenses(self, mess_id, paid_by=None, split_member=None, category=None,
                      start_date=None, end_date=None, limit=None, offset=0):
        rows = self._filtered_expenses(mess_id, paid_by, split_member, category, start_date, end_date)
        if limit is not None:
            rows = rows[offset:offset + limit]
        return copy.deepcopy(rows)

    def count_expenses(self, mess_id, paid_by=None, split_member=None, category=None,
                       start_date=None, end_date=None):
        return len(self._filtered_expenses(mess_id, paid_by, split_member, category, start_date, end_date))

    def sum_expenses(self, mess_id):
        return sum((e["amount"] for e in self._filtered_expenses(mess_id)), ZERO)

    # fund records

    def create_fund_record(self, mess_id, fields):
        record_id = self._next_id("fund_records")
        self.fund_records[record_id] = dict(
            fields,
            id=record_id,
            mess_id=mess_id,
            amount=to_decimal(fields["amount"]),
            member_name=self.users[fields["member_id"]]["name"],
            created_at=datetime(2026, 1, 1, 12, 0, 0),
            is_deleted=False,
        )
        return record_id

    def get_fund_record(self, mess_id, record_id):
        record = self.fund_records.get(record_id)
        if not record or record["mess_id"] != mess_id or record["is_deleted"]:
            return None
        return dict(record)

    def soft_delete_fund_record(self, mess_id, record_id):
        record = self.fund_records.get(record_id)
        if record and record["mess_id"] == mess_id:
            record["is_deleted"] = True

    def _filtered_records(self, mess_id, member_id=None, kind=None):
        rows = [
            r for r in self.fund_records.values()
            if r["mess_id"] == mess_id and not r["is_deleted"]
            and (member_id is None or r["member_id"] == member_id)
            and (not kind or r["kind"] == kind)
        ]
        return sorted(rows, key=lambda r: (r["record_date"], r["id"]), reverse=True)

    def list_fund_records(self, mess_id, member_id=None, kind=None, limit=None, offset=0):
        rows = self._filtered_records(mess_id, member_id, kind)
        if limit is not None:
            rows = rows[offset:offset + limit]
        return [dict(r) for r in rows]

    def count_fund_records(self, mess_id, member_id=None, kind=None):
        return len(self._filtered_records(mess_id, member_id, kind))

    def sum_fund_records(self, mess_id, member_id=None):
        totals = {"contribution": ZERO, "refund": ZERO}
        for record in self._filtered_records(mess_id, member_id):
            totals[record["kind"]] += record["amount"]
        return totals


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def household(store):
    """A mess with an Owner, an Admin and two Members."""
    owner = store.create_user("Asha", "asha@example.com", "x")
    admin = store.create_user("Ben", "ben@example.com", "x")
    carl = store.create_user("Carl", "carl@example.com", "x")
    dina = store.create_user("Dina", "dina@example.com", "x")
    mess_id = store.create_mess("Flat 4B", None, 10, "FLAT4B00", owner)
    store.add_member(mess_id, owner, "Owner")
    store.add_member(mess_id, admin, "Admin")
    store.add_member(mess_id, carl, "Member")
    store.add_member(mess_id, dina, "Member")
    return {"mess_id": mess_id, "owner": owner, "admin": admin, "carl": carl, "dina": dina}


@pytest.fixture
def app(store):
    flask_app = create_app(store=store)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
