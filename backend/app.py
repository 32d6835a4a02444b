from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Dict, List, Optional

from flask import (
    Flask,
    jsonify,
    request,
    session,
)
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import BalanceService
from .config import config
from .errors import MessMateError, ValidationError
from .records import (
    ExpenseService,
    FundService,
    MessService,
    serialize_expense,
    serialize_fund_record,
)
from .splits import parse_custom_splits
from .store import Store

logger = logging.getLogger(__name__)


def create_app(store: Optional[Store] = None) -> Flask:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    register_error_handlers(app)
    register_routes(app, store or Store())
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MessMateError)
    def handle_messmate_error(exc: MessMateError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal_error"}), 500


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {}
    return payload


def _int_list(values: Any, field_name: str) -> Optional[List[int]]:
    if values is None:
        return None
    try:
        return [int(value) for value in values]
    except (TypeError, ValueError):
        raise ValidationError(f"invalid_{field_name}") from None


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid_{field_name}") from None


def register_routes(app: Flask, store: Store) -> None:
    # -- auth ------------------------------------------------------------------

    @app.post("/api/register")
    def register():
        payload = _payload()
        name = (payload.get("name") or "").strip()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""

        if not name or not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        if store.get_user_by_email(email):
            return jsonify({"error": "email_in_use"}), 409

        user_id = store.create_user(name, email, generate_password_hash(password))
        logger.info("Registered user %s", user_id)

        session["user_id"] = user_id
        session["user_name"] = name

        return jsonify({"id": user_id, "name": name, "email": email}), 201

    @app.post("/api/login")
    def login():
        payload = _payload()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""

        if not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        user = store.get_user_by_email(email)
        if not user or not check_password_hash(user["password"], password):
            logger.warning("Failed login for %s", email)
            return jsonify({"error": "invalid_credentials"}), 401

        session["user_id"] = user["id"]
        session["user_name"] = user["name"]

        return jsonify({"id": user["id"], "name": user["name"], "email": email})

    @app.post("/api/logout")
    @require_login
    def logout():
        session.clear()
        return jsonify({"status": "ok"})

    @app.get("/api/session")
    def get_session():
        if "user_id" in session:
            return jsonify(
                {
                    "authenticated": True,
                    "user": {"id": session["user_id"], "name": session["user_name"]},
                }
            )
        return jsonify({"authenticated": False})

    # -- messes ----------------------------------------------------------------

    @app.get("/api/messes")
    @require_login
    def list_messes():
        return jsonify(MessService(store).list_messes(session["user_id"]))

    @app.post("/api/messes")
    @require_login
    def create_mess():
        payload = _payload()
        mess = MessService(store).create_mess(
            session["user_id"],
            payload.get("name"),
            description=payload.get("description"),
            member_limit=payload.get("member_limit"),
        )
        return jsonify(mess), 201

    @app.post("/api/messes/join")
    @require_login
    def join_mess():
        payload = _payload()
        result = MessService(store).join_mess(session["user_id"], payload.get("invite_code"))
        return jsonify(result)

    @app.get("/api/messes/<int:mess_id>/members")
    @require_login
    def list_members(mess_id: int):
        return jsonify(MessService(store).list_members(session["user_id"], mess_id))

    @app.put("/api/messes/<int:mess_id>/members/<int:user_id>/role")
    @require_login
    def set_member_role(mess_id: int, user_id: int):
        payload = _payload()
        MessService(store).set_role(session["user_id"], mess_id, user_id, payload.get("role"))
        return jsonify({"status": "updated", "user_id": user_id, "role": payload.get("role")})

    # -- expenses --------------------------------------------------------------

    @app.get("/api/messes/<int:mess_id>/expenses")
    @require_login
    def list_expenses(mess_id: int):
        args = request.args
        result = ExpenseService(store).list_expenses(
            session["user_id"],
            mess_id,
            category=args.get("category"),
            member_id=_optional_int(args.get("member_id"), "member_id"),
            start_date=args.get("start_date"),
            end_date=args.get("end_date"),
            page=args.get("page"),
            limit=args.get("limit"),
        )
        return jsonify(result)

    @app.post("/api/messes/<int:mess_id>/expenses")
    @require_login
    def create_expense(mess_id: int):
        payload = _payload()
        for field_name in ("amount", "description", "category", "date"):
            if payload.get(field_name) in (None, ""):
                return jsonify({"error": "missing_fields", "field": field_name}), 400

        splits_payload = payload.get("splits")
        expense = ExpenseService(store).create_expense(
            session["user_id"],
            mess_id,
            amount=payload["amount"],
            description=payload["description"],
            category=payload["category"],
            expense_date=payload["date"],
            paid_by=_optional_int(payload.get("paid_by"), "paid_by"),
            split_method=payload.get("split_method") or "equal",
            custom_splits=parse_custom_splits(splits_payload) if splits_payload is not None else None,
            excluded_ids=_int_list(payload.get("excluded_members"), "excluded_members"),
        )
        return jsonify(serialize_expense(expense)), 201

    @app.get("/api/messes/<int:mess_id>/expenses/<int:expense_id>")
    @require_login
    def get_expense(mess_id: int, expense_id: int):
        expense = ExpenseService(store).get_expense(session["user_id"], mess_id, expense_id)
        return jsonify(serialize_expense(expense))

    @app.put("/api/messes/<int:mess_id>/expenses/<int:expense_id>")
    @require_login
    def update_expense(mess_id: int, expense_id: int):
        payload = _payload()
        changes: Dict[str, Any] = {}
        for field_name in ("amount", "description", "category", "paid_by", "split_method"):
            if field_name in payload:
                changes[field_name] = payload[field_name]
        if "date" in payload:
            changes["expense_date"] = payload["date"]
        if payload.get("splits") is not None:
            changes["splits"] = parse_custom_splits(payload["splits"])
        if payload.get("excluded_members") is not None:
            changes["excluded_members"] = _int_list(payload["excluded_members"], "excluded_members")

        expense = ExpenseService(store).update_expense(session["user_id"], mess_id, expense_id, changes)
        return jsonify(serialize_expense(expense))

    @app.delete("/api/messes/<int:mess_id>/expenses/<int:expense_id>")
    @require_login
    def delete_expense(mess_id: int, expense_id: int):
        ExpenseService(store).delete_expense(session["user_id"], mess_id, expense_id)
        return jsonify({"status": "deleted"}), 200

    # -- pooled fund -----------------------------------------------------------

    @app.get("/api/messes/<int:mess_id>/fund-records")
    @require_login
    def list_fund_records(mess_id: int):
        args = request.args
        result = FundService(store).list_records(
            session["user_id"],
            mess_id,
            member_id=_optional_int(args.get("member_id"), "member_id"),
            kind=args.get("kind"),
            page=args.get("page"),
            limit=args.get("limit"),
        )
        return jsonify(result)

    @app.post("/api/messes/<int:mess_id>/fund-records/contributions")
    @require_login
    def record_contribution(mess_id: int):
        payload = _payload()
        member_id = _optional_int(payload.get("member_id"), "member_id") or session["user_id"]
        record = FundService(store).record_contribution(
            session["user_id"],
            mess_id,
            member_id,
            payload.get("amount"),
            description=payload.get("description"),
            record_date=payload.get("date"),
        )
        return jsonify(serialize_fund_record(record)), 201

    @app.post("/api/messes/<int:mess_id>/fund-records/refunds")
    @require_login
    def record_refund(mess_id: int):
        payload = _payload()
        member_id = _optional_int(payload.get("member_id"), "member_id")
        if member_id is None:
            return jsonify({"error": "missing_fields", "field": "member_id"}), 400
        record = FundService(store).record_refund(
            session["user_id"],
            mess_id,
            member_id,
            payload.get("amount"),
            description=payload.get("description"),
            record_date=payload.get("date"),
        )
        return jsonify(serialize_fund_record(record)), 201

    @app.delete("/api/messes/<int:mess_id>/fund-records/<int:record_id>")
    @require_login
    def delete_fund_record(mess_id: int, record_id: int):
        FundService(store).delete_record(session["user_id"], mess_id, record_id)
        return jsonify({"status": "deleted"}), 200

    # -- balances and settlements ---------------------------------------------

    @app.get("/api/messes/<int:mess_id>/balances")
    @require_login
    def get_all_balances(mess_id: int):
        balances = BalanceService(store).get_all_balances(mess_id, session["user_id"])
        return jsonify([balance.to_dict() for balance in balances])

    @app.get("/api/messes/<int:mess_id>/balances/me")
    @require_login
    def get_my_balance(mess_id: int):
        balance = BalanceService(store).calculate_member_balance(mess_id, session["user_id"])
        return jsonify(balance.to_dict())

    @app.get("/api/messes/<int:mess_id>/balances/<int:user_id>/breakdown")
    @require_login
    def get_balance_breakdown(mess_id: int, user_id: int):
        service = BalanceService(store)
        if user_id == session["user_id"]:
            service.require_member(mess_id, user_id)
        else:
            service.require_elevated(mess_id, session["user_id"])
        return jsonify(service.get_balance_breakdown(mess_id, user_id).to_dict())

    @app.get("/api/messes/<int:mess_id>/fund")
    @require_login
    def get_fund_balance(mess_id: int):
        service = BalanceService(store)
        service.require_member(mess_id, session["user_id"])
        return jsonify(service.get_mess_fund_balance(mess_id).to_dict())

    @app.get("/api/messes/<int:mess_id>/settlements/suggestions")
    @require_login
    def get_settlement_suggestions(mess_id: int):
        suggestions = BalanceService(store).get_settlement_suggestions(mess_id, session["user_id"])
        return jsonify(
            [dict(suggestion, amount=float(suggestion["amount"])) for suggestion in suggestions]
        )

    @app.get("/api/messes/<int:mess_id>/settlements/plan")
    @require_login
    def get_settlement_plan(mess_id: int):
        transactions = BalanceService(store).get_settlement_plan(mess_id, session["user_id"])
        return jsonify([transaction.to_dict() for transaction in transactions])


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
