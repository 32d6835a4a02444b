import pytest


def log_in(client, user_id, name="Member"):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        sess["user_name"] = name


def expenses_url(household):
    return f"/api/messes/{household['mess_id']}/expenses"


def test_register_then_session(client):
    response = client.post(
        "/api/register",
        json={"name": "Asha", "email": "Asha@Example.com ", "password": "hunter22"},
    )

    assert response.status_code == 201
    assert response.get_json()["email"] == "asha@example.com"
    session = client.get("/api/session").get_json()
    assert session == {"authenticated": True, "user": {"id": 1, "name": "Asha"}}


def test_register_rejects_duplicate_email(client):
    body = {"name": "Asha", "email": "asha@example.com", "password": "hunter22"}
    client.post("/api/register", json=body)

    response = client.post("/api/register", json=body)

    assert response.status_code == 409
    assert response.get_json() == {"error": "email_in_use"}


def test_login_and_logout(client):
    client.post("/api/register", json={"name": "Asha", "email": "asha@example.com", "password": "hunter22"})
    client.post("/api/logout")

    bad = client.post("/api/login", json={"email": "asha@example.com", "password": "wrong"})
    good = client.post("/api/login", json={"email": "asha@example.com", "password": "hunter22"})

    assert bad.status_code == 401
    assert bad.get_json() == {"error": "invalid_credentials"}
    assert good.status_code == 200
    assert good.get_json()["name"] == "Asha"
    assert client.post("/api/logout").get_json() == {"status": "ok"}
    assert client.get("/api/session").get_json() == {"authenticated": False}


def test_routes_require_login(client):
    response = client.get("/api/messes")

    assert response.status_code == 401
    assert response.get_json() == {"error": "authentication_required"}


def test_create_and_join_mess(client, store):
    owner = store.create_user("Asha", "asha@example.com", "x")
    guest = store.create_user("Eve", "eve@example.com", "x")
    log_in(client, owner, "Asha")

    created = client.post("/api/messes", json={"name": "Flat 9", "member_limit": 6})
    assert created.status_code == 201
    invite_code = created.get_json()["invite_code"]

    log_in(client, guest, "Eve")
    joined = client.post("/api/messes/join", json={"invite_code": invite_code})

    assert joined.get_json() == {"status": "joined", "mess_id": created.get_json()["id"]}
    messes = client.get("/api/messes").get_json()
    assert [(m["name"], m["role"]) for m in messes] == [("Flat 9", "Member")]


def test_invalid_member_limit_is_a_validation_error(client, store):
    log_in(client, store.create_user("Asha", "asha@example.com", "x"))

    response = client.post("/api/messes", json={"name": "Flat", "member_limit": 40})

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"


def test_owner_sets_roles(client, household):
    log_in(client, household["owner"])
    url = f"/api/messes/{household['mess_id']}/members/{household['carl']}/role"

    response = client.put(url, json={"role": "Admin"})

    assert response.status_code == 200
    members = client.get(f"/api/messes/{household['mess_id']}/members").get_json()
    assert {m["user_id"]: m["role"] for m in members}[household["carl"]] == "Admin"


def test_create_equal_expense(client, household):
    log_in(client, household["carl"])

    response = client.post(
        expenses_url(household),
        json={"amount": 30, "description": "Milk", "category": "Groceries", "date": "2026-03-02"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["paid_by"] == household["carl"]
    assert body["date"] == "2026-03-02"
    assert [s["amount"] for s in body["splits"]] == [7.5, 7.5, 7.5, 7.5]


def test_create_custom_expense(client, household):
    log_in(client, household["carl"])

    response = client.post(
        expenses_url(household),
        json={
            "amount": "45.00",
            "description": "Takeaway",
            "category": "Food",
            "date": "2026-03-02",
            "split_method": "custom",
            "splits": [
                {"member_id": household["carl"], "percentage": 60},
                {"member_id": household["dina"], "percentage": 40},
            ],
        },
    )

    assert response.status_code == 201
    assert [(s["user_id"], s["amount"]) for s in response.get_json()["splits"]] == [
        (household["carl"], 27.0),
        (household["dina"], 18.0),
    ]


def test_bad_percentages_return_invalid_split(client, household):
    log_in(client, household["carl"])

    response = client.post(
        expenses_url(household),
        json={
            "amount": 10,
            "description": "Takeaway",
            "category": "Food",
            "date": "2026-03-02",
            "split_method": "custom",
            "splits": [
                {"member_id": household["carl"], "percentage": 50},
                {"member_id": household["dina"], "percentage": 40},
            ],
        },
    )

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "invalid_split"
    assert "90.00" in body["message"]


@pytest.mark.parametrize("missing", ["amount", "description", "category", "date"])
def test_create_expense_requires_fields(client, household, missing):
    log_in(client, household["carl"])
    body = {"amount": 30, "description": "Milk", "category": "Groceries", "date": "2026-03-02"}
    del body[missing]

    response = client.post(expenses_url(household), json=body)

    assert response.status_code == 400
    assert response.get_json() == {"error": "missing_fields", "field": missing}


def test_edit_and_delete_expense(client, household):
    log_in(client, household["carl"])
    created = client.post(
        expenses_url(household),
        json={"amount": 40, "description": "Milk", "category": "Groceries", "date": "2026-03-02"},
    ).get_json()
    url = f"{expenses_url(household)}/{created['id']}"

    updated = client.put(url, json={"amount": 80, "date": "2026-03-03"}).get_json()
    assert updated["amount"] == 80.0
    assert updated["date"] == "2026-03-03"
    assert [s["amount"] for s in updated["splits"]] == [20.0] * 4

    log_in(client, household["dina"])
    assert client.delete(url).status_code == 403

    log_in(client, household["carl"])
    assert client.delete(url).get_json() == {"status": "deleted"}
    assert client.get(url).status_code == 404


def test_outsiders_get_not_authorized(client, store, household):
    log_in(client, store.create_user("Eve", "eve@example.com", "x"))

    response = client.get(expenses_url(household))

    assert response.status_code == 403
    assert response.get_json() == {
        "error": "not_authorized",
        "message": "You are not a member of this mess",
    }


def test_all_balances_are_for_owner_and_admin(client, household):
    log_in(client, household["carl"])
    assert client.get(f"/api/messes/{household['mess_id']}/balances").get_json()["error"] == "forbidden"

    log_in(client, household["admin"])
    response = client.get(f"/api/messes/{household['mess_id']}/balances")
    assert response.status_code == 200
    assert len(response.get_json()) == 4


def test_breakdown_of_another_member_needs_elevated_role(client, household):
    mess_id = household["mess_id"]
    log_in(client, household["carl"])

    assert client.get(f"/api/messes/{mess_id}/balances/{household['carl']}/breakdown").status_code == 200
    assert client.get(f"/api/messes/{mess_id}/balances/{household['dina']}/breakdown").status_code == 403

    log_in(client, household["owner"])
    assert client.get(f"/api/messes/{mess_id}/balances/{household['dina']}/breakdown").status_code == 200


def test_contributions_refunds_and_fund_balance(client, household):
    mess_id = household["mess_id"]
    log_in(client, household["carl"])
    contribution = client.post(
        f"/api/messes/{mess_id}/fund-records/contributions", json={"amount": "120.50", "date": "2026-03-01"}
    )
    assert contribution.status_code == 201
    assert contribution.get_json()["member_id"] == household["carl"]

    denied = client.post(
        f"/api/messes/{mess_id}/fund-records/refunds", json={"member_id": household["carl"], "amount": 10}
    )
    assert denied.status_code == 403

    log_in(client, household["owner"])
    too_much = client.post(
        f"/api/messes/{mess_id}/fund-records/refunds", json={"member_id": household["carl"], "amount": 500}
    )
    assert too_much.status_code == 422
    assert too_much.get_json()["available"] == 120.5

    refund = client.post(
        f"/api/messes/{mess_id}/fund-records/refunds", json={"member_id": household["carl"], "amount": "20.50"}
    )
    assert refund.status_code == 201

    fund = client.get(f"/api/messes/{mess_id}/fund").get_json()
    assert fund == {"total_collected": 100.0, "total_expenses": 0.0, "balance": 100.0}

    log_in(client, household["carl"])
    me = client.get(f"/api/messes/{mess_id}/balances/me").get_json()
    assert (me["contributed"], me["balance"], me["status"]) == (100.0, 100.0, "owed")


def test_settlement_plan_and_suggestions(client, household):
    mess_id = household["mess_id"]
    log_in(client, household["owner"])
    client.post(
        expenses_url(household),
        json={"amount": 100, "description": "Gas bill", "category": "Gas", "date": "2026-03-02"},
    )

    log_in(client, household["dina"])
    plan = client.get(f"/api/messes/{mess_id}/settlements/plan").get_json()
    suggestions = client.get(f"/api/messes/{mess_id}/settlements/suggestions").get_json()

    assert plan == [
        {"from": household["admin"], "to": household["owner"], "amount": 25.0},
        {"from": household["carl"], "to": household["owner"], "amount": 25.0},
        {"from": household["dina"], "to": household["owner"], "amount": 25.0},
    ]
    assert suggestions[0] == {
        "user_id": household["owner"],
        "user_name": "Asha",
        "action": "receive",
        "amount": 75.0,
    }


def test_unexpected_errors_become_json_500(client, store, monkeypatch):
    log_in(client, store.create_user("Asha", "asha@example.com", "x"))

    def broken(user_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(store, "list_user_messes", broken)

    response = client.get("/api/messes")

    assert response.status_code == 500
    assert response.get_json() == {"error": "internal_error"}


def test_unknown_routes_stay_404(client):
    assert client.get("/api/nothing-here").status_code == 404


def test_non_finite_amount_is_a_validation_error(client, household):
    log_in(client, household["carl"])

    response = client.post(
        expenses_url(household),
        data='{"amount": Infinity, "description": "Milk", "category": "Groceries", "date": "2026-03-02"}',
        content_type="application/json",
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"


def test_non_finite_percentage_is_an_invalid_split(client, household):
    log_in(client, household["carl"])

    response = client.post(
        expenses_url(household),
        json={
            "amount": 10,
            "description": "Takeaway",
            "category": "Food",
            "date": "2026-03-02",
            "split_method": "custom",
            "splits": [
                {"member_id": household["carl"], "percentage": "NaN"},
                {"member_id": household["dina"], "percentage": 100},
            ],
        },
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_split"


def test_outsiders_cannot_see_all_balances(client, store, household):
    log_in(client, store.create_user("Eve", "eve@example.com", "x"))

    response = client.get(f"/api/messes/{household['mess_id']}/balances")

    assert response.status_code == 403
    assert response.get_json()["error"] == "forbidden"
