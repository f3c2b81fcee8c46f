import pytest
from fastapi.testclient import TestClient

from database import Base, make_engine, make_session_factory
from ledger import Ledger
from main import app, get_ledger

HEADERS = {"X-User-Id": "alice"}


@pytest.fixture()
def client(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'api.db'}")
    Base.metadata.create_all(engine)
    ledger = Ledger(make_session_factory(engine))
    app.dependency_overrides[get_ledger] = lambda: ledger
    with TestClient(app) as test_client:
        assert test_client.post("/api/me/bootstrap", headers=HEADERS).status_code == 204
        yield test_client
    app.dependency_overrides.clear()


def _account(client: TestClient) -> dict:
    types = client.get("/api/account-types", headers=HEADERS).json()
    checking = next(t for t in types if t["name"] == "Checking")
    resp = client.post(
        "/api/accounts",
        json={
            "name": "Joint",
            "account_type_id": checking["id"],
            "initial_balance_cents": 10000,
        },
        headers=HEADERS,
    )
    assert resp.status_code == 201
    return resp.json()


def _transaction(client: TestClient, account_id: int, amount_cents: int, **extra) -> dict:
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount_cents": amount_cents,
            "description": "Supermarket",
            "date": "2025-03-04",
            **extra,
        },
        headers=HEADERS,
    )
    assert resp.status_code == 201
    return resp.json()


def test_requests_need_a_user(client: TestClient) -> None:
    assert client.get("/api/accounts").status_code == 401


def test_transactions_keep_cached_balance_current(client: TestClient) -> None:
    account = _account(client)
    txn = _transaction(client, account["id"], -2500)

    assert client.get(f"/api/accounts/{account['id']}", headers=HEADERS).json()[
        "balance_cents"
    ] == 7500

    resp = client.delete(f"/api/transactions/{txn['id']}", headers=HEADERS)
    assert resp.status_code == 204
    balance = client.get(f"/api/accounts/{account['id']}/balance", headers=HEADERS).json()
    assert balance == {
        "account_id": account["id"],
        "cached_cents": 10000,
        "recalculated_cents": 10000,
        "drift_cents": 0,
    }


def test_split_errors_carry_rule_and_remaining(client: TestClient) -> None:
    account = _account(client)
    txn = _transaction(client, account["id"], -10000)

    resp = client.post(
        f"/api/transactions/{txn['id']}/splits",
        json=[
            {"amount_cents": -4000, "description": "Food"},
            {"amount_cents": -5000, "description": "Fuel"},
        ],
        headers=HEADERS,
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["rule"] == "amount_mismatch"
    assert body["remaining_cents"] == -1000

    resp = client.post(
        f"/api/transactions/{txn['id']}/splits",
        json=[
            {"amount_cents": -4000, "description": "Food"},
            {"amount_cents": -6000, "description": "Fuel"},
        ],
        headers=HEADERS,
    )
    assert resp.status_code == 201
    assert resp.json()["total_cents"] == -10000

    merged = client.delete(f"/api/transactions/{txn['id']}/splits", headers=HEADERS)
    assert merged.json()["is_split"] is False


def test_split_removal_goes_through_the_batch_route(client: TestClient) -> None:
    account = _account(client)
    txn = _transaction(client, account["id"], -10000)
    first, second = client.post(
        f"/api/transactions/{txn['id']}/splits",
        json=[
            {"amount_cents": -4000, "description": "Food"},
            {"amount_cents": -6000, "description": "Fuel"},
        ],
        headers=HEADERS,
    ).json()["split_ids"]

    resp = client.delete(f"/api/splits/{first}", headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["rule"] == "amount_mismatch"
    assert resp.json()["remaining_cents"] == -4000

    resp = client.patch(
        f"/api/transactions/{txn['id']}/splits",
        json={"updates": {str(second): {"amount_cents": -10000}}, "remove": [first]},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert [(s["id"], s["amount_cents"]) for s in resp.json()] == [(second, -10000)]


def test_error_status_mapping(client: TestClient) -> None:
    account = _account(client)
    tag = client.post(
        "/api/tags", json={"name": "Groceries", "level": 0}, headers=HEADERS
    ).json()
    _transaction(client, account["id"], -500, tag_ids=[tag["id"]])

    assert client.delete(f"/api/tags/{tag['id']}", headers=HEADERS).status_code == 409
    assert client.get("/api/accounts/9999", headers=HEADERS).status_code == 404
    assert (
        client.get(f"/api/accounts/{account['id']}", headers={"X-User-Id": "bob"}).status_code
        == 404
    )
    resp = client.post(
        "/api/tags",
        json={"name": "Loose", "level": 1},
        headers=HEADERS,
    )
    assert resp.status_code == 400
    assert resp.json()["rule"] == "level_mismatch"


def test_budget_report_endpoint(client: TestClient) -> None:
    account = _account(client)
    tag = client.post(
        "/api/tags", json={"name": "Groceries", "level": 0}, headers=HEADERS
    ).json()
    _transaction(client, account["id"], -12000, tag_ids=[tag["id"]])
    _transaction(client, account["id"], -8000, tag_ids=[tag["id"]])
    _transaction(client, account["id"], 5000)
    budget = client.post(
        "/api/budgets", json={"name": "March", "month": 3, "year": 2025}, headers=HEADERS
    ).json()
    client.post(
        f"/api/budgets/{budget['id']}/items",
        json={"category": "Groceries", "tag_ids": [tag["id"]], "budgeted_cents": 50000},
        headers=HEADERS,
    )

    report = client.get(f"/api/budgets/{budget['id']}/actual", headers=HEADERS).json()

    assert report["total_spent_cents"] == 20000
    assert report["total_remaining_cents"] == 30000
    assert report["overall_percentage_used"] == 40.0


def test_budgets_can_be_listed_by_month_slug(client: TestClient) -> None:
    for month in (2, 3):
        client.post(
            "/api/budgets",
            json={"name": f"Month {month}", "month": month, "year": 2025},
            headers=HEADERS,
        )

    listed = client.get("/api/budgets?period=2025-03", headers=HEADERS).json()

    assert [b["name"] for b in listed] == ["Month 3"]
    assert client.get("/api/budgets?period=soon", headers=HEADERS).status_code == 400
