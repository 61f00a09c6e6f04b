from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app import app, get_store
from memory_store import InMemoryStore

client = TestClient(app)


@pytest.fixture(autouse=True)
def fresh_store():
    """every test gets an empty in-memory store instead of postgres."""
    store = InMemoryStore()
    app.dependency_overrides[get_store] = lambda: store
    yield store
    app.dependency_overrides.clear()


def _register(username, parent_code=None):
    res = client.post(
        "/api/users/register",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "parent_referral_code": parent_code,
        },
    )
    assert res.status_code == 201, res.text
    return res.json()["user"]


def _wire_chain_via_api():
    """
    helper to wire G -> A -> P using /api/users/register.
    returns (g, a, p) public user dicts.
    """
    g = _register("grant")
    a = _register("alice", g["referral_code"])
    p = _register("peter", a["referral_code"])
    return g, a, p


def _buy(user_id, amount, **extra):
    return client.post("/api/transactions", json={"user_id": user_id, "amount": amount, **extra})


def test_health():
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "OK"


def test_full_api_flow():
    """
    end-to-end flow:
      - wire G -> A -> P
      - P buys for 5000
      - check transaction, earnings and balances
    """
    g, a, p = _wire_chain_via_api()
    assert (g["level"], a["level"], p["level"]) == (0, 1, 2)
    assert (g["position"], a["position"], p["position"]) == (None, 1, 1)

    res = _buy(p["id"], "5000")
    assert res.status_code == 201
    data = res.json()
    assert data["distributed"] is True
    assert data["transaction"]["amount"] == "5000"
    assert data["transaction"]["profit_generated"] is True

    earnings = {(e["user_id"], e["referral_level"], e["amount"], e["percentage"]) for e in data["earnings"]}
    assert earnings == {(a["id"], 1, "250", 5), (g["id"], 2, "50", 1)}

    alice = client.get(f"/api/users/{a['id']}").json()
    assert alice["total_direct_earnings"] == "250"
    assert alice["total_earnings"] == "250"
    assert alice["parent"]["username"] == "grant"
    assert [c["username"] for c in alice["direct_referrals"]] == ["peter"]

    grant = client.get(f"/api/users/{g['id']}").json()
    assert grant["total_indirect_earnings"] == "50"
    assert grant["total_earnings"] == "50"


def test_small_purchase_not_distributed():
    g, a, p = _wire_chain_via_api()

    res = _buy(p["id"], 1000, description="tea")
    assert res.status_code == 201
    data = res.json()
    assert data["distributed"] is False
    assert data["earnings"] == []
    assert data["transaction"]["description"] == "tea"

    assert client.get("/api/earnings").json() == []


def test_inactive_parent_via_api():
    g, a, p = _wire_chain_via_api()

    res = client.put(f"/api/users/{a['id']}/active", json={"is_active": False})
    assert res.status_code == 200
    assert res.json()["is_active"] is False

    data = _buy(p["id"], 5000).json()
    assert data["distributed"] is True
    assert data["earnings"] == []


def test_purchase_errors():
    g, a, p = _wire_chain_via_api()

    res = _buy(p["id"], "-10")
    assert res.status_code == 400

    res = _buy(p["id"], 0)
    assert res.status_code == 400

    res = _buy(9999, 5000)
    assert res.status_code == 404

    assert client.get("/api/transactions").json() == []


def test_registration_errors():
    g = _register("grant")

    res = client.post(
        "/api/users/register",
        json={"username": "grant", "email": "someone@example.com"},
    )
    assert res.status_code == 400
    assert "already exists" in res.json()["detail"]

    res = client.post(
        "/api/users/register",
        json={"username": "zed", "email": "zed@example.com", "parent_referral_code": "BOGUS"},
    )
    assert res.status_code == 400
    assert "Invalid referral code" in res.json()["detail"]

    for i in range(8):
        _register(f"kid{i}", g["referral_code"])
    res = client.post(
        "/api/users/register",
        json={"username": "kid8", "email": "kid8@example.com", "parent_referral_code": g["referral_code"]},
    )
    assert res.status_code == 400
    assert "maximum referral limit (8)" in res.json()["detail"]


def test_listing_endpoints():
    g, a, p = _wire_chain_via_api()
    _buy(p["id"], 5000)
    _buy(p["id"], 200)

    users = client.get("/api/users").json()
    assert {u["username"] for u in users} == {"grant", "alice", "peter"}

    txs = client.get(f"/api/transactions/user/{p['id']}").json()
    assert [t["amount"] for t in txs] == ["200", "5000"]

    all_txs = client.get("/api/transactions").json()
    assert {t["username"] for t in all_txs} == {"peter"}

    alice_earnings = client.get(f"/api/earnings/user/{a['id']}").json()
    assert len(alice_earnings) == 1
    assert alice_earnings[0]["from_username"] == "peter"

    stats = client.get(f"/api/earnings/stats/{g['id']}").json()
    assert stats["indirect"] == {"count": 1, "amount": "50"}

    network = client.get(f"/api/users/{g['id']}/network").json()
    assert [u["username"] for u in network["levels"][0]["users"]] == ["alice"]
    assert [u["username"] for u in network["levels"][1]["users"]] == ["peter"]


def test_analytics_endpoints():
    g, a, p = _wire_chain_via_api()
    _buy(p["id"], 5000)

    data = client.get(f"/api/analytics/user/{a['id']}").json()
    assert data["user"]["max_referrals"] == 8
    assert data["referrals"]["available_slots"] == 7
    assert data["earnings"]["direct"] == {"count": 1, "amount": "250"}

    system = client.get("/api/analytics/system").json()
    assert system["overview"]["total_users"] == 3
    assert system["overview"]["total_earnings_amount"] == "300"

    assert client.get("/api/analytics/user/9999").status_code == 404
    assert client.get("/api/users/9999").status_code == 404


def test_websocket_receives_earnings_update():
    """
    alice joins her feed, peter buys for 5000,
    alice gets a 'direct' earnings-update with her new total.
    """
    g, a, p = _wire_chain_via_api()

    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "join", "user_id": a["id"]})
        assert ws.receive_json() == {"event": "joined", "user_id": a["id"]}

        res = _buy(p["id"], 5000)
        assert res.status_code == 201

        message = ws.receive_json()
        assert message["event"] == "earnings-update"
        assert message["payload"] == {
            "kind": "direct",
            "amount": "250",
            "from_username": "peter",
            "transaction_amount": "5000",
            "recipient_total_earnings": "250",
        }


def test_websocket_rejects_unknown_action():
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "dance"})
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"action": "join"})
        assert ws.receive_json() == {"event": "error", "detail": "user_id is required"}


def test_websocket_survives_malformed_frame():
    """a non-JSON frame gets an error reply and the socket stays usable."""
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"event": "error", "detail": "invalid JSON"}

        ws.send_json({"action": "join", "user_id": 1})
        assert ws.receive_json() == {"event": "joined", "user_id": 1}


def test_fractional_amounts_are_returned_exactly():
    """
    three purchases of 1000.5 by peter:
      - alice earns 50.025 each, grant 10.005 each
      - listed earnings add up to the reported totals, with nothing rounded
    """
    g, a, p = _wire_chain_via_api()

    for _ in range(3):
        data = _buy(p["id"], "1000.5").json()
        assert data["transaction"]["amount"] == "1000.5"
        by_level = {e["referral_level"]: e for e in data["earnings"]}
        assert by_level[1]["amount"] == "50.025"
        assert by_level[2]["amount"] == "10.005"
        for e in data["earnings"]:
            assert Decimal(e["amount"]) == Decimal(e["transaction_amount"]) * e["percentage"] / 100

    grant_earnings = client.get(f"/api/earnings/user/{g['id']}").json()
    grant = client.get(f"/api/users/{g['id']}").json()
    assert sum(Decimal(e["amount"]) for e in grant_earnings) == Decimal(grant["total_earnings"])
    assert grant["total_earnings"] == "30.015"

    alice = client.get(f"/api/users/{a['id']}").json()
    assert alice["total_direct_earnings"] == "150.075"
