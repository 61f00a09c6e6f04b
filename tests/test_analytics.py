from decimal import Decimal

import pytest

import analytics
from errors import NotFound
from memory_store import InMemoryStore
from purchase_engine import record_purchase
from registration import register_user


def _seed():
    """
    G -> A -> P, plus a second child B under G.
    P buys 5000 and 500, B buys 2000.
    """
    store = InMemoryStore()
    g = register_user(store, "grant", "g@example.com")
    a = register_user(store, "alice", "a@example.com", g["referral_code"])
    b = register_user(store, "bella", "b@example.com", g["referral_code"])
    p = register_user(store, "peter", "p@example.com", a["referral_code"])

    record_purchase(store, None, p["id"], 5000)
    record_purchase(store, None, p["id"], 500)
    record_purchase(store, None, b["id"], 2000)
    return store, g, a, b, p


def test_user_analytics():
    store, g, a, b, p = _seed()

    data = analytics.user_analytics(store, p["id"])
    assert data["transactions"]["total"] == 2
    assert data["transactions"]["total_amount"] == Decimal("5500")
    assert data["transactions"]["profit_generating"] == 1
    assert data["transactions"]["average_amount"] == Decimal("2750")
    assert data["referrals"]["parent"]["username"] == "alice"

    data = analytics.user_analytics(store, g["id"])
    assert data["user"]["direct_referrals"] == 2
    assert data["user"]["max_referrals"] == 8
    assert data["referrals"]["available_slots"] == 6
    assert [r["username"] for r in data["referrals"]["direct"]] == ["alice", "bella"]
    # 1% of 5000 via alice, 5% of 2000 from bella
    assert data["earnings"]["direct"] == {"count": 1, "amount": Decimal("100")}
    assert data["earnings"]["indirect"] == {"count": 1, "amount": Decimal("50")}
    assert data["earnings"]["total_amount"] == Decimal("150")


def test_earnings_stats():
    store, g, a, b, p = _seed()

    stats = analytics.earnings_stats(store, g["id"])
    assert stats["total"] == {"count": 2, "amount": Decimal("150")}
    assert stats["average_earning"] == Decimal("75")
    assert stats["last_earning"] is not None

    stats = analytics.earnings_stats(store, p["id"])
    assert stats["total"]["count"] == 0
    assert stats["average_earning"] == 0
    assert stats["last_earning"] is None


def test_system_analytics():
    store, g, a, b, p = _seed()

    data = analytics.system_analytics(store)
    overview = data["overview"]
    assert overview["total_users"] == 4
    assert overview["total_transactions"] == 3
    assert overview["total_earnings"] == 3
    assert overview["total_transaction_amount"] == Decimal("7500")
    assert overview["total_earnings_amount"] == Decimal("400")

    assert data["top_earners"][0]["username"] == "alice"
    assert data["recent_activity"][0]["username"] == "bella"


def test_referral_network_two_levels():
    store, g, a, b, p = _seed()

    network = analytics.referral_network(store, g["id"])
    level1, level2 = network["levels"]
    assert [u["username"] for u in level1["users"]] == ["alice", "bella"]
    assert [u["username"] for u in level2["users"]] == ["peter"]
    assert level2["users"][0]["parent_id"] == a["id"]


def test_user_profile_resolves_relations():
    store, g, a, b, p = _seed()

    profile = analytics.user_profile(store, a["id"])
    assert profile["parent"]["username"] == "grant"
    assert [c["username"] for c in profile["direct_referrals"]] == ["peter"]


def test_unknown_user():
    store = InMemoryStore()
    for query in (
        analytics.user_analytics,
        analytics.earnings_stats,
        analytics.referral_network,
        analytics.user_profile,
    ):
        with pytest.raises(NotFound):
            query(store, 404)
