"""Read-only summaries over stored users, transactions and earnings."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from errors import NotFound
from referral_engine import MAX_DIRECT_REFERRALS

ZERO = Decimal("0")

RECENT_LIMIT = 10
TOP_EARNERS_LIMIT = 10
RECENT_ACTIVITY_LIMIT = 20


def _require_user(store, user_id) -> Dict[str, Any]:
    user = store.find_user_by_id(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


def _user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "referral_code": user["referral_code"],
        "level": user["level"],
        "position": user["position"],
        "total_earnings": user["total_earnings"],
        "is_active": user["is_active"],
    }


def _direct_referrals(store, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    children = []
    for child_id in user["direct_referrals"]:
        child = store.find_user_by_id(child_id)
        if child is not None:
            children.append(_user_summary(child))
    return children


def _parent(store, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if user["parent_id"] is None:
        return None
    parent = store.find_user_by_id(user["parent_id"])
    if parent is None:
        return None
    return {
        "id": parent["id"],
        "username": parent["username"],
        "referral_code": parent["referral_code"],
    }


def _by_level(earnings: List[Dict[str, Any]], level: int) -> List[Dict[str, Any]]:
    return [e for e in earnings if e["referral_level"] == level]


def user_profile(store, user_id) -> Dict[str, Any]:
    """user record with its parent and direct referrals resolved."""
    user = _require_user(store, user_id)
    profile = dict(user)
    profile["parent"] = _parent(store, user)
    profile["direct_referrals"] = _direct_referrals(store, user)
    return profile


def referral_network(store, user_id) -> Dict[str, Any]:
    """
    the user's downline, two levels deep (the levels that can pay this user).

    structure:
    {
      "user_id": 1,
      "levels": [
        {"level": 1, "users": [...]},
        {"level": 2, "users": [...]},
      ]
    }
    """
    root = _require_user(store, user_id)

    levels = []
    current_level = [root]
    for level in (1, 2):
        next_level = []
        for member in current_level:
            for child_id in member["direct_referrals"]:
                child = store.find_user_by_id(child_id)
                if child is not None:
                    next_level.append(child)

        levels.append(
            {
                "level": level,
                "users": [dict(_user_summary(u), parent_id=u["parent_id"]) for u in next_level],
            }
        )
        current_level = next_level

    return {"user_id": root["id"], "levels": levels}


def earnings_stats(store, user_id) -> Dict[str, Any]:
    user = _require_user(store, user_id)
    earnings = store.list_earnings(user_id=user["id"])
    direct = _by_level(earnings, 1)
    indirect = _by_level(earnings, 2)

    return {
        "total": {"count": len(earnings), "amount": user["total_earnings"]},
        "direct": {"count": len(direct), "amount": user["total_direct_earnings"]},
        "indirect": {"count": len(indirect), "amount": user["total_indirect_earnings"]},
        "average_earning": (
            user["total_earnings"] / len(earnings) if earnings else ZERO
        ),
        "last_earning": max(e["created_at"] for e in earnings) if earnings else None,
    }


def user_analytics(store, user_id) -> Dict[str, Any]:
    user = _require_user(store, user_id)
    transactions = store.list_transactions(user_id=user["id"])
    earnings = store.list_earnings(user_id=user["id"])

    total_amount = sum((t["amount"] for t in transactions), ZERO)
    profit_generating = sum(1 for t in transactions if t["profit_generated"])
    taken = len(user["direct_referrals"])

    return {
        "user": {
            "id": user["id"],
            "username": user["username"],
            "level": user["level"],
            "total_earnings": user["total_earnings"],
            "direct_referrals": taken,
            "max_referrals": MAX_DIRECT_REFERRALS,
            "referral_code": user["referral_code"],
        },
        "transactions": {
            "total": len(transactions),
            "total_amount": total_amount,
            "profit_generating": profit_generating,
            "average_amount": total_amount / len(transactions) if transactions else ZERO,
            "recent": transactions[:RECENT_LIMIT],
        },
        "earnings": {
            "total": len(earnings),
            "total_amount": user["total_earnings"],
            "direct": {
                "count": len(_by_level(earnings, 1)),
                "amount": user["total_direct_earnings"],
            },
            "indirect": {
                "count": len(_by_level(earnings, 2)),
                "amount": user["total_indirect_earnings"],
            },
            "recent": earnings[:RECENT_LIMIT],
        },
        "referrals": {
            "direct": _direct_referrals(store, user),
            "available_slots": MAX_DIRECT_REFERRALS - taken,
            "parent": _parent(store, user),
        },
    }


def system_analytics(store) -> Dict[str, Any]:
    users = store.list_users()
    transactions = store.list_transactions()
    earnings = store.list_earnings()

    usernames = {u["id"]: u["username"] for u in users}
    top_earners = sorted(users, key=lambda u: u["total_earnings"], reverse=True)

    return {
        "overview": {
            "total_users": len(users),
            "total_transactions": len(transactions),
            "total_earnings": len(earnings),
            "total_transaction_amount": sum((t["amount"] for t in transactions), ZERO),
            "total_earnings_amount": sum((e["amount"] for e in earnings), ZERO),
        },
        "top_earners": [
            {
                "id": u["id"],
                "username": u["username"],
                "total_earnings": u["total_earnings"],
                "level": u["level"],
                "direct_referrals": len(u["direct_referrals"]),
            }
            for u in top_earners[:TOP_EARNERS_LIMIT]
        ],
        "recent_activity": [
            dict(t, username=usernames.get(t["user_id"]))
            for t in transactions[:RECENT_ACTIVITY_LIMIT]
        ],
    }
