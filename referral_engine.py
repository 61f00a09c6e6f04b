import secrets
import string
from typing import Any, Callable, Dict, List, Optional, Tuple

from commission_engine import MAX_PAYOUT_LEVELS
from errors import CapacityExceeded

MAX_DIRECT_REFERRALS = 8

REFERRAL_SUFFIX_LENGTH = 6
_ALPHABET = string.ascii_uppercase + string.digits


def assign_slot(parent: Optional[Dict[str, Any]]) -> Tuple[Optional[int], int]:
    """
    given the (locked) parent record, return (position, level) for a new child.
    roots (parent=None) get (None, 0).

    rules:
      - a parent holds at most MAX_DIRECT_REFERRALS children
      - position is the next slot in the dense sequence 1..N
      - level is parent.level + 1, fixed at join time
    """
    if parent is None:
        return None, 0

    taken = len(parent["direct_referrals"])
    if taken >= MAX_DIRECT_REFERRALS:
        raise CapacityExceeded(parent["id"], MAX_DIRECT_REFERRALS)

    return taken + 1, parent["level"] + 1


def generate_referral_code(username: str, exists: Callable[[str], Any]) -> str:
    """
    generate a referral code: USERNAME + 6 random [A-Z0-9].
    `exists(code)` is a store lookup; we keep drawing until it reports no match.
    """
    prefix = username.strip().upper()
    while True:
        candidate = prefix + "".join(
            secrets.choice(_ALPHABET) for _ in range(REFERRAL_SUFFIX_LENGTH)
        )
        if not exists(candidate):
            return candidate


def get_upline(user: Dict[str, Any], find_user: Callable[[Any], Optional[Dict[str, Any]]]) -> List[Optional[Dict[str, Any]]]:
    """
    given a user record and a lookup `find_user(id)`, return [parent, grandparent].
    if there is no ancestor at some level, the rest are None.

    the walk is capped at MAX_PAYOUT_LEVELS and stops early at an inactive
    ancestor, since nothing above it can be paid.
    """
    upline: List[Optional[Dict[str, Any]]] = []
    current = user

    for _ in range(MAX_PAYOUT_LEVELS):
        parent_id = current.get("parent_id")
        parent = find_user(parent_id) if parent_id is not None else None
        if parent is None:
            break
        upline.append(parent)
        if not parent["is_active"]:
            break
        current = parent

    upline.extend([None] * (MAX_PAYOUT_LEVELS - len(upline)))
    return upline
