from decimal import Decimal
from typing import Any, Dict, List, Optional

PAYOUT_THRESHOLD = Decimal("1000")

# (referral_level, percentage); both levels use the ORIGINAL purchase amount as base
COMMISSION_LEVELS = [
    (1, 5),
    (2, 1),
]

MAX_PAYOUT_LEVELS = len(COMMISSION_LEVELS)


def is_profit_generating(amount: Decimal) -> bool:
    """only purchases strictly above the threshold pay out."""
    return amount > PAYOUT_THRESHOLD


def commission_amount(amount: Decimal, percentage: int) -> Decimal:
    """
    amount * percentage / 100, exact (no quantize).
    dividing a finite Decimal by 100 never needs rounding.
    """
    return Decimal(amount) * Decimal(percentage) / Decimal(100)


def commission_engine(amount, upline: List[Optional[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    amount: Decimal purchase amount
    upline: [parent, grandparent] user dicts (or None), see referral_engine.get_upline

    returns the payouts to apply, in level order:
      [{"level", "recipient", "percentage", "amount", "through"}, ...]

    rules:
      - nothing at or below the threshold
      - walk level 1 then level 2; the first missing or inactive ancestor
        ends the walk (an inactive parent blocks the grandparent as well)
      - "through" is the level-1 recipient for the level-2 payout
    """
    amount = Decimal(amount)
    if not is_profit_generating(amount):
        return []

    payouts = []
    through = None

    for (level, percentage), recipient in zip(COMMISSION_LEVELS, upline):
        if recipient is None or not recipient["is_active"]:
            break
        payouts.append(
            {
                "level": level,
                "recipient": recipient,
                "percentage": percentage,
                "amount": commission_amount(amount, percentage),
                "through": through,
            }
        )
        through = recipient

    return payouts
