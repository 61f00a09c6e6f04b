from decimal import Decimal

from commission_engine import (
    PAYOUT_THRESHOLD,
    commission_amount,
    commission_engine,
    is_profit_generating,
)


def _user(user_id, username, is_active=True):
    return {"id": user_id, "username": username, "is_active": is_active}


def test_full_upline_split():
    """
    5000 purchase with active parent A and active grandparent G:
      - A: 5% -> 250
      - G: 1% of the purchase (not of A's cut) -> 50
    """
    a = _user(2, "A")
    g = _user(1, "G")
    payouts = commission_engine(Decimal("5000"), [a, g])

    assert [p["level"] for p in payouts] == [1, 2]

    direct, indirect = payouts
    assert direct["recipient"] is a
    assert direct["percentage"] == 5
    assert direct["amount"] == Decimal("250")
    assert direct["through"] is None

    assert indirect["recipient"] is g
    assert indirect["percentage"] == 1
    assert indirect["amount"] == Decimal("50")
    assert indirect["through"] is a


def test_threshold_is_exclusive():
    """exactly 1000 pays nothing; anything above pays."""
    upline = [_user(2, "A"), _user(1, "G")]

    assert commission_engine(Decimal("1000"), upline) == []
    assert commission_engine(Decimal("999.99"), upline) == []
    assert len(commission_engine(Decimal("1000.01"), upline)) == 2

    assert not is_profit_generating(PAYOUT_THRESHOLD)
    assert is_profit_generating(PAYOUT_THRESHOLD + Decimal("0.01"))


def test_inactive_parent_blocks_whole_chain():
    """an inactive direct parent means no level-1 AND no level-2 payout."""
    upline = [_user(2, "A", is_active=False), _user(1, "G")]
    assert commission_engine(Decimal("5000"), upline) == []


def test_inactive_grandparent_only_skips_level_two():
    upline = [_user(2, "A"), _user(1, "G", is_active=False)]
    payouts = commission_engine(Decimal("5000"), upline)

    assert len(payouts) == 1
    assert payouts[0]["level"] == 1
    assert payouts[0]["amount"] == Decimal("250")


def test_no_parent_no_payout():
    assert commission_engine(Decimal("5000"), [None, None]) == []


def test_parent_without_grandparent():
    payouts = commission_engine(Decimal("2000"), [_user(2, "A"), None])
    assert len(payouts) == 1
    assert payouts[0]["amount"] == Decimal("100")


def test_commission_amount_is_exact():
    """amount == transaction_amount * percentage / 100 with no rounding."""
    assert commission_amount(Decimal("1234.57"), 5) == Decimal("61.7285")
    assert commission_amount(Decimal("1234.57"), 1) == Decimal("12.3457")
    assert commission_amount(Decimal("1001"), 1) * 100 == Decimal("1001")
