from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from commission_engine import commission_engine, is_profit_generating
from errors import InvalidInput, NotFound, PersistenceFailure
from logging_config import get_logger
from notifications import direct_earning_payload, indirect_earning_payload
from referral_engine import get_upline

logger = get_logger(__name__)


def parse_amount(value) -> Decimal:
    """
    accept int / str / Decimal (floats via their repr), reject anything that is
    not a finite, strictly positive number.
    """
    if value is None or isinstance(value, bool):
        raise InvalidInput("Valid amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInput(f"Invalid amount {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidInput("Amount must be a positive number")
    return amount


def record_purchase(
    store,
    notifier,
    purchaser_id,
    amount,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """
    record a purchase and pay referral commissions:
      - validate (no writes on failure)
      - create the transaction
      - above the payout threshold: flag it, then pay the parent 5% and
        the grandparent 1% of the purchase amount (see commission_engine)
      - each payout: earning row -> atomic balance increment -> notification

    parameters
    ----------
    store : Store
    notifier : anything with .notify(user_id, payload), or None

    returns
    -------
    dict
        {
            "transaction": {...},
            "distributed": bool,   # the transaction's profit flag
            "earnings": [...],     # 0, 1 or 2 earning records
        }

    not idempotent: every call creates a new transaction.
    a store failure mid-way raises PersistenceFailure; whatever was already
    written (transaction, earlier earnings / increments) stays written.
    """
    if purchaser_id is None or purchaser_id == "":
        raise InvalidInput("Valid userId and amount are required")
    amount = parse_amount(amount)

    purchaser = store.find_user_by_id(purchaser_id)
    if purchaser is None:
        raise NotFound(f"User {purchaser_id} not found")

    # 1) the transaction itself
    transaction = store.create_transaction(
        purchaser["id"],
        amount,
        description or f"Purchase of {amount}Rs",
    )

    # 2) below / at threshold: nothing else to do
    if not is_profit_generating(amount):
        logger.info(
            "purchase_recorded",
            transaction_id=transaction["id"],
            user_id=purchaser["id"],
            amount=str(amount),
            distributed=False,
        )
        return {"transaction": transaction, "distributed": False, "earnings": []}

    # 3) flag before any payout
    transaction = store.update_transaction(transaction["id"], profit_generated=True)

    # 4) walk the (at most two) payout levels
    try:
        earnings = _distribute(store, notifier, transaction, purchaser)
    except PersistenceFailure:
        logger.error(
            "commission_distribution_failed",
            transaction_id=transaction["id"],
            user_id=purchaser["id"],
            amount=str(amount),
        )
        raise

    logger.info(
        "purchase_recorded",
        transaction_id=transaction["id"],
        user_id=purchaser["id"],
        amount=str(amount),
        distributed=True,
        earnings=len(earnings),
    )
    return {"transaction": transaction, "distributed": True, "earnings": earnings}


def _distribute(store, notifier, transaction, purchaser) -> List[Dict[str, Any]]:
    amount = transaction["amount"]
    upline = get_upline(purchaser, store.find_user_by_id)  # [parent, grandparent]
    payouts = commission_engine(amount, upline)

    earnings = []
    for payout in payouts:
        recipient = payout["recipient"]

        earning = store.create_earning(
            user_id=recipient["id"],
            transaction_id=transaction["id"],
            referral_level=payout["level"],
            amount=payout["amount"],
            percentage=payout["percentage"],
            from_user_id=purchaser["id"],
            transaction_amount=amount,
        )
        earnings.append(earning)

        if payout["level"] == 1:
            totals = store.increment_user_earnings(recipient["id"], direct=payout["amount"])
            payload = direct_earning_payload(
                amount=payout["amount"],
                from_username=purchaser["username"],
                transaction_amount=amount,
                recipient_total_earnings=totals["total_earnings"],
            )
        else:
            totals = store.increment_user_earnings(recipient["id"], indirect=payout["amount"])
            payload = indirect_earning_payload(
                amount=payout["amount"],
                from_username=purchaser["username"],
                through_username=payout["through"]["username"],
                transaction_amount=amount,
                recipient_total_earnings=totals["total_earnings"],
            )

        logger.info(
            "commission_paid",
            transaction_id=transaction["id"],
            recipient_id=recipient["id"],
            level=payout["level"],
            amount=str(payout["amount"]),
        )
        _notify_quietly(notifier, recipient["id"], payload)

    return earnings


def _notify_quietly(notifier, user_id, payload) -> None:
    # a broken notification channel must never fail the payout path
    if notifier is None:
        return
    try:
        notifier.notify(user_id, payload)
    except Exception as exc:
        logger.warning(
            "notification_failed",
            user_id=user_id,
            kind=payload["kind"],
            error=str(exc),
        )
