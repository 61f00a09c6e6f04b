"""Earnings notifications: payload builders and a per-user pub/sub hub."""

import itertools
import threading
from decimal import Decimal
from typing import Any, Callable, Dict, Tuple

from logging_config import get_logger

logger = get_logger(__name__)

EARNINGS_UPDATE_EVENT = "earnings-update"

Subscriber = Callable[[Dict[str, Any]], Any]


def direct_earning_payload(
    amount: Decimal,
    from_username: str,
    transaction_amount: Decimal,
    recipient_total_earnings: Decimal,
) -> Dict[str, Any]:
    return {
        "kind": "direct",
        "amount": amount,
        "from_username": from_username,
        "transaction_amount": transaction_amount,
        "recipient_total_earnings": recipient_total_earnings,
    }


def indirect_earning_payload(
    amount: Decimal,
    from_username: str,
    through_username: str,
    transaction_amount: Decimal,
    recipient_total_earnings: Decimal,
) -> Dict[str, Any]:
    return {
        "kind": "indirect",
        "amount": amount,
        "from_username": from_username,
        "through_username": through_username,
        "transaction_amount": transaction_amount,
        "recipient_total_earnings": recipient_total_earnings,
    }


class NotificationHub:
    """Fan-out of events to whoever is subscribed to a user id.

    Delivery is best-effort: one attempt per subscriber, no ordering across
    recipients, no retry. A subscriber that raises is logged and skipped;
    `notify` itself never raises.

    Subscribers are plain callables taking the payload. They are invoked on
    the notifying thread, so anything slow (e.g. a websocket send) should be
    scheduled elsewhere by the subscriber rather than awaited.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Tuple[Any, Subscriber]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, user_id, callback: Subscriber) -> int:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (user_id, callback)
        logger.debug("notification_subscribed", user_id=user_id, token=token)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def subscriber_count(self, user_id) -> int:
        with self._lock:
            return sum(1 for uid, _ in self._subscribers.values() if uid == user_id)

    def notify(self, user_id, payload: Dict[str, Any]) -> int:
        """deliver payload to every subscriber of user_id; returns how many accepted it."""
        with self._lock:
            callbacks = [cb for uid, cb in self._subscribers.values() if uid == user_id]

        delivered = 0
        for callback in callbacks:
            try:
                callback(payload)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "notification_failed",
                    user_id=user_id,
                    kind=payload.get("kind"),
                    error=str(exc),
                )
        if not callbacks:
            logger.debug("notification_dropped", user_id=user_id, kind=payload.get("kind"))
        return delivered
