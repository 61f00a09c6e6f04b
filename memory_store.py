import copy
import itertools
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from errors import DuplicateIdentity, InvalidInput, NotFound, ReferralCodeTaken
from store import TRANSACTION_MUTABLE_FIELDS, TRANSACTION_STATUSES, earnings_totals

ZERO = Decimal("0")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """
    in-memory 'tables' (users, transactions, earnings) behind the Store interface.

    locking:
      - self._lock guards the tables themselves (inserts, lookups)
      - one RLock per user serialises read-modify-write on that user's row
        (earning increments, child appends, registration capacity checks)
    every record handed out is a copy, so callers never alias stored rows.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._user_locks: Dict[int, threading.RLock] = {}
        self._users: Dict[int, Dict[str, Any]] = {}
        self._transactions: Dict[int, Dict[str, Any]] = {}
        self._earnings: Dict[int, Dict[str, Any]] = {}
        self._user_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self._earning_ids = itertools.count(1)

    def _lock_for(self, user_id: int) -> threading.RLock:
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    def _user_row(self, user_id: int) -> Dict[str, Any]:
        row = self._users.get(user_id)
        if row is None:
            raise NotFound(f"User {user_id} not found")
        return row

    # ---------
    # users
    # ---------

    def find_user_by_id(self, user_id):
        with self._lock:
            row = self._users.get(user_id)
            return copy.deepcopy(row) if row else None

    def find_user_by_referral_code(self, code):
        with self._lock:
            for row in self._users.values():
                if row["referral_code"] == code:
                    return copy.deepcopy(row)
        return None

    def find_user_by_username_or_email(self, username, email):
        with self._lock:
            for row in self._users.values():
                if row["username"] == username or row["email"] == email:
                    return copy.deepcopy(row)
        return None

    @contextmanager
    def locked_user(self, user_id) -> Iterator[Optional[Dict[str, Any]]]:
        with self._lock_for(user_id):
            yield self.find_user_by_id(user_id)

    def create_user(self, username, email, referral_code, parent_id, position, level):
        with self._lock:
            for row in self._users.values():
                if row["username"] == username or row["email"] == email:
                    raise DuplicateIdentity(
                        "User with this username or email already exists"
                    )
                if row["referral_code"] == referral_code:
                    raise ReferralCodeTaken(referral_code)

            user_id = next(self._user_ids)
            row = {
                "id": user_id,
                "username": username,
                "email": email,
                "parent_id": parent_id,
                "position": position,
                "level": level,
                "referral_code": referral_code,
                "direct_referrals": [],
                "total_earnings": ZERO,
                "total_direct_earnings": ZERO,
                "total_indirect_earnings": ZERO,
                "is_active": True,
                "created_at": _now(),
            }
            self._users[user_id] = row
            return copy.deepcopy(row)

    def append_child_to_user(self, parent_id, child_id):
        with self._lock_for(parent_id):
            with self._lock:
                self._user_row(parent_id)["direct_referrals"].append(child_id)

    def set_user_active(self, user_id, is_active):
        with self._lock_for(user_id):
            with self._lock:
                row = self._user_row(user_id)
                row["is_active"] = bool(is_active)
                return copy.deepcopy(row)

    def list_users(self):
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._users.values()]
        return sorted(rows, key=lambda r: r["id"], reverse=True)

    # ---------
    # purchases
    # ---------

    def create_transaction(self, user_id, amount, description):
        with self._lock:
            self._user_row(user_id)
            transaction_id = next(self._transaction_ids)
            row = {
                "id": transaction_id,
                "user_id": user_id,
                "amount": Decimal(amount),
                "status": "completed",
                "description": description,
                "profit_generated": False,
                "created_at": _now(),
            }
            self._transactions[transaction_id] = row
            return dict(row)

    def update_transaction(self, transaction_id, **fields):
        unknown = set(fields) - set(TRANSACTION_MUTABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"cannot update transaction fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in TRANSACTION_STATUSES:
            raise InvalidInput(f"invalid transaction status {fields['status']!r}")

        with self._lock:
            row = self._transactions.get(transaction_id)
            if row is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            row.update(fields)
            return dict(row)

    def list_transactions(self, user_id=None):
        with self._lock:
            rows = [
                dict(r)
                for r in self._transactions.values()
                if user_id is None or r["user_id"] == user_id
            ]
        return sorted(rows, key=lambda r: r["id"], reverse=True)

    # ---------
    # commissions
    # ---------

    def create_earning(
        self,
        user_id,
        transaction_id,
        referral_level,
        amount,
        percentage,
        from_user_id,
        transaction_amount,
    ):
        with self._lock:
            earning_id = next(self._earning_ids)
            row = {
                "id": earning_id,
                "user_id": user_id,
                "transaction_id": transaction_id,
                "referral_level": referral_level,
                "amount": Decimal(amount),
                "percentage": percentage,
                "from_user_id": from_user_id,
                "transaction_amount": Decimal(transaction_amount),
                "created_at": _now(),
            }
            self._earnings[earning_id] = row
            return dict(row)

    def increment_user_earnings(self, user_id, direct=None, indirect=None):
        direct = Decimal(direct) if direct is not None else ZERO
        indirect = Decimal(indirect) if indirect is not None else ZERO

        # read-modify-write under the user's lock, never a bare read-then-write
        with self._lock_for(user_id):
            with self._lock:
                row = self._user_row(user_id)
                row["total_direct_earnings"] += direct
                row["total_indirect_earnings"] += indirect
                row["total_earnings"] = (
                    row["total_direct_earnings"] + row["total_indirect_earnings"]
                )
                return earnings_totals(row)

    def list_earnings(self, user_id=None):
        with self._lock:
            rows = [
                dict(r)
                for r in self._earnings.values()
                if user_id is None or r["user_id"] == user_id
            ]
        return sorted(rows, key=lambda r: r["id"], reverse=True)
