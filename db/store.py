from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import Connection
from psycopg.errors import UniqueViolation

from db import repositories
from errors import (
    DuplicateIdentity,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    ReferralCodeTaken,
)
from store import TRANSACTION_MUTABLE_FIELDS, TRANSACTION_STATUSES

ZERO = Decimal("0")


# postgres' default name for the inline UNIQUE on users.referral_code
REFERRAL_CODE_CONSTRAINT = "users_referral_code_key"


@contextmanager
def _writes(action: str):
    """translate driver errors into the service's error taxonomy."""
    try:
        yield
    except UniqueViolation as e:
        if e.diag.constraint_name == REFERRAL_CODE_CONSTRAINT:
            raise ReferralCodeTaken(_referral_code_from(e)) from e
        raise DuplicateIdentity("User with this username or email already exists") from e
    except psycopg.Error as e:
        raise PersistenceFailure(f"{action} failed: {e}") from e


def _referral_code_from(e: UniqueViolation) -> str:
    # detail reads: Key (referral_code)=(ALICE1A2B3C) already exists.
    detail = e.diag.message_detail or ""
    _, _, rest = detail.partition("=(")
    return rest.split(")", 1)[0] or "?"


class PgStore:
    """
    Store backed by a psycopg connection opened with autocommit=True
    (see db.db.get_conn): each write commits on its own, so a failure
    mid-purchase leaves the already-written prefix in place. locked_user
    opens an explicit transaction and row-locks the user until the block ends.
    """

    def __init__(self, conn: Connection):
        self.conn = conn

    # ---------
    # users
    # ---------

    def find_user_by_id(self, user_id):
        with _writes("find user"):
            return repositories.get_user_by_id(self.conn, user_id)

    def find_user_by_referral_code(self, code):
        with _writes("find user by referral code"):
            return repositories.get_user_by_referral_code(self.conn, code)

    def find_user_by_username_or_email(self, username, email):
        with _writes("find user by identity"):
            return repositories.get_user_by_username_or_email(self.conn, username, email)

    @contextmanager
    def locked_user(self, user_id) -> Iterator[Optional[Dict[str, Any]]]:
        # exceptions inside the block roll the whole transaction back
        with _writes("locked user block"):
            with self.conn.transaction():
                yield repositories.get_user_by_id(self.conn, user_id, for_update=True)

    def create_user(self, username, email, referral_code, parent_id, position, level):
        with _writes("create user"):
            return repositories.insert_user(
                self.conn,
                username=username,
                email=email,
                referral_code=referral_code,
                parent_id=parent_id,
                position=position,
                level=level,
            )

    def append_child_to_user(self, parent_id, child_id):
        with _writes("append child"):
            repositories.append_direct_referral(self.conn, parent_id, child_id)

    def set_user_active(self, user_id, is_active):
        with _writes("set user active"):
            user = repositories.set_user_active(self.conn, user_id, bool(is_active))
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def list_users(self):
        with _writes("list users"):
            return repositories.list_users(self.conn)

    # ---------
    # purchases
    # ---------

    def create_transaction(self, user_id, amount, description):
        with _writes("create transaction"):
            return repositories.insert_transaction(self.conn, user_id, amount, description)

    def update_transaction(self, transaction_id, **fields):
        unknown = set(fields) - set(TRANSACTION_MUTABLE_FIELDS)
        if unknown or not fields:
            raise InvalidInput(f"cannot update transaction fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in TRANSACTION_STATUSES:
            raise InvalidInput(f"invalid transaction status {fields['status']!r}")

        with _writes("update transaction"):
            transaction = repositories.update_transaction(self.conn, transaction_id, fields)
        if transaction is None:
            raise PersistenceFailure(f"Transaction {transaction_id} vanished during update")
        return transaction

    def list_transactions(self, user_id=None):
        with _writes("list transactions"):
            return repositories.list_transactions(self.conn, user_id)

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
        with _writes("create earning"):
            return repositories.insert_earning(
                self.conn,
                user_id=user_id,
                transaction_id=transaction_id,
                referral_level=referral_level,
                amount=amount,
                percentage=percentage,
                from_user_id=from_user_id,
                transaction_amount=transaction_amount,
            )

    def increment_user_earnings(self, user_id, direct=None, indirect=None):
        with _writes("increment earnings"):
            totals = repositories.increment_user_earnings(
                self.conn,
                user_id,
                direct=Decimal(direct) if direct is not None else ZERO,
                indirect=Decimal(indirect) if indirect is not None else ZERO,
            )
        if totals is None:
            raise PersistenceFailure(f"User {user_id} vanished during earnings update")
        return totals

    def list_earnings(self, user_id=None):
        with _writes("list earnings"):
            return repositories.list_earnings(self.conn, user_id)
