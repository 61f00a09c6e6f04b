from contextlib import AbstractContextManager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol


class Store(Protocol):
    """
    persistence interface the engines run against.
    implemented by memory_store.InMemoryStore and db.store.PgStore.

    records are plain dicts; money fields are Decimal.
    """

    # users
    def find_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]: ...

    def find_user_by_referral_code(self, code: str) -> Optional[Dict[str, Any]]: ...

    def find_user_by_username_or_email(self, username: str, email: str) -> Optional[Dict[str, Any]]: ...

    def locked_user(self, user_id: int) -> AbstractContextManager[Optional[Dict[str, Any]]]:
        """hold the user's update lock for the duration of the block."""
        ...

    def create_user(
        self,
        username: str,
        email: str,
        referral_code: str,
        parent_id: Optional[int],
        position: Optional[int],
        level: int,
    ) -> Dict[str, Any]: ...

    def append_child_to_user(self, parent_id: int, child_id: int) -> None: ...

    def set_user_active(self, user_id: int, is_active: bool) -> Dict[str, Any]: ...

    def list_users(self) -> List[Dict[str, Any]]: ...

    # purchases
    def create_transaction(self, user_id: int, amount: Decimal, description: str) -> Dict[str, Any]: ...

    def update_transaction(self, transaction_id: int, **fields: Any) -> Dict[str, Any]: ...

    def list_transactions(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]: ...

    # commissions
    def create_earning(
        self,
        user_id: int,
        transaction_id: int,
        referral_level: int,
        amount: Decimal,
        percentage: int,
        from_user_id: int,
        transaction_amount: Decimal,
    ) -> Dict[str, Any]: ...

    def increment_user_earnings(
        self,
        user_id: int,
        direct: Optional[Decimal] = None,
        indirect: Optional[Decimal] = None,
    ) -> Dict[str, Decimal]:
        """
        atomically add to the user's direct / indirect totals (and total_earnings).
        must be safe under concurrent callers. returns the new totals.
        """
        ...

    def list_earnings(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]: ...


TRANSACTION_STATUSES = ("pending", "completed", "failed")

# fields update_transaction accepts
TRANSACTION_MUTABLE_FIELDS = ("status", "profit_generated")


def earnings_totals(user: Dict[str, Any]) -> Dict[str, Decimal]:
    return {
        "total_earnings": user["total_earnings"],
        "total_direct_earnings": user["total_direct_earnings"],
        "total_indirect_earnings": user["total_indirect_earnings"],
    }
