from decimal import Decimal
from typing import Optional, Dict, Any, List, Sequence

from psycopg import Connection


USER_COLUMNS = """
    id, username, email, parent_id, position, level, referral_code,
    direct_referrals, total_earnings, total_direct_earnings,
    total_indirect_earnings, is_active, created_at
"""

TRANSACTION_COLUMNS = """
    id, user_id, amount, status, description, profit_generated, created_at
"""

EARNING_COLUMNS = """
    id, user_id, transaction_id, referral_level, amount, percentage,
    from_user_id, transaction_amount, created_at
"""

TOTALS_COLUMNS = "total_earnings, total_direct_earnings, total_indirect_earnings"


def _user_from_row(row: Sequence[Any]) -> Dict[str, Any]:
    return {
        "id": row[0],
        "username": row[1],
        "email": row[2],
        "parent_id": row[3],
        "position": row[4],
        "level": row[5],
        "referral_code": row[6],
        "direct_referrals": list(row[7] or []),
        "total_earnings": row[8],
        "total_direct_earnings": row[9],
        "total_indirect_earnings": row[10],
        "is_active": row[11],
        "created_at": row[12],
    }


def _transaction_from_row(row: Sequence[Any]) -> Dict[str, Any]:
    return {
        "id": row[0],
        "user_id": row[1],
        "amount": row[2],
        "status": row[3],
        "description": row[4],
        "profit_generated": row[5],
        "created_at": row[6],
    }


def _earning_from_row(row: Sequence[Any]) -> Dict[str, Any]:
    return {
        "id": row[0],
        "user_id": row[1],
        "transaction_id": row[2],
        "referral_level": row[3],
        "amount": row[4],
        "percentage": row[5],
        "from_user_id": row[6],
        "transaction_amount": row[7],
        "created_at": row[8],
    }


# ---------
# users
# ---------


def get_user_by_id(conn: Connection, user_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    """
    fetch a user row, or None.
    for_update=True takes the row lock (must be inside a transaction).
    """
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = %s{lock}",
            (user_id,),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def get_user_by_referral_code(conn: Connection, referral_code: str) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def get_user_by_username_or_email(conn: Connection, username: str, email: str) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE username = %s OR email = %s LIMIT 1",
            (username, email),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def insert_user(
    conn: Connection,
    username: str,
    email: str,
    referral_code: str,
    parent_id: Optional[int],
    position: Optional[int],
    level: int,
) -> Dict[str, Any]:
    """
    insert a user. unique constraints on username / email / referral_code
    surface as psycopg.errors.UniqueViolation.
    """
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO users (username, email, referral_code, parent_id, position, level)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {USER_COLUMNS}
            """,
            (username, email, referral_code, parent_id, position, level),
        )
        row = cur.fetchone()
    return _user_from_row(row)


def append_direct_referral(conn: Connection, parent_id: int, child_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET direct_referrals = array_append(direct_referrals, %s),
                updated_at = NOW()
            WHERE id = %s
            """,
            (child_id, parent_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to append referral {child_id} to user {parent_id}")


def set_user_active(conn: Connection, user_id: int, is_active: bool) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE users SET is_active = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {USER_COLUMNS}
            """,
            (is_active, user_id),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def list_users(conn: Connection) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at DESC, id DESC")
        rows = cur.fetchall()
    return [_user_from_row(r) for r in rows]


def increment_user_earnings(
    conn: Connection,
    user_id: int,
    direct: Decimal,
    indirect: Decimal,
) -> Optional[Dict[str, Decimal]]:
    """
    single-statement increment, so concurrent callers can't lose updates:
    postgres row-locks the user for the duration of the UPDATE.
    total_earnings moves by direct + indirect to keep the sum invariant.
    """
    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE users
            SET total_direct_earnings   = total_direct_earnings + %s,
                total_indirect_earnings = total_indirect_earnings + %s,
                total_earnings          = total_earnings + %s + %s,
                updated_at = NOW()
            WHERE id = %s
            RETURNING {TOTALS_COLUMNS}
            """,
            (direct, indirect, direct, indirect, user_id),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return {
        "total_earnings": row[0],
        "total_direct_earnings": row[1],
        "total_indirect_earnings": row[2],
    }


# ---------
# transactions
# ---------


def insert_transaction(conn: Connection, user_id: int, amount: Decimal, description: str) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO transactions (user_id, amount, description)
            VALUES (%s, %s, %s)
            RETURNING {TRANSACTION_COLUMNS}
            """,
            (user_id, amount, description),
        )
        row = cur.fetchone()
    return _transaction_from_row(row)


def update_transaction(conn: Connection, transaction_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    fields keys must already be validated against the mutable column list;
    they are interpolated as column names.
    """
    assignments = ", ".join(f"{column} = %s" for column in fields)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE transactions SET {assignments}, updated_at = NOW()
            WHERE id = %s
            RETURNING {TRANSACTION_COLUMNS}
            """,
            (*fields.values(), transaction_id),
        )
        row = cur.fetchone()
    return _transaction_from_row(row) if row else None


def list_transactions(conn: Connection, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        if user_id is None:
            cur.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM transactions ORDER BY created_at DESC, id DESC"
            )
        else:
            cur.execute(
                f"""
                SELECT {TRANSACTION_COLUMNS} FROM transactions
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                """,
                (user_id,),
            )
        rows = cur.fetchall()
    return [_transaction_from_row(r) for r in rows]


# ---------
# earnings
# ---------


def insert_earning(
    conn: Connection,
    user_id: int,
    transaction_id: int,
    referral_level: int,
    amount: Decimal,
    percentage: int,
    from_user_id: int,
    transaction_amount: Decimal,
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO earnings
                (user_id, transaction_id, referral_level, amount, percentage,
                 from_user_id, transaction_amount)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {EARNING_COLUMNS}
            """,
            (
                user_id,
                transaction_id,
                referral_level,
                amount,
                percentage,
                from_user_id,
                transaction_amount,
            ),
        )
        row = cur.fetchone()
    return _earning_from_row(row)


def list_earnings(conn: Connection, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        if user_id is None:
            cur.execute(
                f"SELECT {EARNING_COLUMNS} FROM earnings ORDER BY created_at DESC, id DESC"
            )
        else:
            cur.execute(
                f"""
                SELECT {EARNING_COLUMNS} FROM earnings
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                """,
                (user_id,),
            )
        rows = cur.fetchall()
    return [_earning_from_row(r) for r in rows]
