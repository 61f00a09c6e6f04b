import psycopg
from contextlib import contextmanager

from settings import settings


@contextmanager
def get_conn(autocommit: bool = False):
    """
    simple context manager to get a Postgres connection.

    autocommit=False (default): caller manages the transaction explicitly.
    autocommit=True: every statement commits on its own; use conn.transaction()
    for the blocks that must be atomic.
    """
    with psycopg.connect(settings.database_url) as conn:
        conn.autocommit = autocommit
        yield conn
