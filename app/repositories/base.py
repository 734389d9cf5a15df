"""
Shared repository plumbing.
"""

from contextlib import AbstractAsyncContextManager

import psycopg

from app.db.pool import db_pool


class BaseRepository:
    """Gives services a unit of work without importing the pool directly."""

    def transaction(self) -> AbstractAsyncContextManager[psycopg.AsyncConnection]:
        return db_pool.transaction()
