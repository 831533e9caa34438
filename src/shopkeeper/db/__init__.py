"""Database access: connection pool, table names and migrations."""

from shopkeeper.db.pool import close_pool, create_pool

__all__ = ["close_pool", "create_pool"]
