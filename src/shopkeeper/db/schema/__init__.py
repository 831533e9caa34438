"""Schema migrations."""

from shopkeeper.db.schema.migrate import migrate, schema_version

__all__ = ["migrate", "schema_version"]
