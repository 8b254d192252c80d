"""Dialect-specific INSERT ... ON CONFLICT builders.

PostgreSQL (production) and SQLite (tests) both support ON CONFLICT with
RETURNING; SQLAlchemy exposes them through dialect-specific insert().
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, model):
    """Return an insert() construct supporting on_conflict_* for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT insert not supported for dialect {dialect!r}")


def supports_row_locks(db: Session) -> bool:
    """True when SELECT ... FOR UPDATE takes a real row lock."""
    return db.get_bind().dialect.name == "postgresql"
