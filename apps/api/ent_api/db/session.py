"""Database session dependency.

The session factory is built once at application start-up and stored on
``app.state.session_factory``; handlers receive sessions through ``get_db``.
"""

from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
