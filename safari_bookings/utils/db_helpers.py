"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers (FOR UPDATE / SKIP LOCKED on PostgreSQL)
- Conflict-tolerant inserts (INSERT ... ON CONFLICT DO NOTHING)
"""

import logging
from typing import Optional, TypeVar, Type, List, Dict, Any
from sqlalchemy.orm import Session
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

logger = logging.getLogger(__name__)

T = TypeVar('T')


def dialect_name(db: Session) -> str:
    bind = db.bind
    return bind.dialect.name if bind is not None else ""


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    return dialect_name(db) == 'postgresql'


def is_sqlite(db: Session) -> bool:
    """Check if the database is SQLite"""
    return dialect_name(db) == 'sqlite'


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row
        nowait: If True, raise error immediately if lock unavailable (PostgreSQL only)
        skip_locked: If True, return None when another transaction holds the row (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)

    # SQLite serializes writers at the database level, no row locks there
    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        elif nowait:
            query = query.with_for_update(nowait=True)
        else:
            query = query.with_for_update()

    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> List[T]:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Rows locked by another worker are skipped instead of waited on.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


def insert_ignore_conflict(
    db: Session,
    model: Type[T],
    values: Dict[str, Any],
    index_elements: List[str]
) -> int:
    """
    INSERT a row unless one with the same unique key already exists.

    Concurrent inserts of the same key never raise IntegrityError, so the
    surrounding transaction stays usable.

    Returns:
        Number of rows inserted (0 or 1)
    """
    insert = pg_insert if is_postgres(db) else sqlite_insert
    stmt = insert(model).values(**values).on_conflict_do_nothing(
        index_elements=index_elements
    )
    result = db.execute(stmt)
    return result.rowcount or 0
