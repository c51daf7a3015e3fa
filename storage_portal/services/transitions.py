"""Guarded status transitions.

A transition re-reads its row under a row lock, checks the predecessor
status, then writes with ``UPDATE ... WHERE status IN (expected)``. The
conditional write is the compare-and-swap: if another transaction moved the
row first, zero rows match and the transition fails instead of overwriting.
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storage_portal.errors import NotFound, PreconditionFailed


def now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _as_set(expected: Enum | Iterable[Enum]) -> set[Enum]:
    if isinstance(expected, Enum):
        return {expected}
    return set(expected)


def lock_row(db: Session, model, row_id: int, *, label: str):
    row = db.execute(
        select(model).where(model.id == row_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not row:
        raise NotFound(f'{label} not found')
    return row


def require_status(row, expected: Enum | Iterable[Enum], message: str) -> None:
    if row.status not in _as_set(expected):
        raise PreconditionFailed(message)


def compare_and_set(
    db: Session,
    model,
    *,
    row_id: int,
    expected: Enum | Iterable[Enum],
    values: dict,
    message: str,
    conditions: tuple = (),
) -> None:
    db.flush()
    result = db.execute(
        update(model)
        .where(model.id == row_id, model.status.in_(list(_as_set(expected))), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PreconditionFailed(message)


def transition(
    db: Session,
    row,
    *,
    expected: Enum | Iterable[Enum],
    values: dict,
    message: str,
    conditions: tuple = (),
) -> None:
    """Check then swap; ``row`` must come from ``lock_row``."""
    require_status(row, expected, message)
    compare_and_set(
        db, type(row), row_id=row.id, expected=expected, values=values, message=message, conditions=conditions
    )
    db.refresh(row)
