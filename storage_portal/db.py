from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from storage_portal.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith('sqlite'):
        return {'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True}


engine = create_engine(settings.database_url_normalized, **_engine_options(settings.database_url_normalized))
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    # Routers commit explicitly; anything left uncommitted is rolled back on close.
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
