from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, Role
from storage_portal.config import settings
from storage_portal.db import SessionLocal
from storage_portal.models import User, WebSession


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_expiry() -> datetime:
    return _now() + timedelta(minutes=settings.session_ttl_minutes)


def principal_from_user(user: User) -> Principal:
    return Principal(
        id=user.id,
        name=user.name,
        role=Role(user.role),
        department_id=user.department_id,
        active=user.active,
    )


def create_web_session(db: Session, user_id: int, ip: str | None, user_agent: str | None) -> str:
    token = secrets.token_urlsafe(48)
    db.add(
        WebSession(
            session_token=token,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            expires_at=_session_expiry(),
        )
    )
    db.flush()
    return token


def revoke_web_session(db: Session, token: str | None) -> None:
    if not token:
        return
    session = db.execute(select(WebSession).where(WebSession.session_token == token)).scalar_one_or_none()
    if not session or session.revoked_at is not None:
        return
    session.revoked_at = _now()


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, User).join(User, User.id == WebSession.user_id).where(WebSession.session_token == token)
    ).one_or_none()
    if not row:
        return None

    web_session, user = row
    now = _now()
    if web_session.revoked_at is not None or _aware(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = _session_expiry()
    return principal_from_user(user)


def install_auth_session_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        request.state.principal = None
        token = request.cookies.get(settings.session_cookie_name)
        if token:
            session_factory = getattr(request.app.state, 'session_factory', SessionLocal)
            with session_factory() as db:
                request.state.principal = load_principal_from_token(db, token)
                db.commit()
        return await call_next(request)
