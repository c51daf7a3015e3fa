from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, get_current_principal
from storage_portal.config import settings
from storage_portal.db import get_db
from storage_portal.dependencies import get_client_ip, get_user_agent
from storage_portal.errors import Unauthorized
from storage_portal.schemas import LoginBody
from storage_portal.security.passwords import check_login_password
from storage_portal.security.sessions import create_web_session, principal_from_user, revoke_web_session
from storage_portal.services.audit_service import log_audit, log_auth_event
from storage_portal.services.user_service import find_user_by_email

router = APIRouter(prefix='/auth', tags=['auth'])

INVALID_LOGIN = 'Invalid email or password'


def principal_payload(principal: Principal) -> dict:
    return {
        'id': principal.id,
        'name': principal.name,
        'role': principal.role.value,
        'department_id': principal.department_id,
    }


@router.post('/login')
def login(body: LoginBody, request: Request, db: Session = Depends(get_db)):
    email = (body.email or '').strip().lower()
    ip = get_client_ip(request)
    user_agent = get_user_agent(request)

    user = find_user_by_email(db, email)
    failure_reason = None
    if not user:
        failure_reason = 'UNKNOWN_EMAIL'
    elif not user.active:
        failure_reason = 'INACTIVE_USER'
    else:
        verified, updated_hash = check_login_password(body.password or '', user.password_hash)
        if not verified:
            failure_reason = 'BAD_PASSWORD'
        elif updated_hash:
            user.password_hash = updated_hash

    if failure_reason:
        log_auth_event(
            db,
            attempted_email=email,
            success=False,
            failure_reason=failure_reason,
            user_id=user.id if user else None,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        raise Unauthorized(INVALID_LOGIN)

    token = create_web_session(db, user.id, ip=ip, user_agent=user_agent)
    log_auth_event(db, attempted_email=email, success=True, user_id=user.id, ip=ip, user_agent=user_agent)
    log_audit(
        db,
        actor_user_id=user.id,
        action='AUTH_LOGIN',
        entity_type='user',
        entity_id=user.id,
        ip=ip,
        metadata={'email': email},
    )
    db.commit()

    response = JSONResponse(principal_payload(principal_from_user(user)))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/logout')
def logout(request: Request, db: Session = Depends(get_db)):
    principal = getattr(request.state, 'principal', None)
    revoke_web_session(db, request.cookies.get(settings.session_cookie_name))
    log_audit(
        db,
        actor_user_id=principal.id if principal else None,
        action='AUTH_LOGOUT',
        entity_type=None,
        entity_id=None,
        ip=get_client_ip(request),
    )
    db.commit()

    response = JSONResponse({'message': 'Logged out'})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal)):
    return principal_payload(principal)
