from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from storage_portal.auth import Principal
from storage_portal.errors import PreconditionFailed
from storage_portal.models import SystemSetting
from storage_portal.policy import Transition, authorize
from storage_portal.services.transitions import now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemSettings:
    max_borrow_days: int = 14
    reserve_stock_on_borrow_request: bool = False
    validate_sku_on_intake: bool = False


DEFAULTS = SystemSettings()
SETTING_TYPES = {
    'max_borrow_days': int,
    'reserve_stock_on_borrow_request': bool,
    'validate_sku_on_intake': bool,
}


def _validate(key: str, value):
    expected = SETTING_TYPES.get(key)
    if expected is None:
        raise PreconditionFailed(f'Unknown setting: {key}')
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise PreconditionFailed(f'{key} must be an integer')
        if value <= 0:
            raise PreconditionFailed(f'{key} must be positive')
    elif not isinstance(value, bool):
        raise PreconditionFailed(f'{key} must be a boolean')
    return value


def get_system_settings(db: Session) -> SystemSettings:
    values = asdict(DEFAULTS)
    rows = db.execute(select(SystemSetting).where(SystemSetting.key.in_(list(SETTING_TYPES)))).scalars().all()
    for row in rows:
        try:
            values[row.key] = _validate(row.key, row.value)
        except PreconditionFailed:
            logger.warning('Ignoring invalid stored setting %s=%r', row.key, row.value)
    return SystemSettings(**values)


def update_system_settings(db: Session, *, actor: Principal, changes: dict) -> SystemSettings:
    authorize(actor, Transition.UPDATE_SETTINGS)
    if not changes:
        raise PreconditionFailed('No settings to update')

    cleaned = {key: _validate(key, value) for key, value in changes.items()}
    for key, value in cleaned.items():
        row = db.get(SystemSetting, key)
        if row is None:
            db.add(SystemSetting(key=key, value=value, updated_by=actor.id, updated_at=now()))
        else:
            row.value = value
            row.updated_by = actor.id
            row.updated_at = now()
    db.flush()
    logger.info('System settings updated by user=%s keys=%s', actor.id, sorted(cleaned))
    return get_system_settings(db)


def settings_payload(values: SystemSettings) -> dict:
    return asdict(values)
