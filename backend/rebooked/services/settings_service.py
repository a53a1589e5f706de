from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from rebooked.extensions import db
from rebooked.models import AppSetting
from rebooked.services.errors import ValidationFailed
from rebooked.utils.money import DEFAULT_PLATFORM_COMMISSION_BPS

COMMISSION_BPS = "platform_commission_bps"
COMMIT_WINDOW_HOURS = "commit_window_hours"
COMMIT_DEADLINE_JOB_ENABLED = "jobs.commit_deadline_enabled"

RUNTIME_KEYS = (COMMISSION_BPS, COMMIT_WINDOW_HOURS, COMMIT_DEADLINE_JOB_ENABLED)


def _coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return False


def _coerce_int(key: str, value, *, minimum: int, maximum: int) -> int:
    if isinstance(value, bool):
        raise ValidationFailed(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{key} must be an integer")
    if parsed < minimum or parsed > maximum:
        raise ValidationFailed(f"{key} must be between {minimum} and {maximum}")
    return parsed


def normalize_setting(key: str, value):
    if key == COMMISSION_BPS:
        return _coerce_int(key, value, minimum=0, maximum=10000)
    if key == COMMIT_WINDOW_HOURS:
        return _coerce_int(key, value, minimum=1, maximum=720)
    if key == COMMIT_DEADLINE_JOB_ENABLED:
        return _coerce_bool(value)
    raise ValidationFailed(f"unknown setting {key}")


def default_setting(key: str):
    cfg = current_app.config
    if key == COMMISSION_BPS:
        return int(cfg.get("PLATFORM_COMMISSION_BPS", DEFAULT_PLATFORM_COMMISSION_BPS))
    if key == COMMIT_WINDOW_HOURS:
        return int(cfg.get("COMMIT_WINDOW_HOURS", 48))
    if key == COMMIT_DEADLINE_JOB_ENABLED:
        return True
    raise KeyError(key)


def load_setting(key: str):
    """Authoritative read used by the settings cache."""
    row = AppSetting.query.filter_by(key=key).first()
    if row is None:
        return default_setting(key)
    value = row.value()
    if value is None:
        return default_setting(key)
    return normalize_setting(key, value)


def settings_cache():
    return current_app.extensions["settings_cache"]


def get_setting(key: str):
    if key not in RUNTIME_KEYS:
        raise KeyError(key)
    return settings_cache().get(key)


def all_settings() -> dict:
    return {key: get_setting(key) for key in RUNTIME_KEYS}


def set_setting(key: str, value, *, actor_id: int | None = None) -> AppSetting:
    if key not in RUNTIME_KEYS:
        raise ValidationFailed(f"unknown setting {key}")
    normalized = normalize_setting(key, value)
    row = AppSetting.query.filter_by(key=key).first()
    if row is None:
        row = AppSetting(key=key)
    row.value_json = json.dumps(normalized)
    row.updated_by = int(actor_id) if actor_id is not None else None
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()
    settings_cache().invalidate(key)
    current_app.logger.info("runtime_setting_updated key=%s actor_id=%s", key, actor_id)
    return row


def commission_bps() -> int:
    return int(get_setting(COMMISSION_BPS))


def commit_window_hours() -> int:
    return int(get_setting(COMMIT_WINDOW_HOURS))


def commit_deadline_job_enabled() -> bool:
    return bool(get_setting(COMMIT_DEADLINE_JOB_ENABLED))
