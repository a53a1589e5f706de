from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from rebooked.extensions import db
from rebooked.models import PlatformEvent
from rebooked.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    try:
        return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return json.dumps({"raw": str(normalized)})


def log_event(
    event_type: str,
    *,
    order_id: int | None = None,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    request_id: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
    commit: bool = False,
) -> PlatformEvent | None:
    """Record an operator-facing event.

    Returns the stored row (or the existing row for a repeated idempotency key),
    or ``None`` when the write failed. A failed write is reported on the app
    logger and never propagates into the calling flow.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if not request_id:
            request_id = get_request_id()
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing

        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            order_id=int(order_id) if order_id is not None else None,
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or ("order" if order_id is not None else "")).strip()[:80] or None,
            subject_id=str(subject_id if subject_id is not None else (order_id if order_id is not None else ""))[:120] or None,
            request_id=(request_id or "").strip()[:80] or None,
            idempotency_key=key,
            severity=(severity or "INFO").strip().upper()[:16] or "INFO",
            metadata_json=_safe_json(metadata or {}),
        )

        # Savepoint so a failed insert leaves the caller's transaction intact.
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
        if commit:
            db.session.commit()
        return event
    except IntegrityError:
        if key:
            return PlatformEvent.query.filter_by(idempotency_key=key).first()
        return None
    except Exception:
        if has_app_context():
            current_app.logger.exception("platform_event_write_failed event_type=%s order_id=%s", event_type, order_id)
        return None
