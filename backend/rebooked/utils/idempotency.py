from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from rebooked.extensions import db
from rebooked.models import WebhookEvent
from rebooked.utils.observability import get_request_id

CLAIMED = "claimed"
DUPLICATE = "duplicate"
IN_PROGRESS = "in_progress"

_RECLAIMABLE = ("failed", "rejected")


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 86400) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def stale_after_seconds() -> int:
    return _env_int("IDEMPOTENCY_STALE_SECONDS", 600, minimum=5)


def _canonical_json(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(payload)


def hash_payload(payload: Any) -> str:
    return hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()


@dataclass
class EffectClaim:
    outcome: str
    record: WebhookEvent | None

    @property
    def claimed(self) -> bool:
        return self.outcome == CLAIMED


def is_abandoned(row: WebhookEvent, now: datetime | None = None) -> bool:
    """A ``processing`` claim nobody has touched for the stale window."""
    if (row.status or "").strip().lower() != "processing":
        return False
    if row.updated_at is None:
        return True
    now = now or datetime.utcnow()
    return row.updated_at <= now - timedelta(seconds=stale_after_seconds())


def _reclaim(row: WebhookEvent, *, reclaim_stale: bool = True) -> bool:
    """Conditionally take over a failed, rejected or abandoned claim."""
    now = datetime.utcnow()
    status = (row.status or "").strip().lower()
    if status == "processing":
        if not reclaim_stale or not is_abandoned(row, now):
            return False
    elif status not in _RECLAIMABLE:
        return False
    updated = (
        WebhookEvent.query.filter(
            WebhookEvent.id == int(row.id),
            WebhookEvent.status == row.status,
            WebhookEvent.attempts == int(row.attempts or 0),
        ).update(
            {
                "status": "processing",
                "attempts": int(row.attempts or 0) + 1,
                "error": None,
                "request_id": (get_request_id() or "")[:64] or None,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return int(updated or 0) == 1


def claim_effect(
    idempotency_key: str,
    effect: str,
    *,
    provider: str = "internal",
    order_id: int | None = None,
    reference: str | None = None,
    payload: Any = None,
    reclaim_stale: bool = True,
) -> EffectClaim:
    """Check-and-insert the durable record for (idempotency_key, effect).

    ``claimed`` means the caller owns the effect and must finish it with
    :func:`complete_effect` or :func:`fail_effect`. ``duplicate`` means the
    effect was already applied. ``in_progress`` means another worker holds a
    fresh claim, or an abandoned one when ``reclaim_stale`` is false.
    """
    key = (idempotency_key or "").strip()[:180]
    if not key:
        raise ValueError("idempotency_key required")
    effect_name = (effect or "").strip()[:40]
    if not effect_name:
        raise ValueError("effect required")

    row = WebhookEvent(
        provider=(provider or "internal")[:32],
        idempotency_key=key,
        effect=effect_name,
        order_id=int(order_id) if order_id is not None else None,
        reference=(reference or "")[:128] or None,
        status="processing",
        attempts=1,
        request_id=(get_request_id() or "")[:64] or None,
        payload_hash=hash_payload(payload) if payload is not None else None,
        payload_json=_canonical_json(payload)[:20000] if payload is not None else None,
    )
    try:
        db.session.add(row)
        db.session.commit()
        return EffectClaim(CLAIMED, row)
    except IntegrityError:
        db.session.rollback()

    existing = WebhookEvent.query.filter_by(idempotency_key=key, effect=effect_name).first()
    if existing is None:
        return EffectClaim(IN_PROGRESS, None)
    if (existing.status or "") == "applied":
        return EffectClaim(DUPLICATE, existing)
    if _reclaim(existing, reclaim_stale=reclaim_stale):
        db.session.refresh(existing)
        return EffectClaim(CLAIMED, existing)
    db.session.refresh(existing)
    if (existing.status or "") == "applied":
        return EffectClaim(DUPLICATE, existing)
    return EffectClaim(IN_PROGRESS, existing)


def complete_effect(record: WebhookEvent, *, order_id: int | None = None) -> None:
    record.status = "applied"
    record.processed_at = datetime.utcnow()
    if order_id is not None:
        record.order_id = int(order_id)
    db.session.add(record)
    db.session.commit()


def fail_effect(record: WebhookEvent, error: str, *, status: str = "failed") -> None:
    """Release a claim so a later replay may retry it."""
    if status not in _RECLAIMABLE:
        raise ValueError(f"invalid_effect_status {status}")
    db.session.rollback()
    record = db.session.merge(record)
    record.status = status
    record.error = (error or "")[:2000]
    record.processed_at = datetime.utcnow()
    db.session.add(record)
    db.session.commit()


def effect_status(idempotency_key: str, effect: str) -> str | None:
    row = WebhookEvent.query.filter_by(idempotency_key=(idempotency_key or "")[:180], effect=effect).first()
    return (row.status or None) if row else None
