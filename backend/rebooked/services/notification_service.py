from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from rebooked.extensions import db
from rebooked.models import Order, OrderNotification
from rebooked.services.settings_service import commit_window_hours
from rebooked.utils.events import log_event

TEMPLATES = {
    "payment_confirmed": (
        "Payment confirmed",
        "Your payment for {title} was received. The seller has {hours} hours to confirm the order.",
    ),
    "new_order": (
        "New order received",
        "You have a new order for {title}. Please confirm within {hours} hours or it will be cancelled.",
    ),
    "payment_failed": (
        "Payment unsuccessful",
        "Your payment for {title} did not go through. No money was taken.",
    ),
    "order_committed": (
        "Seller confirmed your order",
        "The seller confirmed order #{order_id} for {title}. We will let you know when it ships.",
    ),
    "order_cancelled": (
        "Order cancelled",
        "Order #{order_id} for {title} was cancelled. A refund is being processed.",
    ),
    "commit_expired": (
        "Order expired",
        "Order #{order_id} for {title} was not confirmed in time and has been cancelled.",
    ),
    "refund_processed": (
        "Refund processed",
        "Your refund of {refund_amount} for order #{order_id} has been processed.",
    ),
    "delivery_update": (
        "Delivery update",
        "Order #{order_id} is now {delivery_status}.",
    ),
    "delivered": (
        "Order delivered",
        "Order #{order_id} for {title} has been delivered.",
    ),
    "settlement_credited": (
        "Payment released",
        "Your earnings of {payout_amount} for order #{order_id} are now available.",
    ),
    "shipment_cancelled": (
        "Shipment cancelled",
        "The courier shipment for order #{order_id} was cancelled. Our team will be in touch.",
    ),
}


@dataclass
class NotificationResult:
    ok: bool
    kind: str
    user_id: int | None
    notification_id: int | None = None
    error: str = ""


def _render(kind: str, order: Order, extra: dict | None) -> tuple[str, str]:
    title_tpl, body_tpl = TEMPLATES[kind]
    context = {
        "order_id": int(order.id),
        "title": order.book_title or "your book",
        "hours": commit_window_hours(),
        "delivery_status": (order.delivery_status or "").replace("_", " "),
        "refund_amount": "",
        "payout_amount": "",
    }
    context.update(extra or {})
    return title_tpl.format(**context), body_tpl.format(**context)


def notify(user_id: int | None, order: Order, kind: str, *, extra: dict | None = None) -> NotificationResult:
    """Queue one in-app notification; failures come back in the result."""
    if user_id is None:
        return NotificationResult(ok=False, kind=kind, user_id=None, error="missing_recipient")
    try:
        title, message = _render(kind, order, extra)
        row = OrderNotification(
            user_id=int(user_id),
            order_id=int(order.id),
            kind=kind,
            title=title[:160],
            message=message,
            status="queued",
        )
        with db.session.begin_nested():
            db.session.add(row)
            db.session.flush()
        db.session.commit()
        return NotificationResult(ok=True, kind=kind, user_id=int(user_id), notification_id=int(row.id))
    except (SQLAlchemyError, KeyError, ValueError) as exc:
        db.session.rollback()
        current_app.logger.warning(
            "notification_failed order_id=%s user_id=%s kind=%s err=%s",
            order.id,
            user_id,
            kind,
            exc.__class__.__name__,
        )
        log_event(
            "notification_failed",
            order_id=int(order.id),
            severity="WARN",
            metadata={"kind": kind, "user_id": user_id, "error": str(exc)[:300]},
            commit=True,
        )
        return NotificationResult(ok=False, kind=kind, user_id=int(user_id), error=str(exc)[:300])


def notify_buyer(order: Order, kind: str, **extra) -> NotificationResult:
    return notify(order.buyer_id, order, kind, extra=extra)


def notify_seller(order: Order, kind: str, **extra) -> NotificationResult:
    return notify(order.seller_id, order, kind, extra=extra)
