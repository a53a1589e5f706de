from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_

from rebooked.models import Order, SellerWallet, WalletTransaction
from rebooked.services.errors import IllegalTransition
from rebooked.services.order_state_machine import (
    DeliveryConfirmed,
    OrderStatus,
    apply_delivery_confirmed,
    get_order,
)
from rebooked.services.refund_router import process_refund
from rebooked.utils.events import log_event


def _signed_amount(kind: str, amount: float) -> float:
    if (kind or "").strip().lower() == "debit":
        return -abs(float(amount or 0.0))
    return abs(float(amount or 0.0))


def stuck_orders(*, limit: int = 200, stale_minutes: int = 30) -> dict:
    """Orders that need an operator: unsettled deliveries and unresolved refunds."""
    stale_before = datetime.utcnow() - timedelta(minutes=int(max(0, stale_minutes)))
    unsettled = (
        Order.query.filter(
            Order.status.in_((OrderStatus.DELIVERED, OrderStatus.COLLECTED)),
            or_(Order.delivered_at.is_(None), Order.delivered_at < stale_before),
        )
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    refunds = (
        Order.query.filter(Order.refund_status.in_(("failed", "pending")))
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    overdue = (
        Order.query.filter(
            Order.status == OrderStatus.PAID,
            Order.commit_deadline.isnot(None),
            Order.commit_deadline < stale_before,
            Order.refund_status == "none",
        )
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    return {
        "ok": True,
        "unsettled_deliveries": [o.to_dict() for o in unsettled],
        "refund_attention": [o.to_dict() for o in refunds],
        "overdue_commits": [o.to_dict() for o in overdue],
        "generated_at": datetime.utcnow().isoformat(),
    }


def wallet_drift(*, tolerance: float = 0.01) -> dict:
    wallets = SellerWallet.query.order_by(SellerWallet.user_id.asc()).all()
    drift_items = []
    for wallet in wallets:
        computed = 0.0
        for txn in WalletTransaction.query.filter_by(user_id=int(wallet.user_id)).all():
            computed += _signed_amount(txn.type, float(txn.amount or 0.0))
        current = float(wallet.available_balance or 0.0)
        drift = round(current - computed, 4)
        if abs(drift) > float(tolerance):
            drift_items.append(
                {
                    "wallet_id": int(wallet.id),
                    "user_id": int(wallet.user_id),
                    "stored_balance": current,
                    "computed_balance": round(computed, 4),
                    "drift": drift,
                }
            )
    return {
        "ok": True,
        "scope": "wallet_ledger",
        "wallet_count": len(wallets),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def redrive_settlement(order_id: int, *, actor_id: int | None = None) -> dict:
    order = get_order(order_id)
    if order.status not in OrderStatus.ARRIVED:
        raise IllegalTransition(order.status or "", OrderStatus.COMPLETED, order_id=int(order.id), event="settlement_redrive")
    result = apply_delivery_confirmed(
        DeliveryConfirmed(order_id=int(order.id), source="operator"),
        actor={"type": "admin", "id": actor_id, "role": "admin"},
    )
    log_event(
        "settlement_redriven",
        order_id=int(order.id),
        actor_user_id=actor_id,
        metadata={"applied": result.applied, "anomaly": result.anomaly},
        commit=True,
    )
    current_app.logger.info("settlement_redriven order_id=%s applied=%s", order.id, result.applied)
    return result.to_dict()


def redrive_refund(order_id: int, *, actor_id: int | None = None, reason: str = "") -> dict:
    """Retry a failed or pending refund on operator request."""
    order = get_order(order_id)
    if (order.refund_status or "") not in ("failed", "pending"):
        raise IllegalTransition(order.status or "", OrderStatus.REFUNDED, order_id=int(order.id), event="refund_redrive")
    target = OrderStatus.CANCELLED_REFUNDED if order.status == OrderStatus.PAID else OrderStatus.REFUNDED
    result = process_refund(
        order,
        actor={"type": "admin", "id": actor_id, "role": "admin"},
        reason=reason or order.cancellation_reason or "operator_refund_redrive",
        target_status=target,
        on_failure="failed",
        reclaim_abandoned=True,
    )
    log_event(
        "refund_redriven",
        order_id=int(order.id),
        actor_user_id=actor_id,
        metadata={"success": result.success, "route": result.route},
        commit=True,
    )
    return result.to_dict()
