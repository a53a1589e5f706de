from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rebooked.extensions import db
from rebooked.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from rebooked.integrations.couriers.factory import build_courier_provider
from rebooked.integrations.payments.base import RefundOutcome
from rebooked.integrations.payments.detection import (
    BobPayTxn,
    DetectedProvider,
    PaystackTxn,
    UnknownProvider,
    detect_provider,
)
from rebooked.integrations.payments.factory import build_payments_provider
from rebooked.models import Order, RefundTransaction
from rebooked.services import notification_service
from rebooked.services.errors import IllegalTransition, NotAuthorized, RefundInProgress, RefundPathUnavailable
from rebooked.services.order_state_machine import (
    OrderStatus,
    TransitionResult,
    _parse_actor,
    get_order,
    is_admin_actor,
    report_anomaly,
    transition,
)
from rebooked.utils.events import log_event
from rebooked.utils.idempotency import CLAIMED, DUPLICATE, claim_effect, complete_effect, fail_effect, is_abandoned
from rebooked.utils.money import format_major, money_major_to_minor, money_minor_to_major

ROUTE_CANCEL_WITH_REFUND = "cancel_with_refund"
ROUTE_BOBPAY_REVERSAL = "bobpay_reversal"
ROUTE_PAYSTACK_REFUND = "paystack_refund"

_RESERVABLE_REFUND_STATUSES = ("none", "pending", "failed")


@dataclass
class RefundRoute:
    name: str
    provider: DetectedProvider


@dataclass
class RefundResult:
    order_id: int
    success: bool
    route: str = ""
    provider: str = ""
    amount: float = 0.0
    refund_id: int | None = None
    already_refunded: bool = False
    refund_status: str = ""
    error: str = ""
    transition: TransitionResult | None = None
    courier_cancel_error: str = ""
    notification_failures: list = field(default_factory=list)

    def to_dict(self) -> dict:
        out = {
            "order_id": int(self.order_id),
            "success": bool(self.success),
            "route": self.route,
            "provider": self.provider,
            "amount": float(self.amount),
            "refund_id": self.refund_id,
            "already_refunded": bool(self.already_refunded),
            "refund_status": self.refund_status,
        }
        if self.transition is not None:
            out["transition"] = self.transition.to_dict()
        if self.courier_cancel_error:
            out["courier_cancel_error"] = self.courier_cancel_error
        return out


def default_refund_eligibility(order: Order) -> dict:
    return {"max_refund_amount": float(order.total_charge)}


def authorize_refund(order: Order, actor) -> None:
    """Only the order's buyer, its seller, an admin or the scheduler may refund."""
    actor_type, actor_id = _parse_actor(actor)
    if actor_type == "system":
        return
    if is_admin_actor(actor):
        return
    if actor_id is not None and actor_id in (int(order.buyer_id), int(order.seller_id)):
        return
    raise NotAuthorized("caller may not refund this order", order_id=int(order.id))


def route_refund(order: Order) -> RefundRoute:
    detected = detect_provider(order)
    if isinstance(detected, UnknownProvider):
        raise RefundPathUnavailable(
            f"cannot determine refund path: {detected.reason}",
            order_id=int(order.id),
        )
    if (order.status or "") == OrderStatus.COMMITTED:
        return RefundRoute(name=ROUTE_CANCEL_WITH_REFUND, provider=detected)
    if isinstance(detected, BobPayTxn):
        return RefundRoute(name=ROUTE_BOBPAY_REVERSAL, provider=detected)
    if isinstance(detected, PaystackTxn):
        if not detected.payment_reference:
            raise RefundPathUnavailable("cannot determine refund path: missing payment_reference", order_id=int(order.id))
        return RefundRoute(name=ROUTE_PAYSTACK_REFUND, provider=detected)
    raise RefundPathUnavailable("cannot determine refund path", order_id=int(order.id))


def refund_amount(order: Order, eligibility: dict | None = None) -> float:
    if eligibility is None:
        policy = current_app.extensions.get("refund_eligibility") or default_refund_eligibility
        eligibility = policy(order) or {}
    full_minor = money_major_to_minor(order.total_charge)
    cap = eligibility.get("max_refund_amount")
    if cap is None:
        return money_minor_to_major(full_minor)
    return money_minor_to_major(min(full_minor, money_major_to_minor(cap)))


def _cancel_shipment(order: Order, reason: str) -> str:
    tracking = (order.tracking_number or order.shipment_id or "").strip()
    if not tracking:
        return ""
    try:
        courier = build_courier_provider(order.courier_provider or "bobgo", current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        error = str(exc)
    else:
        cancelled = courier.cancel_shipment(tracking, reason=reason)
        if cancelled.ok:
            return ""
        error = cancelled.error or "courier_cancel_failed"
    current_app.logger.warning("courier_cancel_failed order_id=%s tracking=%s err=%s", order.id, tracking, error)
    log_event(
        "courier_cancel_failed",
        order_id=int(order.id),
        severity="WARN",
        metadata={"tracking_number": tracking, "error": error},
        commit=True,
    )
    return error


def _call_provider(route: RefundRoute, order: Order, amount: float, reason: str) -> RefundOutcome:
    try:
        provider = build_payments_provider(route.provider.name, current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        return RefundOutcome(success=False, refunded_amount=0.0, error=str(exc))
    partial = money_major_to_minor(amount) < money_major_to_minor(order.total_charge)
    return provider.refund(order, amount if partial else None, reason=reason)


def _set_refund_status(order: Order, refund_status: str) -> None:
    Order.query.filter(Order.id == int(order.id), Order.status == order.status).update(
        {"refund_status": refund_status, "updated_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.session.commit()
    db.session.refresh(order)


def _reserve_refund(order: Order, current: str) -> bool:
    """Flag ``refund_status=pending`` while the order still has the status we read."""
    updated = Order.query.filter(
        Order.id == int(order.id),
        Order.status == current,
        Order.refund_status.in_(_RESERVABLE_REFUND_STATUSES),
    ).update(
        {"refund_status": "pending", "updated_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.session.commit()
    db.session.refresh(order)
    return int(updated or 0) == 1


def _flag_abandoned_claim(order: Order, record) -> None:
    # outcome of the earlier provider call is unknown
    _set_refund_status(order, "failed")
    current_app.logger.error(
        "refund_claim_abandoned order_id=%s claim_id=%s attempts=%s", order.id, record.id, record.attempts
    )
    log_event(
        "refund_claim_abandoned",
        order_id=int(order.id),
        severity="ERROR",
        metadata={
            "claim_id": int(record.id),
            "attempts": int(record.attempts or 0),
            "claimed_at": record.updated_at.isoformat() if record.updated_at else None,
        },
        commit=True,
    )


def _already_refunded(order: Order) -> RefundResult:
    row = RefundTransaction.query.filter_by(order_id=int(order.id), status="success").first()
    return RefundResult(
        order_id=int(order.id),
        success=True,
        route=row.route if row else "",
        provider=row.provider if row else "",
        amount=float(row.amount or 0.0) if row else float(order.refunded_amount or 0.0),
        refund_id=int(row.id) if row else None,
        already_refunded=True,
        refund_status=order.refund_status or "completed",
    )


def process_refund(
    order,
    *,
    actor,
    reason: str = "",
    target_status: str = OrderStatus.REFUNDED,
    on_failure: str = "failed",
    eligibility: dict | None = None,
    reclaim_abandoned: bool = False,
) -> RefundResult:
    """Refund ``order`` through the mechanism its status and provider dictate.

    Exactly one caller may hold the refund claim for an order. A provider
    failure leaves the order where it was with ``refund_status`` set to
    ``on_failure`` ("pending" for the deadline sweep, "failed" otherwise)
    and is never retried here.

    A claim left in ``processing`` by a crashed worker is not taken over
    automatically: the order is flagged ``refund_status=failed`` for an
    operator, who re-drives it with ``reclaim_abandoned=True``.
    """
    if not isinstance(order, Order):
        order = get_order(order)
    authorize_refund(order, actor)

    if (order.refund_status or "") == "completed" and order.status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED_REFUNDED):
        return _already_refunded(order)

    current = order.status or ""
    if target_status not in OrderStatus.ALLOWED.get(current, set()) or current not in OrderStatus.REFUNDABLE:
        raise IllegalTransition(current, target_status, order_id=int(order.id), event="refund")

    claim = claim_effect(
        f"order:{int(order.id)}",
        "refund",
        order_id=int(order.id),
        payload={"reason": reason, "target_status": target_status},
        reclaim_stale=reclaim_abandoned,
    )
    if claim.outcome == DUPLICATE:
        db.session.refresh(order)
        return _already_refunded(order)
    if claim.outcome != CLAIMED:
        if claim.record is not None and is_abandoned(claim.record):
            _flag_abandoned_claim(order, claim.record)
        raise RefundInProgress("a refund for this order is already in progress", order_id=int(order.id))

    try:
        route = route_refund(order)
    except RefundPathUnavailable as exc:
        fail_effect(claim.record, str(exc), status="rejected")
        _set_refund_status(order, "failed")
        current_app.logger.error("refund_path_unavailable order_id=%s err=%s", order.id, exc)
        log_event(
            "refund_path_unavailable",
            order_id=int(order.id),
            severity="ERROR",
            metadata={"error": str(exc), "status": current},
            commit=True,
        )
        raise

    if not _reserve_refund(order, current):
        fail_effect(claim.record, "order_moved_before_refund", status="rejected")
        report_anomaly(order.id, "refund", "order_moved_before_refund", status=order.status, refund_status=order.refund_status)
        raise IllegalTransition(order.status or "", target_status, order_id=int(order.id), event="refund")

    amount = refund_amount(order, eligibility)
    courier_error = ""
    if route.name == ROUTE_CANCEL_WITH_REFUND:
        courier_error = _cancel_shipment(order, reason or "Order cancelled")
    outcome = _call_provider(route, order, amount, reason)

    actor_type, actor_id = _parse_actor(actor)
    row = RefundTransaction(
        order_id=int(order.id),
        amount=float(outcome.refunded_amount or amount) if outcome.success else amount,
        reason=(reason or "")[:240],
        provider=route.provider.name,
        route=route.name,
        provider_reference=(outcome.provider_reference or "")[:128] or None,
        status="success" if outcome.success else "failed",
        provider_response_json=json.dumps(outcome.provider_response or {}, default=str),
        error=(outcome.error or None),
        initiated_by_type=actor_type[:32],
        initiated_by_id=actor_id,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        report_anomaly(order.id, "refund", "duplicate_refund_success", route=route.name)
        complete_effect(claim.record, order_id=int(order.id))
        db.session.refresh(order)
        return _already_refunded(order)

    result = RefundResult(
        order_id=int(order.id),
        success=bool(outcome.success),
        route=route.name,
        provider=route.provider.name,
        amount=float(row.amount or 0.0),
        refund_id=int(row.id),
        courier_cancel_error=courier_error,
    )

    if not outcome.success:
        refund_status = "pending" if on_failure == "pending" else "failed"
        fail_effect(claim.record, outcome.error or "refund_failed")
        _set_refund_status(order, refund_status)
        current_app.logger.error(
            "refund_failed order_id=%s provider=%s route=%s err=%s", order.id, route.provider.name, route.name, outcome.error
        )
        log_event(
            "refund_failed",
            order_id=int(order.id),
            severity="ERROR",
            subject_type="refund_transaction",
            subject_id=int(row.id),
            metadata={"provider": route.provider.name, "route": route.name, "error": outcome.error, "refund_status": refund_status},
            commit=True,
        )
        result.refund_status = refund_status
        result.error = outcome.error or "refund_failed"
        return result

    now = datetime.utcnow()
    try:
        previous = transition(
            order,
            target_status,
            event="refund_completed",
            actor=actor,
            reason=reason,
            fields={
                "refund_status": "completed",
                "refunded_amount": float(row.amount or 0.0),
                "cancelled_at": now,
                "cancellation_reason": (reason or "refunded")[:240],
            },
            metadata={"route": route.name, "provider": route.provider.name, "refund_id": int(row.id)},
            idempotency_key=f"refund:{int(row.id)}",
        )
    except IllegalTransition as exc:
        complete_effect(claim.record, order_id=int(order.id))
        _set_refund_status(order, "completed")
        report_anomaly(order.id, "refund", "refund_applied_status_moved", detail=str(exc), refund_id=int(row.id))
        result.refund_status = "completed"
        return result
    complete_effect(claim.record, order_id=int(order.id))
    current_app.logger.info(
        "refund_completed order_id=%s provider=%s route=%s amount=%s", order.id, route.provider.name, route.name, row.amount
    )

    result.refund_status = "completed"
    result.transition = TransitionResult(
        order_id=int(order.id),
        event="refund_completed",
        applied=True,
        from_status=previous,
        to_status=target_status,
    )
    seller_kind = "commit_expired" if reason == "commit_deadline_expired" else "order_cancelled"
    result.transition.collect(
        notification_service.notify_buyer(order, "refund_processed", refund_amount=format_major(row.amount)),
        notification_service.notify_seller(order, seller_kind),
    )
    result.notification_failures = list(result.transition.notification_failures)
    return result
