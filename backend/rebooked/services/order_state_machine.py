from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rebooked.extensions import db
from rebooked.models import Order, OrderTransition, PaymentTransaction
from rebooked.services import notification_service
from rebooked.services.errors import IllegalTransition, NotAuthorized, OrderNotFound, ValidationFailed
from rebooked.services.notification_service import NotificationResult
from rebooked.services.settings_service import commit_window_hours
from rebooked.utils.events import log_event
from rebooked.utils.idempotency import CLAIMED, DUPLICATE, claim_effect, complete_effect, fail_effect
from rebooked.utils.money import format_major


class OrderStatus:
    CREATED = "created"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    COMMITTED = "committed"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COLLECTED = "collected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CANCELLED_REFUNDED = "cancelled_refunded"
    REFUNDED = "refunded"

    TERMINAL = {COMPLETED, CANCELLED, CANCELLED_REFUNDED, REFUNDED}
    IN_FLIGHT = {COMMITTED, SHIPPED, IN_TRANSIT}
    ARRIVED = {DELIVERED, COLLECTED}
    REFUNDABLE = {PAID, COMMITTED}

    ALLOWED = {
        CREATED: {PENDING_PAYMENT},
        PENDING_PAYMENT: {PAID, CANCELLED},
        PAID: {COMMITTED, CANCELLED_REFUNDED, REFUNDED},
        COMMITTED: {SHIPPED, IN_TRANSIT, DELIVERED, COLLECTED, REFUNDED},
        SHIPPED: {IN_TRANSIT, DELIVERED, COLLECTED},
        IN_TRANSIT: {DELIVERED, COLLECTED},
        DELIVERED: {COMPLETED},
        COLLECTED: {COMPLETED},
    }


class DeliveryStatus:
    NONE = "none"
    SUBMITTED = "submitted"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COLLECTED = "collected"
    CANCELLED = "cancelled"

    RANK = {
        NONE: 0,
        SUBMITTED: 1,
        SHIPPED: 2,
        IN_TRANSIT: 3,
        DELIVERED: 4,
        COLLECTED: 4,
    }

    # delivery status -> order status it drives
    ORDER_STATUS = {
        SHIPPED: OrderStatus.SHIPPED,
        IN_TRANSIT: OrderStatus.IN_TRANSIT,
        DELIVERED: OrderStatus.DELIVERED,
        COLLECTED: OrderStatus.COLLECTED,
    }


ADMIN_ROLES = ("admin", "super_admin")


@dataclass
class PaymentConfirmed:
    order_id: int
    provider: str
    reference: str
    provider_reference: str = ""
    amount: float | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class PaymentFailed:
    order_id: int
    provider: str
    reference: str
    reason: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class DeliveryUpdated:
    order_id: int
    delivery_status: str
    tracking_number: str = ""
    courier_status: str = ""
    location: str = ""


@dataclass
class DeliveryConfirmed:
    order_id: int
    source: str = "courier"


@dataclass
class ShipmentCancelled:
    order_id: int
    tracking_number: str = ""
    reason: str = ""


@dataclass
class TransitionResult:
    order_id: int
    event: str
    applied: bool
    from_status: str = ""
    to_status: str = ""
    anomaly: str = ""
    notification_failures: list[NotificationResult] = field(default_factory=list)
    settlement: object | None = None

    def collect(self, *results: NotificationResult) -> None:
        for res in results:
            if res is not None and not res.ok:
                self.notification_failures.append(res)

    def merge(self, other: "TransitionResult") -> None:
        self.notification_failures.extend(other.notification_failures)
        if other.settlement is not None:
            self.settlement = other.settlement
        if other.applied:
            self.to_status = other.to_status
        if other.anomaly and not self.anomaly:
            self.anomaly = other.anomaly

    def to_dict(self) -> dict:
        out = {
            "order_id": int(self.order_id),
            "event": self.event,
            "applied": bool(self.applied),
            "from_status": self.from_status,
            "to_status": self.to_status,
            "notification_failures": [
                {"kind": n.kind, "user_id": n.user_id, "error": n.error} for n in self.notification_failures
            ],
        }
        if self.anomaly:
            out["anomaly"] = self.anomaly
        if self.settlement is not None and hasattr(self.settlement, "to_dict"):
            out["settlement"] = self.settlement.to_dict()
        return out


def _now():
    return datetime.utcnow()


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None


def actor_role(actor) -> str:
    if isinstance(actor, dict):
        return str(actor.get("role") or actor.get("type") or "system").strip().lower()
    return "system"


def is_admin_actor(actor) -> bool:
    return actor_role(actor) in ADMIN_ROLES


def get_order(order_id: int) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationFailed("order_id must be an integer")
    order = db.session.get(Order, oid)
    if order is None:
        raise OrderNotFound(f"order {oid} not found", order_id=oid)
    return order


def report_anomaly(order_id: int | None, event: str, code: str, **details) -> None:
    current_app.logger.warning("order_transition_anomaly order_id=%s event=%s code=%s", order_id, event, code)
    log_event(
        "order_transition_anomaly",
        order_id=order_id,
        severity="WARN",
        metadata={"event": event, "code": code, **details},
        commit=True,
    )


def transition(
    order: Order,
    to_status: str,
    *,
    event: str,
    actor=None,
    reason: str = "",
    fields: dict | None = None,
    expect: dict | None = None,
    metadata: dict | None = None,
    idempotency_key: str | None = None,
) -> str:
    """Move ``order`` to ``to_status`` with a single conditional UPDATE.

    The row only changes if it is still in the status we read (plus any
    ``expect`` column values). Returns the previous status. Raises
    :class:`IllegalTransition` when the graph forbids the move or another
    writer got there first.
    """
    if order is None:
        raise ValueError("order required")
    current = (order.status or OrderStatus.CREATED).strip().lower()
    target = (to_status or "").strip().lower()
    if target not in OrderStatus.ALLOWED.get(current, set()):
        raise IllegalTransition(current, target, order_id=int(order.id), event=event)

    now = _now()
    values = {"status": target, "updated_at": now}
    values.update(fields or {})
    query = Order.query.filter(Order.id == int(order.id), Order.status == current)
    for column, expected in (expect or {}).items():
        query = query.filter(getattr(Order, column) == expected)
    updated = query.update(values, synchronize_session=False)
    if int(updated or 0) != 1:
        db.session.rollback()
        db.session.refresh(order)
        raise IllegalTransition(order.status or "", target, order_id=int(order.id), event=event)

    actor_type, actor_id = _parse_actor(actor)
    key = (idempotency_key or f"{event}:{target}").strip()[:160]
    db.session.add(
        OrderTransition(
            order_id=int(order.id),
            from_status=current,
            to_status=target,
            event=event[:40],
            actor_type=actor_type[:32],
            actor_id=actor_id,
            idempotency_key=key,
            reason=(reason or "")[:240],
            metadata_json=json.dumps(metadata or {}, default=str)[:4000],
            created_at=now,
        )
    )
    db.session.commit()
    db.session.refresh(order)
    current_app.logger.info(
        "order_transition order_id=%s from=%s to=%s event=%s actor=%s:%s",
        order.id,
        current,
        target,
        event,
        actor_type,
        actor_id,
    )
    return current


def start_checkout(order: Order, *, provider: str, custom_payment_id: str, actor=None) -> TransitionResult:
    previous = transition(
        order,
        OrderStatus.PENDING_PAYMENT,
        event="checkout_started",
        actor=actor,
        fields={
            "payment_provider": provider,
            "custom_payment_id": custom_payment_id,
            "payment_status": "pending",
        },
        metadata={"provider": provider, "custom_payment_id": custom_payment_id},
    )
    return TransitionResult(
        order_id=int(order.id),
        event="checkout_started",
        applied=True,
        from_status=previous,
        to_status=OrderStatus.PENDING_PAYMENT,
    )


def apply_payment_confirmed(evt: PaymentConfirmed) -> TransitionResult:
    order = get_order(evt.order_id)
    result = TransitionResult(order_id=int(order.id), event="payment_confirmed", applied=False, from_status=order.status)
    if order.status != OrderStatus.PENDING_PAYMENT:
        code = "already_paid" if order.payment_status == "paid" else "payment_for_inactive_order"
        report_anomaly(order.id, result.event, code, status=order.status, reference=evt.reference)
        result.anomaly = code
        return result

    tx = (
        PaymentTransaction.query.filter_by(order_id=int(order.id), reference=evt.reference)
        .order_by(PaymentTransaction.id.desc())
        .first()
    )
    if tx is None:
        tx = PaymentTransaction(
            order_id=int(order.id),
            reference=evt.reference,
            payment_method=evt.provider,
            amount=order.total_charge,
        )
    tx.status = "success"
    tx.provider_reference = (evt.provider_reference or "")[:128] or tx.provider_reference
    tx.payment_method = evt.provider
    tx.provider_response_json = json.dumps({**(evt.raw or {}), "provider": evt.provider}, default=str)
    db.session.add(tx)

    now = _now()
    deadline = now + timedelta(hours=commit_window_hours())
    try:
        transition(
            order,
            OrderStatus.PAID,
            event="payment_confirmed",
            actor={"type": "provider"},
            fields={
                "payment_status": "paid",
                "payment_reference": (evt.provider_reference or evt.reference)[:128],
                "paid_at": now,
                "commit_deadline": deadline,
            },
            metadata={"provider": evt.provider, "reference": evt.reference},
        )
    except IntegrityError:
        # another success row already exists for this order
        db.session.rollback()
        report_anomaly(order.id, result.event, "duplicate_payment_success", reference=evt.reference)
        result.anomaly = "duplicate_payment_success"
        return result
    except IllegalTransition as exc:
        report_anomaly(order.id, result.event, "illegal_transition", detail=str(exc))
        result.anomaly = "illegal_transition"
        return result

    result.applied = True
    result.to_status = OrderStatus.PAID
    result.collect(
        notification_service.notify_buyer(order, "payment_confirmed"),
        notification_service.notify_seller(order, "new_order"),
    )
    return result


def apply_payment_failed(evt: PaymentFailed) -> TransitionResult:
    order = get_order(evt.order_id)
    result = TransitionResult(order_id=int(order.id), event="payment_failed", applied=False, from_status=order.status)
    if order.status != OrderStatus.PENDING_PAYMENT:
        report_anomaly(order.id, result.event, "payment_failed_for_inactive_order", status=order.status)
        result.anomaly = "payment_failed_for_inactive_order"
        return result

    PaymentTransaction.query.filter_by(order_id=int(order.id), reference=evt.reference, status="pending").update(
        {"status": "failed", "updated_at": _now()}, synchronize_session=False
    )
    try:
        transition(
            order,
            OrderStatus.CANCELLED,
            event="payment_failed",
            actor={"type": "provider"},
            reason=evt.reason,
            fields={"payment_status": "failed", "cancelled_at": _now(), "cancellation_reason": (evt.reason or "payment_failed")[:240]},
        )
    except IllegalTransition as exc:
        report_anomaly(order.id, result.event, "illegal_transition", detail=str(exc))
        result.anomaly = "illegal_transition"
        return result
    result.applied = True
    result.to_status = OrderStatus.CANCELLED
    result.collect(notification_service.notify_buyer(order, "payment_failed"))
    return result


def commit_order(order_id: int, *, actor, shipment_id: str | None = None, tracking_number: str | None = None) -> TransitionResult:
    order = get_order(order_id)
    _, actor_id = _parse_actor(actor)
    if not is_admin_actor(actor) and actor_id != int(order.seller_id):
        raise NotAuthorized("only the seller can commit this order", order_id=int(order.id))
    if order.status != OrderStatus.PAID:
        raise IllegalTransition(order.status or "", OrderStatus.COMMITTED, order_id=int(order.id), event="seller_commit")
    if (order.refund_status or "none") != "none":
        raise IllegalTransition(order.status or "", OrderStatus.COMMITTED, order_id=int(order.id), event="seller_commit")
    if order.commit_deadline is not None and _now() > order.commit_deadline:
        raise ValidationFailed("the commit window for this order has closed", code="COMMIT_WINDOW_CLOSED", order_id=int(order.id))

    fields = {"committed_at": _now()}
    if shipment_id:
        fields["shipment_id"] = str(shipment_id)[:80]
        fields["courier_provider"] = "bobgo"
    if tracking_number:
        fields["tracking_number"] = str(tracking_number)[:80]
    previous = transition(
        order,
        OrderStatus.COMMITTED,
        event="seller_commit",
        actor=actor,
        fields=fields,
        expect={"refund_status": "none"},
    )
    result = TransitionResult(
        order_id=int(order.id),
        event="seller_commit",
        applied=True,
        from_status=previous,
        to_status=OrderStatus.COMMITTED,
    )
    result.collect(notification_service.notify_buyer(order, "order_committed"))
    return result


def _update_delivery_only(order: Order, evt: DeliveryUpdated, current_delivery: str) -> bool:
    values = {"delivery_status": evt.delivery_status, "updated_at": _now()}
    if evt.tracking_number:
        values["tracking_number"] = evt.tracking_number[:80]
    if evt.location:
        values["last_tracking_location"] = evt.location[:240]
    updated = Order.query.filter(
        Order.id == int(order.id),
        Order.status == order.status,
        Order.delivery_status == current_delivery,
    ).update(values, synchronize_session=False)
    db.session.commit()
    db.session.refresh(order)
    return int(updated or 0) == 1


def apply_delivery_update(evt: DeliveryUpdated) -> TransitionResult:
    order = get_order(evt.order_id)
    result = TransitionResult(order_id=int(order.id), event="delivery_updated", applied=False, from_status=order.status)
    target_delivery = (evt.delivery_status or "").strip().lower()
    if target_delivery not in DeliveryStatus.RANK or target_delivery == DeliveryStatus.NONE:
        report_anomaly(order.id, result.event, "unknown_delivery_status", courier_status=evt.courier_status)
        result.anomaly = "unknown_delivery_status"
        return result

    status = order.status or ""
    if status not in OrderStatus.IN_FLIGHT and status not in OrderStatus.ARRIVED and status != OrderStatus.COMPLETED:
        report_anomaly(order.id, result.event, "courier_event_before_commit", status=status, delivery_status=target_delivery)
        result.anomaly = "courier_event_before_commit"
        return result

    current_delivery = (order.delivery_status or DeliveryStatus.NONE).strip().lower()
    if DeliveryStatus.RANK.get(target_delivery, 0) <= DeliveryStatus.RANK.get(current_delivery, 0):
        # stale or repeated courier status
        result.anomaly = "stale_delivery_status"
        return result

    target_status = DeliveryStatus.ORDER_STATUS.get(target_delivery)
    if target_status is None:
        if _update_delivery_only(order, evt, current_delivery):
            result.applied = True
            result.to_status = order.status
        return result

    fields = {"delivery_status": target_delivery}
    if evt.tracking_number:
        fields["tracking_number"] = evt.tracking_number[:80]
    if evt.location:
        fields["last_tracking_location"] = evt.location[:240]
    if target_status in OrderStatus.ARRIVED:
        fields["delivered_at"] = _now()
    try:
        transition(
            order,
            target_status,
            event="delivery_updated",
            actor={"type": "courier"},
            fields=fields,
            metadata={"courier_status": evt.courier_status, "location": evt.location},
        )
    except IllegalTransition as exc:
        report_anomaly(order.id, result.event, "illegal_transition", detail=str(exc))
        result.anomaly = "illegal_transition"
        return result

    result.applied = True
    result.to_status = target_status
    if target_status in OrderStatus.ARRIVED:
        result.collect(notification_service.notify_buyer(order, "delivered"))
        result.merge(apply_delivery_confirmed(DeliveryConfirmed(order_id=int(order.id), source="courier")))
    else:
        result.collect(notification_service.notify_buyer(order, "delivery_update"))
    return result


def apply_delivery_confirmed(evt: DeliveryConfirmed, *, actor=None) -> TransitionResult:
    """Settle the seller and complete the order once it has arrived."""
    from rebooked.services.settlement_service import settle

    order = get_order(evt.order_id)
    result = TransitionResult(order_id=int(order.id), event="delivery_confirmed", applied=False, from_status=order.status)

    if order.status == OrderStatus.COMPLETED:
        return result

    if order.status in OrderStatus.IN_FLIGHT and evt.source == "buyer":
        arrived = apply_delivery_update(
            DeliveryUpdated(order_id=int(order.id), delivery_status=DeliveryStatus.DELIVERED, courier_status="buyer_confirmed")
        )
        arrived.event = "delivery_confirmed"
        arrived.from_status = result.from_status
        return arrived

    if order.status not in OrderStatus.ARRIVED:
        report_anomaly(order.id, result.event, "delivery_confirmed_before_arrival", status=order.status, source=evt.source)
        result.anomaly = "delivery_confirmed_before_arrival"
        return result

    if (order.refund_status or "none") != "none":
        report_anomaly(order.id, result.event, "settlement_blocked_by_refund", refund_status=order.refund_status)
        result.anomaly = "settlement_blocked_by_refund"
        return result

    claim = claim_effect(f"order:{int(order.id)}", "settlement", order_id=int(order.id), payload={"source": evt.source})
    if claim.outcome == DUPLICATE:
        return result
    if claim.outcome != CLAIMED:
        result.anomaly = "settlement_in_progress"
        return result

    settlement = settle(order)
    result.settlement = settlement
    if not settlement.success:
        fail_effect(claim.record, settlement.error or "settlement_failed")
        current_app.logger.error("settlement_failed order_id=%s method=%s err=%s", order.id, settlement.method, settlement.error)
        log_event(
            "settlement_failed",
            order_id=int(order.id),
            severity="ERROR",
            metadata={"method": settlement.method, "error": settlement.error},
            commit=True,
        )
        return result

    previous = order.status
    try:
        transition(
            order,
            OrderStatus.COMPLETED,
            event="delivery_confirmed",
            actor=actor or {"type": evt.source},
            fields={
                "settlement_method": settlement.method,
                "settled_at": _now(),
                "completed_at": _now(),
            },
            metadata={"settlement": settlement.to_dict()},
        )
    except IllegalTransition as exc:
        fail_effect(claim.record, str(exc))
        report_anomaly(order.id, result.event, "illegal_transition", detail=str(exc))
        result.anomaly = "illegal_transition"
        return result
    complete_effect(claim.record, order_id=int(order.id))

    result.applied = True
    result.from_status = previous
    result.to_status = OrderStatus.COMPLETED
    if settlement.method == "wallet_credit":
        result.collect(notification_service.notify_seller(order, "settlement_credited", payout_amount=format_major(settlement.amount)))

    from rebooked.services.affiliate_service import track_affiliate_order

    track_affiliate_order(order)
    return result


def apply_shipment_cancelled(evt: ShipmentCancelled) -> TransitionResult:
    order = get_order(evt.order_id)
    result = TransitionResult(order_id=int(order.id), event="shipment_cancelled", applied=False, from_status=order.status)
    current_delivery = (order.delivery_status or DeliveryStatus.NONE).strip().lower()
    if current_delivery in (DeliveryStatus.DELIVERED, DeliveryStatus.COLLECTED, DeliveryStatus.CANCELLED):
        if current_delivery != DeliveryStatus.CANCELLED:
            report_anomaly(order.id, result.event, "shipment_cancelled_after_arrival", delivery_status=current_delivery)
            result.anomaly = "shipment_cancelled_after_arrival"
        return result

    updated = Order.query.filter(
        Order.id == int(order.id),
        Order.delivery_status == current_delivery,
    ).update({"delivery_status": DeliveryStatus.CANCELLED, "updated_at": _now()}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(order)
    if int(updated or 0) != 1:
        return result

    result.applied = True
    result.to_status = order.status
    log_event(
        "shipment_cancelled",
        order_id=int(order.id),
        severity="WARN",
        idempotency_key=f"shipment_cancelled:{int(order.id)}",
        metadata={"tracking_number": evt.tracking_number, "reason": evt.reason, "status": order.status},
        commit=True,
    )
    result.collect(
        notification_service.notify_buyer(order, "shipment_cancelled"),
        notification_service.notify_seller(order, "shipment_cancelled"),
    )
    return result


def decline_order(order_id: int, *, actor, reason: str = ""):
    """Seller declines a paid order; the buyer is refunded."""
    from rebooked.services.refund_router import process_refund

    order = get_order(order_id)
    _, actor_id = _parse_actor(actor)
    if not is_admin_actor(actor) and actor_id != int(order.seller_id):
        raise NotAuthorized("only the seller can decline this order", order_id=int(order.id))
    if order.status != OrderStatus.PAID:
        raise IllegalTransition(order.status or "", OrderStatus.CANCELLED_REFUNDED, order_id=int(order.id), event="seller_decline")
    Order.query.filter(Order.id == int(order.id), Order.status == OrderStatus.PAID).update(
        {"decline_reason": (reason or "declined_by_seller")[:240]}, synchronize_session=False
    )
    db.session.commit()
    return process_refund(
        order,
        actor=actor,
        reason=reason or "declined_by_seller",
        target_status=OrderStatus.CANCELLED_REFUNDED,
        on_failure="failed",
    )


def expire_order(order: Order):
    """Commit deadline passed with no seller action."""
    from rebooked.services.refund_router import process_refund

    return process_refund(
        order,
        actor={"type": "system"},
        reason="commit_deadline_expired",
        target_status=OrderStatus.CANCELLED_REFUNDED,
        on_failure="pending",
    )


def cancel_order(order_id: int, *, actor, reason: str = ""):
    """Buyer, seller or admin cancellation before delivery."""
    from rebooked.services.refund_router import process_refund

    order = get_order(order_id)
    return process_refund(
        order,
        actor=actor,
        reason=reason or "cancelled_before_delivery",
        target_status=OrderStatus.REFUNDED,
        on_failure="failed",
    )
