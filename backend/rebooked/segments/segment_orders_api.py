from __future__ import annotations

from flask import Blueprint, jsonify, request

from rebooked.extensions import db
from rebooked.models import Order, OrderTransition, RefundTransaction, User
from rebooked.services import checkout_service
from rebooked.services.errors import GENERIC_FAILURE_MESSAGE, NotAuthorized, ValidationFailed
from rebooked.services.order_state_machine import (
    DeliveryConfirmed,
    apply_delivery_confirmed,
    commit_order,
    decline_order,
    get_order,
)
from rebooked.services.refund_router import process_refund
from rebooked.utils.jwt_utils import decode_token, get_bearer_token
from rebooked.utils.observability import get_request_id

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")
refunds_bp = Blueprint("refunds_bp", __name__, url_prefix="/api/refunds")


def _current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, uid)


def _role(u: User | None) -> str:
    if not u:
        return "guest"
    return (u.role or "buyer").strip().lower()


def _is_admin(u: User | None) -> bool:
    return _role(u) in ("admin", "super_admin")


def _actor(u: User) -> dict:
    return {"type": "user", "id": int(u.id), "role": _role(u)}


def _unauthorized():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401, "trace_id": get_request_id()}), 401


def _can_view(u: User, order: Order) -> bool:
    return _is_admin(u) or int(u.id) in (int(order.buyer_id), int(order.seller_id))


def _order_view(order: Order) -> dict:
    data = order.to_dict()
    if (order.refund_status or "") == "failed":
        data["message"] = GENERIC_FAILURE_MESSAGE
    return data


@orders_bp.post("")
def create_order():
    u = _current_user()
    if not u:
        return _unauthorized()
    data = request.get_json(silent=True) or {}
    buyer_id = int(u.id)
    if _is_admin(u) and data.get("buyer_id") is not None:
        buyer_id = data.get("buyer_id")
    order = checkout_service.create_order(
        buyer_id=buyer_id,
        seller_id=data.get("seller_id"),
        book_id=data.get("book_id"),
        amount=data.get("amount"),
        delivery_fee=data.get("delivery_fee") or 0,
        book_title=str(data.get("book_title") or ""),
    )
    return jsonify({"ok": True, "order": _order_view(order)}), 201


@orders_bp.post("/<int:order_id>/checkout")
def checkout(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    data = request.get_json(silent=True) or {}
    result = checkout_service.begin_checkout(
        order_id,
        actor=_actor(u),
        provider=(str(data.get("provider") or "").strip().lower() or None),
        mobile_number=str(data.get("mobile_number") or ""),
    )
    return jsonify({"ok": True, **result}), 200


@orders_bp.post("/<int:order_id>/commit")
def commit(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    data = request.get_json(silent=True) or {}
    result = commit_order(
        order_id,
        actor=_actor(u),
        shipment_id=(str(data.get("shipment_id") or "").strip() or None),
        tracking_number=(str(data.get("tracking_number") or "").strip() or None),
    )
    order = get_order(order_id)
    return jsonify({"ok": True, "transition": result.to_dict(), "order": _order_view(order)}), 200


@orders_bp.post("/<int:order_id>/decline")
def decline(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    data = request.get_json(silent=True) or {}
    result = decline_order(order_id, actor=_actor(u), reason=str(data.get("reason") or "").strip())
    order = get_order(order_id)
    status = 200 if result.success else 502
    body = {"ok": bool(result.success), "refund": result.to_dict(), "order": _order_view(order)}
    if not result.success:
        body["error"] = "REFUND_FAILED"
        body["message"] = GENERIC_FAILURE_MESSAGE
    return jsonify(body), status


@orders_bp.post("/<int:order_id>/confirm-delivery")
def confirm_delivery(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    order = get_order(order_id)
    if not _is_admin(u) and int(u.id) != int(order.buyer_id):
        raise NotAuthorized("only the buyer can confirm receipt", order_id=int(order.id))
    result = apply_delivery_confirmed(DeliveryConfirmed(order_id=int(order.id), source="buyer"), actor=_actor(u))
    order = get_order(order_id)
    return jsonify({"ok": True, "transition": result.to_dict(), "order": _order_view(order)}), 200


@orders_bp.get("/<int:order_id>")
def get_one(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    order = get_order(order_id)
    if not _can_view(u, order):
        raise NotAuthorized("order not visible to caller", order_id=int(order.id))
    return jsonify({"ok": True, "order": _order_view(order)}), 200


@orders_bp.get("/<int:order_id>/timeline")
def timeline(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    order = get_order(order_id)
    if not _can_view(u, order):
        raise NotAuthorized("order not visible to caller", order_id=int(order.id))
    rows = (
        OrderTransition.query.filter_by(order_id=int(order.id))
        .order_by(OrderTransition.created_at.asc(), OrderTransition.id.asc())
        .all()
    )
    refunds = RefundTransaction.query.filter_by(order_id=int(order.id)).order_by(RefundTransaction.id.asc()).all()
    return jsonify(
        {
            "ok": True,
            "order_id": int(order.id),
            "status": order.status,
            "items": [r.to_dict() for r in rows],
            "refunds": [r.to_dict() for r in refunds],
        }
    ), 200


@refunds_bp.post("")
def request_refund():
    u = _current_user()
    if not u:
        return _unauthorized()
    data = request.get_json(silent=True) or {}
    if data.get("order_id") is None:
        raise ValidationFailed("order_id is required")
    result = process_refund(
        data.get("order_id"),
        actor=_actor(u),
        reason=str(data.get("reason") or "").strip() or "cancelled_before_delivery",
    )
    if not result.success:
        return jsonify(
            {
                "ok": False,
                "error": "REFUND_FAILED",
                "message": GENERIC_FAILURE_MESSAGE,
                "refund": result.to_dict(),
            }
        ), 502
    return jsonify({"ok": True, "refund": result.to_dict()}), 200
