from __future__ import annotations

import json
import time

from flask import current_app

from rebooked.extensions import db
from rebooked.integrations.payments.base import RedirectUrls
from rebooked.integrations.payments.factory import SUPPORTED_PROVIDERS, build_payments_provider
from rebooked.models import Order, PaymentTransaction, User
from rebooked.services.errors import IllegalTransition, NotAuthorized, ValidationFailed
from rebooked.services.order_state_machine import OrderStatus, _parse_actor, get_order, is_admin_actor, start_checkout
from rebooked.utils.money import money_major_to_minor, money_minor_to_major


def _positive_money(name: str, value, *, allow_zero: bool = False) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be a number")
    if parsed < 0 or (parsed == 0 and not allow_zero):
        raise ValidationFailed(f"{name} must be greater than zero")
    return money_minor_to_major(money_major_to_minor(parsed))


def create_order(
    *,
    buyer_id: int,
    seller_id: int,
    book_id: int,
    amount,
    delivery_fee=0,
    book_title: str = "",
) -> Order:
    try:
        buyer_id = int(buyer_id)
        seller_id = int(seller_id)
        book_id = int(book_id)
    except (TypeError, ValueError):
        raise ValidationFailed("buyer_id, seller_id and book_id must be integers")
    if buyer_id == seller_id:
        raise ValidationFailed("buyer and seller must differ")
    if db.session.get(User, seller_id) is None:
        raise ValidationFailed("seller not found")

    order = Order(
        buyer_id=buyer_id,
        seller_id=seller_id,
        book_id=book_id,
        book_title=(book_title or "").strip()[:240] or None,
        amount=_positive_money("amount", amount),
        delivery_fee=_positive_money("delivery_fee", delivery_fee or 0, allow_zero=True),
        status=OrderStatus.CREATED,
    )
    db.session.add(order)
    db.session.commit()
    current_app.logger.info("order_created order_id=%s buyer_id=%s seller_id=%s", order.id, buyer_id, seller_id)
    return order


def new_custom_payment_id(order_id: int) -> str:
    return f"ORDER-{int(order_id)}-{int(time.time() * 1000)}"


def redirect_urls_for(order: Order, provider: str) -> RedirectUrls:
    base = (current_app.config.get("PUBLIC_BASE_URL") or "http://localhost:5000").rstrip("/")
    return RedirectUrls(
        notify_url=f"{base}/api/webhooks/{provider}",
        success_url=f"{base}/orders/{int(order.id)}/payment/success",
        pending_url=f"{base}/orders/{int(order.id)}/payment/pending",
        cancel_url=f"{base}/orders/{int(order.id)}/payment/cancelled",
    )


def begin_checkout(order_id: int, *, actor, provider: str | None = None, mobile_number: str = "") -> dict:
    """Create the payment intent and move the order to pending_payment.

    The provider is chosen here once and stored on the order; refunds and
    webhooks never re-infer it.
    """
    order = get_order(order_id)
    _, actor_id = _parse_actor(actor)
    if not is_admin_actor(actor) and actor_id != int(order.buyer_id):
        raise NotAuthorized("only the buyer can check out this order", order_id=int(order.id))
    if order.status != OrderStatus.CREATED:
        raise IllegalTransition(order.status or "", OrderStatus.PENDING_PAYMENT, order_id=int(order.id), event="checkout_started")

    name = (provider or current_app.config.get("DEFAULT_PAYMENT_PROVIDER") or "bobpay").strip().lower()
    if name not in SUPPORTED_PROVIDERS:
        raise ValidationFailed(f"unsupported payment provider {name}")
    payments = build_payments_provider(name, current_app.config)

    buyer = db.session.get(User, int(order.buyer_id))
    custom_payment_id = new_custom_payment_id(int(order.id))
    order.custom_payment_id = custom_payment_id
    try:
        init = payments.initialize(
            order,
            email=(buyer.email if buyer else "") or "",
            mobile_number=mobile_number or ((buyer.phone if buyer else "") or ""),
            redirect_urls=redirect_urls_for(order, name),
        )
    except Exception:
        db.session.rollback()
        raise

    db.session.add(
        PaymentTransaction(
            order_id=int(order.id),
            reference=custom_payment_id,
            provider_reference=(init.provider_reference or "")[:128] or None,
            payment_method=name,
            amount=float(order.total_charge),
            status="pending",
            provider_response_json=json.dumps({**(init.raw or {}), "provider": name}, default=str),
        )
    )
    start_checkout(order, provider=name, custom_payment_id=custom_payment_id, actor=actor)
    current_app.logger.info("checkout_started order_id=%s provider=%s reference=%s", order.id, name, custom_payment_id)
    return {
        "order_id": int(order.id),
        "provider": name,
        "payment_url": init.payment_url,
        "short_url": init.short_url or "",
        "provider_reference": init.provider_reference,
        "custom_payment_id": custom_payment_id,
    }
