from __future__ import annotations

from flask import current_app

from rebooked.extensions import db
from rebooked.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, ProviderRequestError
from rebooked.integrations.couriers.base import SIGNATURE_INVALID, SIGNATURE_UNSIGNED_TRUSTED, normalize_courier_status
from rebooked.integrations.couriers.factory import build_courier_provider
from rebooked.integrations.payments.bobpay_provider import BobPayPaymentsProvider
from rebooked.integrations.payments.factory import build_payments_provider
from rebooked.models import Order, PaymentTransaction
from rebooked.services.order_state_machine import (
    DeliveryStatus,
    DeliveryUpdated,
    PaymentConfirmed,
    PaymentFailed,
    ShipmentCancelled,
    TransitionResult,
    apply_delivery_update,
    apply_payment_confirmed,
    apply_payment_failed,
    apply_shipment_cancelled,
    report_anomaly,
)
from rebooked.utils.events import log_event
from rebooked.utils.idempotency import CLAIMED, DUPLICATE, claim_effect, complete_effect, fail_effect
from rebooked.utils.money import money_major_to_minor
from rebooked.utils.observability import get_request_id

SHIPMENT_SUBMITTED_EVENTS = ("shipment.created", "shipment.submitted")
SHIPMENT_DELIVERED_EVENTS = ("shipment.delivered",)
SHIPMENT_CANCELLED_EVENTS = ("shipment.cancelled", "shipment.canceled")

# anomalies that a later replay may legitimately resolve
_RETRYABLE_ANOMALIES = ("courier_event_before_commit",)


def _reply(body: dict, status: int = 200) -> tuple[dict, int]:
    body.setdefault("trace_id", get_request_id())
    return body, int(status)


def _order_for_payment_reference(reference: str) -> Order | None:
    ref = (reference or "").strip()
    if not ref:
        return None
    order = Order.query.filter_by(custom_payment_id=ref).first()
    if order is not None:
        return order
    tx = PaymentTransaction.query.filter_by(reference=ref).order_by(PaymentTransaction.id.desc()).first()
    if tx is not None:
        return db.session.get(Order, int(tx.order_id))
    return Order.query.filter_by(payment_reference=ref).first()


def _order_for_shipment(tracking_number: str, shipment_id: str) -> Order | None:
    if tracking_number:
        order = Order.query.filter_by(tracking_number=tracking_number).first()
        if order is not None:
            return order
    if shipment_id:
        return Order.query.filter_by(shipment_id=shipment_id).first()
    return None


def _finish(claim, result: TransitionResult) -> None:
    if result.anomaly in _RETRYABLE_ANOMALIES or result.anomaly == "illegal_transition":
        fail_effect(claim.record, result.anomaly, status="rejected")
        return
    complete_effect(claim.record, order_id=result.order_id)


def ingest_payment_webhook(provider_name: str, *, raw: bytes, headers, payload) -> tuple[dict, int]:
    """Verify, normalize and apply one payment-provider callback.

    Returns ``(body, http_status)``. A 503 asks the provider to retry later;
    anything the engine decides not to apply is acknowledged with 200.
    """
    try:
        provider = build_payments_provider(provider_name, current_app.config)
    except IntegrationDisabledError as exc:
        current_app.logger.warning("payment_webhook_disabled provider=%s err=%s", provider_name, exc)
        return _reply({"ok": False, "error": "INTEGRATION_DISABLED"}, 503)
    except IntegrationMisconfiguredError as exc:
        current_app.logger.error("payment_webhook_misconfigured provider=%s err=%s", provider_name, exc)
        return _reply({"ok": False, "error": "INTEGRATION_MISCONFIGURED"}, 503)

    if not isinstance(payload, dict) or not payload:
        return _reply({"ok": False, "error": "INVALID_PAYLOAD"}, 400)

    if not provider.verify_webhook_signature(raw, headers, payload):
        current_app.logger.warning("payment_webhook_signature_invalid provider=%s", provider.name)
        log_event(
            "webhook_signature_invalid",
            severity="WARN",
            subject_type="webhook",
            subject_id=provider.name,
            metadata={"provider": provider.name},
            commit=True,
        )
        return _reply({"ok": False, "error": "INVALID_SIGNATURE"}, 400)

    if isinstance(provider, BobPayPaymentsProvider):
        try:
            validated = provider.validate_with_provider(payload)
        except ProviderRequestError as exc:
            current_app.logger.warning("bobpay_webhook_validation_unavailable err=%s", exc)
            return _reply({"ok": False, "error": "PROVIDER_UNAVAILABLE"}, 503)
        if not validated:
            log_event(
                "webhook_validation_rejected",
                severity="WARN",
                subject_type="webhook",
                subject_id=provider.name,
                metadata={"custom_payment_id": payload.get("custom_payment_id")},
                commit=True,
            )
            return _reply({"ok": False, "error": "WEBHOOK_NOT_VALIDATED"}, 400)

    evt = provider.parse_webhook(payload)
    if evt.outcome == "ignored":
        return _reply({"ok": True, "ignored": True})

    order = _order_for_payment_reference(evt.reference)
    if order is None:
        current_app.logger.warning("payment_webhook_unknown_reference provider=%s reference=%s", provider.name, evt.reference)
        log_event(
            "webhook_unknown_reference",
            severity="WARN",
            subject_type="webhook",
            subject_id=evt.reference or provider.name,
            metadata={"provider": provider.name, "reference": evt.reference},
            commit=True,
        )
        return _reply({"ok": True, "ignored": True, "reason": "unknown_reference"})

    effect = "payment_confirmed" if evt.outcome == "paid" else "payment_failed"
    claim = claim_effect(
        order.custom_payment_id or evt.reference,
        effect,
        provider=provider.name,
        order_id=int(order.id),
        reference=evt.reference,
        payload=payload,
    )
    if claim.outcome == DUPLICATE:
        return _reply({"ok": True, "duplicate": True, "order_id": int(order.id)})
    if claim.outcome != CLAIMED:
        return _reply({"ok": False, "error": "IN_PROGRESS", "order_id": int(order.id)}, 409)

    if evt.outcome == "paid" and provider.name == "paystack" and evt.amount is not None:
        if money_major_to_minor(evt.amount) != money_major_to_minor(order.total_charge):
            fail_effect(claim.record, "amount_mismatch", status="rejected")
            report_anomaly(
                order.id,
                effect,
                "amount_mismatch",
                expected=order.total_charge,
                received=evt.amount,
                reference=evt.reference,
            )
            return _reply({"ok": True, "applied": False, "reason": "amount_mismatch", "order_id": int(order.id)})

    try:
        if evt.outcome == "paid":
            result = apply_payment_confirmed(
                PaymentConfirmed(
                    order_id=int(order.id),
                    provider=provider.name,
                    reference=order.custom_payment_id or evt.reference,
                    provider_reference=evt.provider_reference,
                    amount=evt.amount,
                    raw=evt.raw,
                )
            )
        else:
            result = apply_payment_failed(
                PaymentFailed(
                    order_id=int(order.id),
                    provider=provider.name,
                    reference=order.custom_payment_id or evt.reference,
                    reason=str(payload.get("status") or payload.get("event") or "payment_failed"),
                    raw=evt.raw,
                )
            )
    except Exception as exc:
        fail_effect(claim.record, f"{exc.__class__.__name__}: {exc}")
        raise

    _finish(claim, result)
    body = {"ok": True, **result.to_dict()}
    return _reply(body)


def _courier_event(order: Order, event_type: str, evt) -> TransitionResult | None:
    kind = (event_type or "").strip().lower()
    if kind in SHIPMENT_CANCELLED_EVENTS:
        return apply_shipment_cancelled(
            ShipmentCancelled(order_id=int(order.id), tracking_number=evt.tracking_number, reason=evt.status)
        )
    if kind in SHIPMENT_SUBMITTED_EVENTS:
        delivery_status = DeliveryStatus.SUBMITTED
    elif kind in SHIPMENT_DELIVERED_EVENTS:
        delivery_status = DeliveryStatus.DELIVERED
    else:
        delivery_status = normalize_courier_status(evt.status)
    if delivery_status is None:
        return None
    if delivery_status == DeliveryStatus.CANCELLED:
        return apply_shipment_cancelled(
            ShipmentCancelled(order_id=int(order.id), tracking_number=evt.tracking_number, reason=evt.status)
        )
    return apply_delivery_update(
        DeliveryUpdated(
            order_id=int(order.id),
            delivery_status=delivery_status,
            tracking_number=evt.tracking_number,
            courier_status=evt.status or kind,
            location=evt.location,
        )
    )


def ingest_courier_webhook(provider_name: str, *, raw: bytes, headers, payload) -> tuple[dict, int]:
    try:
        courier = build_courier_provider(provider_name, current_app.config)
    except IntegrationDisabledError as exc:
        current_app.logger.warning("courier_webhook_disabled provider=%s err=%s", provider_name, exc)
        return _reply({"ok": False, "error": "INTEGRATION_DISABLED"}, 503)
    except IntegrationMisconfiguredError as exc:
        current_app.logger.error("courier_webhook_misconfigured provider=%s err=%s", provider_name, exc)
        return _reply({"ok": False, "error": "INTEGRATION_MISCONFIGURED"}, 404)

    if not isinstance(payload, dict) or not payload:
        return _reply({"ok": False, "error": "INVALID_PAYLOAD"}, 400)

    signature = courier.verify_webhook_signature(raw, headers)
    if signature == SIGNATURE_INVALID:
        current_app.logger.warning("courier_webhook_signature_invalid provider=%s", courier.name)
        log_event(
            "courier_webhook_signature_invalid",
            severity="WARN",
            subject_type="webhook",
            subject_id=courier.name,
            metadata={"provider": courier.name},
            commit=True,
        )
        return _reply({"ok": False, "error": "INVALID_SIGNATURE"}, 401)
    if signature == SIGNATURE_UNSIGNED_TRUSTED:
        current_app.logger.info("courier_webhook_unsigned_trusted provider=%s", courier.name)

    evt = courier.parse_webhook(payload)
    order = _order_for_shipment(evt.tracking_number, evt.shipment_id)
    if order is None:
        current_app.logger.info(
            "courier_webhook_unknown_shipment tracking=%s shipment_id=%s", evt.tracking_number, evt.shipment_id
        )
        return _reply({"ok": True, "ignored": True, "reason": "unknown_shipment"})

    tracking = evt.tracking_number or order.tracking_number or evt.shipment_id
    key = f"{tracking}:{evt.event_type}:{(evt.status or '').strip().lower()}"
    claim = claim_effect(
        key,
        "courier_event",
        provider=courier.name,
        order_id=int(order.id),
        reference=tracking,
        payload=payload,
    )
    if claim.outcome == DUPLICATE:
        return _reply({"ok": True, "duplicate": True, "order_id": int(order.id)})
    if claim.outcome != CLAIMED:
        return _reply({"ok": False, "error": "IN_PROGRESS", "order_id": int(order.id)}, 409)

    try:
        result = _courier_event(order, evt.event_type, evt)
    except Exception as exc:
        fail_effect(claim.record, f"{exc.__class__.__name__}: {exc}")
        raise

    if result is None:
        fail_effect(claim.record, "unmapped_courier_status", status="rejected")
        return _reply({"ok": True, "ignored": True, "reason": "unmapped_status", "order_id": int(order.id)})

    _finish(claim, result)
    return _reply({"ok": True, **result.to_dict()})
