from __future__ import annotations

from flask import Blueprint, jsonify, request

from rebooked.services.webhook_ingestion import ingest_courier_webhook, ingest_payment_webhook

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _payload() -> tuple[bytes, dict]:
    raw = request.get_data() or b""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        # BobPay may post form-encoded notifications
        payload = request.form.to_dict() if request.form else {}
    return raw, payload


@webhooks_bp.post("/bobpay")
def bobpay_webhook():
    raw, payload = _payload()
    body, status = ingest_payment_webhook("bobpay", raw=raw, headers=request.headers, payload=payload)
    return jsonify(body), status


@webhooks_bp.post("/paystack")
def paystack_webhook():
    raw, payload = _payload()
    body, status = ingest_payment_webhook("paystack", raw=raw, headers=request.headers, payload=payload)
    return jsonify(body), status


@webhooks_bp.post("/courier/<provider>")
def courier_webhook(provider: str):
    raw, payload = _payload()
    body, status = ingest_courier_webhook(provider, raw=raw, headers=request.headers, payload=payload)
    return jsonify(body), status
