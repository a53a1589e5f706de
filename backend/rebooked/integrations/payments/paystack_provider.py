from __future__ import annotations

import hashlib
import hmac
import logging

import requests

from rebooked.integrations.common import ProviderRequestError, header_value
from rebooked.integrations.payments.base import (
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentWebhookEvent,
    RedirectUrls,
    RefundOutcome,
)
from rebooked.utils.money import money_major_to_minor, money_minor_to_major

logger = logging.getLogger(__name__)

PAYSTACK_API = "https://api.paystack.co"


def paystack_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha512).hexdigest()


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, webhook_secret: str | None = None, callback_url: str = ""):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self.callback_url = callback_url

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def initialize(self, order, *, email: str, mobile_number: str = "", redirect_urls: RedirectUrls) -> PaymentInitializeResult:
        payload = {
            "email": email,
            "amount": money_major_to_minor(order.total_charge),
            "reference": order.custom_payment_id,
            "metadata": {
                "order_id": int(order.id),
                "book_id": int(order.book_id),
                "cancel_action": redirect_urls.cancel_url,
            },
            "callback_url": self.callback_url or redirect_urls.success_url,
        }
        try:
            r = requests.post(f"{PAYSTACK_API}/transaction/initialize", headers=self._headers(), json=payload, timeout=25)
        except requests.RequestException as exc:
            raise ProviderRequestError(f"PAYSTACK_INIT_FAILED:{exc.__class__.__name__}", provider=self.name) from exc
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if not isinstance(j, dict):
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = str(j.get("message") or f"HTTP {r.status_code}").strip()
            raise ProviderRequestError(f"PAYSTACK_INIT_FAILED:{msg}", provider=self.name, status_code=r.status_code)
        data = j.get("data") or {}
        return PaymentInitializeResult(
            payment_url=(data.get("authorization_url") or "").strip(),
            provider_reference=(data.get("reference") or order.custom_payment_id).strip(),
            provider=self.name,
            raw={**j, "provider": self.name},
        )

    def verify_webhook_signature(self, raw_body: bytes, headers, payload: dict | None = None) -> bool:
        if not self.webhook_secret:
            return False
        supplied = header_value(headers, "X-Paystack-Signature").lower()
        if not supplied:
            return False
        expected = paystack_signature(raw_body, self.webhook_secret)
        return hmac.compare_digest(expected, supplied)

    def parse_webhook(self, payload: dict) -> PaymentWebhookEvent:
        event = str(payload.get("event") or "").strip().lower()
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if event == "charge.success" and str(data.get("status") or "success").lower() == "success":
            outcome = "paid"
        elif event in ("charge.failed",) or (event.startswith("charge.") and str(data.get("status") or "").lower() in ("failed", "abandoned")):
            outcome = "failed"
        else:
            outcome = "ignored"
        amount = None
        if data.get("amount") is not None:
            amount = money_minor_to_major(data.get("amount"))
        return PaymentWebhookEvent(
            provider=self.name,
            reference=str(data.get("reference") or "").strip(),
            outcome=outcome,
            provider_reference=str(data.get("id") or data.get("reference") or ""),
            amount=amount,
            raw={**payload, "provider": self.name},
        )

    def refund(self, order, amount: float | None = None, *, reason: str = "") -> RefundOutcome:
        transaction = (order.payment_reference or "").strip()
        if not transaction:
            return RefundOutcome(success=False, refunded_amount=0.0, error="PAYSTACK_MISSING_REFERENCE")
        body = {"transaction": transaction}
        refund_major = float(order.total_charge)
        if amount is not None:
            body["amount"] = money_major_to_minor(amount)
            refund_major = money_minor_to_major(body["amount"])
        if reason:
            body["customer_note"] = reason
            body["merchant_note"] = f"Refund processed: {reason}"
        try:
            r = requests.post(f"{PAYSTACK_API}/refund", headers=self._headers(), json=body, timeout=25)
        except requests.RequestException as exc:
            logger.warning("paystack_refund_unreachable order_id=%s err=%s", order.id, exc.__class__.__name__)
            return RefundOutcome(success=False, refunded_amount=0.0, error=f"PAYSTACK_UNREACHABLE:{exc.__class__.__name__}")
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {"body": r.text[:500]}
        if not isinstance(j, dict):
            j = {"payload": j}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            return RefundOutcome(
                success=False,
                refunded_amount=0.0,
                provider_response=j,
                error=f"PAYSTACK_REFUND_FAILED:{msg}",
            )
        data = j.get("data") or {}
        return RefundOutcome(
            success=True,
            refunded_amount=refund_major,
            provider_response={**j, "provider": self.name},
            provider_reference=str(data.get("id") or ""),
        )
