from __future__ import annotations

import hashlib
import hmac
import logging
from urllib.parse import quote

import requests

from rebooked.integrations.common import ProviderRequestError
from rebooked.integrations.payments.base import (
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentWebhookEvent,
    RedirectUrls,
    RefundOutcome,
)
from rebooked.utils.money import format_major, money_major_to_minor

logger = logging.getLogger(__name__)

# Order matters: the digest is taken over these pairs joined with "&".
SIGNED_FIELDS = (
    "recipient_account_code",
    "custom_payment_id",
    "email",
    "mobile_number",
    "amount",
    "item_name",
    "item_description",
    "notify_url",
    "success_url",
    "pending_url",
    "cancel_url",
)

_PAID_STATUSES = ("paid",)
_FAILED_STATUSES = ("failed", "cancelled", "canceled")


def _uri_component(value) -> str:
    # Same escaping as JavaScript's encodeURIComponent.
    return quote("" if value is None else str(value), safe="-_.!~*'()")


def bobpay_signature_base(payload: dict, passphrase: str) -> str:
    pairs = []
    for name in SIGNED_FIELDS:
        if name == "amount":
            pairs.append(f"amount={format_major(payload.get('amount'))}")
        else:
            pairs.append(f"{name}={_uri_component(payload.get(name))}")
    return "&".join(pairs) + f"&passphrase={passphrase}"


def bobpay_signature(payload: dict, passphrase: str) -> str:
    base = bobpay_signature_base(payload, passphrase)
    return hashlib.md5(base.encode("utf-8")).hexdigest()


class BobPayPaymentsProvider(PaymentsProvider):
    name = "bobpay"

    def __init__(self, *, api_url: str, api_token: str, account_code: str, passphrase: str, validate_webhooks: bool = False):
        self.api_url = (api_url or "").strip().rstrip("/")
        self.api_token = api_token
        self.account_code = account_code
        self.passphrase = passphrase
        self.validate_webhooks = bool(validate_webhooks)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _api_base(self) -> str:
        # Reversals live under /v2 regardless of whether the configured URL already carries it.
        base = self.api_url
        if base.endswith("/v2"):
            base = base[: -len("/v2")]
        return base

    def initialize(self, order, *, email: str, mobile_number: str = "", redirect_urls: RedirectUrls) -> PaymentInitializeResult:
        payload = {
            "recipient_account_code": self.account_code,
            "custom_payment_id": order.custom_payment_id,
            "email": email,
            "mobile_number": mobile_number or "",
            "amount": float(format_major(order.total_charge)),
            "item_name": (order.book_title or f"Book #{int(order.book_id)}")[:120],
            "item_description": f"Order #{int(order.id)}",
            "notify_url": redirect_urls.notify_url,
            "success_url": redirect_urls.success_url,
            "pending_url": redirect_urls.pending_url,
            "cancel_url": redirect_urls.cancel_url,
            "short_url": True,
        }
        try:
            r = requests.post(f"{self.api_url}/payments/intents/link", headers=self._headers(), json=payload, timeout=25)
        except requests.RequestException as exc:
            raise ProviderRequestError(f"BOBPAY_INIT_FAILED:{exc.__class__.__name__}", provider=self.name) from exc
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or not isinstance(j, dict) or not j.get("url"):
            msg = (j.get("message") if isinstance(j, dict) else "") or f"HTTP {r.status_code}"
            raise ProviderRequestError(f"BOBPAY_INIT_FAILED:{msg}", provider=self.name, status_code=r.status_code)
        return PaymentInitializeResult(
            payment_url=str(j.get("url") or "").strip(),
            short_url=str(j.get("short_url") or "").strip(),
            provider_reference=str(j.get("id") or j.get("uuid") or order.custom_payment_id),
            provider=self.name,
            raw={**j, "provider": self.name},
        )

    def verify_webhook_signature(self, raw_body: bytes, headers, payload: dict | None = None) -> bool:
        if not isinstance(payload, dict) or not self.passphrase:
            return False
        supplied = str(payload.get("signature") or "").strip().lower()
        if not supplied:
            return False
        expected = bobpay_signature(payload, self.passphrase)
        return hmac.compare_digest(expected, supplied)

    def validate_with_provider(self, payload: dict) -> bool:
        """Server-side confirmation of a webhook body, when enabled."""
        if not self.validate_webhooks:
            return True
        try:
            r = requests.post(f"{self.api_url}/payments/intents/validate", headers=self._headers(), json=payload, timeout=15)
        except requests.RequestException as exc:
            raise ProviderRequestError(f"BOBPAY_VALIDATE_FAILED:{exc.__class__.__name__}", provider=self.name) from exc
        if r.status_code >= 500:
            raise ProviderRequestError(f"BOBPAY_VALIDATE_FAILED:HTTP {r.status_code}", provider=self.name, status_code=r.status_code)
        return 200 <= r.status_code < 300

    def parse_webhook(self, payload: dict) -> PaymentWebhookEvent:
        status = str(payload.get("status") or "").strip().lower()
        if status in _PAID_STATUSES:
            outcome = "paid"
        elif status in _FAILED_STATUSES:
            outcome = "failed"
        else:
            outcome = "ignored"
        amount = payload.get("paid_amount")
        if amount is None:
            amount = payload.get("amount")
        try:
            amount_value = float(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount_value = None
        provider_reference = payload.get("payment_id") or payload.get("uuid") or payload.get("short_reference") or ""
        return PaymentWebhookEvent(
            provider=self.name,
            reference=str(payload.get("custom_payment_id") or "").strip(),
            outcome=outcome,
            provider_reference=str(provider_reference),
            amount=amount_value,
            raw={**payload, "provider": self.name},
        )

    def refund(self, order, amount: float | None = None, *, reason: str = "") -> RefundOutcome:
        full = float(format_major(order.total_charge))
        if amount is not None and money_major_to_minor(amount) < money_major_to_minor(full):
            return RefundOutcome(
                success=False,
                refunded_amount=0.0,
                error="BOBPAY_PARTIAL_REFUND_UNSUPPORTED",
            )
        custom_payment_id = (order.custom_payment_id or "").strip()
        if not custom_payment_id:
            return RefundOutcome(success=False, refunded_amount=0.0, error="BOBPAY_MISSING_PAYMENT_ID")
        try:
            r = requests.post(
                f"{self._api_base()}/v2/payments/reversal",
                headers=self._headers(),
                json={"custom_payment_id": custom_payment_id},
                timeout=25,
            )
        except requests.RequestException as exc:
            logger.warning("bobpay_reversal_unreachable order_id=%s err=%s", order.id, exc.__class__.__name__)
            return RefundOutcome(success=False, refunded_amount=0.0, error=f"BOBPAY_UNREACHABLE:{exc.__class__.__name__}")
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {"body": r.text[:500]}
        if r.status_code < 200 or r.status_code >= 300:
            msg = (j.get("message") if isinstance(j, dict) else "") or f"HTTP {r.status_code}"
            return RefundOutcome(
                success=False,
                refunded_amount=0.0,
                provider_response=j if isinstance(j, dict) else {"payload": j},
                error=f"BOBPAY_REVERSAL_FAILED:{msg}",
            )
        j = j if isinstance(j, dict) else {"payload": j}
        method = j.get("payment_method") if isinstance(j.get("payment_method"), dict) else {}
        return RefundOutcome(
            success=True,
            refunded_amount=full,
            provider_response={**j, "provider": self.name, "custom_payment_id": custom_payment_id},
            provider_reference=str(method.get("merchant_reference") or j.get("id") or ""),
        )
