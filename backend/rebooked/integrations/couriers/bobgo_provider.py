from __future__ import annotations

import hashlib
import hmac
import logging

import requests

from rebooked.integrations.common import header_value
from rebooked.integrations.couriers.base import (
    SIGNATURE_INVALID,
    SIGNATURE_UNSIGNED_TRUSTED,
    SIGNATURE_VERIFIED,
    CancelShipmentResult,
    CourierProvider,
    CourierWebhookEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_BOBGO_API = "https://api.bobgo.co.za/v2"


def bobgo_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).hexdigest()


def resolve_bobgo_base_url(configured: str | None) -> str:
    url = (configured or "").strip().rstrip("/")
    if not url:
        return DEFAULT_BOBGO_API
    if "sandbox.bobgo.co.za" in url and "api.sandbox.bobgo.co.za" not in url:
        return "https://api.sandbox.bobgo.co.za/v2"
    if "bobgo.co.za" in url and not url.endswith("/v2"):
        return url + "/v2"
    return url


class BobGoCourierProvider(CourierProvider):
    name = "bobgo"

    def __init__(self, *, api_url: str = "", api_key: str = "", webhook_secret: str = "", trust_unsigned: bool = True):
        self.api_url = resolve_bobgo_base_url(api_url)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.trust_unsigned = bool(trust_unsigned)

    def verify_webhook_signature(self, raw_body: bytes, headers) -> str:
        if not self.webhook_secret:
            return SIGNATURE_UNSIGNED_TRUSTED if self.trust_unsigned else SIGNATURE_INVALID
        supplied = header_value(headers, "x-bobgo-signature", "x-signature").lower()
        if not supplied:
            return SIGNATURE_INVALID
        expected = bobgo_signature(raw_body, self.webhook_secret)
        return SIGNATURE_VERIFIED if hmac.compare_digest(expected, supplied) else SIGNATURE_INVALID

    def parse_webhook(self, payload: dict) -> CourierWebhookEvent:
        event_type = str(payload.get("event_type") or payload.get("type") or payload.get("event") or "unknown").strip()
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        shipment = data.get("shipment") if isinstance(data.get("shipment"), dict) else {}
        tracking = (
            data.get("tracking_reference")
            or data.get("tracking_number")
            or shipment.get("tracking_reference")
            or shipment.get("tracking_number")
            or ""
        )
        shipment_id = data.get("shipment_id") or shipment.get("id") or data.get("id") or ""
        return CourierWebhookEvent(
            provider=self.name,
            event_type=event_type,
            tracking_number=str(tracking).strip(),
            shipment_id=str(shipment_id).strip(),
            status=str(data.get("status") or data.get("event_status") or "").strip(),
            location=str(data.get("location") or data.get("current_location") or "").strip(),
            raw=payload,
        )

    def cancel_shipment(self, tracking_reference: str, *, reason: str = "") -> CancelShipmentResult:
        if not self.api_key:
            return CancelShipmentResult(ok=False, error="BOBGO_NOT_CONFIGURED")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        body = {
            "tracking_reference": tracking_reference,
            "cancellation_reason": reason or "Cancelled by merchant",
        }
        try:
            r = requests.post(f"{self.api_url}/shipments/cancel", headers=headers, json=body, timeout=20)
        except requests.RequestException as exc:
            logger.warning("bobgo_cancel_unreachable tracking=%s err=%s", tracking_reference, exc.__class__.__name__)
            return CancelShipmentResult(ok=False, error=f"BOBGO_UNREACHABLE:{exc.__class__.__name__}")
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {"body": r.text[:500]}
        if r.status_code < 200 or r.status_code >= 300:
            return CancelShipmentResult(ok=False, error=f"BOBGO_CANCEL_FAILED:HTTP {r.status_code}", raw=j if isinstance(j, dict) else None)
        return CancelShipmentResult(ok=True, raw=j if isinstance(j, dict) else {"payload": j})
