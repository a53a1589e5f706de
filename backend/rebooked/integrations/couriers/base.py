from __future__ import annotations

from dataclasses import dataclass, field

SIGNATURE_VERIFIED = "verified"
SIGNATURE_UNSIGNED_TRUSTED = "unsigned_trusted"
SIGNATURE_INVALID = "invalid"

# Courier status strings -> delivery_status values.
COURIER_STATUS_MAP = {
    "submitted": "submitted",
    "pending-collection": "submitted",
    "collection-assigned": "submitted",
    "collected": "shipped",
    "picked-up": "shipped",
    "shipped": "shipped",
    "dispatched": "shipped",
    "in-transit": "in_transit",
    "in_transit": "in_transit",
    "at-hub": "in_transit",
    "at-destination-hub": "in_transit",
    "out-for-delivery": "in_transit",
    "delivered": "delivered",
    "collected-by-customer": "collected",
    "customer-collected": "collected",
    "picked-up-by-customer": "collected",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}


def normalize_courier_status(raw_status: str | None) -> str | None:
    key = str(raw_status or "").strip().lower().replace(" ", "-")
    return COURIER_STATUS_MAP.get(key)


@dataclass
class CourierWebhookEvent:
    provider: str
    event_type: str
    tracking_number: str = ""
    shipment_id: str = ""
    status: str = ""
    location: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class CancelShipmentResult:
    ok: bool
    error: str = ""
    raw: dict | None = None


class CourierProvider:
    name = "unknown"

    def verify_webhook_signature(self, raw_body: bytes, headers) -> str:
        raise NotImplementedError

    def parse_webhook(self, payload: dict) -> CourierWebhookEvent:
        raise NotImplementedError

    def cancel_shipment(self, tracking_reference: str, *, reason: str = "") -> CancelShipmentResult:
        raise NotImplementedError
