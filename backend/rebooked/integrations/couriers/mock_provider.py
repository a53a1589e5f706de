from __future__ import annotations

from rebooked.integrations.couriers.base import SIGNATURE_VERIFIED, CancelShipmentResult
from rebooked.integrations.couriers.bobgo_provider import BobGoCourierProvider


class MockCourierProvider(BobGoCourierProvider):
    """Bob Go payload shape without network calls or signature checks."""

    name = "bobgo"

    def __init__(self):
        super().__init__(api_url="", api_key="", webhook_secret="", trust_unsigned=True)
        self.cancelled: list[str] = []

    def verify_webhook_signature(self, raw_body: bytes, headers) -> str:
        return SIGNATURE_VERIFIED

    def cancel_shipment(self, tracking_reference: str, *, reason: str = "") -> CancelShipmentResult:
        self.cancelled.append(tracking_reference)
        return CancelShipmentResult(ok=True, raw={"mock": True, "tracking_reference": tracking_reference})
