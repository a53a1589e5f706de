from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RedirectUrls:
    notify_url: str
    success_url: str
    pending_url: str
    cancel_url: str


@dataclass
class PaymentInitializeResult:
    payment_url: str
    provider_reference: str
    provider: str
    short_url: str = ""
    raw: dict | None = None


@dataclass
class PaymentWebhookEvent:
    """Provider-agnostic view of an inbound payment callback."""

    provider: str
    reference: str
    outcome: str  # paid | failed | ignored
    provider_reference: str = ""
    amount: float | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class RefundOutcome:
    success: bool
    refunded_amount: float
    provider_response: dict | None = None
    provider_reference: str = ""
    error: str = ""


class PaymentsProvider:
    name = "unknown"

    def initialize(self, order, *, email: str, mobile_number: str = "", redirect_urls: RedirectUrls) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify_webhook_signature(self, raw_body: bytes, headers, payload: dict | None = None) -> bool:
        raise NotImplementedError

    def parse_webhook(self, payload: dict) -> PaymentWebhookEvent:
        raise NotImplementedError

    def refund(self, order, amount: float | None = None, *, reason: str = "") -> RefundOutcome:
        raise NotImplementedError
