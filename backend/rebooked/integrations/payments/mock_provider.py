from __future__ import annotations

from rebooked.integrations.payments.base import (
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentWebhookEvent,
    RedirectUrls,
    RefundOutcome,
)


class MockPaymentsProvider(PaymentsProvider):
    """Stands in for a real processor when PAYMENTS_MODE=mock.

    Keeps the provider name it replaces so stored orders still route to the
    right refund path once live credentials are configured.
    """

    def __init__(self, name: str = "bobpay"):
        self.name = name

    def initialize(self, order, *, email: str, mobile_number: str = "", redirect_urls: RedirectUrls) -> PaymentInitializeResult:
        url = f"https://example.com/mock/pay?reference={order.custom_payment_id}&order_id={int(order.id)}"
        return PaymentInitializeResult(
            payment_url=url,
            provider_reference=f"mock-{order.custom_payment_id}",
            provider=self.name,
            raw={"provider": self.name, "mock": True, "email": email, "notify_url": redirect_urls.notify_url},
        )

    def verify_webhook_signature(self, raw_body: bytes, headers, payload: dict | None = None) -> bool:
        return True

    def parse_webhook(self, payload: dict) -> PaymentWebhookEvent:
        status = str(payload.get("status") or "").strip().lower()
        outcome = {"paid": "paid", "success": "paid", "failed": "failed"}.get(status, "ignored")
        amount = payload.get("amount")
        return PaymentWebhookEvent(
            provider=self.name,
            reference=str(payload.get("custom_payment_id") or payload.get("reference") or ""),
            outcome=outcome,
            provider_reference=str(payload.get("provider_reference") or ""),
            amount=float(amount) if amount is not None else None,
            raw={**payload, "provider": self.name, "mock": True},
        )

    def refund(self, order, amount: float | None = None, *, reason: str = "") -> RefundOutcome:
        refunded = float(amount) if amount is not None else float(order.total_charge)
        return RefundOutcome(
            success=True,
            refunded_amount=refunded,
            provider_response={"provider": self.name, "mock": True, "reason": reason},
            provider_reference=f"mock-refund-{int(order.id)}",
        )
