from __future__ import annotations

from rebooked.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from rebooked.integrations.couriers.base import CourierProvider
from rebooked.integrations.couriers.bobgo_provider import BobGoCourierProvider
from rebooked.integrations.couriers.mock_provider import MockCourierProvider


def build_courier_provider(name: str, config) -> CourierProvider:
    provider = (name or "bobgo").strip().lower()
    if provider != "bobgo":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:courier_provider={provider}")
    mode = str(config.get("PAYMENTS_MODE", "live") or "live").strip().lower()
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:courier")
    if mode == "mock":
        return MockCourierProvider()
    return BobGoCourierProvider(
        api_url=str(config.get("BOBGO_API_URL") or ""),
        api_key=str(config.get("BOBGO_API_KEY") or ""),
        webhook_secret=str(config.get("BOBGO_WEBHOOK_SECRET") or ""),
        trust_unsigned=bool(config.get("COURIER_TRUST_UNSIGNED_WEBHOOKS", True)),
    )
