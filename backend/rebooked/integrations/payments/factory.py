from __future__ import annotations

from rebooked.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from rebooked.integrations.payments.base import PaymentsProvider
from rebooked.integrations.payments.bobpay_provider import BobPayPaymentsProvider
from rebooked.integrations.payments.mock_provider import MockPaymentsProvider
from rebooked.integrations.payments.paystack_provider import PaystackPaymentsProvider

SUPPORTED_PROVIDERS = ("bobpay", "paystack")


def _cfg(config, key: str, default=None):
    value = config.get(key, default) if config is not None else default
    if isinstance(value, str):
        return value.strip()
    return value


def payments_mode(config) -> str:
    return (_cfg(config, "PAYMENTS_MODE", "live") or "live").lower()


def build_payments_provider(name: str, config) -> PaymentsProvider:
    provider = (name or "").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider or 'unknown'}")

    if payments_mode(config) == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if payments_mode(config) == "mock":
        return MockPaymentsProvider(name=provider)

    if provider == "bobpay":
        missing = [
            k
            for k in ("BOBPAY_API_URL", "BOBPAY_API_TOKEN", "BOBPAY_ACCOUNT_CODE", "BOBPAY_PASSPHRASE")
            if not _cfg(config, k)
        ]
        if missing:
            raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {','.join(missing)}")
        return BobPayPaymentsProvider(
            api_url=_cfg(config, "BOBPAY_API_URL"),
            api_token=_cfg(config, "BOBPAY_API_TOKEN"),
            account_code=_cfg(config, "BOBPAY_ACCOUNT_CODE"),
            passphrase=_cfg(config, "BOBPAY_PASSPHRASE"),
            validate_webhooks=bool(_cfg(config, "BOBPAY_VALIDATE_WEBHOOKS", False)),
        )

    secret_key = _cfg(config, "PAYSTACK_SECRET_KEY")
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")
    return PaystackPaymentsProvider(
        secret_key=secret_key,
        webhook_secret=_cfg(config, "PAYSTACK_WEBHOOK_SECRET") or None,
        callback_url=_cfg(config, "PAYSTACK_CALLBACK_URL", "") or "",
    )


def payment_health(config) -> dict:
    mode = payments_mode(config)
    providers = {}
    for name in SUPPORTED_PROVIDERS:
        try:
            build_payments_provider(name, config)
            providers[name] = "configured"
        except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
            providers[name] = str(exc)
    return {
        "mode": mode,
        "default_provider": _cfg(config, "DEFAULT_PAYMENT_PROVIDER", "bobpay"),
        "providers": providers,
    }
