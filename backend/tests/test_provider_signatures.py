from __future__ import annotations

import hashlib
import hmac
import json
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from rebooked.integrations.common import ProviderRequestError
from rebooked.integrations.couriers.base import (
    SIGNATURE_INVALID,
    SIGNATURE_UNSIGNED_TRUSTED,
    SIGNATURE_VERIFIED,
    normalize_courier_status,
)
from rebooked.integrations.couriers.bobgo_provider import BobGoCourierProvider, bobgo_signature, resolve_bobgo_base_url
from rebooked.integrations.payments.bobpay_provider import (
    BobPayPaymentsProvider,
    bobpay_signature,
    bobpay_signature_base,
)
from rebooked.integrations.payments.base import RedirectUrls
from rebooked.integrations.payments.paystack_provider import PaystackPaymentsProvider, paystack_signature


def _bobpay_payload(**overrides) -> dict:
    payload = {
        "recipient_account_code": "RBK001",
        "custom_payment_id": "ORDER-7-1700000000000",
        "email": "reader+one@rebooked.test",
        "mobile_number": "0820000000",
        "amount": 250,
        "item_name": "The Hobbit",
        "item_description": "Order #7",
        "notify_url": "https://api.rebooked.test/api/webhooks/bobpay",
        "success_url": "https://rebooked.test/orders/7/payment/success",
        "pending_url": "https://rebooked.test/orders/7/payment/pending",
        "cancel_url": "https://rebooked.test/orders/7/payment/cancelled",
        "status": "paid",
    }
    payload.update(overrides)
    return payload


class BobPaySignatureTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = BobPayPaymentsProvider(
            api_url="https://api.bobpay.test/v2",
            api_token="token",
            account_code="RBK001",
            passphrase="s3cret-pass",
        )

    def test_signature_base_uses_fixed_field_order_and_uri_encoding(self):
        base = bobpay_signature_base(_bobpay_payload(), "s3cret-pass")
        self.assertTrue(base.startswith("recipient_account_code=RBK001&custom_payment_id=ORDER-7-1700000000000&"))
        self.assertIn("email=reader%2Bone%40rebooked.test", base)
        self.assertIn("amount=250.00", base)
        self.assertIn("item_name=The%20Hobbit", base)
        self.assertTrue(base.endswith("&passphrase=s3cret-pass"))
        self.assertNotIn("status=", base)

    def test_signature_is_md5_of_base(self):
        payload = _bobpay_payload()
        expected = hashlib.md5(bobpay_signature_base(payload, "s3cret-pass").encode("utf-8")).hexdigest()
        self.assertEqual(bobpay_signature(payload, "s3cret-pass"), expected)

    def test_verify_accepts_matching_signature(self):
        payload = _bobpay_payload()
        payload["signature"] = bobpay_signature(payload, "s3cret-pass")
        self.assertTrue(self.provider.verify_webhook_signature(b"", {}, payload))

    def test_verify_rejects_tampered_amount(self):
        payload = _bobpay_payload()
        payload["signature"] = bobpay_signature(payload, "s3cret-pass")
        payload["amount"] = 25
        self.assertFalse(self.provider.verify_webhook_signature(b"", {}, payload))

    def test_verify_rejects_missing_signature_or_passphrase(self):
        self.assertFalse(self.provider.verify_webhook_signature(b"", {}, _bobpay_payload()))
        unkeyed = BobPayPaymentsProvider(api_url="x", api_token="t", account_code="a", passphrase="")
        payload = _bobpay_payload(signature="abc")
        self.assertFalse(unkeyed.verify_webhook_signature(b"", {}, payload))

    def test_parse_webhook_maps_status_to_outcome(self):
        paid = self.provider.parse_webhook(_bobpay_payload(status="paid", paid_amount="250.00", payment_id=991))
        self.assertEqual(paid.outcome, "paid")
        self.assertEqual(paid.reference, "ORDER-7-1700000000000")
        self.assertEqual(paid.provider_reference, "991")
        self.assertAlmostEqual(paid.amount, 250.0)
        self.assertEqual(self.provider.parse_webhook(_bobpay_payload(status="cancelled")).outcome, "failed")
        self.assertEqual(self.provider.parse_webhook(_bobpay_payload(status="processing")).outcome, "ignored")


class PaystackSignatureTestCase(unittest.TestCase):
    def test_signature_is_hmac_sha512_of_raw_body(self):
        raw = b'{"event":"charge.success"}'
        expected = hmac.new(b"sk_test_x", raw, hashlib.sha512).hexdigest()
        self.assertEqual(paystack_signature(raw, "sk_test_x"), expected)

    def test_verify_reads_signature_header(self):
        provider = PaystackPaymentsProvider("sk_test_x")
        raw = json.dumps({"event": "charge.success", "data": {"reference": "ORDER-1-1"}}).encode("utf-8")
        good = {"X-Paystack-Signature": paystack_signature(raw, "sk_test_x")}
        self.assertTrue(provider.verify_webhook_signature(raw, good))
        self.assertFalse(provider.verify_webhook_signature(raw, {"X-Paystack-Signature": "00"}))
        self.assertFalse(provider.verify_webhook_signature(raw, {}))

    def test_webhook_secret_overrides_secret_key(self):
        provider = PaystackPaymentsProvider("sk_test_x", webhook_secret="whsec")
        raw = b"{}"
        self.assertTrue(provider.verify_webhook_signature(raw, {"x-paystack-signature": paystack_signature(raw, "whsec")}))
        self.assertFalse(provider.verify_webhook_signature(raw, {"x-paystack-signature": paystack_signature(raw, "sk_test_x")}))

    def test_parse_webhook_converts_minor_amount(self):
        provider = PaystackPaymentsProvider("sk_test_x")
        evt = provider.parse_webhook(
            {"event": "charge.success", "data": {"reference": "ORDER-1-1", "amount": 27550, "id": 42, "status": "success"}}
        )
        self.assertEqual(evt.outcome, "paid")
        self.assertEqual(evt.provider_reference, "42")
        self.assertAlmostEqual(evt.amount, 275.5)
        self.assertEqual(provider.parse_webhook({"event": "transfer.success", "data": {}}).outcome, "ignored")


class ProviderInitializeTestCase(unittest.TestCase):
    def setUp(self):
        self.order = SimpleNamespace(
            id=7,
            book_id=3,
            book_title="The Hobbit",
            total_charge=250.0,
            custom_payment_id="ORDER-7-1700000000000",
        )
        self.urls = RedirectUrls(
            notify_url="https://api.rebooked.test/api/webhooks/paystack",
            success_url="https://rebooked.test/orders/7/payment/success",
            pending_url="https://rebooked.test/orders/7/payment/pending",
            cancel_url="https://rebooked.test/orders/7/payment/cancelled",
        )

    def _html_error(self, status_code: int):
        resp = MagicMock()
        resp.status_code = status_code
        resp.content = b"<html>Bad Gateway</html>"
        resp.text = "<html>Bad Gateway</html>"
        resp.json.side_effect = ValueError("not json")
        return resp

    def test_paystack_non_json_error_is_a_provider_error(self):
        provider = PaystackPaymentsProvider("sk_test_x")
        with patch("requests.post", return_value=self._html_error(502)):
            with self.assertRaises(ProviderRequestError) as ctx:
                provider.initialize(self.order, email="reader@rebooked.test", redirect_urls=self.urls)
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("HTTP 502", str(ctx.exception))

    def test_bobpay_non_json_error_is_a_provider_error(self):
        provider = BobPayPaymentsProvider(
            api_url="https://api.bobpay.test/v2",
            api_token="token",
            account_code="RBK001",
            passphrase="s3cret-pass",
        )
        with patch("requests.post", return_value=self._html_error(503)):
            with self.assertRaises(ProviderRequestError) as ctx:
                provider.initialize(self.order, email="reader@rebooked.test", redirect_urls=self.urls)
        self.assertEqual(ctx.exception.status_code, 503)


class BobGoSignatureTestCase(unittest.TestCase):
    def test_verified_with_matching_sha256_hmac(self):
        courier = BobGoCourierProvider(webhook_secret="bg-secret")
        raw = b'{"event_type":"shipment.delivered"}'
        sig = hmac.new(b"bg-secret", raw, hashlib.sha256).hexdigest()
        self.assertEqual(bobgo_signature(raw, "bg-secret"), sig)
        self.assertEqual(courier.verify_webhook_signature(raw, {"X-BobGo-Signature": sig}), SIGNATURE_VERIFIED)

    def test_invalid_when_signature_missing_or_wrong(self):
        courier = BobGoCourierProvider(webhook_secret="bg-secret")
        self.assertEqual(courier.verify_webhook_signature(b"{}", {}), SIGNATURE_INVALID)
        self.assertEqual(courier.verify_webhook_signature(b"{}", {"x-signature": "beef"}), SIGNATURE_INVALID)

    def test_unsigned_webhooks_follow_trust_flag(self):
        trusting = BobGoCourierProvider(webhook_secret="", trust_unsigned=True)
        strict = BobGoCourierProvider(webhook_secret="", trust_unsigned=False)
        self.assertEqual(trusting.verify_webhook_signature(b"{}", {}), SIGNATURE_UNSIGNED_TRUSTED)
        self.assertEqual(strict.verify_webhook_signature(b"{}", {}), SIGNATURE_INVALID)

    def test_base_url_resolution(self):
        self.assertEqual(resolve_bobgo_base_url(""), "https://api.bobgo.co.za/v2")
        self.assertEqual(resolve_bobgo_base_url("https://sandbox.bobgo.co.za"), "https://api.sandbox.bobgo.co.za/v2")
        self.assertEqual(resolve_bobgo_base_url("https://api.bobgo.co.za"), "https://api.bobgo.co.za/v2")

    def test_courier_status_normalization(self):
        self.assertEqual(normalize_courier_status("In Transit"), "in_transit")
        self.assertEqual(normalize_courier_status("collected"), "shipped")
        self.assertEqual(normalize_courier_status("collected-by-customer"), "collected")
        self.assertEqual(normalize_courier_status("delivered"), "delivered")
        self.assertIsNone(normalize_courier_status("lost-in-space"))


if __name__ == "__main__":
    unittest.main()
