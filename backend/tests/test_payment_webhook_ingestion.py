from __future__ import annotations

import json
import os
import time
import unittest

from rebooked import create_app
from rebooked.extensions import db
from rebooked.integrations.payments.bobpay_provider import bobpay_signature
from rebooked.integrations.payments.paystack_provider import paystack_signature
from rebooked.models import Order, OrderNotification, OrderTransition, PaymentTransaction, PlatformEvent, User, WebhookEvent


class PaymentWebhookIngestionTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(
            TESTING=True,
            PAYMENTS_MODE="live",
            BOBPAY_API_URL="https://api.bobpay.test/v2",
            BOBPAY_API_TOKEN="bobpay-token",
            BOBPAY_ACCOUNT_CODE="RBK001",
            BOBPAY_PASSPHRASE="bobpay-pass",
            BOBPAY_VALIDATE_WEBHOOKS=False,
            PAYSTACK_SECRET_KEY="sk_test_rebooked",
            PAYSTACK_WEBHOOK_SECRET="sk_test_rebooked",
        )
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def setUp(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            self.app.extensions["settings_cache"].invalidate_all()

    def _seed_pending_order(self, provider: str, *, amount: float = 250.0, delivery_fee: float = 0.0) -> tuple[int, str]:
        stamp = time.time_ns()
        with self.app.app_context():
            buyer = User(name="Buyer", email=f"buyer-{stamp}@rebooked.test", role="buyer")
            seller = User(name="Seller", email=f"seller-{stamp}@rebooked.test", role="seller")
            db.session.add_all([buyer, seller])
            db.session.commit()
            order = Order(
                buyer_id=int(buyer.id),
                seller_id=int(seller.id),
                book_id=11,
                book_title="Dune",
                amount=amount,
                delivery_fee=delivery_fee,
                status="pending_payment",
                payment_provider=provider,
            )
            db.session.add(order)
            db.session.commit()
            reference = f"ORDER-{int(order.id)}-{stamp // 1000000}"
            order.custom_payment_id = reference
            db.session.add(
                PaymentTransaction(
                    order_id=int(order.id),
                    reference=reference,
                    payment_method=provider,
                    amount=order.total_charge,
                    status="pending",
                    provider_response_json=json.dumps({"provider": provider}),
                )
            )
            db.session.commit()
            return int(order.id), reference

    def _bobpay_body(self, reference: str, *, status: str = "paid", amount: float = 250.0) -> dict:
        payload = {
            "recipient_account_code": "RBK001",
            "custom_payment_id": reference,
            "email": "buyer@rebooked.test",
            "mobile_number": "",
            "amount": amount,
            "item_name": "Dune",
            "item_description": "Order",
            "notify_url": "https://api.rebooked.test/api/webhooks/bobpay",
            "success_url": "https://rebooked.test/s",
            "pending_url": "https://rebooked.test/p",
            "cancel_url": "https://rebooked.test/c",
            "status": status,
            "payment_id": 5501,
        }
        payload["signature"] = bobpay_signature(payload, "bobpay-pass")
        return payload

    def _post_paystack(self, payload: dict, *, secret: str = "sk_test_rebooked"):
        raw = json.dumps(payload).encode("utf-8")
        return self.client.post(
            "/api/webhooks/paystack",
            data=raw,
            content_type="application/json",
            headers={"X-Paystack-Signature": paystack_signature(raw, secret)},
        )

    def test_duplicate_bobpay_confirmations_apply_once(self):
        order_id, reference = self._seed_pending_order("bobpay")
        body = self._bobpay_body(reference)

        first = self.client.post("/api/webhooks/bobpay", json=body)
        self.assertEqual(first.status_code, 200)
        first_json = first.get_json(force=True)
        self.assertTrue(first_json.get("applied"))
        self.assertEqual(first_json.get("to_status"), "paid")

        for _ in range(3):
            again = self.client.post("/api/webhooks/bobpay", json=body)
            self.assertEqual(again.status_code, 200)
            self.assertTrue(again.get_json(force=True).get("duplicate"))

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "paid")
            self.assertEqual(order.payment_status, "paid")
            self.assertIsNotNone(order.commit_deadline)
            hours = (order.commit_deadline - order.paid_at).total_seconds() / 3600.0
            self.assertAlmostEqual(hours, 48.0, places=3)
            self.assertEqual(PaymentTransaction.query.filter_by(order_id=order_id, status="success").count(), 1)
            self.assertEqual(OrderTransition.query.filter_by(order_id=order_id, to_status="paid").count(), 1)
            self.assertEqual(OrderNotification.query.filter_by(order_id=order_id, kind="payment_confirmed").count(), 1)
            self.assertEqual(OrderNotification.query.filter_by(order_id=order_id, kind="new_order").count(), 1)
            rec = WebhookEvent.query.filter_by(idempotency_key=reference, effect="payment_confirmed").first()
            self.assertEqual(rec.status, "applied")

    def test_invalid_bobpay_signature_is_rejected_without_mutation(self):
        order_id, reference = self._seed_pending_order("bobpay")
        body = self._bobpay_body(reference)
        body["signature"] = "0" * 32

        res = self.client.post("/api/webhooks/bobpay", json=body)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json(force=True).get("error"), "INVALID_SIGNATURE")
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "pending_payment")
            self.assertEqual(WebhookEvent.query.count(), 0)
            self.assertEqual(PlatformEvent.query.filter_by(event_type="webhook_signature_invalid").count(), 1)

    def test_bobpay_failed_payment_cancels_order(self):
        order_id, reference = self._seed_pending_order("bobpay")
        res = self.client.post("/api/webhooks/bobpay", json=self._bobpay_body(reference, status="failed"))
        self.assertEqual(res.status_code, 200)
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "cancelled")
            self.assertEqual(order.payment_status, "failed")
            self.assertEqual(PaymentTransaction.query.filter_by(order_id=order_id, status="failed").count(), 1)

    def test_unknown_reference_is_acknowledged(self):
        res = self.client.post("/api/webhooks/bobpay", json=self._bobpay_body("ORDER-999-1"))
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True)
        self.assertTrue(body.get("ignored"))
        self.assertEqual(body.get("reason"), "unknown_reference")

    def test_paystack_amount_mismatch_is_not_applied_and_can_be_replayed(self):
        order_id, reference = self._seed_pending_order("paystack", amount=200.0, delivery_fee=50.0)

        wrong = self._post_paystack(
            {"event": "charge.success", "data": {"reference": reference, "amount": 10000, "id": 77, "status": "success"}}
        )
        self.assertEqual(wrong.status_code, 200)
        self.assertEqual(wrong.get_json(force=True).get("reason"), "amount_mismatch")
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "pending_payment")
            self.assertEqual(
                PlatformEvent.query.filter_by(event_type="order_transition_anomaly", order_id=order_id).count(), 1
            )

        right = self._post_paystack(
            {"event": "charge.success", "data": {"reference": reference, "amount": 25000, "id": 77, "status": "success"}}
        )
        self.assertEqual(right.status_code, 200)
        self.assertTrue(right.get_json(force=True).get("applied"))
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "paid")
            self.assertEqual(order.payment_reference, "77")

    def test_paystack_bad_signature_rejected(self):
        _, reference = self._seed_pending_order("paystack")
        res = self._post_paystack(
            {"event": "charge.success", "data": {"reference": reference, "amount": 25000}},
            secret="not-the-secret",
        )
        self.assertEqual(res.status_code, 400)

    def test_confirmation_after_cancellation_is_an_anomaly(self):
        order_id, reference = self._seed_pending_order("bobpay")
        with self.app.app_context():
            Order.query.filter_by(id=order_id).update({"status": "cancelled"})
            db.session.commit()
        res = self.client.post("/api/webhooks/bobpay", json=self._bobpay_body(reference))
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True)
        self.assertFalse(body.get("applied"))
        self.assertEqual(body.get("anomaly"), "payment_for_inactive_order")
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "cancelled")
            self.assertEqual(PaymentTransaction.query.filter_by(order_id=order_id, status="success").count(), 0)

    def test_disabled_payments_ask_for_retry(self):
        _, reference = self._seed_pending_order("bobpay")
        self.app.config["PAYMENTS_MODE"] = "disabled"
        try:
            res = self.client.post("/api/webhooks/bobpay", json=self._bobpay_body(reference))
        finally:
            self.app.config["PAYMENTS_MODE"] = "live"
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.get_json(force=True).get("error"), "INTEGRATION_DISABLED")

    def test_misconfigured_provider_asks_for_retry(self):
        _, reference = self._seed_pending_order("bobpay")
        self.app.config["BOBPAY_PASSPHRASE"] = ""
        try:
            res = self.client.post("/api/webhooks/bobpay", json=self._bobpay_body(reference))
        finally:
            self.app.config["BOBPAY_PASSPHRASE"] = "bobpay-pass"
        self.assertEqual(res.status_code, 503)


if __name__ == "__main__":
    unittest.main()
