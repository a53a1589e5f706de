from __future__ import annotations

import json
import os
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from rebooked import create_app
from rebooked.extensions import db
from rebooked.integrations.payments.detection import BobPayTxn, PaystackTxn, UnknownProvider, detect_provider
from rebooked.models import (
    Order,
    OrderNotification,
    OrderTransition,
    PaymentTransaction,
    PlatformEvent,
    RefundTransaction,
    User,
    WalletTransaction,
    WebhookEvent,
)
from rebooked.services.errors import IllegalTransition, NotAuthorized, RefundInProgress, RefundPathUnavailable
from rebooked.services.order_state_machine import DeliveryConfirmed, apply_delivery_confirmed, commit_order, expire_order
from rebooked.services.reconciliation_service import redrive_refund
from rebooked.services.refund_router import (
    ROUTE_BOBPAY_REVERSAL,
    ROUTE_CANCEL_WITH_REFUND,
    ROUTE_PAYSTACK_REFUND,
    process_refund,
    refund_amount,
    route_refund,
)


def _response(status_code: int, body: dict):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = json.dumps(body).encode("utf-8")
    resp.text = json.dumps(body)
    resp.json.return_value = body
    return resp


class RefundRouterTestCase(unittest.TestCase):
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
            PAYSTACK_SECRET_KEY="sk_test_rebooked",
            BOBGO_API_URL="https://api.bobgo.co.za/v2",
            BOBGO_API_KEY="bobgo-key",
        )

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
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.session.remove()
        db.drop_all()
        db.create_all()
        self.app.extensions["settings_cache"].invalidate_all()

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def _order(self, provider: str, *, status: str = "paid", tracking_number: str | None = None, amount: float = 250.0) -> Order:
        stamp = time.time_ns()
        buyer = User(name="Buyer", email=f"buyer-{stamp}@rebooked.test", role="buyer")
        seller = User(name="Seller", email=f"seller-{stamp}@rebooked.test", role="seller")
        db.session.add_all([buyer, seller])
        db.session.commit()
        order = Order(
            buyer_id=int(buyer.id),
            seller_id=int(seller.id),
            book_id=5,
            book_title="Beloved",
            amount=amount,
            delivery_fee=0.0,
            status=status,
            payment_status="paid",
            payment_provider=provider,
            paid_at=datetime.utcnow(),
            tracking_number=tracking_number,
            courier_provider="bobgo" if tracking_number else None,
        )
        db.session.add(order)
        db.session.commit()
        order.custom_payment_id = f"ORDER-{int(order.id)}-1700000000000"
        order.payment_reference = f"psk-{int(order.id)}" if provider == "paystack" else f"bp-{int(order.id)}"
        if provider in ("bobpay", "paystack"):
            db.session.add(
                PaymentTransaction(
                    order_id=int(order.id),
                    reference=order.custom_payment_id,
                    provider_reference=order.payment_reference,
                    payment_method=provider,
                    amount=order.total_charge,
                    status="success",
                    provider_response_json=json.dumps({"provider": provider}),
                )
            )
        db.session.commit()
        return order

    def _buyer(self, order: Order) -> dict:
        return {"type": "user", "id": int(order.buyer_id), "role": "buyer"}

    def test_route_selection_follows_status_and_provider(self):
        self.assertEqual(route_refund(self._order("bobpay")).name, ROUTE_BOBPAY_REVERSAL)
        self.assertEqual(route_refund(self._order("paystack")).name, ROUTE_PAYSTACK_REFUND)
        committed = self._order("paystack", status="committed", tracking_number="TRK-1")
        route = route_refund(committed)
        self.assertEqual(route.name, ROUTE_CANCEL_WITH_REFUND)
        self.assertIsInstance(route.provider, PaystackTxn)
        with self.assertRaises(RefundPathUnavailable):
            route_refund(self._order("unknown"))

    def test_bobpay_reversal_refunds_full_charge(self):
        order = self._order("bobpay")
        reversal = _response(200, {"id": "rev-1", "payment_method": {"merchant_reference": "MR-1"}})
        with patch("requests.post", return_value=reversal) as post:
            result = process_refund(order, actor=self._buyer(order), reason="changed_mind")

        self.assertTrue(result.success)
        self.assertEqual(result.route, ROUTE_BOBPAY_REVERSAL)
        self.assertEqual(post.call_count, 1)
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://api.bobpay.test/v2/payments/reversal")
        self.assertEqual(kwargs["json"], {"custom_payment_id": order.custom_payment_id})

        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "refunded")
        self.assertEqual(order.refund_status, "completed")
        self.assertAlmostEqual(order.refunded_amount, 250.0)
        row = RefundTransaction.query.filter_by(order_id=int(order.id)).one()
        self.assertEqual(row.status, "success")
        self.assertEqual(row.provider_reference, "MR-1")
        kinds = {n.kind for n in OrderNotification.query.filter_by(order_id=int(order.id)).all()}
        self.assertEqual(kinds, {"refund_processed", "order_cancelled"})

    def test_repeated_refund_requests_refund_once(self):
        order = self._order("paystack")
        ok = _response(200, {"status": True, "data": {"id": 901}})
        with patch("requests.post", return_value=ok) as post:
            first = process_refund(order, actor=self._buyer(order))
            second = process_refund(int(order.id), actor=self._buyer(order))
            third = process_refund(int(order.id), actor={"type": "system"})

        self.assertTrue(first.success)
        self.assertTrue(second.already_refunded)
        self.assertTrue(third.already_refunded)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(RefundTransaction.query.filter_by(order_id=int(order.id), status="success").count(), 1)

    def test_paystack_partial_refund_uses_eligibility_cap(self):
        order = self._order("paystack")
        ok = _response(200, {"status": True, "data": {"id": 902}})
        with patch("requests.post", return_value=ok) as post:
            result = process_refund(order, actor=self._buyer(order), eligibility={"max_refund_amount": 100.0})
        self.assertTrue(result.success)
        self.assertAlmostEqual(result.amount, 100.0)
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://api.paystack.co/refund")
        self.assertEqual(kwargs["json"]["transaction"], order.payment_reference)
        self.assertEqual(kwargs["json"]["amount"], 10000)
        self.assertAlmostEqual(db.session.get(Order, int(order.id)).refunded_amount, 100.0)

    def test_bobpay_cannot_refund_partially(self):
        order = self._order("bobpay")
        with patch("requests.post") as post:
            result = process_refund(order, actor=self._buyer(order), eligibility={"max_refund_amount": 100.0})
        self.assertFalse(result.success)
        self.assertEqual(result.error, "BOBPAY_PARTIAL_REFUND_UNSUPPORTED")
        post.assert_not_called()
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.refund_status, "failed")

    def test_refund_eligibility_policy_is_injectable(self):
        order = self._order("paystack", amount=300.0)
        previous = self.app.extensions["refund_eligibility"]
        self.app.extensions["refund_eligibility"] = lambda o: {"max_refund_amount": float(o.total_charge) - 50.0}
        try:
            self.assertAlmostEqual(refund_amount(order), 250.0)
        finally:
            self.app.extensions["refund_eligibility"] = previous
        self.assertAlmostEqual(refund_amount(order), 300.0)

    def test_provider_failure_is_recorded_and_redrivable(self):
        order = self._order("paystack")
        with patch("requests.post", return_value=_response(500, {"status": False, "message": "processor down"})):
            result = process_refund(order, actor=self._buyer(order))
        self.assertFalse(result.success)
        self.assertEqual(result.refund_status, "failed")

        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.refund_status, "failed")
        self.assertEqual(RefundTransaction.query.filter_by(order_id=int(order.id), status="failed").count(), 1)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="refund_failed", order_id=int(order.id)).count(), 1)
        claim = WebhookEvent.query.filter_by(idempotency_key=f"order:{int(order.id)}", effect="refund").first()
        self.assertEqual(claim.status, "failed")

        with patch("requests.post", return_value=_response(200, {"status": True, "data": {"id": 903}})):
            redriven = redrive_refund(int(order.id), actor_id=None)
        self.assertTrue(redriven["success"])
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "cancelled_refunded")
        self.assertEqual(order.refund_status, "completed")
        self.assertEqual(RefundTransaction.query.filter_by(order_id=int(order.id), status="success").count(), 1)

    def test_committed_order_cancels_shipment_then_refunds(self):
        order = self._order("bobpay", status="committed", tracking_number="TRK-77")
        calls = []

        def _post(url, **kwargs):
            calls.append(url)
            if "bobgo" in url:
                return _response(200, {"cancelled": True})
            return _response(200, {"id": "rev-2"})

        with patch("requests.post", side_effect=_post):
            result = process_refund(order, actor={"type": "user", "id": int(order.seller_id), "role": "seller"})
        self.assertTrue(result.success)
        self.assertEqual(result.route, ROUTE_CANCEL_WITH_REFUND)
        self.assertEqual(calls, ["https://api.bobgo.co.za/v2/shipments/cancel", "https://api.bobpay.test/v2/payments/reversal"])
        self.assertEqual(db.session.get(Order, int(order.id)).status, "refunded")

    def test_courier_cancel_failure_does_not_block_refund(self):
        order = self._order("paystack", status="committed", tracking_number="TRK-78")

        def _post(url, **kwargs):
            if "bobgo" in url:
                return _response(502, {"message": "bad gateway"})
            return _response(200, {"status": True, "data": {"id": 904}})

        with patch("requests.post", side_effect=_post):
            result = process_refund(order, actor=self._buyer(order))
        self.assertTrue(result.success)
        self.assertTrue(result.courier_cancel_error.startswith("BOBGO_CANCEL_FAILED"))
        self.assertEqual(PlatformEvent.query.filter_by(event_type="courier_cancel_failed", order_id=int(order.id)).count(), 1)

    def test_only_parties_or_admin_may_refund(self):
        order = self._order("paystack")
        stranger = User(name="Stranger", email=f"stranger-{time.time_ns()}@rebooked.test", role="buyer")
        db.session.add(stranger)
        db.session.commit()
        with patch("requests.post") as post:
            with self.assertRaises(NotAuthorized):
                process_refund(order, actor={"type": "user", "id": int(stranger.id), "role": "buyer"})
            post.assert_not_called()

        with patch("requests.post", return_value=_response(200, {"status": True, "data": {"id": 905}})):
            result = process_refund(order, actor={"type": "user", "id": 0, "role": "admin"})
        self.assertTrue(result.success)

    def test_unknown_provider_fails_closed(self):
        order = self._order("unknown")
        with self.assertRaises(RefundPathUnavailable):
            process_refund(order, actor=self._buyer(order))
        order = db.session.get(Order, int(order.id))
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.refund_status, "failed")
        claim = WebhookEvent.query.filter_by(idempotency_key=f"order:{int(order.id)}", effect="refund").first()
        self.assertEqual(claim.status, "rejected")

    def test_seller_cannot_commit_while_refund_is_in_flight(self):
        order = self._order("paystack")
        order_id = int(order.id)
        seller = {"type": "user", "id": int(order.seller_id), "role": "seller"}
        commit_errors = []

        def _post(url, **kwargs):
            try:
                commit_order(order_id, actor=seller, tracking_number="TRK-LATE")
            except IllegalTransition as exc:
                commit_errors.append(exc)
            return _response(200, {"status": True, "data": {"id": 906}})

        with patch("requests.post", side_effect=_post) as post:
            result = expire_order(order)

        self.assertTrue(result.success)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(len(commit_errors), 1)
        order = db.session.get(Order, order_id)
        self.assertEqual(order.status, "cancelled_refunded")
        self.assertEqual(order.refund_status, "completed")
        self.assertIsNone(order.tracking_number)
        self.assertEqual(OrderTransition.query.filter_by(order_id=order_id, to_status="committed").count(), 0)

    def test_refunded_order_is_never_settled(self):
        order = self._order("paystack", status="delivered")
        order.refund_status = "completed"
        db.session.commit()

        result = apply_delivery_confirmed(DeliveryConfirmed(order_id=int(order.id), source="courier"))
        self.assertFalse(result.applied)
        self.assertEqual(result.anomaly, "settlement_blocked_by_refund")
        self.assertEqual(db.session.get(Order, int(order.id)).status, "delivered")
        self.assertEqual(WalletTransaction.query.filter_by(order_id=int(order.id)).count(), 0)

    def test_abandoned_refund_claim_waits_for_operator(self):
        order = self._order("paystack")
        order_id = int(order.id)
        db.session.add(
            WebhookEvent(
                provider="internal",
                idempotency_key=f"order:{order_id}",
                effect="refund",
                order_id=order_id,
                status="processing",
                attempts=1,
                updated_at=datetime.utcnow() - timedelta(hours=1),
            )
        )
        db.session.commit()

        with patch("requests.post") as post:
            with self.assertRaises(RefundInProgress):
                expire_order(order)
            post.assert_not_called()

        order = db.session.get(Order, order_id)
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.refund_status, "failed")
        self.assertEqual(PlatformEvent.query.filter_by(event_type="refund_claim_abandoned", order_id=order_id).count(), 1)
        claim = WebhookEvent.query.filter_by(idempotency_key=f"order:{order_id}", effect="refund").one()
        self.assertEqual(claim.status, "processing")
        self.assertEqual(RefundTransaction.query.filter_by(order_id=order_id).count(), 0)

        with patch("requests.post", return_value=_response(200, {"status": True, "data": {"id": 907}})) as post:
            redriven = redrive_refund(order_id, actor_id=None)
        self.assertTrue(redriven["success"])
        self.assertEqual(post.call_count, 1)
        self.assertEqual(db.session.get(Order, order_id).status, "cancelled_refunded")

    def test_delivered_order_is_not_refundable(self):
        order = self._order("paystack", status="delivered")
        with self.assertRaises(IllegalTransition):
            process_refund(order, actor=self._buyer(order))

    def test_detection_prefers_stored_provider_then_legacy_markers(self):
        stored = self._order("bobpay")
        detected = detect_provider(stored)
        self.assertIsInstance(detected, BobPayTxn)
        self.assertEqual(detected.custom_payment_id, stored.custom_payment_id)
        self.assertEqual(detected.source, "stored")

        legacy = self._order("unknown")
        db.session.add(
            PaymentTransaction(
                order_id=int(legacy.id),
                reference=legacy.custom_payment_id,
                provider_reference="psk-legacy",
                payment_method="unknown",
                amount=legacy.total_charge,
                status="success",
                provider_response_json=json.dumps({"provider": "paystack"}),
            )
        )
        db.session.commit()
        legacy_detected = detect_provider(legacy)
        self.assertIsInstance(legacy_detected, PaystackTxn)
        self.assertEqual(legacy_detected.source, "response_marker")

        bare = self._order("unknown")
        self.assertIsInstance(detect_provider(bare), UnknownProvider)


if __name__ == "__main__":
    unittest.main()
