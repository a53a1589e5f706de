from __future__ import annotations

import json
import os
import time
import unittest
from datetime import datetime, timedelta

from rebooked import create_app
from rebooked.extensions import db
from rebooked.integrations.couriers.bobgo_provider import bobgo_signature
from rebooked.models import Order, OrderNotification, OrderTransition, User, WebhookEvent


class CourierWebhookTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True, PAYMENTS_MODE="live", BOBGO_API_KEY="bobgo-key")
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
        self.app.config.update(BOBGO_WEBHOOK_SECRET="", COURIER_TRUST_UNSIGNED_WEBHOOKS=True)
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            self.app.extensions["settings_cache"].invalidate_all()

    def _order(self, status: str = "committed") -> tuple[int, str]:
        stamp = time.time_ns()
        with self.app.app_context():
            buyer = User(name="Buyer", email=f"buyer-{stamp}@rebooked.test", role="buyer")
            seller = User(name="Seller", email=f"seller-{stamp}@rebooked.test", role="seller")
            db.session.add_all([buyer, seller])
            db.session.commit()
            order = Order(
                buyer_id=int(buyer.id),
                seller_id=int(seller.id),
                book_id=3,
                book_title="Middlemarch",
                amount=250.0,
                status=status,
                payment_status="paid",
                payment_provider="bobpay",
                paid_at=datetime.utcnow(),
                commit_deadline=datetime.utcnow() + timedelta(hours=40),
                courier_provider="bobgo",
            )
            db.session.add(order)
            db.session.commit()
            tracking = f"TRK-{int(order.id)}"
            order.tracking_number = tracking
            db.session.commit()
            return int(order.id), tracking

    def _post(self, payload: dict, *, headers: dict | None = None, provider: str = "bobgo"):
        raw = json.dumps(payload).encode("utf-8")
        return self.client.post(
            f"/api/webhooks/courier/{provider}",
            data=raw,
            content_type="application/json",
            headers=headers or {},
        )

    def test_duplicate_delivery_notifications_apply_once(self):
        order_id, tracking = self._order()
        payload = {"event_type": "shipment.delivered", "tracking_reference": tracking, "status": "delivered"}

        first = self._post(payload)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.get_json(force=True).get("to_status"), "completed")

        second = self._post(payload)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.get_json(force=True).get("duplicate"))

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "completed")
            self.assertEqual(order.delivery_status, "delivered")
            self.assertEqual(OrderTransition.query.filter_by(order_id=order_id, to_status="delivered").count(), 1)
            self.assertEqual(OrderNotification.query.filter_by(order_id=order_id, kind="delivered").count(), 1)
            self.assertEqual(WebhookEvent.query.filter_by(effect="courier_event").count(), 1)

    def test_status_update_moves_order_forward_only(self):
        order_id, tracking = self._order()
        res = self._post({"event_type": "shipment.status_updated", "tracking_reference": tracking, "status": "in-transit"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json(force=True).get("to_status"), "in_transit")

        stale = self._post({"event_type": "shipment.status_updated", "tracking_reference": tracking, "status": "collected"})
        self.assertEqual(stale.status_code, 200)
        self.assertFalse(stale.get_json(force=True).get("applied"))

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "in_transit")
            self.assertEqual(order.delivery_status, "in_transit")

    def test_event_before_commit_is_rejected_then_replayable(self):
        order_id, tracking = self._order(status="paid")
        payload = {"event_type": "shipment.status_updated", "tracking_reference": tracking, "status": "in-transit"}

        early = self._post(payload)
        self.assertEqual(early.status_code, 200)
        self.assertEqual(early.get_json(force=True).get("anomaly"), "courier_event_before_commit")

        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "paid")
            rec = WebhookEvent.query.filter_by(effect="courier_event").first()
            self.assertEqual(rec.status, "rejected")
            Order.query.filter_by(id=order_id).update({"status": "committed"})
            db.session.commit()

        replay = self._post(payload)
        self.assertEqual(replay.status_code, 200)
        self.assertTrue(replay.get_json(force=True).get("applied"))
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "in_transit")

    def test_unknown_shipment_is_acknowledged(self):
        res = self._post({"event_type": "shipment.delivered", "tracking_reference": "NOPE", "status": "delivered"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json(force=True).get("reason"), "unknown_shipment")

    def test_signed_webhooks_require_matching_signature(self):
        self.app.config["BOBGO_WEBHOOK_SECRET"] = "bg-secret"
        order_id, tracking = self._order()
        payload = {"event_type": "shipment.status_updated", "tracking_reference": tracking, "status": "collected"}

        bad = self._post(payload, headers={"X-BobGo-Signature": "deadbeef"})
        self.assertEqual(bad.status_code, 401)
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "committed")

        raw = json.dumps(payload).encode("utf-8")
        good = self._post(payload, headers={"X-BobGo-Signature": bobgo_signature(raw, "bg-secret")})
        self.assertEqual(good.status_code, 200)
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "shipped")

    def test_unsigned_webhooks_rejected_when_not_trusted(self):
        self.app.config["COURIER_TRUST_UNSIGNED_WEBHOOKS"] = False
        _, tracking = self._order()
        res = self._post({"event_type": "shipment.delivered", "tracking_reference": tracking, "status": "delivered"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json(force=True).get("error"), "INVALID_SIGNATURE")

    def test_shipment_cancelled_updates_delivery_status_only(self):
        order_id, tracking = self._order()
        res = self._post({"event_type": "shipment.cancelled", "tracking_reference": tracking, "status": "cancelled"})
        self.assertEqual(res.status_code, 200)
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "committed")
            self.assertEqual(order.delivery_status, "cancelled")
            self.assertEqual(OrderNotification.query.filter_by(order_id=order_id, kind="shipment_cancelled").count(), 2)

    def test_unsupported_courier_is_not_found(self):
        res = self._post({"event_type": "shipment.delivered", "tracking_reference": "X"}, provider="dhl")
        self.assertEqual(res.status_code, 404)


if __name__ == "__main__":
    unittest.main()
