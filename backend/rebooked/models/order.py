from datetime import datetime

from rebooked.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    book_title = db.Column(db.String(240), nullable=True)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)

    # ORDER-<order_id>-<timestamp>, sent to the provider as the merchant reference
    custom_payment_id = db.Column(db.String(80), nullable=True, unique=True, index=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    # bobpay | paystack | unknown; decided once at checkout
    payment_provider = db.Column(db.String(16), nullable=False, default="unknown")

    status = db.Column(db.String(32), nullable=False, default="created", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    delivery_status = db.Column(db.String(16), nullable=False, default="none")
    refund_status = db.Column(db.String(16), nullable=False, default="none", index=True)

    commit_deadline = db.Column(db.DateTime, nullable=True, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    committed_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    courier_provider = db.Column(db.String(32), nullable=True)
    shipment_id = db.Column(db.String(80), nullable=True, index=True)
    tracking_number = db.Column(db.String(80), nullable=True, index=True)
    last_tracking_location = db.Column(db.String(240), nullable=True)

    cancellation_reason = db.Column(db.String(240), nullable=True)
    decline_reason = db.Column(db.String(240), nullable=True)

    refunded_amount = db.Column(db.Float, nullable=True)
    settlement_method = db.Column(db.String(32), nullable=True)
    settled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def total_charge(self) -> float:
        return float(self.amount or 0.0) + float(self.delivery_fee or 0.0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "book_id": int(self.book_id),
            "book_title": self.book_title or "",
            "amount": float(self.amount or 0.0),
            "delivery_fee": float(self.delivery_fee or 0.0),
            "total_charge": self.total_charge,
            "custom_payment_id": self.custom_payment_id or "",
            "payment_reference": self.payment_reference or "",
            "payment_provider": self.payment_provider or "unknown",
            "status": self.status or "created",
            "payment_status": self.payment_status or "pending",
            "delivery_status": self.delivery_status or "none",
            "refund_status": self.refund_status or "none",
            "commit_deadline": self.commit_deadline.isoformat() if self.commit_deadline else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "courier_provider": self.courier_provider or "",
            "shipment_id": self.shipment_id or "",
            "tracking_number": self.tracking_number or "",
            "refunded_amount": float(self.refunded_amount) if self.refunded_amount is not None else None,
            "settlement_method": self.settlement_method or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
