from datetime import datetime

from rebooked.extensions import db


class RefundTransaction(db.Model):
    __tablename__ = "refund_transactions"
    __table_args__ = (
        db.Index(
            "uq_refund_transactions_order_success",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'success'"),
            postgresql_where=db.text("status = 'success'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    reason = db.Column(db.String(240), nullable=True)
    provider = db.Column(db.String(16), nullable=False, default="unknown")
    # cancel_with_refund | bobpay_reversal | paystack_refund
    route = db.Column(db.String(32), nullable=False, default="")
    provider_reference = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    provider_response_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    initiated_by_type = db.Column(db.String(32), nullable=False, default="system")
    initiated_by_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "amount": float(self.amount or 0.0),
            "reason": self.reason or "",
            "provider": self.provider or "unknown",
            "route": self.route or "",
            "provider_reference": self.provider_reference or "",
            "status": self.status or "pending",
            "initiated_by_type": self.initiated_by_type or "system",
            "initiated_by_id": int(self.initiated_by_id) if self.initiated_by_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
