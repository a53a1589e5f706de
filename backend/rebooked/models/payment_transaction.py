from datetime import datetime
import json

from rebooked.extensions import db


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index(
            "uq_payment_transactions_order_success",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'success'"),
            postgresql_where=db.text("status = 'success'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # merchant-side reference (custom_payment_id) and provider-assigned reference
    reference = db.Column(db.String(80), nullable=False, index=True)
    provider_reference = db.Column(db.String(128), nullable=True, index=True)

    payment_method = db.Column(db.String(16), nullable=False, default="unknown")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    provider_response_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def provider_response(self) -> dict:
        raw = self.provider_response_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except (TypeError, ValueError):
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "reference": self.reference or "",
            "provider_reference": self.provider_reference or "",
            "payment_method": self.payment_method or "unknown",
            "amount": float(self.amount or 0.0),
            "status": self.status or "pending",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
