from datetime import datetime

from rebooked.extensions import db


class WebhookEvent(db.Model):
    """Durable claim for one side effect of one logical inbound event."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", "effect", name="uq_webhook_events_key_effect"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="internal")
    idempotency_key = db.Column(db.String(180), nullable=False, index=True)
    # payment_confirmed | payment_failed | delivery_updated | delivery_confirmed | shipment_cancelled | settlement | refund ...
    effect = db.Column(db.String(40), nullable=False)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    reference = db.Column(db.String(128), nullable=True)
    # processing | applied | failed | rejected
    status = db.Column(db.String(16), nullable=False, default="processing", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(128), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "idempotency_key": self.idempotency_key,
            "effect": self.effect,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "reference": self.reference or "",
            "status": self.status or "",
            "attempts": int(self.attempts or 0),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
