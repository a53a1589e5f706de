from datetime import datetime

from rebooked.extensions import db


class SellerWallet(db.Model):
    __tablename__ = "seller_wallets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    available_balance = db.Column(db.Float, nullable=False, default=0.0)
    total_earned = db.Column(db.Float, nullable=False, default=0.0)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "available_balance": float(self.available_balance or 0.0),
            "total_earned": float(self.total_earned or 0.0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        db.UniqueConstraint("order_id", "type", name="uq_wallet_transactions_order_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    # credit | debit
    type = db.Column(db.String(16), nullable=False, default="credit")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    gross_amount = db.Column(db.Float, nullable=True)
    commission_amount = db.Column(db.Float, nullable=True)
    reference = db.Column(db.String(80), nullable=True)
    description = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "type": self.type or "credit",
            "amount": float(self.amount or 0.0),
            "gross_amount": float(self.gross_amount) if self.gross_amount is not None else None,
            "commission_amount": float(self.commission_amount) if self.commission_amount is not None else None,
            "reference": self.reference or "",
            "description": self.description or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
