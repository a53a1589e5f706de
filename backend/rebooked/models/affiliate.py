from datetime import datetime

from rebooked.extensions import db


class AffiliateReferral(db.Model):
    __tablename__ = "affiliate_referrals"
    __table_args__ = (
        db.UniqueConstraint("referred_user_id", name="uq_affiliate_referrals_referred_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    affiliate_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "affiliate_user_id": int(self.affiliate_user_id),
            "referred_user_id": int(self.referred_user_id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AffiliateOrder(db.Model):
    __tablename__ = "affiliate_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    referral_id = db.Column(db.Integer, db.ForeignKey("affiliate_referrals.id"), nullable=False)
    affiliate_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "referral_id": int(self.referral_id),
            "affiliate_user_id": int(self.affiliate_user_id),
            "status": self.status or "pending",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
