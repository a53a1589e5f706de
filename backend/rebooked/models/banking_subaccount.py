from datetime import datetime

from rebooked.extensions import db


class BankingSubaccount(db.Model):
    __tablename__ = "banking_subaccounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending")
    subaccount_code = db.Column(db.String(80), nullable=True)
    # ciphertext produced by the banking-details service; never decrypted here
    encrypted_details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_payout_ready(self) -> bool:
        return (self.status or "").strip().lower() == "active" and bool((self.encrypted_details or "").strip())

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "status": self.status or "pending",
            "subaccount_code": self.subaccount_code or "",
            "has_encrypted_details": bool((self.encrypted_details or "").strip()),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
