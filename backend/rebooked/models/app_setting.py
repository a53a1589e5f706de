from datetime import datetime
import json

from rebooked.extensions import db


class AppSetting(db.Model):
    __tablename__ = "app_settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), nullable=False, unique=True, index=True)
    value_json = db.Column(db.Text, nullable=False, default="null")
    updated_by = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def value(self):
        try:
            return json.loads(self.value_json or "null")
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value(),
            "updated_by": int(self.updated_by) if self.updated_by is not None else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
