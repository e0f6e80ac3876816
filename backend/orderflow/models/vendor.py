import json
from datetime import datetime

from orderflow.extensions import db


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)
    business_name = db.Column(db.String(160), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Presence, refreshed by the vendor app heartbeat
    online = db.Column(db.Boolean, nullable=False, default=False, index=True)
    last_lat = db.Column(db.Float, nullable=True)
    last_lng = db.Column(db.Float, nullable=True)
    last_seen_at = db.Column(db.DateTime, nullable=True)

    fcm_tokens_json = db.Column(db.Text, nullable=True)  # JSON list of device tokens

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def fcm_tokens(self) -> list:
        raw = (self.fcm_tokens_json or "").strip()
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except Exception:
            return []
        if not isinstance(data, list):
            return []
        return [str(t) for t in data if str(t or "").strip()]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name or "",
            "phone": self.phone,
            "business_name": self.business_name or "",
            "is_active": bool(self.is_active),
            "online": bool(self.online),
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
