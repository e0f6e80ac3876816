import json
from datetime import datetime

from orderflow.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_type = db.Column(db.String(16), nullable=False)  # vendor | customer
    recipient_id = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)

    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False, default="")

    status = db.Column(db.String(24), nullable=False, default="queued")  # queued | sent | failed
    provider = db.Column(db.String(64), nullable=True)  # mock | fcm
    error = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    data_json = db.Column(db.Text, nullable=True)

    def data_dict(self) -> dict:
        raw = (self.data_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_type": self.recipient_type,
            "recipient_id": self.recipient_id,
            "order_id": self.order_id,
            "title": self.title or "",
            "message": self.message or "",
            "status": self.status or "queued",
            "provider": self.provider or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "data": self.data_dict(),
        }
