import json
from datetime import datetime

from orderflow.extensions import db


class MockOrderCall(db.Model):
    __tablename__ = "mock_order_calls"

    id = db.Column(db.Integer, primary_key=True)

    # Unique when present; NULLs never collide
    client_request_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    request_payload = db.Column(db.Text, nullable=False)

    # Weak reference, the order may be deleted independently
    order_id = db.Column(db.Integer, nullable=True, index=True)
    vendor_id = db.Column(db.Integer, nullable=True)

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    auto_assigned = db.Column(db.Boolean, nullable=False, default=False)

    response_status = db.Column(db.Integer, nullable=False)
    error_message = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def payload_dict(self) -> dict:
        try:
            data = json.loads(self.request_payload or "{}")
        except Exception:
            return {}
        return data if isinstance(data, dict) else {}

    def succeeded(self) -> bool:
        return self.order_id is not None and 200 <= int(self.response_status or 0) < 300

    def to_dict(self):
        return {
            "id": int(self.id),
            "client_request_id": self.client_request_id,
            "order_id": self.order_id,
            "vendor_id": self.vendor_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "auto_assigned": bool(self.auto_assigned),
            "response_status": int(self.response_status or 0),
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
