import json
from datetime import datetime

from orderflow.extensions import db


def _iso(value):
    return value.isoformat() if value else None


def _load_json(raw, fallback):
    raw = (raw or "").strip()
    if not raw:
        return fallback
    try:
        data = json.loads(raw)
    except Exception:
        return fallback
    return data if isinstance(data, type(fallback)) else fallback


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_vendor_status", "vendor_id", "status"),
        db.Index("ix_orders_vendor_created", "vendor_id", "created_at"),
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)

    customer_id = db.Column(db.String(64), nullable=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True)

    pickup_lat = db.Column(db.Float, nullable=False)
    pickup_lng = db.Column(db.Float, nullable=False)
    pickup_address = db.Column(db.String(255), nullable=False)
    drop_lat = db.Column(db.Float, nullable=False)
    drop_lng = db.Column(db.Float, nullable=False)
    drop_address = db.Column(db.String(255), nullable=False)

    items_json = db.Column(db.Text, nullable=False, default="[]")
    fare = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(8), nullable=False, default="INR")
    payment_method = db.Column(db.String(16), nullable=False, default="cod")  # cod | online | wallet
    payment_status = db.Column(db.String(16), nullable=False, default="pending")  # pending | paid | failed | refunded

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    # Bumped by every conditional write
    version = db.Column(db.Integer, nullable=False, default=1)

    scheduled_at = db.Column(db.DateTime, nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    cancellation_reason = db.Column(db.String(240), nullable=True)
    cancelled_by = db.Column(db.String(16), nullable=True)  # customer | vendor | admin

    customer_notes = db.Column(db.Text, nullable=True)
    vendor_notes = db.Column(db.Text, nullable=True)

    # Single-slot OTP challenge; only the salted hash is kept
    otp_id = db.Column(db.String(36), nullable=True)
    otp_code_hash = db.Column(db.String(160), nullable=True)
    otp_purpose = db.Column(db.String(16), nullable=True)  # arrival | completion
    otp_created_at = db.Column(db.DateTime, nullable=True)
    otp_expires_at = db.Column(db.DateTime, nullable=True)
    otp_attempts = db.Column(db.Integer, nullable=False, default=0)
    otp_verified = db.Column(db.Boolean, nullable=False, default=False)

    metadata_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    payment_requests = db.relationship(
        "PaymentRequest",
        order_by="PaymentRequest.id",
        lazy="select",
        viewonly=True,
    )

    def items(self) -> list:
        return _load_json(self.items_json, [])

    def metadata_dict(self) -> dict:
        return _load_json(self.metadata_json, {})

    def has_challenge(self) -> bool:
        return bool(self.otp_id) and not bool(self.otp_verified)

    def challenge_dict(self) -> dict | None:
        if not self.otp_id:
            return None
        # The code hash never leaves the model
        return {
            "id": self.otp_id,
            "purpose": self.otp_purpose,
            "created_at": _iso(self.otp_created_at),
            "expires_at": _iso(self.otp_expires_at),
            "attempts": int(self.otp_attempts or 0),
            "verified": bool(self.otp_verified),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "vendor_id": self.vendor_id,
            "pickup": {
                "lat": self.pickup_lat,
                "lng": self.pickup_lng,
                "address": self.pickup_address or "",
            },
            "drop": {
                "lat": self.drop_lat,
                "lng": self.drop_lng,
                "address": self.drop_address or "",
            },
            "items": self.items(),
            "fare": float(self.fare or 0.0),
            "currency": self.currency or "INR",
            "payment_method": self.payment_method or "cod",
            "payment_status": self.payment_status or "pending",
            "status": self.status,
            "version": int(self.version or 0),
            "scheduled_at": _iso(self.scheduled_at),
            "assigned_at": _iso(self.assigned_at),
            "accepted_at": _iso(self.accepted_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "customer_notes": self.customer_notes or "",
            "vendor_notes": self.vendor_notes or "",
            "payment_requests": [pr.to_dict() for pr in self.payment_requests],
            "otp": self.challenge_dict(),
            "metadata": self.metadata_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PaymentRequest(db.Model):
    __tablename__ = "order_payment_requests"
    __table_args__ = (
        db.UniqueConstraint("order_id", "request_id", name="uq_order_payment_request"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    request_id = db.Column(db.String(36), nullable=False, index=True)

    # amount and currency never change after insert
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="INR")

    status = db.Column(db.String(16), nullable=False, default="requested")  # requested | confirmed | rejected
    notes = db.Column(db.Text, nullable=True)
    meta = db.Column(db.Text, nullable=True)  # JSON string

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True)

    def meta_dict(self) -> dict:
        return _load_json(self.meta, {})

    def to_dict(self) -> dict:
        return {
            "id": self.request_id,
            "amount": float(self.amount or 0.0),
            "currency": self.currency or "INR",
            "status": self.status,
            "notes": self.notes or "",
            "meta": self.meta_dict(),
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
        }
