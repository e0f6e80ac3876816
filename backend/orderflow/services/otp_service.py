from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy import or_

from orderflow.extensions import db
from orderflow.models import Order
from orderflow.services.errors import (
    ChallengeActive,
    InvalidTransition,
    OtpRejected,
    TransitionConflict,
    ValidationFailed,
)
from orderflow.services.order_status import OrderEvent, OrderStatus, OtpPurpose
from orderflow.services.order_store import OrderStore
from orderflow.services.transition_engine import TransitionEngine, vendor_actor

logger = logging.getLogger(__name__)

MAX_TTL_SECONDS = 3600


def generate_code(length: int = 6) -> str:
    length = max(4, min(int(length or 6), 10))
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_code(code: str, secret: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hmac.new(
        (secret or "").encode("utf-8"),
        f"{salt}:{(code or '').strip()}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{salt}${digest}"


def code_matches(code: str, stored: str, secret: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, _digest = stored.split("$", 1)
    return hmac.compare_digest(hash_code(code, secret, salt=salt), stored)


def _iso(value):
    return value.isoformat() if value else None


class OtpChallengeEngine:
    def __init__(
        self,
        store: OrderStore,
        transitions: TransitionEngine,
        *,
        secret: str,
        max_attempts: int = 5,
        code_length: int = 6,
        default_ttl_seconds: int = 300,
        now_fn=None,
    ):
        self.store = store
        self.transitions = transitions
        self.secret = secret
        self.max_attempts = int(max_attempts)
        self.code_length = int(code_length)
        self.default_ttl_seconds = int(default_ttl_seconds)
        self.now_fn = now_fn or datetime.utcnow

    def _ttl(self, ttl_seconds) -> int:
        if ttl_seconds is None or ttl_seconds == "":
            return self.default_ttl_seconds
        if isinstance(ttl_seconds, bool):
            raise ValidationFailed("Invalid ttl_seconds", details=["ttl_seconds"])
        try:
            ttl = int(ttl_seconds)
        except Exception:
            raise ValidationFailed("Invalid ttl_seconds", details=["ttl_seconds"])
        if ttl < 1 or ttl > MAX_TTL_SECONDS:
            raise ValidationFailed("ttl_seconds must be between 1 and 3600", details=["ttl_seconds"])
        return ttl

    def active_challenge(self, order: Order, purpose: str) -> bool:
        if not order.has_challenge():
            return False
        if order.otp_purpose != purpose:
            return False
        return bool(order.otp_expires_at and order.otp_expires_at > self.now_fn())

    def request_challenge(self, order: Order, purpose: str, ttl_seconds=None) -> tuple[Order, str]:
        """Store a fresh challenge on the order and return it with the plaintext code.

        The plaintext is returned once for delivery and never persisted.
        """
        if purpose not in OtpPurpose.ALL:
            raise ValidationFailed('Purpose must be "arrival" or "completion"', details=["purpose"])
        ttl = self._ttl(ttl_seconds)
        if self.active_challenge(order, purpose):
            raise ChallengeActive(_iso(order.otp_expires_at))

        now = self.now_fn()
        code = generate_code(self.code_length)
        otp_id = str(uuid.uuid4())
        values = {
            "otp_id": otp_id,
            "otp_code_hash": hash_code(code, self.secret),
            "otp_purpose": purpose,
            "otp_created_at": now,
            "otp_expires_at": now + timedelta(seconds=ttl),
            "otp_attempts": 0,
            "otp_verified": False,
        }
        try:
            applied = self.store.conditional_update(order.id, values, expected_version=order.version)
            if not applied:
                self.store.rollback()
                raise TransitionConflict("Order changed while issuing OTP")
            self.store.commit()
        except TransitionConflict:
            raise
        except Exception:
            self.store.rollback()
            raise
        logger.info(
            json.dumps(
                {
                    "event": "otp_challenge_issued",
                    "order_id": int(order.id),
                    "otp_id": otp_id,
                    "purpose": purpose,
                    "ttl_seconds": ttl,
                }
            )
        )
        return self.store.require(order.id, fresh=True), code

    def _count_failed_attempt(self, order: Order) -> int:
        try:
            self.store.conditional_update(
                order.id,
                {"otp_attempts": Order.otp_attempts + 1},
                criteria=(Order.otp_id == order.otp_id, Order.otp_verified.is_(False)),
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        fresh = self.store.require(order.id, fresh=True)
        return int(fresh.otp_attempts or 0)

    def verify(self, order: Order, purpose: str, code: str, *, vendor_id: int | None = None) -> Order:
        """Check ``code`` against the order's challenge and apply the purpose's transition.

        Checks run in a fixed order: missing challenge, purpose, expiry,
        attempt ceiling, code. A wrong code is counted atomically before the
        failure is raised. The challenge is consumed in the same write as the
        status change.
        """
        if not order.has_challenge():
            raise OtpRejected("no_challenge")
        if order.otp_purpose != purpose:
            raise OtpRejected("purpose_mismatch", expected_purpose=order.otp_purpose)
        if order.otp_expires_at is None or self.now_fn() > order.otp_expires_at:
            raise OtpRejected("expired")
        if int(order.otp_attempts or 0) >= self.max_attempts:
            raise OtpRejected("too_many_attempts")
        if not code_matches(str(code or ""), order.otp_code_hash or "", self.secret):
            attempts = self._count_failed_attempt(order)
            raise OtpRejected("invalid", attempts_remaining=max(0, self.max_attempts - attempts))

        event = OtpPurpose.EVENTS[purpose]
        if order.status not in OrderEvent.sources(event):
            raise InvalidTransition(order.status, event)
        target = OrderEvent.target(event)
        now = self.now_fn()
        values = {"otp_verified": True}
        if target == OrderStatus.COMPLETED:
            values["completed_at"] = now
        updated = self.transitions.try_transition(
            order.id,
            OrderEvent.sources(event),
            target,
            values=values,
            vendor_id=vendor_id,
            criteria=(
                Order.otp_id == order.otp_id,
                Order.otp_verified.is_(False),
                Order.otp_attempts < self.max_attempts,
            ),
            actor=vendor_actor(vendor_id) if vendor_id is not None else None,
            reason=f"otp_{purpose}_verified",
            metadata={"otp_id": order.otp_id},
        )
        if updated is None:
            fresh = self.store.require(order.id, fresh=True)
            if fresh.otp_id != order.otp_id or fresh.otp_verified:
                raise OtpRejected("no_challenge")
            if int(fresh.otp_attempts or 0) >= self.max_attempts:
                raise OtpRejected("too_many_attempts")
            raise TransitionConflict("Order changed during OTP verification")
        logger.info(
            json.dumps(
                {
                    "event": "otp_challenge_verified",
                    "order_id": int(order.id),
                    "otp_id": order.otp_id,
                    "purpose": purpose,
                    "status": updated.status,
                }
            )
        )
        return updated


def sweep_expired_challenges(*, grace_seconds: int = 3600, now: datetime | None = None) -> int:
    """Clear unverified challenges that expired before the grace window, or whose order has ended."""
    cutoff = (now or datetime.utcnow()) - timedelta(seconds=max(0, int(grace_seconds)))
    q = Order.query.filter(
        Order.otp_id.isnot(None),
        Order.otp_verified.is_(False),
        or_(Order.otp_expires_at < cutoff, Order.status.in_(sorted(OrderStatus.TERMINAL))),
    )
    count = q.update(
        {
            "otp_id": None,
            "otp_code_hash": None,
            "otp_purpose": None,
            "otp_created_at": None,
            "otp_expires_at": None,
            "otp_attempts": 0,
            "version": Order.version + 1,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return int(count or 0)
