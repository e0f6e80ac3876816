from __future__ import annotations

import json
import logging
import os
from datetime import datetime

from flask import current_app

from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.locator.base import VendorLocator
from orderflow.integrations.locator.presence_locator import PresenceVendorLocator
from orderflow.integrations.notify.factory import build_notifier
from orderflow.models import Order, PaymentRequest
from orderflow.services.errors import (
    ClaimConflict,
    InvalidTransition,
    NotAssigned,
    OrderNotFound,
    TransitionConflict,
    ValidationFailed,
    VendorMismatch,
)
from orderflow.services.idempotent_creation import CreationResult, IdempotentOrderService
from orderflow.services.notify_service import NotificationDispatcher
from orderflow.services.order_creation import OrderCreator
from orderflow.services.order_status import OrderEvent, OrderStatus, OtpPurpose
from orderflow.services.order_store import OrderStore
from orderflow.services.otp_service import OtpChallengeEngine
from orderflow.services.payment_ledger import PaymentLedger
from orderflow.services.transition_engine import TransitionEngine, vendor_actor

logger = logging.getLogger(__name__)


def _owned_by(order: Order, vendor_id) -> bool:
    if order.vendor_id is None or vendor_id is None:
        return False
    return int(order.vendor_id) == int(vendor_id)


class OrderLifecycle:
    """Vendor-facing order state machine.

    Every status change goes through the transition engine as one
    conditional write. Notifications go out after the commit and never
    affect the outcome of the operation.
    """

    def __init__(
        self,
        store: OrderStore,
        dispatcher: NotificationDispatcher,
        locator: VendorLocator,
        *,
        secret: str,
        otp_ttl_seconds: int = 300,
        otp_max_attempts: int = 5,
        otp_code_length: int = 6,
        search_radius_m: float = 10000,
        now_fn=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.locator = locator
        self.now_fn = now_fn or datetime.utcnow
        self.transitions = TransitionEngine(store)
        self.otp = OtpChallengeEngine(
            store,
            self.transitions,
            secret=secret,
            max_attempts=otp_max_attempts,
            code_length=otp_code_length,
            default_ttl_seconds=otp_ttl_seconds,
            now_fn=self.now_fn,
        )
        self.ledger = PaymentLedger(store, self.transitions, now_fn=self.now_fn)
        self.creator = OrderCreator(store, locator, search_radius_m=search_radius_m)
        self.creation = IdempotentOrderService(self.creator, store, announce=self.announce_new_order)

    # ------------------------------------------------------------------
    # notifications

    def _notify_customer_status(self, order: Order) -> None:
        if not order.customer_id:
            return
        self.dispatcher.send(
            recipient_type="customer",
            recipient_id=order.customer_id,
            title="Order update",
            body=f"Order {int(order.id)} status updated to {order.status}",
            data={"order_id": int(order.id), "status": order.status},
            order_id=int(order.id),
        )

    def _notify_vendor(self, vendor_id, order: Order, title: str, body: str, **data) -> None:
        payload = {"order_id": int(order.id), "status": order.status}
        payload.update(data)
        self.dispatcher.send(
            recipient_type="vendor",
            recipient_id=vendor_id,
            title=title,
            body=body,
            data=payload,
            order_id=int(order.id),
        )

    def announce_new_order(self, order: Order, vendor_ids: list) -> None:
        for vendor_id in vendor_ids or []:
            self._notify_vendor(
                vendor_id,
                order,
                "New order",
                f"New order #{int(order.id)}: {order.pickup_address} to {order.drop_address}",
                fare=float(order.fare or 0.0),
            )

    # ------------------------------------------------------------------
    # reads

    def get_for_vendor(self, order_id: int, vendor_id: int) -> Order:
        order = self.store.require(order_id, fresh=True)
        if _owned_by(order, vendor_id):
            return order
        # Unclaimed broadcast orders are visible to any vendor deciding whether to accept
        if order.vendor_id is None and order.status == OrderStatus.PENDING:
            return order
        raise OrderNotFound("Order not found")

    def list_for_vendor(self, vendor_id: int, *, status: str | None = None, limit: int = 50, offset: int = 0):
        return self.store.list_for_vendor(vendor_id, status=status, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # creation

    def create_order(self, payload, client_request_id=None, metadata: dict | None = None) -> CreationResult:
        return self.creation.create_or_get_order(payload, client_request_id=client_request_id, metadata=metadata)

    # ------------------------------------------------------------------
    # claim and work

    def accept(self, order_id: int, vendor_id: int) -> Order:
        order = self.store.require(order_id, fresh=True)
        now = self.now_fn()
        if order.status == OrderStatus.ACCEPTED:
            if _owned_by(order, vendor_id) and order.accepted_at is not None:
                return order
            raise ClaimConflict("Order already accepted by another vendor")

        if order.status == OrderStatus.ASSIGNED:
            if not _owned_by(order, vendor_id):
                raise ClaimConflict("Order assigned to another vendor")
            updated = self.transitions.try_transition(
                order.id,
                {OrderStatus.ASSIGNED},
                OrderStatus.ACCEPTED,
                values={"accepted_at": now},
                vendor_id=vendor_id,
                actor=vendor_actor(vendor_id),
                reason="vendor_accepted",
            )
            if updated is None:
                raise ClaimConflict("Order transition conflict")
        elif order.status == OrderStatus.PENDING:
            updated = self.transitions.try_transition(
                order.id,
                {OrderStatus.PENDING},
                OrderStatus.ACCEPTED,
                values={"vendor_id": int(vendor_id), "accepted_at": now, "assigned_at": now},
                actor=vendor_actor(vendor_id),
                reason="vendor_claimed",
            )
            if updated is None:
                raise ClaimConflict("Order already claimed or not available")
        else:
            raise InvalidTransition(order.status, OrderEvent.ACCEPT)

        self._notify_customer_status(updated)
        return updated

    def reject(self, order_id: int, vendor_id: int, reason: str = "") -> Order:
        order = self.store.require(order_id, fresh=True)
        reason = (reason or "").strip()[:240] or "Rejected by vendor"
        metadata = order.metadata_dict()
        metadata["rejection_reason"] = reason
        metadata["rejected_by"] = int(vendor_id)
        values = {"metadata_json": json.dumps(metadata, default=str)}

        if order.status == OrderStatus.PENDING:
            target = OrderStatus.REJECTED
            owner = None
        elif order.status == OrderStatus.ASSIGNED:
            if not _owned_by(order, vendor_id):
                raise NotAssigned("Order assigned to another vendor")
            target = OrderStatus.CANCELLED
            owner = vendor_id
            values.update(
                {
                    "cancelled_at": self.now_fn(),
                    "cancellation_reason": reason,
                    "cancelled_by": "vendor",
                }
            )
        else:
            raise InvalidTransition(order.status, OrderEvent.REJECT)

        updated = self.transitions.try_transition(
            order.id,
            {order.status},
            target,
            values=values,
            vendor_id=owner,
            expected_version=order.version,
            actor=vendor_actor(vendor_id),
            reason=reason,
        )
        if updated is None:
            raise TransitionConflict("Order transition conflict")
        self._notify_customer_status(updated)
        return updated

    def _vendor_transition(self, order_id: int, vendor_id: int, event: str, values: dict | None = None, reason: str = "") -> Order:
        order = self.store.require(order_id, fresh=True)
        sources = OrderEvent.sources(event)
        if order.status not in sources:
            raise InvalidTransition(order.status, event)
        if not _owned_by(order, vendor_id):
            raise NotAssigned("Order is not assigned to you")
        updated = self.transitions.try_transition(
            order.id,
            sources,
            OrderEvent.target(event),
            values=values,
            vendor_id=vendor_id,
            actor=vendor_actor(vendor_id),
            reason=reason or event,
        )
        if updated is None:
            raise TransitionConflict("Order transition conflict")
        self._notify_customer_status(updated)
        return updated

    def start(self, order_id: int, vendor_id: int) -> Order:
        return self._vendor_transition(order_id, vendor_id, OrderEvent.START)

    def complete(self, order_id: int, vendor_id: int) -> Order:
        return self._vendor_transition(
            order_id,
            vendor_id,
            OrderEvent.COMPLETE,
            values={"completed_at": self.now_fn()},
        )

    def cancel(self, order_id: int, vendor_id: int, reason: str = "") -> Order:
        reason = (reason or "").strip()[:240] or "Cancelled by vendor"
        return self._vendor_transition(
            order_id,
            vendor_id,
            OrderEvent.CANCEL,
            values={
                "cancelled_at": self.now_fn(),
                "cancellation_reason": reason,
                "cancelled_by": "vendor",
            },
            reason=reason,
        )

    # ------------------------------------------------------------------
    # payments

    def _require_owner(self, order_id: int, vendor_id: int, message: str) -> Order:
        order = self.store.require(order_id, fresh=True)
        if not _owned_by(order, vendor_id):
            raise VendorMismatch(message)
        return order

    def request_payment(
        self,
        order_id: int,
        vendor_id: int,
        *,
        amount=None,
        currency: str = "INR",
        notes: str = "",
        auto_confirm: bool = False,
    ) -> tuple[Order, PaymentRequest]:
        order = self._require_owner(order_id, vendor_id, "Not authorized to request payment for this order")
        updated, entry = self.ledger.append_request(
            order,
            amount,
            currency,
            notes,
            vendor_id=vendor_id,
            meta={"auto_confirm": bool(auto_confirm)},
        )
        if auto_confirm:
            updated = self.ledger.confirm(updated, entry.request_id, vendor_id=vendor_id)
            entry = self.store.payment_request(updated.id, entry.request_id)
            self._notify_vendor(
                vendor_id,
                updated,
                "Payment confirmed",
                f"Payment of {entry.amount:.2f} {entry.currency} confirmed for order #{int(updated.id)}",
                payment_request_id=entry.request_id,
            )
        self._notify_customer_status(updated)
        return updated, entry

    def confirm_payment(self, order_id: int, request_id: str, vendor_id: int) -> Order:
        order = self._require_owner(order_id, vendor_id, "Not authorized to confirm payment for this order")
        before = order.status
        updated = self.ledger.confirm(order, request_id, vendor_id=vendor_id)
        entry = self.store.payment_request(updated.id, request_id)
        if entry is not None and updated.version != order.version:
            self._notify_vendor(
                vendor_id,
                updated,
                "Payment confirmed",
                f"Payment of {entry.amount:.2f} {entry.currency} confirmed for order #{int(updated.id)}",
                payment_request_id=entry.request_id,
            )
            if updated.status != before:
                self._notify_customer_status(updated)
        return updated

    def update_fare(self, order_id: int, vendor_id: int, amount) -> Order:
        order = self.store.require(order_id, fresh=True)
        return self.ledger.update_fare(order, amount, vendor_id=vendor_id)

    # ------------------------------------------------------------------
    # OTP checkpoints

    def _purpose(self, purpose) -> str:
        value = str(purpose or "").strip().lower()
        if value not in OtpPurpose.ALL:
            raise ValidationFailed('Purpose must be "arrival" or "completion"', details=["purpose"])
        return value

    def request_otp(self, order_id: int, vendor_id: int, purpose, ttl_seconds=None) -> tuple[Order, str]:
        purpose = self._purpose(purpose)
        order = self._require_owner(order_id, vendor_id, "Not authorized to request OTP for this order")
        event = OtpPurpose.EVENTS[purpose]
        if order.status not in OrderEvent.sources(event):
            raise InvalidTransition(order.status, f"request {purpose} otp for")
        updated, code = self.otp.request_challenge(order, purpose, ttl_seconds)
        if updated.customer_id:
            # Code goes to the customer only; never persisted in the notification log
            self.dispatcher.send_direct(
                recipient_type="customer",
                recipient_id=updated.customer_id,
                title="Your verification code",
                body=f"Share code {code} with your service provider to confirm {purpose}.",
                data={"order_id": int(updated.id), "otp_id": updated.otp_id, "purpose": purpose},
            )
        return updated, code

    def verify_otp(self, order_id: int, vendor_id: int, purpose, code) -> Order:
        purpose = self._purpose(purpose)
        if code is None or str(code).strip() == "":
            raise ValidationFailed("OTP is required", details=["otp"])
        order = self._require_owner(order_id, vendor_id, "Not authorized to verify OTP for this order")
        updated = self.otp.verify(order, purpose, str(code).strip(), vendor_id=vendor_id)
        self._notify_vendor(
            vendor_id,
            updated,
            "OTP verified",
            f"{purpose.capitalize()} verified for order #{int(updated.id)}",
            purpose=purpose,
        )
        self._notify_customer_status(updated)
        return updated


def _config_int(config, name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = config.get(name) if config is not None else None
    if raw is None:
        raw = os.getenv(name)
    try:
        value = int(raw) if raw not in (None, "") else int(default)
    except Exception:
        value = int(default)
    return max(minimum, min(value, maximum))


def build_dispatcher(config=None) -> NotificationDispatcher:
    try:
        notifier = build_notifier(config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        logger.warning("notifier_unavailable err=%s", e)
        notifier = None
    queue = bool(config.get("NOTIFY_QUEUE")) if config is not None else False
    return NotificationDispatcher(notifier, queue=queue)


def build_lifecycle(app=None, *, store: OrderStore | None = None, dispatcher=None, locator=None, now_fn=None) -> OrderLifecycle:
    app = app or current_app
    config = app.config
    store = store or OrderStore()
    if dispatcher is None:
        dispatcher = app.extensions.get("orderflow_dispatcher") or build_dispatcher(config)
    if locator is None:
        locator = app.extensions.get("orderflow_locator") or PresenceVendorLocator(
            fresh_seconds=_config_int(config, "VENDOR_PRESENCE_FRESH_SECONDS", 300, minimum=10, maximum=86400),
        )
    return OrderLifecycle(
        store,
        dispatcher,
        locator,
        secret=str(config.get("SECRET_KEY") or ""),
        otp_ttl_seconds=_config_int(config, "OTP_TTL_SECONDS", 300, minimum=1, maximum=3600),
        otp_max_attempts=_config_int(config, "OTP_MAX_ATTEMPTS", 5, minimum=1, maximum=20),
        otp_code_length=_config_int(config, "OTP_CODE_LENGTH", 6, minimum=4, maximum=10),
        search_radius_m=_config_int(config, "VENDOR_SEARCH_RADIUS_M", 10000, minimum=100, maximum=200000),
        now_fn=now_fn or app.extensions.get("orderflow_clock"),
    )
