from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import datetime

from sqlalchemy import func

from orderflow.models import Order, PaymentRequest
from orderflow.services.errors import (
    AlreadyPaid,
    FareLocked,
    InvalidTransition,
    OrderError,
    PaymentRequestNotFound,
    TransitionConflict,
    ValidationFailed,
    VendorMismatch,
)
from orderflow.services.order_status import OrderEvent, OrderStatus
from orderflow.services.order_store import OrderStore
from orderflow.services.transition_engine import TransitionEngine, vendor_actor

logger = logging.getLogger(__name__)

PAID = "paid"


def validate_amount(value, *, field: str = "amount") -> float:
    # bool is an int subclass; True must not pass as 1
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailed("Amount must be a positive number", details=[field])
    amount = float(value)
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationFailed("Amount must be a positive number", details=[field])
    return round(amount, 2)


def _currency(value) -> str:
    cur = str(value or "INR").strip().upper()
    if len(cur) != 3 or not cur.isalpha():
        raise ValidationFailed("Currency must be a 3-letter code", details=["currency"])
    return cur


class PaymentLedger:
    def __init__(self, store: OrderStore, transitions: TransitionEngine, *, now_fn=None):
        self.store = store
        self.transitions = transitions
        self.now_fn = now_fn or datetime.utcnow

    def append_request(
        self,
        order: Order,
        amount=None,
        currency: str = "INR",
        notes: str = "",
        *,
        vendor_id: int,
        meta: dict | None = None,
    ) -> tuple[Order, PaymentRequest]:
        """Append a ``requested`` entry and move the order to ``payment_requested``.

        An omitted amount is taken from the order's fare and fixed on the
        entry. The write is pinned to the version the fare was read at, so a
        concurrent fare edit surfaces as a conflict. Later fare edits do not
        touch existing entries.
        """
        if (order.payment_status or "") == PAID:
            raise AlreadyPaid("Order is already paid")
        sources = OrderEvent.sources(OrderEvent.REQUEST_PAYMENT)
        if order.status not in sources:
            raise InvalidTransition(order.status, OrderEvent.REQUEST_PAYMENT)
        resolved = validate_amount(order.fare if amount is None else amount)
        cur = _currency(currency)
        request_id = str(uuid.uuid4())
        created_at = self.now_fn()

        def _insert_entry(order_id: int) -> None:
            self.store.add(
                PaymentRequest(
                    order_id=order_id,
                    request_id=request_id,
                    amount=resolved,
                    currency=cur,
                    status="requested",
                    notes=(notes or "")[:1000],
                    meta=json.dumps(meta or {}, default=str),
                    created_at=created_at,
                )
            )

        updated = self.transitions.try_transition(
            order.id,
            sources,
            OrderStatus.PAYMENT_REQUESTED,
            vendor_id=vendor_id,
            expected_version=order.version if amount is None else None,
            criteria=(Order.payment_status != PAID,),
            actor=vendor_actor(vendor_id),
            reason="payment_requested",
            metadata={"payment_request_id": request_id, "amount": resolved, "currency": cur},
            side_effects=(_insert_entry,),
        )
        if updated is None:
            raise TransitionConflict("Order changed while requesting payment")
        logger.info(
            json.dumps(
                {
                    "event": "payment_request_appended",
                    "order_id": int(order.id),
                    "payment_request_id": request_id,
                    "amount": resolved,
                    "currency": cur,
                }
            )
        )
        return updated, self.store.payment_request(order.id, request_id)

    def _mark_entry_confirmed(self, order_id: int, request_id: str, confirmed_at: datetime) -> bool:
        count = (
            self.store.session.query(PaymentRequest)
            .filter(
                PaymentRequest.order_id == int(order_id),
                PaymentRequest.request_id == request_id,
                PaymentRequest.status == "requested",
            )
            .update({"status": "confirmed", "confirmed_at": confirmed_at}, synchronize_session=False)
        )
        return int(count or 0) == 1

    def confirm(self, order: Order, request_id: str, *, vendor_id: int | None = None) -> Order:
        """Confirm one ``requested`` entry.

        The entry flips to ``confirmed``; the order moves to
        ``payment_confirmed`` in the same commit when it is waiting on
        payment. Confirming an entry twice is a no-op.
        """
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            raise InvalidTransition(order.status, OrderEvent.CONFIRM_PAYMENT)
        entry = self.store.payment_request(order.id, request_id)
        if entry is None:
            raise PaymentRequestNotFound("Payment request not found")
        if entry.status == "confirmed":
            return order
        if entry.status != "requested":
            raise OrderError(
                f"Payment request is {entry.status}",
                code="payment_request_not_confirmable",
                status_code=409,
            )

        confirmed_at = self.now_fn()
        if order.status == OrderStatus.PAYMENT_REQUESTED:

            def _confirm_entry(order_id: int) -> None:
                if not self._mark_entry_confirmed(order_id, entry.request_id, confirmed_at):
                    raise TransitionConflict("Payment request changed during confirmation")

            updated = self.transitions.try_transition(
                order.id,
                {OrderStatus.PAYMENT_REQUESTED},
                OrderStatus.PAYMENT_CONFIRMED,
                vendor_id=vendor_id,
                actor=vendor_actor(vendor_id) if vendor_id is not None else None,
                reason="payment_confirmed",
                metadata={"payment_request_id": entry.request_id, "amount": float(entry.amount or 0.0)},
                side_effects=(_confirm_entry,),
            )
            if updated is not None:
                return updated
            order = self.store.require(order.id, fresh=True)
            entry = self.store.payment_request(order.id, request_id)
            if entry is not None and entry.status == "confirmed":
                return order
            if order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
                raise InvalidTransition(order.status, OrderEvent.CONFIRM_PAYMENT)
            if order.status == OrderStatus.PAYMENT_REQUESTED:
                raise TransitionConflict("Order changed during payment confirmation")

        # Order is past payment_requested; only the entry moves
        try:
            applied = self.store.conditional_update(
                order.id,
                {},
                criteria=(Order.status.notin_([OrderStatus.CANCELLED, OrderStatus.REJECTED]),),
            )
            if not applied or not self._mark_entry_confirmed(order.id, request_id, confirmed_at):
                self.store.rollback()
                raise TransitionConflict("Payment request changed during confirmation")
            self.store.commit()
        except TransitionConflict:
            raise
        except Exception:
            self.store.rollback()
            raise
        return self.store.require(order.id, fresh=True)

    def update_fare(self, order: Order, amount, *, vendor_id: int) -> Order:
        if amount is None:
            raise ValidationFailed("Amount is required", details=["amount"])
        fare = validate_amount(amount)
        if (order.payment_status or "") == PAID:
            raise FareLocked("Cannot modify fare once the order is paid")
        if order.vendor_id is None or int(order.vendor_id) != int(vendor_id):
            raise VendorMismatch("Not authorized to modify fare for this order")
        try:
            applied = self.store.conditional_update(
                order.id,
                {"fare": fare},
                vendor_id=vendor_id,
                criteria=(Order.payment_status != PAID,),
            )
            if not applied:
                self.store.rollback()
                fresh = self.store.require(order.id, fresh=True)
                if (fresh.payment_status or "") == PAID:
                    raise FareLocked("Cannot modify fare once the order is paid")
                raise TransitionConflict("Order changed while updating fare")
            self.store.commit()
        except OrderError:
            raise
        except Exception:
            self.store.rollback()
            raise
        logger.info(json.dumps({"event": "order_fare_updated", "order_id": int(order.id), "fare": fare}))
        return self.store.require(order.id, fresh=True)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def earnings_summary(vendor_id: int, *, now: datetime | None = None, session=None) -> dict:
    """Totals of confirmed entries (today, month, all time) and of everything not yet confirmed."""
    store = OrderStore(session)
    now = now or datetime.utcnow()
    base = (
        store.session.query(PaymentRequest)
        .join(Order, Order.id == PaymentRequest.order_id)
        .filter(Order.vendor_id == int(vendor_id))
    )
    confirmed = base.filter(PaymentRequest.status == "confirmed")

    def _sum(q) -> float:
        value = q.with_entities(func.coalesce(func.sum(PaymentRequest.amount), 0.0)).scalar()
        return round(float(value or 0.0), 2)

    return {
        "currency": "INR",
        "total_today": _sum(confirmed.filter(PaymentRequest.confirmed_at >= _day_start(now))),
        "total_month": _sum(confirmed.filter(PaymentRequest.confirmed_at >= _month_start(now))),
        "total_all_time": _sum(confirmed),
        "pending": _sum(base.filter(PaymentRequest.status != "confirmed")),
    }


def earnings_history(vendor_id: int, *, limit: int = 50, offset: int = 0, session=None) -> dict:
    store = OrderStore(session)
    q = (
        store.session.query(PaymentRequest, Order.status)
        .join(Order, Order.id == PaymentRequest.order_id)
        .filter(Order.vendor_id == int(vendor_id), PaymentRequest.status == "confirmed")
    )
    total = q.count()
    rows = (
        q.order_by(PaymentRequest.confirmed_at.desc(), PaymentRequest.id.desc())
        .offset(int(offset))
        .limit(int(limit))
        .all()
    )
    items = []
    for entry, order_status in rows:
        row = entry.to_dict()
        row["order_id"] = int(entry.order_id)
        row["order_status"] = order_status
        items.append(row)
    return {"total": int(total), "limit": int(limit), "offset": int(offset), "items": items}
