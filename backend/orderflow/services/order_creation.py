from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone

from orderflow.integrations.locator.base import VendorLocator
from orderflow.models import Order, OrderTransition
from orderflow.services.errors import ValidationFailed, VendorNotFound
from orderflow.services.order_status import OrderStatus
from orderflow.services.order_store import OrderStore

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cod", "online", "wallet")


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(float(value))


def _parse_iso(value) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is not None:
        # Stored naive, in UTC, like every other timestamp
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _check_point(data: dict, key: str, errors: list) -> None:
    point = data.get(key)
    if not isinstance(point, dict):
        errors.append(f"{key} location is required")
        return
    lat = point.get("lat")
    lng = point.get("lng")
    if not _is_number(lat) or lat < -90 or lat > 90:
        errors.append(f"{key}.lat must be a number between -90 and 90")
    if not _is_number(lng) or lng < -180 or lng > 180:
        errors.append(f"{key}.lng must be a number between -180 and 180")
    address = point.get("address")
    if not isinstance(address, str) or not address.strip():
        errors.append(f"{key}.address is required")


def validate_order_payload(data) -> list:
    """Return the list of problems with a creation payload; empty when valid."""
    if not isinstance(data, dict):
        return ["payload must be a JSON object"]
    errors: list = []
    _check_point(data, "pickup", errors)
    _check_point(data, "drop", errors)

    items = data.get("items")
    if not isinstance(items, list) or not items:
        errors.append("items must be a non-empty array")
    else:
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                errors.append(f"items[{index}] must be an object")
                continue
            title = item.get("title")
            if not isinstance(title, str) or not title.strip():
                errors.append(f"items[{index}].title is required")
            qty = item.get("qty")
            if not _is_number(qty) or qty < 1:
                errors.append(f"items[{index}].qty must be a number >= 1")
            price = item.get("price")
            if not _is_number(price) or price < 0:
                errors.append(f"items[{index}].price must be a number >= 0")

    fare = data.get("fare")
    if not _is_number(fare) or fare < 0:
        errors.append("fare must be a number >= 0")

    if data.get("payment_method") not in PAYMENT_METHODS:
        errors.append("payment_method must be one of: cod, online, wallet")

    if data.get("scheduled_at"):
        try:
            _parse_iso(data.get("scheduled_at"))
        except (TypeError, ValueError):
            errors.append("scheduled_at must be a valid ISO-8601 date string")

    vendor_id = data.get("vendor_id")
    if vendor_id not in (None, ""):
        if isinstance(vendor_id, bool):
            errors.append("vendor_id must be an integer")
        else:
            try:
                int(vendor_id)
            except (TypeError, ValueError):
                errors.append("vendor_id must be an integer")
    return errors


class OrderCreator:
    """Builds orders from validated payloads and decides the initial assignment.

    ``create`` adds the order to the session without committing so callers
    can persist related rows in the same transaction. Vendor notices are
    returned for the caller to send after commit.
    """

    def __init__(self, store: OrderStore, locator: VendorLocator, *, search_radius_m: float = 10000):
        self.store = store
        self.locator = locator
        self.search_radius_m = float(search_radius_m)

    def create(self, data: dict, *, metadata: dict | None = None) -> tuple[Order, list]:
        errors = validate_order_payload(data)
        if errors:
            raise ValidationFailed("Validation failed", details=errors)

        explicit_vendor = data.get("vendor_id")
        explicit_vendor = int(explicit_vendor) if explicit_vendor not in (None, "") else None
        if explicit_vendor is not None and not self.locator.vendor_exists(explicit_vendor):
            raise VendorNotFound("Vendor not found")

        pickup = data["pickup"]
        drop = data["drop"]
        now = datetime.utcnow()
        order = Order(
            customer_id=str(data.get("customer_id")) if data.get("customer_id") not in (None, "") else None,
            pickup_lat=float(pickup["lat"]),
            pickup_lng=float(pickup["lng"]),
            pickup_address=pickup["address"].strip()[:255],
            drop_lat=float(drop["lat"]),
            drop_lng=float(drop["lng"]),
            drop_address=drop["address"].strip()[:255],
            items_json=json.dumps(
                [
                    {"title": item["title"].strip(), "qty": item["qty"], "price": item["price"]}
                    for item in data["items"]
                ]
            ),
            fare=float(data["fare"]),
            currency="INR",
            payment_method=data["payment_method"],
            payment_status="pending",
            status=OrderStatus.PENDING,
            version=1,
            scheduled_at=_parse_iso(data.get("scheduled_at")),
            customer_notes=str(data.get("customer_notes") or ""),
            metadata_json=json.dumps(metadata or {}, default=str),
            created_at=now,
            updated_at=now,
        )

        notices: list = []
        if explicit_vendor is not None:
            order.vendor_id = explicit_vendor
            order.status = OrderStatus.ASSIGNED
            order.assigned_at = now
            notices = [explicit_vendor]
        else:
            candidates = self.locator.find_online_vendors(order.pickup_lat, order.pickup_lng, self.search_radius_m)
            if bool(data.get("auto_assign_vendor")) and candidates:
                order.vendor_id = int(candidates[0])
                order.status = OrderStatus.ASSIGNED
                order.assigned_at = now
                notices = [int(candidates[0])]
            else:
                # Broadcast: the order stays pending until someone claims it
                notices = [int(v) for v in candidates]

        self.store.add(order)
        self.store.flush()
        self.store.add(
            OrderTransition(
                order_id=int(order.id),
                from_status="",
                to_status=order.status,
                actor_type="system",
                reason="order_created",
                metadata_json=json.dumps({"vendor_id": order.vendor_id}),
                created_at=now,
            )
        )
        logger.info(
            json.dumps(
                {
                    "event": "order_created",
                    "order_id": int(order.id),
                    "status": order.status,
                    "vendor_id": order.vendor_id,
                    "notify_vendors": len(notices),
                }
            )
        )
        return order, notices
