from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from orderflow.services.errors import Unauthorized, ValidationFailed
from orderflow.services.order_lifecycle import build_lifecycle
from orderflow.services.order_status import OrderStatus, normalize_status

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _env() -> str:
    return str(current_app.config.get("ORDERFLOW_ENV") or "dev").strip().lower()


def _vendor_id() -> int:
    vid = getattr(g, "auth_vendor_id", None)
    if vid is None:
        raise Unauthorized("Unauthorized")
    return int(vid)


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def _page_args() -> tuple[int, int]:
    try:
        limit = int(request.args.get("limit") or 50)
        offset = int(request.args.get("offset") or 0)
    except (TypeError, ValueError):
        raise ValidationFailed("limit and offset must be integers", details=["limit", "offset"])
    return max(1, min(limit, 200)), max(0, offset)


@orders_bp.get("/orders")
def list_orders():
    vendor_id = _vendor_id()
    limit, offset = _page_args()
    status = normalize_status(request.args.get("status")) or None
    if status and status not in OrderStatus.ALL:
        raise ValidationFailed("Unknown status filter", details=["status"])
    total, rows = build_lifecycle().list_for_vendor(vendor_id, status=status, limit=limit, offset=offset)
    return jsonify(
        {
            "ok": True,
            "total": int(total),
            "limit": limit,
            "offset": offset,
            "items": [o.to_dict() for o in rows],
        }
    )


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    order = build_lifecycle().get_for_vendor(order_id, _vendor_id())
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/accept")
def accept_order(order_id: int):
    order = build_lifecycle().accept(order_id, _vendor_id())
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/reject")
def reject_order(order_id: int):
    reason = str(_payload().get("reason") or "")
    order = build_lifecycle().reject(order_id, _vendor_id(), reason)
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/start")
def start_order(order_id: int):
    order = build_lifecycle().start(order_id, _vendor_id())
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/complete")
def complete_order(order_id: int):
    order = build_lifecycle().complete(order_id, _vendor_id())
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    reason = str(_payload().get("reason") or "")
    order = build_lifecycle().cancel(order_id, _vendor_id(), reason)
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/payment-request")
def create_payment_request(order_id: int):
    vendor_id = _vendor_id()
    payload = _payload()
    order, entry = build_lifecycle().request_payment(
        order_id,
        vendor_id,
        amount=payload.get("amount"),
        currency=payload.get("currency") or "INR",
        notes=str(payload.get("notes") or ""),
        auto_confirm=_parse_bool(payload.get("auto_confirm")),
    )
    return jsonify(
        {
            "ok": True,
            "payment_request_id": entry.request_id,
            "payment_request": entry.to_dict(),
            "order": order.to_dict(),
        }
    )


@orders_bp.post("/orders/<int:order_id>/payment-requests/<string:request_id>/confirm")
def confirm_payment_request(order_id: int, request_id: str):
    order = build_lifecycle().confirm_payment(order_id, request_id, _vendor_id())
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.patch("/orders/<int:order_id>/fare")
def update_fare(order_id: int):
    vendor_id = _vendor_id()
    payload = _payload()
    order = build_lifecycle().update_fare(order_id, vendor_id, payload.get("amount"))
    return jsonify({"ok": True, "fare": float(order.fare or 0.0), "order": order.to_dict()})


@orders_bp.post("/orders/<int:order_id>/request-otp")
def request_otp(order_id: int):
    vendor_id = _vendor_id()
    payload = _payload()
    order, code = build_lifecycle().request_otp(
        order_id,
        vendor_id,
        payload.get("purpose"),
        payload.get("ttl_seconds"),
    )
    body = {
        "ok": True,
        "otp_id": order.otp_id,
        "purpose": order.otp_purpose,
        "expires_at": order.otp_expires_at.isoformat() if order.otp_expires_at else None,
    }
    if _env() not in ("prod", "production"):
        body["dev_code"] = code
        current_app.logger.debug("otp_dev_code order_id=%s purpose=%s code=%s", order.id, order.otp_purpose, code)
    return jsonify(body)


@orders_bp.post("/orders/<int:order_id>/verify-otp")
def verify_otp(order_id: int):
    vendor_id = _vendor_id()
    payload = _payload()
    order = build_lifecycle().verify_otp(order_id, vendor_id, payload.get("purpose"), payload.get("otp"))
    return jsonify({"ok": True, "status": order.status, "order": order.to_dict()})
