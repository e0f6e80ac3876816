from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from orderflow.services.errors import OrderError
from orderflow.services.idempotent_creation import mock_order_stats
from orderflow.services.order_lifecycle import build_lifecycle

dev_orders_bp = Blueprint("dev_orders_bp", __name__, url_prefix="/api/dev/orders")


class DevKeyRejected(OrderError):
    status_code = 401
    code = "invalid_dev_key"


@dev_orders_bp.before_request
def _check_dev_key():
    if not bool(current_app.config.get("ENABLE_MOCK_ORDERS")):
        return jsonify({"ok": False, "error": "not_found", "message": "Not found", "status": 404}), 404
    provided = (request.headers.get("X-Dev-Key") or "").strip()
    if not provided:
        raise DevKeyRejected("Missing X-Dev-Key header", code="missing_dev_key")
    expected = str(current_app.config.get("MOCK_ORDERS_SECRET") or "")
    if not expected or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise DevKeyRejected("Invalid X-Dev-Key")
    return None


def _client_ip() -> str:
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return (forwarded or request.remote_addr or "")[:64]


@dev_orders_bp.post("/mock")
def create_mock_order():
    payload = request.get_json(silent=True)
    data = payload if isinstance(payload, dict) else {}
    client_request_id = (
        data.get("client_request_id")
        or request.headers.get("Idempotency-Key")
        or request.headers.get("X-Client-Request-Id")
    )
    result = build_lifecycle().create_order(
        payload,
        client_request_id=client_request_id,
        metadata={
            "ip_address": _client_ip(),
            "user_agent": (request.user_agent.string or "")[:255],
        },
    )
    body = {
        "ok": True,
        "idempotent": bool(result.idempotent),
        "order": result.order.to_dict(),
    }
    if result.idempotent:
        body["original_call_timestamp"] = result.original_call_at
        return jsonify(body), 200
    return jsonify(body), 201


@dev_orders_bp.get("/stats")
def mock_stats():
    return jsonify({"ok": True, "stats": mock_order_stats()})
