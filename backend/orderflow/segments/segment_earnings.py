from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from orderflow.services.errors import Unauthorized, ValidationFailed
from orderflow.services.payment_ledger import earnings_history, earnings_summary

earnings_bp = Blueprint("earnings_bp", __name__, url_prefix="/api/earnings")


def _vendor_id() -> int:
    vid = getattr(g, "auth_vendor_id", None)
    if vid is None:
        raise Unauthorized("Unauthorized")
    return int(vid)


@earnings_bp.get("/summary")
def summary():
    return jsonify({"ok": True, "summary": earnings_summary(_vendor_id())})


@earnings_bp.get("/history")
def history():
    vendor_id = _vendor_id()
    try:
        limit = int(request.args.get("limit") or 50)
        offset = int(request.args.get("offset") or 0)
    except (TypeError, ValueError):
        raise ValidationFailed("limit and offset must be integers", details=["limit", "offset"])
    page = earnings_history(vendor_id, limit=max(1, min(limit, 200)), offset=max(0, offset))
    return jsonify({"ok": True, **page})
