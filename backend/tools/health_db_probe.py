from __future__ import annotations

import sys
from pathlib import Path

from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from orderflow import create_app  # noqa: E402
from orderflow.extensions import db  # noqa: E402

REQUIRED_TABLES = (
    "vendors",
    "orders",
    "order_payment_requests",
    "order_transitions",
    "mock_order_calls",
    "notifications",
)


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except Exception:
        return "unknown"


def main() -> int:
    app = create_app()
    with app.app_context():
        uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        print("SQLALCHEMY_DATABASE_URI:", _safe_uri(uri))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print("SELECT 1: success")
        except Exception as e:
            print("SELECT 1: fail")
            msg = str(e)
            if msg:
                msg = (msg[:300] + "...") if len(msg) > 300 else msg
                print("error:", msg)
            return 1

        existing = set(inspect(db.engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            print("missing tables:", ", ".join(missing))
            return 2
        print("tables: ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
