from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

EXPECTED_TASKS = (
    "orderflow.tasks.order_tasks.deliver_notification",
    "orderflow.tasks.order_tasks.sweep_expired_otp_challenges",
)


def main() -> int:
    try:
        from celery_app import celery

        # Access one config value to ensure the app object is initialized.
        _ = str(celery.conf.broker_url or "")
        celery.loader.import_default_modules()
        missing = [name for name in EXPECTED_TASKS if name not in celery.tasks]
        if missing:
            print(f"error: celery tasks not registered -> {', '.join(missing)}", file=sys.stderr)
            return 1
        print("ok: celery_app:celery import succeeded")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
