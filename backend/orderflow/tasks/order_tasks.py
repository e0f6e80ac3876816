from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from orderflow.extensions import db
from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.notify.factory import build_notifier
from orderflow.models import Notification
from orderflow.services.notify_service import deliver
from orderflow.services.otp_service import sweep_expired_challenges


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    try:
        current_app.logger.info(json.dumps(payload))
    except Exception:
        pass


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="orderflow.tasks.order_tasks.deliver_notification",
    max_retries=5,
)
def deliver_notification(self, *, notification_id: int, trace_id: str = ""):
    started = time.perf_counter()
    row = db.session.get(Notification, int(notification_id))
    if row is None:
        _task_log("deliver_notification", status="missing", started_at=started, trace_id=trace_id, notification_id=notification_id)
        return {"ok": False, "detail": "notification_not_found"}
    if row.status == "sent":
        return {"ok": True, "detail": "already_sent"}
    try:
        notifier = build_notifier(current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        notifier = None
        _task_log("deliver_notification", status="no_provider", started_at=started, trace_id=trace_id, detail=str(e))
    result = deliver(row, notifier)
    if result.ok:
        _task_log("deliver_notification", status="ok", started_at=started, trace_id=trace_id, notification_id=notification_id)
        return {"ok": True, "detail": result.code}
    if notifier is not None and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "deliver_notification",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            notification_id=notification_id,
            detail=f"{result.code}:{result.message}",
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(result.code or "notify_failed"), countdown=countdown)
    _task_log(
        "deliver_notification",
        status="failed",
        started_at=started,
        trace_id=trace_id,
        notification_id=notification_id,
        detail=f"{result.code}:{result.message}",
    )
    return {"ok": False, "detail": result.code}


@shared_task(
    bind=True,
    name="orderflow.tasks.order_tasks.sweep_expired_otp_challenges",
    max_retries=0,
)
def sweep_expired_otp_challenges(self, *, grace_seconds: int = 3600, trace_id: str = ""):
    started = time.perf_counter()
    try:
        cleared = sweep_expired_challenges(grace_seconds=grace_seconds)
    except Exception as exc:
        db.session.rollback()
        _task_log("sweep_expired_otp_challenges", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    _task_log("sweep_expired_otp_challenges", status="ok", started_at=started, trace_id=trace_id, cleared=cleared)
    return {"ok": True, "cleared": cleared}
