from __future__ import annotations

import json
import logging
from datetime import datetime

from orderflow.extensions import db
from orderflow.integrations.notify.base import Notifier, NotifyResult
from orderflow.models import Notification
from orderflow.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def deliver(row: Notification, notifier: Notifier | None) -> NotifyResult:
    """Send one logged notification and record the outcome on the row. Commits."""
    if notifier is None:
        result = NotifyResult(ok=False, code="INTEGRATION_DISABLED", message="no notifier configured")
    else:
        try:
            result = notifier.notify(
                recipient_type=row.recipient_type,
                recipient_id=row.recipient_id,
                title=row.title or "",
                body=row.message or "",
                data=row.data_dict(),
            )
        except Exception as e:
            result = NotifyResult(ok=False, code="NOTIFY_EXCEPTION", message=str(e)[:200])
    row.provider = getattr(notifier, "name", None) or "none"
    if result.ok:
        row.status = "sent"
        row.sent_at = datetime.utcnow()
        row.error = None
    else:
        row.status = "failed"
        row.error = f"{result.code}:{result.message}"[:240]
    db.session.add(row)
    db.session.commit()
    return result


class NotificationDispatcher:
    """Fire-and-forget delivery. Nothing raised here reaches the caller."""

    def __init__(self, notifier: Notifier | None, *, queue: bool = False):
        self.notifier = notifier
        self.queue = bool(queue)

    def send_direct(
        self,
        *,
        recipient_type: str,
        recipient_id,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> bool:
        """Deliver inline without writing the body anywhere. Used for one-time codes."""
        if self.notifier is None or recipient_id is None or str(recipient_id).strip() == "":
            return False
        try:
            result = self.notifier.notify(
                recipient_type=recipient_type,
                recipient_id=str(recipient_id),
                title=title,
                body=body,
                data=data or {},
            )
        except Exception as e:
            result = NotifyResult(ok=False, code="NOTIFY_EXCEPTION", message=str(e)[:200])
        payload = {
            "event": "notification_direct",
            "recipient_type": recipient_type,
            "recipient_id": str(recipient_id),
            "ok": bool(result.ok),
            "code": result.code,
            "trace_id": get_request_id(),
        }
        if result.ok:
            logger.info(json.dumps(payload))
        else:
            logger.warning(json.dumps(payload))
        return bool(result.ok)

    def send(
        self,
        *,
        recipient_type: str,
        recipient_id,
        title: str,
        body: str,
        data: dict | None = None,
        order_id: int | None = None,
    ) -> Notification | None:
        if recipient_id is None or str(recipient_id).strip() == "":
            return None
        trace_id = get_request_id()
        try:
            row = Notification(
                recipient_type=recipient_type,
                recipient_id=str(recipient_id),
                order_id=order_id,
                title=(title or "")[:160],
                message=body or "",
                status="queued",
                data_json=json.dumps(data or {}, default=str),
            )
            db.session.add(row)
            db.session.commit()
            if self.queue:
                from orderflow.tasks.order_tasks import deliver_notification

                deliver_notification.delay(notification_id=int(row.id), trace_id=trace_id)
                return row
            result = deliver(row, self.notifier)
            payload = {
                "event": "notification_dispatched",
                "notification_id": int(row.id),
                "recipient_type": recipient_type,
                "recipient_id": str(recipient_id),
                "order_id": order_id,
                "ok": bool(result.ok),
                "code": result.code,
                "trace_id": trace_id,
            }
            if result.ok:
                logger.info(json.dumps(payload))
            else:
                logger.warning(json.dumps(payload))
            return row
        except Exception as e:
            try:
                db.session.rollback()
            except Exception:
                pass
            logger.warning(
                json.dumps(
                    {
                        "event": "notification_dispatch_failed",
                        "recipient_type": recipient_type,
                        "recipient_id": str(recipient_id),
                        "order_id": order_id,
                        "error": str(e)[:200],
                        "trace_id": trace_id,
                    }
                )
            )
            return None
