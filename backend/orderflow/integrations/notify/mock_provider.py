from __future__ import annotations

import os

from orderflow.integrations.notify.base import Notifier, NotifyResult


class MockNotifier(Notifier):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def _force_failure(self, title: str) -> bool:
        return "[fail]" in (title or "").lower() or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def notify(self, *, recipient_type: str, recipient_id: str, title: str, body: str, data: dict | None = None) -> NotifyResult:
        if self._force_failure(title):
            return NotifyResult(ok=False, code="NOTIFY_PROVIDER_DOWN", message="mock forced failure")
        self.sent.append(
            {
                "recipient_type": recipient_type,
                "recipient_id": str(recipient_id),
                "title": title,
                "body": body,
                "data": dict(data or {}),
            }
        )
        return NotifyResult(ok=True, code="OK", message="mock_sent", raw={"recipient_id": str(recipient_id)})
