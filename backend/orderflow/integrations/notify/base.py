from __future__ import annotations

from dataclasses import dataclass


@dataclass
class NotifyResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class Notifier:
    name = "unknown"

    def notify(
        self,
        *,
        recipient_type: str,
        recipient_id: str,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> NotifyResult:
        raise NotImplementedError
