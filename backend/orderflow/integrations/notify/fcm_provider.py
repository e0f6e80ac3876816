from __future__ import annotations

import os

import requests

from orderflow.integrations.notify.base import Notifier, NotifyResult


FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"


def _map_fcm_error(status: int) -> str:
    if status in (401, 403):
        return "FCM_AUTH_FAILED"
    if status == 429:
        return "FCM_RATE_LIMITED"
    if status >= 500:
        return "FCM_PROVIDER_DOWN"
    return "FCM_REJECTED"


class FcmNotifier(Notifier):
    """Push delivery to vendor devices. Customer pushes belong to the customer backend."""

    name = "fcm"

    def __init__(self, *, server_key: str, token_lookup):
        self.server_key = server_key
        self.token_lookup = token_lookup

    def notify(self, *, recipient_type: str, recipient_id: str, title: str, body: str, data: dict | None = None) -> NotifyResult:
        if recipient_type != "vendor":
            return NotifyResult(ok=False, code="FCM_UNSUPPORTED_RECIPIENT", message=recipient_type)
        tokens = list(self.token_lookup(recipient_id) or [])
        if not tokens:
            return NotifyResult(ok=False, code="FCM_NO_TOKENS", message="no device tokens")
        payload = {
            "registration_ids": tokens,
            "notification": {"title": title, "body": body},
            # FCM data values must be strings
            "data": {k: str(v) for k, v in (data or {}).items() if v is not None},
        }
        headers = {"Authorization": f"key={self.server_key}", "Content-Type": "application/json"}
        try:
            r = requests.post(FCM_SEND_URL, json=payload, headers=headers, timeout=10)
            data_out = r.json() if r.content else {}
            if 200 <= r.status_code < 300:
                failures = int((data_out or {}).get("failure", 0) or 0) if isinstance(data_out, dict) else 0
                if failures and failures >= len(tokens):
                    return NotifyResult(ok=False, code="FCM_ALL_TOKENS_FAILED", message="all tokens rejected", raw=data_out)
                return NotifyResult(ok=True, code="OK", message="sent", raw=data_out if isinstance(data_out, dict) else {"payload": data_out})
            return NotifyResult(
                ok=False,
                code=_map_fcm_error(r.status_code),
                message=f"http_{r.status_code}",
                raw=data_out if isinstance(data_out, dict) else {"payload": data_out},
            )
        except requests.Timeout:
            return NotifyResult(ok=False, code="FCM_PROVIDER_DOWN", message="timeout")
        except Exception as e:
            return NotifyResult(ok=False, code="FCM_PROVIDER_DOWN", message=str(e)[:200])


def fcm_health() -> dict:
    missing = []
    if not (os.getenv("FCM_SERVER_KEY") or "").strip():
        missing.append("FCM_SERVER_KEY")
    return {"missing": missing}
