from __future__ import annotations

import os

from orderflow.extensions import db
from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.notify.base import Notifier
from orderflow.integrations.notify.fcm_provider import FcmNotifier, fcm_health
from orderflow.integrations.notify.mock_provider import MockNotifier
from orderflow.models import Vendor


def _vendor_tokens(vendor_id) -> list:
    try:
        vendor = db.session.get(Vendor, int(vendor_id))
    except Exception:
        return []
    return vendor.fcm_tokens() if vendor else []


def _provider_name(config) -> str:
    name = ""
    if config is not None:
        name = str(config.get("NOTIFY_PROVIDER") or "")
    return (name or os.getenv("NOTIFY_PROVIDER") or "mock").strip().lower()


def build_notifier(config=None) -> Notifier:
    provider = _provider_name(config)
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:notify")
    if provider == "mock":
        return MockNotifier()
    if provider == "fcm":
        server_key = (os.getenv("FCM_SERVER_KEY") or "").strip()
        if not server_key:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing FCM_SERVER_KEY")
        return FcmNotifier(server_key=server_key, token_lookup=_vendor_tokens)
    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:unknown provider {provider}")


def notify_health(config=None) -> dict:
    provider = _provider_name(config)
    missing = fcm_health().get("missing", []) if provider == "fcm" else []
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
