from __future__ import annotations

import math
from datetime import datetime, timedelta

from orderflow.extensions import db
from orderflow.integrations.locator.base import VendorLocator
from orderflow.models import Vendor

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


class PresenceVendorLocator(VendorLocator):
    """Reads heartbeat presence from the vendors table."""

    name = "presence"

    def __init__(self, *, fresh_seconds: int = 300, now_fn=None):
        self.fresh_seconds = int(fresh_seconds)
        self.now_fn = now_fn or datetime.utcnow

    def find_online_vendors(self, lat: float, lng: float, max_distance_m: float = 10000) -> list[int]:
        cutoff = self.now_fn() - timedelta(seconds=self.fresh_seconds)
        rows = (
            db.session.query(Vendor.id, Vendor.last_lat, Vendor.last_lng)
            .filter(
                Vendor.is_active.is_(True),
                Vendor.online.is_(True),
                Vendor.last_seen_at >= cutoff,
                Vendor.last_lat.isnot(None),
                Vendor.last_lng.isnot(None),
            )
            .all()
        )
        ranked = []
        for vendor_id, vlat, vlng in rows:
            distance = haversine_m(float(lat), float(lng), float(vlat), float(vlng))
            if distance <= float(max_distance_m):
                ranked.append((distance, int(vendor_id)))
        ranked.sort()
        return [vendor_id for _distance, vendor_id in ranked]

    def vendor_exists(self, vendor_id: int) -> bool:
        try:
            vid = int(vendor_id)
        except (TypeError, ValueError):
            return False
        return db.session.get(Vendor, vid) is not None
