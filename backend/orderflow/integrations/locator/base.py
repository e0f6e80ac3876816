from __future__ import annotations


class VendorLocator:
    name = "unknown"

    def find_online_vendors(self, lat: float, lng: float, max_distance_m: float = 10000) -> list[int]:
        """Vendor ids that are online near the point, nearest first."""
        raise NotImplementedError

    def vendor_exists(self, vendor_id: int) -> bool:
        raise NotImplementedError


class StaticVendorLocator(VendorLocator):
    """Fixed answers, for tests and local smoke runs."""

    name = "static"

    def __init__(self, online: list[int] | None = None, known: list[int] | None = None):
        self.online = [int(v) for v in (online or [])]
        self.known = {int(v) for v in (known or [])} | set(self.online)

    def find_online_vendors(self, lat: float, lng: float, max_distance_m: float = 10000) -> list[int]:
        return list(self.online)

    def vendor_exists(self, vendor_id: int) -> bool:
        try:
            return int(vendor_id) in self.known
        except Exception:
            return False
