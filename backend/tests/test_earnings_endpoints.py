from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta

from orderflow import create_app
from orderflow.extensions import db
from orderflow.models import Order, PaymentRequest, Vendor
from orderflow.services.payment_ledger import earnings_summary
from orderflow.utils.jwt_utils import create_vendor_token


class EarningsEndpointsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            vendor = Vendor(name="Earner")
            stranger = Vendor(name="Stranger")
            db.session.add_all([vendor, stranger])
            db.session.commit()
            cls.vendor_id = int(vendor.id)
            cls.stranger_id = int(stranger.id)

            now = datetime.utcnow()
            last_year = now - timedelta(days=400)
            cls._seed_entry(cls.vendor_id, 300.0, "confirmed", now)
            cls._seed_entry(cls.vendor_id, 200.0, "confirmed", now - timedelta(minutes=5))
            cls._seed_entry(cls.vendor_id, 1000.0, "confirmed", last_year)
            cls._seed_entry(cls.vendor_id, 75.5, "requested", None)
            cls._seed_entry(cls.stranger_id, 999.0, "confirmed", now)
            db.session.commit()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    @classmethod
    def _seed_entry(cls, vendor_id: int, amount: float, status: str, confirmed_at):
        order = Order(
            vendor_id=vendor_id,
            pickup_lat=17.385,
            pickup_lng=78.4867,
            pickup_address="Banjara Hills",
            drop_lat=17.4435,
            drop_lng=78.3772,
            drop_address="Gachibowli",
            items_json="[]",
            fare=amount,
            payment_method="cod",
            status="payment_confirmed" if status == "confirmed" else "payment_requested",
        )
        db.session.add(order)
        db.session.flush()
        db.session.add(
            PaymentRequest(
                order_id=int(order.id),
                request_id=f"pr-{int(order.id)}",
                amount=amount,
                currency="INR",
                status=status,
                confirmed_at=confirmed_at,
            )
        )

    def _auth(self, vendor_id: int) -> dict:
        return {"Authorization": f"Bearer {create_vendor_token(vendor_id)}"}

    def test_summary_totals(self):
        res = self.client.get("/api/earnings/summary", headers=self._auth(self.vendor_id))
        self.assertEqual(res.status_code, 200)
        summary = res.get_json()["summary"]
        self.assertEqual(summary["currency"], "INR")
        self.assertEqual(summary["total_all_time"], 1500.0)
        self.assertEqual(summary["pending"], 75.5)
        self.assertGreaterEqual(summary["total_month"], summary["total_today"])
        self.assertLessEqual(summary["total_month"], 500.0)

    def test_summary_windows_with_fixed_clock(self):
        with self.app.app_context():
            far_future = datetime.utcnow() + timedelta(days=800)
            summary = earnings_summary(self.vendor_id, now=far_future)
            self.assertEqual(summary["total_today"], 0.0)
            self.assertEqual(summary["total_month"], 0.0)
            self.assertEqual(summary["total_all_time"], 1500.0)

    def test_history_lists_confirmed_entries_newest_first(self):
        res = self.client.get("/api/earnings/history?limit=2", headers=self._auth(self.vendor_id))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["total"], 3)
        self.assertEqual([item["amount"] for item in body["items"]], [300.0, 200.0])
        self.assertTrue(all(item["order_status"] == "payment_confirmed" for item in body["items"]))

        res = self.client.get("/api/earnings/history?limit=2&offset=2", headers=self._auth(self.vendor_id))
        self.assertEqual([item["amount"] for item in res.get_json()["items"]], [1000.0])

    def test_requires_vendor_token(self):
        self.assertEqual(self.client.get("/api/earnings/summary").status_code, 401)
        self.assertEqual(self.client.get("/api/earnings/history").status_code, 401)


if __name__ == "__main__":
    unittest.main()
