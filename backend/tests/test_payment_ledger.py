from __future__ import annotations

import os
import unittest

from orderflow import create_app
from orderflow.extensions import db
from orderflow.integrations.notify.mock_provider import MockNotifier
from orderflow.models import Order, PaymentRequest, Vendor
from orderflow.services.errors import TransitionConflict, ValidationFailed
from orderflow.services.notify_service import NotificationDispatcher
from orderflow.services.order_lifecycle import build_lifecycle
from orderflow.services.payment_ledger import validate_amount
from orderflow.utils.jwt_utils import create_vendor_token


def _auth(vendor_id: int) -> dict:
    return {"Authorization": f"Bearer {create_vendor_token(int(vendor_id))}"}


class PaymentLedgerTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.notifier = MockNotifier()
        cls.app.extensions["orderflow_dispatcher"] = NotificationDispatcher(cls.notifier)
        with cls.app.app_context():
            db.create_all()
            owner = Vendor(name="Ledger Owner")
            other = Vendor(name="Ledger Other")
            db.session.add_all([owner, other])
            db.session.commit()
            cls.owner_id = int(owner.id)
            cls.other_id = int(other.id)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def _order(self, status: str = "accepted", *, fare: float = 500.0, payment_status: str = "pending") -> int:
        with self.app.app_context():
            order = Order(
                customer_id="cust-ledger",
                vendor_id=self.owner_id,
                pickup_lat=28.6139,
                pickup_lng=77.209,
                pickup_address="Connaught Place",
                drop_lat=28.5355,
                drop_lng=77.391,
                drop_address="Noida Sector 18",
                items_json='[{"title": "Deep cleaning", "qty": 1, "price": 500}]',
                fare=fare,
                payment_method="cod",
                payment_status=payment_status,
                status=status,
            )
            db.session.add(order)
            db.session.commit()
            return int(order.id)

    def _request_payment(self, order_id: int, payload: dict | None = None, vendor_id: int | None = None):
        return self.client.post(
            f"/api/orders/{order_id}/payment-request",
            json=payload or {},
            headers=_auth(vendor_id or self.owner_id),
        )

    def _entries(self, order_id: int) -> list[dict]:
        with self.app.app_context():
            rows = PaymentRequest.query.filter_by(order_id=order_id).order_by(PaymentRequest.id.asc()).all()
            return [r.to_dict() for r in rows]

    def test_amount_defaults_to_fare_and_stays_fixed(self):
        order_id = self._order(fare=500.0)
        res = self._request_payment(order_id)
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["payment_request_id"])
        self.assertEqual(body["payment_request"]["amount"], 500.0)
        self.assertEqual(body["payment_request"]["status"], "requested")
        self.assertEqual(body["order"]["status"], "payment_requested")

        res = self.client.patch(f"/api/orders/{order_id}/fare", json={"amount": 650}, headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["fare"], 650.0)
        self.assertEqual([e["amount"] for e in self._entries(order_id)], [500.0])

        res = self._request_payment(order_id)
        self.assertEqual(res.status_code, 200)
        self.assertEqual([e["amount"] for e in self._entries(order_id)], [500.0, 650.0])

    def test_confirm_moves_order_and_is_idempotent(self):
        order_id = self._order()
        request_id = self._request_payment(order_id, {"amount": 420.5, "notes": "Parts included"}).get_json()["payment_request_id"]

        url = f"/api/orders/{order_id}/payment-requests/{request_id}/confirm"
        res = self.client.post(url, headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 200)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "payment_confirmed")
        entry = self._entries(order_id)[0]
        self.assertEqual(entry["status"], "confirmed")
        self.assertIsNotNone(entry["confirmed_at"])

        again = self.client.post(url, headers=_auth(self.owner_id))
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.get_json()["order"]["version"], order["version"])
        self.assertEqual(self._entries(order_id)[0]["confirmed_at"], entry["confirmed_at"])

    def test_auto_confirm_confirms_in_one_call(self):
        order_id = self._order("in_progress")
        res = self._request_payment(order_id, {"auto_confirm": True})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["order"]["status"], "payment_confirmed")
        self.assertEqual(body["payment_request"]["status"], "confirmed")
        self.assertTrue(any(s["title"] == "Payment confirmed" for s in self.notifier.sent))

    def test_completion_after_payment_confirmed(self):
        order_id = self._order("in_progress")
        self._request_payment(order_id, {"auto_confirm": True})
        res = self.client.post(f"/api/orders/{order_id}/complete", headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "completed")

    def test_paid_order_locks_fare_and_requests(self):
        order_id = self._order(payment_status="paid")
        res = self.client.patch(f"/api/orders/{order_id}/fare", json={"amount": 100}, headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "cannot_modify_fare")

        res = self._request_payment(order_id)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "order_already_paid")
        self.assertEqual(self._entries(order_id), [])

    def test_fare_update_by_other_vendor_is_forbidden(self):
        order_id = self._order()
        res = self.client.patch(f"/api/orders/{order_id}/fare", json={"amount": 100}, headers=_auth(self.other_id))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "forbidden")

    def test_payment_request_by_other_vendor_is_forbidden(self):
        order_id = self._order()
        res = self._request_payment(order_id, vendor_id=self.other_id)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(self._entries(order_id), [])

    def test_invalid_amounts_are_rejected(self):
        order_id = self._order()
        for amount in (-5, 0, True, "100", float("inf")):
            res = self._request_payment(order_id, {"amount": amount})
            self.assertEqual(res.status_code, 400, amount)
            self.assertEqual(res.get_json()["error"], "validation_error", amount)
        self.assertEqual(self._entries(order_id), [])

        res = self.client.patch(f"/api/orders/{order_id}/fare", json={}, headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 400)

    def test_completed_order_cannot_request_payment(self):
        order_id = self._order("completed")
        res = self._request_payment(order_id)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "invalid_transition")

    def test_unknown_request_id_is_not_found(self):
        order_id = self._order()
        self._request_payment(order_id)
        res = self.client.post(
            f"/api/orders/{order_id}/payment-requests/does-not-exist/confirm",
            headers=_auth(self.owner_id),
        )
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.get_json()["error"], "payment_request_not_found")

    def test_earlier_entry_confirmable_after_later_request(self):
        order_id = self._order()
        first = self._request_payment(order_id, {"amount": 100}).get_json()["payment_request_id"]
        second = self._request_payment(order_id, {"amount": 50, "currency": "usd"}).get_json()["payment_request_id"]
        fixed = [(e["id"], e["amount"], e["currency"]) for e in self._entries(order_id)]
        self.assertEqual(fixed, [(first, 100.0, "INR"), (second, 50.0, "USD")])

        res = self.client.post(f"/api/orders/{order_id}/payment-requests/{second}/confirm", headers=_auth(self.owner_id))
        self.assertEqual(res.get_json()["order"]["status"], "payment_confirmed")
        self.assertEqual([(e["id"], e["amount"], e["currency"]) for e in self._entries(order_id)], fixed)

        res = self.client.post(f"/api/orders/{order_id}/payment-requests/{first}/confirm", headers=_auth(self.owner_id))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "payment_confirmed")
        self.assertEqual([e["status"] for e in self._entries(order_id)], ["confirmed", "confirmed"])
        self.assertEqual([(e["id"], e["amount"], e["currency"]) for e in self._entries(order_id)], fixed)

    def test_fare_edit_between_read_and_append_conflicts(self):
        order_id = self._order(fare=300.0)
        with self.app.app_context():
            lifecycle = build_lifecycle(self.app)
            stale = lifecycle.store.require(order_id, fresh=True)
            db.session.expunge(stale)
            lifecycle.update_fare(order_id, self.owner_id, 450)
            with self.assertRaises(TransitionConflict):
                lifecycle.ledger.append_request(stale, vendor_id=self.owner_id)
        self.assertEqual(self._entries(order_id), [])

    def test_validate_amount_rounds_to_cents(self):
        self.assertEqual(validate_amount(19.999), 20.0)
        self.assertEqual(validate_amount(7), 7.0)
        with self.assertRaises(ValidationFailed):
            validate_amount(None)


if __name__ == "__main__":
    unittest.main()
