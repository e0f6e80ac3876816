from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta

from orderflow import create_app
from orderflow.extensions import db
from orderflow.integrations.notify.mock_provider import MockNotifier
from orderflow.models import Notification, Order, Vendor
from orderflow.services.notify_service import NotificationDispatcher
from orderflow.services.otp_service import code_matches, generate_code, hash_code, sweep_expired_challenges
from orderflow.utils.jwt_utils import create_vendor_token


class _Clock:
    def __init__(self):
        self.now = datetime.utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _auth(vendor_id: int) -> dict:
    return {"Authorization": f"Bearer {create_vendor_token(int(vendor_id))}"}


class OtpChallengeTestCase(unittest.TestCase):
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
            owner = Vendor(name="OTP Owner")
            other = Vendor(name="OTP Other")
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

    def setUp(self):
        self.clock = _Clock()
        self.app.extensions["orderflow_clock"] = self.clock
        self.app.config["ORDERFLOW_ENV"] = "test"

    def _order(self, status: str = "accepted") -> int:
        with self.app.app_context():
            order = Order(
                customer_id="cust-otp",
                vendor_id=self.owner_id,
                pickup_lat=13.0827,
                pickup_lng=80.2707,
                pickup_address="T Nagar",
                drop_lat=13.0674,
                drop_lng=80.2376,
                drop_address="Vadapalani",
                items_json='[{"title": "Electrician visit", "qty": 1, "price": 250}]',
                fare=250.0,
                payment_method="cod",
                status=status,
            )
            db.session.add(order)
            db.session.commit()
            return int(order.id)

    def _request(self, order_id: int, purpose: str = "arrival", **extra):
        payload = {"purpose": purpose}
        payload.update(extra)
        return self.client.post(f"/api/orders/{order_id}/request-otp", json=payload, headers=_auth(self.owner_id))

    def _verify(self, order_id: int, code: str, purpose: str = "arrival", vendor_id: int | None = None):
        return self.client.post(
            f"/api/orders/{order_id}/verify-otp",
            json={"otp": code, "purpose": purpose},
            headers=_auth(vendor_id or self.owner_id),
        )

    def _wrong(self, code: str) -> str:
        return "000000" if code != "000000" else "111111"

    def test_arrival_code_verifies_once(self):
        order_id = self._order()
        res = self._request(order_id)
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["otp_id"])
        self.assertEqual(body["purpose"], "arrival")
        code = body["dev_code"]
        self.assertEqual(len(code), 6)
        self.assertTrue(code.isdigit())

        res = self._verify(order_id, code)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["status"], "arrival_confirmed")

        replay = self._verify(order_id, code)
        self.assertEqual(replay.status_code, 400)
        self.assertEqual(replay.get_json()["error"], "no_challenge")

    def test_code_goes_to_customer_and_is_not_persisted(self):
        order_id = self._order()
        before = len(self.notifier.sent)
        code = self._request(order_id).get_json()["dev_code"]
        sent = self.notifier.sent[before:]
        self.assertTrue(any(s["recipient_id"] == "cust-otp" and code in s["body"] for s in sent))
        with self.app.app_context():
            rows = Notification.query.filter_by(order_id=order_id).all()
            self.assertFalse(any(code in (r.message or "") for r in rows))
            order = db.session.get(Order, order_id)
            self.assertNotIn(code, order.otp_code_hash)
            self.assertTrue(code_matches(code, order.otp_code_hash, self.app.config["SECRET_KEY"]))

        res = self.client.get(f"/api/orders/{order_id}", headers=_auth(self.owner_id))
        self.assertNotIn("otp_code_hash", res.get_data(as_text=True))
        self.assertEqual(res.get_json()["order"]["otp"]["purpose"], "arrival")

    def test_wrong_code_counts_attempts(self):
        order_id = self._order()
        code = self._request(order_id).get_json()["dev_code"]
        res = self._verify(order_id, self._wrong(code))
        self.assertEqual(res.status_code, 401)
        body = res.get_json()
        self.assertEqual(body["error"], "invalid")
        self.assertEqual(body["attempts_remaining"], 4)

    def test_attempt_ceiling_blocks_correct_code(self):
        order_id = self._order()
        code = self._request(order_id).get_json()["dev_code"]
        for _ in range(5):
            self.assertEqual(self._verify(order_id, self._wrong(code)).status_code, 401)
        res = self._verify(order_id, code)
        self.assertEqual(res.status_code, 429)
        self.assertEqual(res.get_json()["error"], "too_many_attempts")
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "accepted")

    def test_expired_code_is_gone(self):
        order_id = self._order()
        code = self._request(order_id, ttl_seconds=60).get_json()["dev_code"]
        self.clock.advance(61)
        res = self._verify(order_id, code)
        self.assertEqual(res.status_code, 410)
        self.assertEqual(res.get_json()["error"], "expired")

        fresh = self._request(order_id)
        self.assertEqual(fresh.status_code, 200)

    def test_purpose_mismatch(self):
        order_id = self._order()
        code = self._request(order_id, "arrival").get_json()["dev_code"]
        res = self._verify(order_id, code, purpose="completion")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "purpose_mismatch")

    def test_active_challenge_blocks_new_request(self):
        order_id = self._order()
        self.assertEqual(self._request(order_id).status_code, 200)
        res = self._request(order_id)
        self.assertEqual(res.status_code, 429)
        body = res.get_json()
        self.assertEqual(body["error"], "otp_already_sent")
        self.assertTrue(body["expires_at"])

    def test_missing_challenge(self):
        order_id = self._order()
        res = self._verify(order_id, "123456")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "no_challenge")

    def test_completion_code_completes_order(self):
        order_id = self._order("in_progress")
        code = self._request(order_id, "completion").get_json()["dev_code"]
        res = self._verify(order_id, code, purpose="completion")
        self.assertEqual(res.status_code, 200)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "completed")
        self.assertIsNotNone(order["completed_at"])

    def test_arrival_not_allowed_once_work_started(self):
        order_id = self._order("in_progress")
        res = self._request(order_id, "arrival")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "invalid_transition")

    def test_other_vendor_cannot_request_or_verify(self):
        order_id = self._order()
        res = self.client.post(
            f"/api/orders/{order_id}/request-otp",
            json={"purpose": "arrival"},
            headers=_auth(self.other_id),
        )
        self.assertEqual(res.status_code, 403)
        code = self._request(order_id).get_json()["dev_code"]
        self.assertEqual(self._verify(order_id, code, vendor_id=self.other_id).status_code, 403)

    def test_bad_inputs(self):
        order_id = self._order()
        self.assertEqual(self._request(order_id, "departure").status_code, 400)
        self.assertEqual(self._request(order_id, ttl_seconds=0).status_code, 400)
        self.assertEqual(self._request(order_id, ttl_seconds=3601).status_code, 400)
        res = self._verify(order_id, "")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["details"], ["otp"])

    def test_production_hides_dev_code(self):
        self.app.config["ORDERFLOW_ENV"] = "production"
        order_id = self._order()
        res = self._request(order_id)
        self.assertEqual(res.status_code, 200)
        self.assertNotIn("dev_code", res.get_json())

    def test_sweep_clears_stale_unverified_challenges(self):
        order_id = self._order()
        self._request(order_id, ttl_seconds=1)
        with self.app.app_context():
            cleared = sweep_expired_challenges(grace_seconds=0, now=self.clock.now + timedelta(seconds=5))
            self.assertGreaterEqual(cleared, 1)
            order = db.session.get(Order, order_id)
            self.assertIsNone(order.otp_id)
            self.assertIsNone(order.otp_code_hash)

    def test_sweep_clears_challenges_on_ended_orders(self):
        order_id = self._order()
        self._request(order_id, ttl_seconds=600)
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertTrue(order.has_challenge())
            order.status = "cancelled"
            db.session.commit()
            sweep_expired_challenges(grace_seconds=3600, now=self.clock.now)
            order = db.session.get(Order, order_id)
            db.session.refresh(order)
            self.assertIsNone(order.otp_id)
            self.assertFalse(order.has_challenge())


class OtpHashingTestCase(unittest.TestCase):
    def test_generate_code_length(self):
        for length in (4, 6, 8):
            code = generate_code(length)
            self.assertEqual(len(code), length)
            self.assertTrue(code.isdigit())

    def test_hash_is_salted(self):
        first = hash_code("123456", "secret")
        second = hash_code("123456", "secret")
        self.assertNotEqual(first, second)
        self.assertTrue(code_matches("123456", first, "secret"))
        self.assertFalse(code_matches("123456", first, "other-secret"))
        self.assertFalse(code_matches("654321", first, "secret"))
        self.assertFalse(code_matches("123456", "", "secret"))


if __name__ == "__main__":
    unittest.main()
