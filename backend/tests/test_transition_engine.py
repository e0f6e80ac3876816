from __future__ import annotations

import os
import unittest

from orderflow import create_app
from orderflow.extensions import db
from orderflow.models import Order, OrderTransition
from orderflow.services.order_store import OrderStore
from orderflow.services.transition_engine import TransitionEngine, vendor_actor


class TransitionEngineTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.store = OrderStore()
        self.engine = TransitionEngine(self.store)

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def _order(self, status: str = "pending", vendor_id: int | None = None) -> int:
        order = Order(
            vendor_id=vendor_id,
            pickup_lat=23.0225,
            pickup_lng=72.5714,
            pickup_address="Navrangpura",
            drop_lat=23.0301,
            drop_lng=72.5075,
            drop_address="Bodakdev",
            items_json="[]",
            fare=150.0,
            payment_method="wallet",
            status=status,
        )
        db.session.add(order)
        db.session.commit()
        return int(order.id)

    def test_applies_and_logs_transition(self):
        order_id = self._order("accepted", vendor_id=7)
        updated = self.engine.try_transition(
            order_id,
            {"accepted", "arrival_confirmed"},
            "in_progress",
            vendor_id=7,
            actor=vendor_actor(7),
            reason="start",
            metadata={"source": "test"},
        )
        self.assertIsNotNone(updated)
        self.assertEqual(updated.status, "in_progress")
        self.assertEqual(updated.version, 2)
        row = OrderTransition.query.filter_by(order_id=order_id).one()
        self.assertEqual((row.from_status, row.to_status), ("accepted", "in_progress"))
        self.assertEqual((row.actor_type, row.actor_id), ("vendor", 7))

    def test_returns_none_when_status_not_expected(self):
        order_id = self._order("completed", vendor_id=7)
        self.assertIsNone(self.engine.try_transition(order_id, {"accepted"}, "in_progress"))
        self.assertEqual(self.store.require(order_id, fresh=True).version, 1)

    def test_returns_none_for_wrong_vendor(self):
        order_id = self._order("accepted", vendor_id=7)
        self.assertIsNone(self.engine.try_transition(order_id, {"accepted"}, "in_progress", vendor_id=8))
        self.assertEqual(OrderTransition.query.filter_by(order_id=order_id).count(), 0)

    def test_returns_none_for_stale_version(self):
        order_id = self._order("pending")
        self.assertIsNone(self.engine.try_transition(order_id, {"pending"}, "rejected", expected_version=5))
        self.assertEqual(self.store.require(order_id, fresh=True).status, "pending")

    def test_returns_none_for_missing_order(self):
        self.assertIsNone(self.engine.try_transition(999999, {"pending"}, "accepted"))

    def test_side_effect_failure_rolls_everything_back(self):
        order_id = self._order("pending")

        def _boom(_order_id: int) -> None:
            raise RuntimeError("side effect failed")

        with self.assertRaises(RuntimeError):
            self.engine.try_transition(
                order_id,
                {"pending"},
                "accepted",
                values={"vendor_id": 4},
                side_effects=(_boom,),
            )
        order = self.store.require(order_id, fresh=True)
        self.assertEqual(order.status, "pending")
        self.assertEqual(order.version, 1)
        self.assertEqual(OrderTransition.query.filter_by(order_id=order_id).count(), 0)

    def test_vendor_bound_target_requires_a_vendor(self):
        order_id = self._order("pending")
        self.assertIsNone(self.engine.try_transition(order_id, {"pending"}, "accepted"))
        self.assertIsNone(
            self.engine.try_transition(order_id, {"pending"}, "accepted", values={"vendor_id": None})
        )
        self.assertEqual(self.store.require(order_id, fresh=True).status, "pending")

        updated = self.engine.try_transition(order_id, {"pending"}, "accepted", values={"vendor_id": 5})
        self.assertEqual((updated.status, updated.vendor_id), ("accepted", 5))

    def test_conditional_update_extra_criteria(self):
        order_id = self._order("accepted", vendor_id=3)
        applied = self.store.conditional_update(order_id, {"fare": 99.0}, criteria=(Order.payment_status == "paid",))
        self.assertFalse(applied)
        self.store.rollback()
        applied = self.store.conditional_update(order_id, {"fare": 99.0}, statuses={"accepted"}, vendor_id=3)
        self.assertTrue(applied)
        self.store.commit()
        order = self.store.require(order_id, fresh=True)
        self.assertEqual(order.fare, 99.0)
        self.assertEqual(order.version, 2)


if __name__ == "__main__":
    unittest.main()
