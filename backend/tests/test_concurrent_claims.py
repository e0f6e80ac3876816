from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest

from orderflow import create_app
from orderflow.extensions import db
from orderflow.integrations.notify.mock_provider import MockNotifier
from orderflow.models import Order, OrderTransition, Vendor
from orderflow.services.errors import ClaimConflict
from orderflow.services.notify_service import NotificationDispatcher
from orderflow.services.order_lifecycle import build_lifecycle

WORKERS = 6


class ConcurrentClaimTestCase(unittest.TestCase):
    """Racing vendors against one pending order on a file-backed database."""

    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._tmpdir = tempfile.mkdtemp(prefix="orderflow-claims-")
        db_path = os.path.join(cls._tmpdir, "claims.db").replace(os.sep, "/")
        os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{db_path}"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.app.extensions["orderflow_dispatcher"] = NotificationDispatcher(MockNotifier())
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.session.remove()
            db.engine.dispose()
        shutil.rmtree(cls._tmpdir, ignore_errors=True)
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def _seed(self) -> tuple[int, list[int]]:
        with self.app.app_context():
            vendors = [Vendor(name=f"Racer {i}") for i in range(WORKERS)]
            db.session.add_all(vendors)
            order = Order(
                customer_id=None,
                pickup_lat=19.076,
                pickup_lng=72.8777,
                pickup_address="Andheri",
                drop_lat=19.0596,
                drop_lng=72.8295,
                drop_address="Bandra",
                items_json='[{"title": "Plumbing", "qty": 1, "price": 300}]',
                fare=300.0,
                payment_method="cod",
                status="pending",
            )
            db.session.add(order)
            db.session.commit()
            return int(order.id), [int(v.id) for v in vendors]

    def test_at_most_one_vendor_claims_a_pending_order(self):
        order_id, vendor_ids = self._seed()
        barrier = threading.Barrier(len(vendor_ids))
        winners: list[int] = []
        conflicts: list[int] = []
        failures: list[BaseException] = []
        lock = threading.Lock()

        def _claim(vendor_id: int) -> None:
            with self.app.app_context():
                lifecycle = build_lifecycle(self.app)
                barrier.wait(timeout=10)
                try:
                    lifecycle.accept(order_id, vendor_id)
                    with lock:
                        winners.append(vendor_id)
                except ClaimConflict:
                    with lock:
                        conflicts.append(vendor_id)
                except BaseException as exc:
                    with lock:
                        failures.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=_claim, args=(vid,)) for vid in vendor_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(failures, [])
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(conflicts), len(vendor_ids) - 1)

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.status, "accepted")
            self.assertEqual(order.vendor_id, winners[0])
            self.assertEqual(order.version, 2)
            transitions = OrderTransition.query.filter_by(order_id=order_id).all()
            self.assertEqual(len(transitions), 1)
            self.assertEqual(transitions[0].actor_id, winners[0])


if __name__ == "__main__":
    unittest.main()
