from __future__ import annotations

from datetime import datetime

from orderflow.extensions import db
from orderflow.models import Order, PaymentRequest
from orderflow.services.errors import OrderNotFound


class OrderStore:
    """Row access for orders. Every status or embedded-state write goes through conditional_update."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def get(self, order_id: int, *, fresh: bool = False) -> Order | None:
        try:
            oid = int(order_id)
        except Exception:
            return None
        if fresh:
            return self.session.get(Order, oid, populate_existing=True)
        return self.session.get(Order, oid)

    def require(self, order_id: int, *, fresh: bool = False) -> Order:
        order = self.get(order_id, fresh=fresh)
        if order is None:
            raise OrderNotFound("Order not found")
        return order

    def list_for_vendor(self, vendor_id: int, *, status: str | None = None, limit: int = 50, offset: int = 0):
        q = self.session.query(Order).filter(Order.vendor_id == int(vendor_id))
        if status:
            q = q.filter(Order.status == status)
        total = q.count()
        rows = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(int(offset)).limit(int(limit)).all()
        return total, rows

    def payment_request(self, order_id: int, request_id: str) -> PaymentRequest | None:
        return (
            self.session.query(PaymentRequest)
            .filter_by(order_id=int(order_id), request_id=str(request_id or ""))
            .populate_existing()
            .first()
        )

    def conditional_update(
        self,
        order_id: int,
        values: dict,
        *,
        statuses=None,
        vendor_id: int | None = None,
        expected_version: int | None = None,
        criteria=(),
    ) -> bool:
        """Apply ``values`` to one order only if every precondition holds.

        Runs as a single ``UPDATE ... WHERE`` so the check and the write cannot
        interleave with another writer. Bumps ``version``. Does not commit.
        Returns True when exactly one row matched.
        """
        q = self.session.query(Order).filter(Order.id == int(order_id))
        if statuses is not None:
            q = q.filter(Order.status.in_(sorted(set(statuses))))
        if vendor_id is not None:
            q = q.filter(Order.vendor_id == int(vendor_id))
        if expected_version is not None:
            q = q.filter(Order.version == int(expected_version))
        for clause in criteria or ():
            q = q.filter(clause)
        update = dict(values)
        update.setdefault("updated_at", datetime.utcnow())
        update["version"] = Order.version + 1
        count = q.update(update, synchronize_session=False)
        return int(count or 0) == 1

    def add(self, obj) -> None:
        self.session.add(obj)

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        try:
            self.session.rollback()
        except Exception:
            pass
