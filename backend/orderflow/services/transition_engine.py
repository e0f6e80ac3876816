from __future__ import annotations

import json
import logging
from datetime import datetime

from orderflow.models import Order, OrderTransition
from orderflow.services.order_status import OrderStatus
from orderflow.services.order_store import OrderStore

logger = logging.getLogger(__name__)


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except Exception:
            actor_id = None
        return actor_type, actor_id
    return "system", None


def vendor_actor(vendor_id) -> dict:
    return {"type": "vendor", "id": vendor_id}


class TransitionEngine:
    """Compare-and-swap status writes for orders.

    ``try_transition`` returns the post-update order, or ``None`` when the
    precondition did not hold at write time. ``None`` is the normal outcome
    under contention; callers map it to a conflict. A write is never
    partially applied: the status change, any side effects and the
    transition log row commit together or not at all.
    """

    def __init__(self, store: OrderStore | None = None):
        self.store = store or OrderStore()

    def try_transition(
        self,
        order_id: int,
        expected_statuses,
        target_status: str,
        *,
        values: dict | None = None,
        vendor_id: int | None = None,
        expected_version: int | None = None,
        criteria=(),
        actor=None,
        reason: str = "",
        metadata: dict | None = None,
        side_effects=(),
    ) -> Order | None:
        current = self.store.get(order_id, fresh=True)
        if current is None:
            return None
        from_status = current.status
        if from_status not in set(expected_statuses):
            return None

        update = dict(values or {})
        update["status"] = target_status
        criteria = tuple(criteria or ())
        # Vendor-bound states never end up without a vendor
        if target_status in OrderStatus.VENDOR_BOUND:
            if "vendor_id" not in update:
                criteria += (Order.vendor_id.isnot(None),)
            elif update["vendor_id"] is None:
                return None
        try:
            applied = self.store.conditional_update(
                order_id,
                update,
                statuses={from_status},
                vendor_id=vendor_id,
                expected_version=expected_version,
                criteria=criteria,
            )
            if not applied:
                self.store.rollback()
                logger.info(
                    json.dumps(
                        {
                            "event": "order_transition_not_applied",
                            "order_id": int(order_id),
                            "from_status": from_status,
                            "to_status": target_status,
                            "vendor_id": vendor_id,
                        }
                    )
                )
                return None

            actor_type, actor_id = _parse_actor(actor)
            self.store.add(
                OrderTransition(
                    order_id=int(order_id),
                    from_status=from_status,
                    to_status=target_status,
                    actor_type=actor_type[:32],
                    actor_id=actor_id,
                    reason=(reason or "")[:240],
                    metadata_json=json.dumps(metadata or {}, default=str)[:4000],
                    created_at=datetime.utcnow(),
                )
            )
            for effect in side_effects or ():
                effect(int(order_id))
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return self.store.get(order_id, fresh=True)
