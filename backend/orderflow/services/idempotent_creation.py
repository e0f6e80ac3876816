from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from orderflow.models import MockOrderCall, Order
from orderflow.services.errors import OrderError, ReplayedFailure
from orderflow.services.order_creation import OrderCreator
from orderflow.services.order_store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class CreationResult:
    order: Order
    idempotent: bool = False
    original_call_at: str | None = None


def _iso(value):
    return value.isoformat() if value else None


def _normalize_key(value) -> str | None:
    key = str(value or "").strip()[:128]
    return key or None


class IdempotentOrderService:
    """Order creation keyed by a client request id, with an audit row per call.

    A successful call writes the order and its audit row in one commit, so a
    retry with the same key either sees both or neither. Every failure,
    including store errors, leaves a failed audit row that later retries
    with the same key replay.
    """

    def __init__(self, creator: OrderCreator, store: OrderStore, *, announce=None):
        self.creator = creator
        self.store = store
        self.announce = announce

    def _find_call(self, key: str) -> MockOrderCall | None:
        return (
            self.store.session.query(MockOrderCall)
            .filter(MockOrderCall.client_request_id == key)
            .populate_existing()
            .first()
        )

    def _replay(self, call: MockOrderCall) -> CreationResult | None:
        if call.order_id is None:
            raise ReplayedFailure(
                int(call.response_status or 400),
                call.error_message or "Original request failed",
                _iso(call.created_at),
            )
        order = self.store.get(call.order_id, fresh=True)
        if order is None:
            return None
        logger.info(
            json.dumps(
                {
                    "event": "mock_order_idempotent_hit",
                    "client_request_id": call.client_request_id,
                    "order_id": int(order.id),
                }
            )
        )
        return CreationResult(order=order, idempotent=True, original_call_at=_iso(call.created_at))

    def _record_failure(self, key, payload, metadata: dict, status: int, message: str, rebind: MockOrderCall | None = None) -> None:
        """Write the failed outcome so a retry with the same key replays it. Runs after rollback."""
        message = (message or "")[:500]
        try:
            if rebind is not None:
                call = self.store.session.get(MockOrderCall, rebind.id)
                if call is None:
                    return
                call.order_id = None
                call.vendor_id = None
                call.response_status = int(status)
                call.error_message = message
            else:
                self.store.add(
                    MockOrderCall(
                        client_request_id=key,
                        request_payload=json.dumps(payload, default=str),
                        order_id=None,
                        vendor_id=None,
                        ip_address=metadata.get("ip_address"),
                        user_agent=(metadata.get("user_agent") or "")[:255] or None,
                        auto_assigned=bool((payload or {}).get("auto_assign_vendor")) if isinstance(payload, dict) else False,
                        response_status=int(status),
                        error_message=message,
                    )
                )
            self.store.commit()
        except IntegrityError:
            # A concurrent call with the same key already recorded its outcome
            self.store.rollback()
        except SQLAlchemyError as e:
            self.store.rollback()
            logger.error(
                json.dumps(
                    {
                        "event": "mock_order_audit_write_failed",
                        "client_request_id": key,
                        "error": str(e)[:300],
                    }
                )
            )

    def create_or_get_order(self, payload, client_request_id=None, metadata: dict | None = None) -> CreationResult:
        metadata = dict(metadata or {})
        key = _normalize_key(client_request_id)
        rebind: MockOrderCall | None = None

        if key:
            existing = self._find_call(key)
            if existing is not None:
                replay = self._replay(existing)
                if replay is not None:
                    return replay
                logger.warning(
                    json.dumps(
                        {
                            "event": "mock_order_reference_missing",
                            "client_request_id": key,
                            "order_id": existing.order_id,
                        }
                    )
                )
                rebind = existing

        data = payload if isinstance(payload, dict) else {}
        order_meta = dict(data.get("metadata") or {}) if isinstance(data.get("metadata"), dict) else {}
        order_meta.update({"source": "mock-api", "mock_request_id": key})

        try:
            order, notices = self.creator.create(payload, metadata=order_meta)
            auto_assigned = bool(data.get("auto_assign_vendor")) and order.vendor_id is not None
            if rebind is not None:
                rebind.order_id = int(order.id)
                rebind.vendor_id = order.vendor_id
                rebind.response_status = 201
                rebind.error_message = None
                rebind.auto_assigned = auto_assigned
                self.store.add(rebind)
            else:
                self.store.add(
                    MockOrderCall(
                        client_request_id=key,
                        request_payload=json.dumps(payload, default=str),
                        order_id=int(order.id),
                        vendor_id=order.vendor_id,
                        ip_address=metadata.get("ip_address"),
                        user_agent=(metadata.get("user_agent") or "")[:255] or None,
                        auto_assigned=auto_assigned,
                        response_status=201,
                    )
                )
            self.store.commit()
        except OrderError as e:
            self.store.rollback()
            self._record_failure(key, payload, metadata, e.status_code, e.message, rebind)
            raise
        except IntegrityError as e:
            self.store.rollback()
            # Lost a race against an identical retry; hand back the winner
            winner = self._find_call(key) if key else None
            replay = self._replay(winner) if winner is not None else None
            if replay is None:
                self._record_failure(
                    key, payload, metadata, 500, f"Order creation failed ({e.__class__.__name__})", rebind
                )
                raise
            return replay
        except Exception as e:
            self.store.rollback()
            logger.error(
                json.dumps(
                    {
                        "event": "mock_order_create_failed",
                        "client_request_id": key,
                        "error": e.__class__.__name__,
                    }
                )
            )
            self._record_failure(
                key, payload, metadata, 500, f"Order creation failed ({e.__class__.__name__})", rebind
            )
            raise

        order = self.store.require(order.id, fresh=True)
        if self.announce is not None:
            self.announce(order, notices)
        return CreationResult(order=order, idempotent=False)


def mock_order_stats(session=None) -> dict:
    store = OrderStore(session)
    q = store.session.query(MockOrderCall)
    total = q.count()
    successful = q.filter(MockOrderCall.order_id.isnot(None), MockOrderCall.response_status == 201).count()
    keyed = q.filter(MockOrderCall.client_request_id.isnot(None)).count()
    latest = store.session.query(func.max(MockOrderCall.created_at)).scalar()
    return {
        "total_calls": int(total),
        "successful_calls": int(successful),
        "failed_calls": int(total - successful),
        "idempotent_calls": int(keyed),
        "last_call_at": _iso(latest),
    }
