from __future__ import annotations


class OrderStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ARRIVAL_CONFIRMED = "arrival_confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    ALL = (
        PENDING,
        ASSIGNED,
        ACCEPTED,
        IN_PROGRESS,
        PAYMENT_REQUESTED,
        PAYMENT_CONFIRMED,
        ARRIVAL_CONFIRMED,
        COMPLETED,
        CANCELLED,
        REJECTED,
    )
    TERMINAL = {COMPLETED, CANCELLED, REJECTED}
    # A vendor must be bound to the order in these states
    VENDOR_BOUND = {
        ASSIGNED,
        ACCEPTED,
        IN_PROGRESS,
        PAYMENT_REQUESTED,
        PAYMENT_CONFIRMED,
        ARRIVAL_CONFIRMED,
        COMPLETED,
    }


class OrderEvent:
    ACCEPT = "accept"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    VERIFY_ARRIVAL = "verify_arrival"
    VERIFY_COMPLETION = "verify_completion"
    REQUEST_PAYMENT = "request_payment"
    CONFIRM_PAYMENT = "confirm_payment"

    # event -> (valid source states, target state)
    TRANSITIONS = {
        ACCEPT: ({OrderStatus.PENDING, OrderStatus.ASSIGNED}, OrderStatus.ACCEPTED),
        START: ({OrderStatus.ACCEPTED, OrderStatus.ARRIVAL_CONFIRMED}, OrderStatus.IN_PROGRESS),
        COMPLETE: ({OrderStatus.IN_PROGRESS, OrderStatus.PAYMENT_CONFIRMED}, OrderStatus.COMPLETED),
        CANCEL: (
            {OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS, OrderStatus.ARRIVAL_CONFIRMED},
            OrderStatus.CANCELLED,
        ),
        VERIFY_ARRIVAL: ({OrderStatus.ACCEPTED}, OrderStatus.ARRIVAL_CONFIRMED),
        VERIFY_COMPLETION: (
            {
                OrderStatus.ACCEPTED,
                OrderStatus.IN_PROGRESS,
                OrderStatus.ARRIVAL_CONFIRMED,
                OrderStatus.PAYMENT_CONFIRMED,
            },
            OrderStatus.COMPLETED,
        ),
        REQUEST_PAYMENT: (
            {
                OrderStatus.ASSIGNED,
                OrderStatus.ACCEPTED,
                OrderStatus.IN_PROGRESS,
                OrderStatus.ARRIVAL_CONFIRMED,
                OrderStatus.PAYMENT_REQUESTED,
                OrderStatus.PAYMENT_CONFIRMED,
            },
            OrderStatus.PAYMENT_REQUESTED,
        ),
        CONFIRM_PAYMENT: ({OrderStatus.PAYMENT_REQUESTED}, OrderStatus.PAYMENT_CONFIRMED),
    }

    @classmethod
    def sources(cls, event: str) -> set:
        return set(cls.TRANSITIONS[event][0])

    @classmethod
    def target(cls, event: str) -> str:
        return cls.TRANSITIONS[event][1]


class OtpPurpose:
    ARRIVAL = "arrival"
    COMPLETION = "completion"

    ALL = (ARRIVAL, COMPLETION)
    EVENTS = {
        ARRIVAL: OrderEvent.VERIFY_ARRIVAL,
        COMPLETION: OrderEvent.VERIFY_COMPLETION,
    }


def normalize_status(value: str | None) -> str:
    status = (value or "").strip().lower()
    # Older clients send "started"
    if status == "started":
        return OrderStatus.IN_PROGRESS
    return status
