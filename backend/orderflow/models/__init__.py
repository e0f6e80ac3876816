from orderflow.models.vendor import Vendor
from orderflow.models.order import Order, PaymentRequest
from orderflow.models.order_transition import OrderTransition
from orderflow.models.mock_order_call import MockOrderCall
from orderflow.models.notification import Notification

__all__ = [
    "Vendor",
    "Order",
    "PaymentRequest",
    "OrderTransition",
    "MockOrderCall",
    "Notification",
]
