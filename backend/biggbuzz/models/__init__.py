from .subscribers import Subscriber, PendingRegistration, OtpEntry, Operator
from .catalog import Product, Cart, CartItem
from .orders import (
    Order,
    OrderItem,
    OrderStatusHistory,
    TokenTransaction,
    DocumentSequence,
    ORDER_STATUSES,
    PAYMENT_METHODS,
    DELIVERY_METHODS,
    TOKEN_TRANSACTION_TYPES,
)
from .compliance import ComplianceEvent

__all__ = [
    'Subscriber', 'PendingRegistration', 'OtpEntry', 'Operator',
    'Product', 'Cart', 'CartItem',
    'Order', 'OrderItem', 'OrderStatusHistory', 'TokenTransaction', 'DocumentSequence',
    'ORDER_STATUSES', 'PAYMENT_METHODS', 'DELIVERY_METHODS', 'TOKEN_TRANSACTION_TYPES',
    'ComplianceEvent',
]
