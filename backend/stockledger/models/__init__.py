from .tenancy import Business, Supplier, Customer
from .inventory import Product, Batch, InventoryEntry, InventoryMovement
from .orders import Discount, Order, OrderItem, OrderDiscount, OrderPayment
from .refunds import Refund, RefundItem
from .audit import AuditEvent, SecurityEvent, DocumentSequence

__all__ = [
    'Business', 'Supplier', 'Customer',
    'Product', 'Batch', 'InventoryEntry', 'InventoryMovement',
    'Discount', 'Order', 'OrderItem', 'OrderDiscount', 'OrderPayment',
    'Refund', 'RefundItem',
    'AuditEvent', 'SecurityEvent', 'DocumentSequence',
]
