"""
Action names passed to the PERMISSION_CHECK predicate.

The authorization layer decides which users may perform which action in which
business; the engine only asks.
"""

BATCH_RECEIVE = "inventory.receive"
BATCH_CLOSE = "inventory.close_batch"
INVENTORY_RECORD = "inventory.record_movement"
INVENTORY_ADJUST = "inventory.adjust"
INVENTORY_RECONCILE = "inventory.reconcile"

ORDER_CREATE = "orders.create"
ORDER_ADVANCE = "orders.advance"
ORDER_CANCEL = "orders.cancel"

PAYMENT_APPLY = "payments.apply"
REFUND_PROCESS = "refunds.process"

ALL_ACTIONS = (
    BATCH_RECEIVE,
    BATCH_CLOSE,
    INVENTORY_RECORD,
    INVENTORY_ADJUST,
    INVENTORY_RECONCILE,
    ORDER_CREATE,
    ORDER_ADVANCE,
    ORDER_CANCEL,
    PAYMENT_APPLY,
    REFUND_PROCESS,
)
