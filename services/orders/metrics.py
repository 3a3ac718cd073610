"""Order, top-up and webhook counters."""

from prometheus_client import Counter

ORDERS_CREATED_TOTAL = Counter(
    "store_orders_created_total", "Orders created", ["method"]
)

ORDERS_TRANSITION_TOTAL = Counter(
    "store_orders_transition_total", "Order status transitions", ["to_status"]
)

ORDERS_FULFILLED_TOTAL = Counter(
    "store_orders_fulfilled_total", "Orders whose credentials were delivered"
)

ALLOCATION_FAILED_TOTAL = Counter(
    "store_allocation_failed_total", "Paid orders that could not be allocated", ["method"]
)

REFUNDS_TOTAL = Counter("store_refunds_total", "Compensating refunds issued")

TOPUPS_TOTAL = Counter("store_topups_total", "Top-up status transitions", ["to_status"])

WEBHOOKS_TOTAL = Counter(
    "store_payment_webhooks_total", "Payment notifications received", ["outcome"]
)

LATE_PAYMENTS_TOTAL = Counter(
    "store_late_payments_total", "Confirmations arriving after expiry", ["decision"]
)
