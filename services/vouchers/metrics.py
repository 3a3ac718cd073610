"""Voucher counters."""

from prometheus_client import Counter

VOUCHER_USED_TOTAL = Counter("store_voucher_used_total", "Voucher uses counted")

VOUCHER_REJECTED_TOTAL = Counter(
    "store_voucher_rejected_total", "Voucher validations rejected", ["reason"]
)
