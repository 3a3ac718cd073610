"""Voucher validation and usage accounting"""

from .voucher_service import VoucherCheck, VoucherError, VoucherService, calculate_discount

__all__ = ["VoucherCheck", "VoucherError", "VoucherService", "calculate_discount"]
