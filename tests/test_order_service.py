"""
Order lifecycle: checkout, confirmation, compensation and cancellation
"""

import re
from datetime import datetime, timedelta

import pytest

from core.config import settings
from database.models import PaymentStatus
from database.repos import CredentialRepository, OrderRepository
from services.orders.exceptions import (
    InsufficientBalanceError,
    InvalidOrderStateError,
    InvalidVoucherError,
    OrderNotFoundError,
    OutOfStockError,
    PaymentGatewayError,
)
from services.orders.order_service import (
    OUT_OF_STOCK_REFUNDED,
    REFUNDED_MESSAGE,
    Buyer,
    generate_order_ref,
)
from services.vouchers import VoucherService

BUYER = Buyer(user_id=42, username="budi", chat_id=42)


def _no_stock(*args, **kwargs):
    return []


def test_order_ref_format():
    ref = generate_order_ref(now_ms=1_700_000_000_000)
    assert re.fullmatch(r"ORD-[0-9A-Z]{8}[0-9A-Z]{4}", ref)
    assert generate_order_ref() != generate_order_ref()


class TestQuote:
    def test_quantity_is_clamped_to_stock(self, container, make_product):
        product = make_product(stock=3)

        quote = container.orders.quote(product.id, 10)

        assert quote.quantity == 3
        assert quote.clamped
        assert quote.subtotal == 75_000

    def test_bad_voucher_is_reported_not_raised(self, container, make_product):
        product = make_product()

        quote = container.orders.quote(product.id, 1, "NOPE")

        assert quote.voucher_error == "Kode voucher tidak ditemukan"
        assert quote.discount == 0
        assert quote.final_price == 25_000

    def test_percentage_voucher(self, container, make_product):
        product = make_product()
        VoucherService.create("HEMAT10", "percentage", 10)

        quote = container.orders.quote(product.id, 2, "hemat10")

        assert quote.discount == 5_000
        assert quote.final_price == 45_000
        assert quote.voucher_code == "HEMAT10"

    def test_no_stock_raises(self, container, make_product):
        product = make_product(stock=0)

        with pytest.raises(OutOfStockError):
            container.orders.quote(product.id, 1)


class TestBalanceCheckout:
    @pytest.mark.asyncio
    async def test_happy_path(self, container, make_product, notifier):
        product = make_product(stock=5)
        container.ledger.credit(42, 100_000, "Top up")

        result = await container.orders.checkout_balance(BUYER, product.id, 2)

        assert result.order.payment_status == PaymentStatus.PAID.value
        assert result.order.fulfilled_at is not None
        assert result.new_balance == 50_000
        assert len(result.credentials) == 2
        assert result.delivered is True
        assert "pass0" in notifier.deliveries[0]["text"]
        assert notifier.deliveries[0]["file_name"] == f"akun_{result.order.order_ref}.txt"
        assert CredentialRepository.get_stock_sync(product.id) == 3
        assert container.ledger.is_consistent(42)

    @pytest.mark.asyncio
    async def test_insufficient_balance_creates_nothing(self, container, make_product):
        product = make_product()
        container.ledger.credit(42, 10_000, "Top up")

        with pytest.raises(InsufficientBalanceError) as exc:
            await container.orders.checkout_balance(BUYER, product.id, 1)

        assert exc.value.balance == 10_000
        assert exc.value.required == 25_000
        assert container.orders.list_user_orders(42) == []
        assert CredentialRepository.get_stock_sync(product.id) == 5

    @pytest.mark.asyncio
    async def test_requested_more_than_stock(self, container, make_product):
        product = make_product(stock=1)
        container.ledger.credit(42, 100_000, "Top up")

        with pytest.raises(OutOfStockError):
            await container.orders.checkout_balance(BUYER, product.id, 2)

    @pytest.mark.asyncio
    async def test_allocation_failure_refunds(self, container, make_product, notifier, monkeypatch):
        product = make_product(stock=1)
        container.ledger.credit(42, 100_000, "Top up")
        monkeypatch.setattr(CredentialRepository, "allocate_sync", _no_stock)

        with pytest.raises(OutOfStockError) as exc:
            await container.orders.checkout_balance(BUYER, product.id, 1)

        assert exc.value.user_message == REFUNDED_MESSAGE
        order = container.orders.list_user_orders(42)[0]
        assert order.payment_status == PaymentStatus.CANCELLED.value
        assert order.cancel_reason == OUT_OF_STOCK_REFUNDED
        assert container.ledger.get_balance(42) == 100_000
        assert [tx.type for tx in container.ledger.history(42)] == ["refund", "payment", "topup"]
        assert container.ledger.is_consistent(42)
        assert "ORDER GAGAL DIPENUHI" in notifier.alerts[0]

    @pytest.mark.asyncio
    async def test_second_buyer_loses_last_unit_at_allocation(self, container, make_product, monkeypatch):
        product = make_product(stock=1)
        rival = Buyer(user_id=43, username="sari", chat_id=43)
        container.ledger.credit(42, 100_000, "Top up")
        container.ledger.credit(43, 100_000, "Top up")
        real_stock = CredentialRepository.get_stock_sync

        first = await container.orders.checkout_balance(BUYER, product.id, 1)
        # the rival read the stock before the first allocation committed
        monkeypatch.setattr(CredentialRepository, "get_stock_sync", lambda product_id: 1)

        with pytest.raises(OutOfStockError) as exc:
            await container.orders.checkout_balance(rival, product.id, 1)

        assert exc.value.user_message == REFUNDED_MESSAGE
        lost = container.orders.list_user_orders(43)[0]
        assert OrderRepository.get_by_id_sync(first.order.id).payment_status == PaymentStatus.PAID.value
        assert lost.payment_status == PaymentStatus.CANCELLED.value
        assert lost.cancel_reason == OUT_OF_STOCK_REFUNDED
        assert real_stock(product.id) == 0
        assert len(CredentialRepository.get_by_order_sync(first.order.id)) == 1
        assert CredentialRepository.get_by_order_sync(lost.id) == []
        assert container.ledger.get_balance(43) == 100_000
        assert container.ledger.is_consistent(43)
        assert container.ledger.get_balance(42) == 75_000

    @pytest.mark.asyncio
    async def test_rejected_voucher_fails_checkout(self, container, make_product):
        product = make_product()
        container.ledger.credit(42, 100_000, "Top up")
        VoucherService.create("BESAR", "fixed", 5_000, min_purchase=100_000)

        with pytest.raises(InvalidVoucherError) as exc:
            await container.orders.checkout_balance(BUYER, product.id, 1, "BESAR")

        assert "Minimal order" in exc.value.user_message

    @pytest.mark.asyncio
    async def test_voucher_is_redeemed(self, container, make_product):
        product = make_product()
        container.ledger.credit(42, 100_000, "Top up")
        VoucherService.create("POTONG", "fixed", 5_000)

        result = await container.orders.checkout_balance(BUYER, product.id, 1, "POTONG")

        assert result.order.total_price == 20_000
        assert result.order.discount_amount == 5_000
        assert VoucherService.list_all()[0].used_count == 1


class TestQrisCheckout:
    @pytest.mark.asyncio
    async def test_creates_pending_order_and_sends_qr(self, container, make_product, gateway, notifier):
        product = make_product()

        result = await container.orders.checkout_qris(BUYER, product.id, 1, notes="tolong cepat")

        order = OrderRepository.get_by_id_sync(result.order.id)
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.amount_to_pay == 25_127
        assert order.gateway_transaction_id == gateway.charges[0]["charge"].charge_id
        assert order.qr_message_id == result.qr_message_id
        assert order.notes == "tolong cepat"
        keyboard = notifier.photos[0]["reply_markup"]["inline_keyboard"]
        assert keyboard[0][0]["callback_data"] == f"cancel_order:{order.id}"
        assert "Rp 25.127" in notifier.photos[0]["caption"]

    @pytest.mark.asyncio
    async def test_gateway_failure_persists_nothing(self, container, make_product, gateway):
        product = make_product()
        gateway.fail_create = True

        with pytest.raises(PaymentGatewayError):
            await container.orders.checkout_qris(BUYER, product.id, 1)

        assert container.orders.list_user_orders(42) == []

    @pytest.mark.asyncio
    async def test_voucher_lost_before_charge_creates_nothing(
        self, container, make_product, gateway, monkeypatch
    ):
        product = make_product()
        VoucherService.create("DISKON10", "percentage", 10)
        # another buyer took the last use between quote and redeem
        monkeypatch.setattr(VoucherService, "redeem", lambda voucher_id: False)

        with pytest.raises(InvalidVoucherError):
            await container.orders.checkout_qris(BUYER, product.id, 1, "DISKON10")

        assert gateway.charges == []
        assert container.orders.list_user_orders(42) == []

    @pytest.mark.asyncio
    async def test_gateway_failure_gives_voucher_use_back(self, container, make_product, gateway):
        product = make_product()
        VoucherService.create("HEMAT", "fixed", 5_000, max_uses=1)
        gateway.fail_create = True

        with pytest.raises(PaymentGatewayError):
            await container.orders.checkout_qris(BUYER, product.id, 1, "HEMAT")

        assert VoucherService.list_all()[0].used_count == 0

        gateway.fail_create = False
        result = await container.orders.checkout_qris(BUYER, product.id, 1, "HEMAT")

        assert result.order.discount_amount == 5_000
        assert VoucherService.list_all()[0].used_count == 1

    @pytest.mark.asyncio
    async def test_free_order_settles_without_charge(self, container, make_product, gateway):
        product = make_product()
        VoucherService.create("GRATIS", "percentage", 100)

        result = await container.orders.checkout_qris(BUYER, product.id, 1, "GRATIS")

        assert gateway.charges == []
        assert result.order.payment_method == "balance"
        assert result.order.payment_status == PaymentStatus.PAID.value
        assert result.order.total_price == 0
        assert container.ledger.history(42) == []


class TestConfirmPayment:
    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, container, make_product, notifier):
        product = make_product(stock=3)
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)

        first = await container.orders.confirm_payment(checkout.order.id)
        second = await container.orders.confirm_payment(checkout.order.id, source="poll")

        assert first.applied and first.fulfilled
        assert first.order.fulfilled_at is not None
        assert second.applied is False
        assert second.reason == "already_paid"
        assert len(notifier.deliveries) == 1
        assert CredentialRepository.get_stock_sync(product.id) == 2
        assert (42, checkout.qr_message_id) in notifier.deleted

    @pytest.mark.asyncio
    async def test_late_payment_accepted(self, container, make_product, monkeypatch):
        monkeypatch.setattr(settings, "LATE_PAYMENT_POLICY", "accept")
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)
        await container.orders.expire(checkout.order.id)

        result = await container.orders.confirm_payment(checkout.order.id)

        assert result.applied
        assert result.order.payment_status == PaymentStatus.PAID.value

    @pytest.mark.asyncio
    async def test_late_payment_rejected(self, container, make_product, notifier, monkeypatch):
        monkeypatch.setattr(settings, "LATE_PAYMENT_POLICY", "reject")
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)
        await container.orders.expire(checkout.order.id)

        result = await container.orders.confirm_payment(checkout.order.id)

        assert result.applied is False
        assert result.reason == "late_payment_rejected"
        assert result.order.payment_status == PaymentStatus.EXPIRED.value
        assert "TERLAMBAT" in notifier.alerts[-1]
        assert notifier.deliveries == []

    @pytest.mark.asyncio
    async def test_cancelled_order_is_not_paid(self, container, make_product):
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)
        await container.orders.cancel(checkout.order.id, buyer_id=42)

        result = await container.orders.confirm_payment(checkout.order.id)

        assert result.applied is False
        assert result.reason == "already_cancelled"

    @pytest.mark.asyncio
    async def test_paid_but_no_stock_refunds_to_balance(self, container, make_product, notifier, monkeypatch):
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)
        monkeypatch.setattr(CredentialRepository, "allocate_sync", _no_stock)

        result = await container.orders.confirm_payment(checkout.order.id)

        assert result.applied is True
        assert result.fulfilled is False
        assert result.order.payment_status == PaymentStatus.CANCELLED.value
        # refund covers the unique digits the buyer actually transferred
        assert container.ledger.get_balance(42) == 25_127
        assert container.ledger.history(42)[0].amount == 25_127
        assert "stok sudah habis" in notifier.messages[-1]["text"]
        assert "Rp 25.127" in notifier.messages[-1]["text"]
        assert any("Rp 25.127" in alert for alert in notifier.alerts)

    @pytest.mark.asyncio
    async def test_unknown_order(self, container):
        with pytest.raises(OrderNotFoundError):
            await container.orders.confirm_payment(999)


class TestCancelAndExpire:
    @pytest.mark.asyncio
    async def test_cancel_checks_owner_and_state(self, container, make_product):
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)

        with pytest.raises(OrderNotFoundError):
            await container.orders.cancel(checkout.order.id, buyer_id=7)

        cancelled = await container.orders.cancel(checkout.order.id, buyer_id=42)
        assert cancelled.payment_status == PaymentStatus.CANCELLED.value
        assert cancelled.cancel_reason == "cancelled_by_user"

        with pytest.raises(InvalidOrderStateError):
            await container.orders.cancel(checkout.order.id, buyer_id=42)

    @pytest.mark.asyncio
    async def test_cleanup_expires_stale_orders(self, container, make_product, notifier):
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)

        expired = await container.orders.cleanup_expired_orders(
            now=datetime.utcnow() + timedelta(minutes=settings.ORDER_EXPIRY_MINUTES + 1)
        )

        assert [o.id for o in expired] == [checkout.order.id]
        assert "kedaluwarsa" in notifier.messages[-1]["text"]
        assert await container.orders.expire(checkout.order.id) is False

    @pytest.mark.asyncio
    async def test_resend_requires_fulfilled_order(self, container, make_product, notifier):
        product = make_product()
        checkout = await container.orders.checkout_qris(BUYER, product.id, 1)

        with pytest.raises(InvalidOrderStateError):
            await container.orders.resend_credentials(checkout.order.id)

        await container.orders.confirm_payment(checkout.order.id)
        assert await container.orders.resend_credentials(checkout.order.id) is True
        assert len(notifier.deliveries) == 2
