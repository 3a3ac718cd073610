"""
Order lifecycle: quote, checkout, confirmation and cancellation

Status changes always go through the conditional transitions on
OrderRepository. Only the caller that wins ``pending -> paid`` allocates and
delivers, so duplicate webhooks, polls and sweeps can race freely.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import Settings, settings as default_settings
from core.telemetry import logger
from database.models import Credential, Order, PaymentMethod, PaymentStatus, utcnow
from database.repos import CredentialRepository, OrderRepository, ProductRepository
from services.balance.ledger import BalanceLedger
from services.gateway.qr_image import render_qr_png
from services.gateway.qris_client import Charge, QrisClient
from services.notifier import Notifier
from services.vouchers.voucher_service import VoucherService

from .exceptions import (
    InsufficientBalanceError,
    InvalidOrderStateError,
    InvalidQuantityError,
    InvalidVoucherError,
    OrderNotFoundError,
    OutOfStockError,
    PaymentGatewayError,
    ProductNotFoundError,
)
from .fulfillment import FulfillmentService
from .metrics import (
    ALLOCATION_FAILED_TOTAL,
    LATE_PAYMENTS_TOTAL,
    ORDERS_CREATED_TOTAL,
    ORDERS_TRANSITION_TOTAL,
    REFUNDS_TOTAL,
)
from .rendering import fmt_idr

_BASE36 = string.digits + string.ascii_uppercase

OUT_OF_STOCK_REFUNDED = "out_of_stock_refunded"
REFUNDED_MESSAGE = "❌ Maaf, stok sudah habis. Saldo kamu sudah dikembalikan."


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_ref(now_ms: Optional[int] = None) -> str:
    """ORD- + base36 millisecond timestamp + 4 random base36 chars"""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"ORD-{_base36(ms)}{suffix}"


@dataclass
class Buyer:
    user_id: int
    username: Optional[str] = None
    chat_id: Optional[int] = None

    @property
    def target_chat(self) -> int:
        return self.chat_id or self.user_id


@dataclass
class Quote:
    product_id: int
    product_name: str
    unit_price: int
    requested_quantity: int
    quantity: int
    available_stock: int
    subtotal: int
    discount: int = 0
    final_price: int = 0
    voucher_code: Optional[str] = None
    voucher_id: Optional[int] = None
    voucher_error: Optional[str] = None

    @property
    def clamped(self) -> bool:
        return self.quantity != self.requested_quantity


@dataclass
class CheckoutResult:
    order: Order
    credentials: List[Credential] = field(default_factory=list)
    new_balance: Optional[int] = None
    delivered: bool = False
    qr_message_id: Optional[int] = None
    charge: Optional[Charge] = None


@dataclass
class ConfirmationResult:
    applied: bool
    order: Optional[Order] = None
    fulfilled: bool = False
    reason: Optional[str] = None


class OrderService:
    """Owns every order state transition"""

    def __init__(
        self,
        gateway: Optional[QrisClient] = None,
        notifier: Optional[Notifier] = None,
        ledger: Optional[BalanceLedger] = None,
        fulfillment: Optional[FulfillmentService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.gateway = gateway or QrisClient()
        self.notifier = notifier or Notifier()
        self.ledger = ledger or BalanceLedger()
        self.fulfillment = fulfillment or FulfillmentService(self.notifier, self.settings)

    # ------------------------------------------------------------------ quote

    def quote(
        self, product_id: int, quantity: int, voucher_code: Optional[str] = None
    ) -> Quote:
        """
        Prices a purchase

        Quantity is clamped to ``[1, stock]`` instead of being rejected. A bad
        voucher does not fail the quote; it is reported in ``voucher_error``
        with zero discount.

        Raises:
            ProductNotFoundError: unknown, inactive or category product
            OutOfStockError: nothing left to sell
        """
        product = ProductRepository.get_by_id_sync(product_id)
        if not product or not product.is_active or product.is_category:
            raise ProductNotFoundError(f"product {product_id}")

        stock = CredentialRepository.get_stock_sync(product_id)
        if stock <= 0:
            raise OutOfStockError(f"product {product_id} has no stock")

        requested = int(quantity)
        qty = max(1, min(requested, stock))
        subtotal = int(product.price) * qty

        quote = Quote(
            product_id=product.id,
            product_name=product.name,
            unit_price=int(product.price),
            requested_quantity=requested,
            quantity=qty,
            available_stock=stock,
            subtotal=subtotal,
            final_price=subtotal,
        )
        if voucher_code:
            check = VoucherService.validate(voucher_code, subtotal)
            if check.valid:
                quote.discount = check.discount
                quote.voucher_id = check.voucher.id
                quote.voucher_code = check.voucher.code
                quote.final_price = subtotal - check.discount
            else:
                quote.voucher_error = check.message
        return quote

    def _checkout_quote(
        self, product_id: int, quantity: int, voucher_code: Optional[str]
    ) -> Quote:
        if int(quantity) < 1:
            raise InvalidQuantityError(f"quantity {quantity}")
        quote = self.quote(product_id, quantity, voucher_code)
        if quote.quantity < int(quantity):
            raise OutOfStockError(
                f"requested {quantity}, available {quote.available_stock}"
            )
        if quote.voucher_error:
            raise InvalidVoucherError(quote.voucher_error)
        return quote

    @staticmethod
    def _order_fields(buyer: Buyer, quote: Quote, notes: Optional[str]) -> Dict[str, Any]:
        return {
            "telegram_user_id": buyer.user_id,
            "telegram_username": buyer.username,
            "chat_id": buyer.target_chat,
            "product_id": quote.product_id,
            "product_name": quote.product_name,
            "quantity": quote.quantity,
            "unit_price": quote.unit_price,
            "subtotal": quote.subtotal,
            "discount_amount": quote.discount,
            "voucher_code": quote.voucher_code,
            "total_price": quote.final_price,
            "notes": notes,
            "source": "bot",
        }

    # --------------------------------------------------------------- checkout

    async def checkout_balance(
        self,
        buyer: Buyer,
        product_id: int,
        quantity: int,
        voucher_code: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Buys with stored balance and delivers immediately

        Raises:
            OutOfStockError: not enough stock before or during allocation
                (the debit is refunded in the second case)
            InsufficientBalanceError: balance below the final price
            InvalidVoucherError: the given code was rejected
        """
        quote = self._checkout_quote(product_id, quantity, voucher_code)

        balance = self.ledger.get_balance(buyer.user_id)
        if balance < quote.final_price:
            raise InsufficientBalanceError(balance, quote.final_price)

        # Balance orders are born paid; the debit below is what pays them
        order = OrderRepository.create_sync(
            order_ref=generate_order_ref(),
            payment_status=PaymentStatus.PAID.value,
            payment_method=PaymentMethod.BALANCE.value,
            paid_at=utcnow(),
            **self._order_fields(buyer, quote, notes),
        )
        ORDERS_CREATED_TOTAL.labels(method=PaymentMethod.BALANCE.value).inc()

        new_balance = balance
        if quote.final_price > 0:
            debit = self.ledger.debit(
                buyer.user_id,
                quote.final_price,
                order_id=order.id,
                reason=f"Pembelian {order.order_ref}",
            )
            if not debit.ok:
                OrderRepository.compensate_cancel_sync(order.id, debit.error)
                ORDERS_TRANSITION_TOTAL.labels(to_status="cancelled").inc()
                raise InsufficientBalanceError(debit.new_balance, quote.final_price)
            new_balance = debit.new_balance

        credentials = CredentialRepository.allocate_sync(
            quote.product_id, quote.quantity, order.id
        )
        if not credentials:
            refunded = await self._compensate_unfulfilled(order, PaymentMethod.BALANCE)
            raise OutOfStockError(
                f"allocation failed for {order.order_ref}",
                user_message=REFUNDED_MESSAGE if refunded else None,
            )

        if quote.voucher_id and not VoucherService.redeem(quote.voucher_id):
            logger.warning(
                "Voucher cap reached after balance checkout",
                extra={"order_ref": order.order_ref, "voucher_code": quote.voucher_code},
            )

        OrderRepository.mark_fulfilled_sync(order.id)
        order = OrderRepository.get_by_id_sync(order.id)
        delivered = await self.fulfillment.deliver(order, credentials)

        logger.info(
            "Balance order completed",
            extra={
                "order_ref": order.order_ref,
                "user_id": buyer.user_id,
                "quantity": order.quantity,
                "total": order.total_price,
            },
        )
        return CheckoutResult(
            order=order,
            credentials=credentials,
            new_balance=new_balance,
            delivered=delivered,
        )

    async def checkout_qris(
        self,
        buyer: Buyer,
        product_id: int,
        quantity: int,
        voucher_code: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Creates a QRIS charge and a pending order, then sends the QR

        The voucher use is reserved before the charge and given back if the
        gateway fails, and the order row is written only after the charge
        exists, so no charge is left without an order. A fully discounted order has nothing to charge
        and settles through the balance path instead.

        Raises:
            PaymentGatewayError: charge creation failed (no order persisted)
            OutOfStockError / InvalidVoucherError: as for checkout_balance
        """
        quote = self._checkout_quote(product_id, quantity, voucher_code)
        if quote.final_price <= 0:
            return await self.checkout_balance(
                buyer, product_id, quantity, voucher_code, notes
            )

        # Voucher use is reserved before the QR is issued
        if quote.voucher_id and not VoucherService.redeem(quote.voucher_id):
            raise InvalidVoucherError("Voucher sudah habis digunakan")

        order_ref = generate_order_ref()
        try:
            charge = await self.gateway.create_charge(
                order_ref, quote.final_price, f"telegram_{buyer.user_id}"
            )
        except PaymentGatewayError:
            if quote.voucher_id:
                VoucherService.release(quote.voucher_id)
            raise

        order = OrderRepository.create_sync(
            order_ref=order_ref,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=PaymentMethod.QRIS.value,
            gateway_transaction_id=charge.charge_id,
            amount_to_pay=charge.amount_to_charge,
            qr_payload=charge.qr_payload,
            **self._order_fields(buyer, quote, notes),
        )
        ORDERS_CREATED_TOTAL.labels(method=PaymentMethod.QRIS.value).inc()

        message_id = await self._send_qr(order, charge)
        if message_id:
            OrderRepository.update_sync(order.id, {"qr_message_id": message_id})
            order.qr_message_id = message_id

        logger.info(
            "QRIS order created",
            extra={
                "order_ref": order.order_ref,
                "charge_id": charge.charge_id,
                "amount_to_pay": charge.amount_to_charge,
                "qr_sent": message_id is not None,
            },
        )
        return CheckoutResult(order=order, qr_message_id=message_id, charge=charge)

    async def _send_qr(self, order: Order, charge: Charge) -> Optional[int]:
        lines = [
            "🧾 INVOICE PEMBAYARAN",
            "",
            f"Produk: {order.product_name}",
            f"Jumlah: {order.quantity}",
            f"Subtotal: {fmt_idr(order.subtotal)}",
        ]
        if order.discount_amount:
            lines.append(f"Diskon ({order.voucher_code}): -{fmt_idr(order.discount_amount)}")
        lines += [
            f"Total Bayar: {fmt_idr(charge.amount_to_charge)}",
            f"Invoice: {order.order_ref}",
            "",
            f"⏳ Bayar dalam {self.settings.ORDER_EXPIRY_MINUTES} menit.",
            "Pastikan nominal sesuai sampai digit terakhir.",
        ]
        keyboard = {
            "inline_keyboard": [
                [{"text": "❌ Batalkan", "callback_data": f"cancel_order:{order.id}"}]
            ]
        }
        try:
            photo = render_qr_png(charge.qr_payload, filename=f"{order.order_ref}.png")
        except Exception as e:
            logger.error(
                "QR render failed", extra={"order_ref": order.order_ref, "error": str(e)}
            )
            return None
        return await self.notifier.send_photo(
            order.chat_id or order.telegram_user_id,
            photo,
            caption="\n".join(lines),
            reply_markup=keyboard,
        )

    # ----------------------------------------------------------- confirmation

    async def confirm_payment(
        self,
        order_id: int,
        source: str = "webhook",
        paid_at: Optional[datetime] = None,
    ) -> ConfirmationResult:
        """
        Marks a QRIS order paid and fulfils it

        Idempotent: a second confirmation, or one racing with cancel or
        expiry, does nothing and reports why.

        Args:
            order_id: Order primary key
            source: webhook | poll | admin, for logs
            paid_at: Gateway settlement time when known

        Returns:
            ConfirmationResult; ``applied`` is True only for the winning caller
        """
        order = OrderRepository.get_by_id_sync(order_id)
        if not order:
            raise OrderNotFoundError(f"order {order_id}")

        won = OrderRepository.mark_paid_sync(order_id, paid_at)
        if not won:
            current = OrderRepository.get_by_id_sync(order_id)
            if current.payment_status == PaymentStatus.EXPIRED.value:
                if not self.settings.accept_late_payments:
                    LATE_PAYMENTS_TOTAL.labels(decision="rejected").inc()
                    logger.warning(
                        "Late payment rejected",
                        extra={"order_ref": current.order_ref, "source": source},
                    )
                    await self.notifier.send_admin_alert(
                        "⚠️ PEMBAYARAN TERLAMBAT\n\n"
                        f"Order: {current.order_ref}\n"
                        f"Buyer: {current.telegram_user_id} (@{current.telegram_username or '-'})\n"
                        f"Nominal: {fmt_idr(current.amount_to_pay or current.total_price)}\n"
                        "Order sudah expired, cek dan proses manual."
                    )
                    return ConfirmationResult(
                        applied=False, order=current, reason="late_payment_rejected"
                    )
                won = OrderRepository.mark_paid_sync(order_id, paid_at, allow_expired=True)
                if won:
                    LATE_PAYMENTS_TOTAL.labels(decision="accepted").inc()
                    logger.warning(
                        "Late payment accepted",
                        extra={"order_ref": current.order_ref, "source": source},
                    )
            if not won:
                current = OrderRepository.get_by_id_sync(order_id)
                logger.info(
                    "Confirmation ignored",
                    extra={
                        "order_ref": current.order_ref,
                        "status": current.payment_status,
                        "source": source,
                    },
                )
                return ConfirmationResult(
                    applied=False,
                    order=current,
                    reason=f"already_{current.payment_status}",
                )

        ORDERS_TRANSITION_TOTAL.labels(to_status="paid").inc()
        order = OrderRepository.get_by_id_sync(order_id)
        logger.info(
            "Order paid",
            extra={"order_ref": order.order_ref, "source": source},
        )
        fulfilled = await self._fulfill(order)
        return ConfirmationResult(
            applied=True,
            order=OrderRepository.get_by_id_sync(order_id),
            fulfilled=fulfilled,
        )

    async def _fulfill(self, order: Order) -> bool:
        credentials = CredentialRepository.allocate_sync(
            order.product_id, order.quantity, order.id
        )
        await self.notifier.delete_message(order.chat_id, order.qr_message_id)

        if not credentials:
            refunded = await self._compensate_unfulfilled(order, PaymentMethod.QRIS)
            if refunded:
                await self.notifier.send_message(
                    order.chat_id or order.telegram_user_id,
                    f"❌ Pembayaran {order.order_ref} diterima, tetapi stok sudah habis.\n"
                    f"Dana {fmt_idr(order.paid_amount)} sudah masuk ke saldo kamu.",
                )
            return False

        OrderRepository.mark_fulfilled_sync(order.id)
        await self.fulfillment.deliver(order, credentials)
        return True

    async def _compensate_unfulfilled(self, order: Order, method: PaymentMethod) -> bool:
        """
        paid -> cancelled with a balance refund of what the buyer paid

        Returns:
            True when this call cancelled the order (and refunded if non-zero)
        """
        ALLOCATION_FAILED_TOTAL.labels(method=method.value).inc()
        if not OrderRepository.compensate_cancel_sync(order.id, OUT_OF_STOCK_REFUNDED):
            logger.error(
                "Compensation skipped, order no longer refundable",
                extra={"order_ref": order.order_ref},
            )
            return False
        ORDERS_TRANSITION_TOTAL.labels(to_status="cancelled").inc()

        refunded = False
        if order.paid_amount > 0:
            self.ledger.refund(
                order.telegram_user_id,
                order.paid_amount,
                order_id=order.id,
                reason=f"Refund {order.order_ref} (stok habis)",
            )
            REFUNDS_TOTAL.inc()
            refunded = True

        logger.error(
            "Paid order could not be allocated",
            extra={
                "order_ref": order.order_ref,
                "product_id": order.product_id,
                "quantity": order.quantity,
                "refunded": refunded,
            },
        )
        await self.fulfillment.alert_unfulfilled(order, refunded)
        return True

    # ------------------------------------------------------ cancel / expire

    async def cancel(
        self,
        order_id: int,
        buyer_id: Optional[int] = None,
        reason: str = "cancelled_by_user",
    ) -> Order:
        """
        pending -> cancelled

        Raises:
            OrderNotFoundError: unknown order, or not owned by ``buyer_id``
            InvalidOrderStateError: order is no longer pending
        """
        order = OrderRepository.get_by_id_sync(order_id)
        if not order or (buyer_id is not None and order.telegram_user_id != buyer_id):
            raise OrderNotFoundError(f"order {order_id}")
        if not OrderRepository.cancel_sync(order_id, reason):
            raise InvalidOrderStateError(
                f"order {order.order_ref} is {order.payment_status}"
            )
        ORDERS_TRANSITION_TOTAL.labels(to_status="cancelled").inc()
        await self.notifier.delete_message(order.chat_id, order.qr_message_id)
        logger.info("Order cancelled", extra={"order_ref": order.order_ref, "reason": reason})
        return OrderRepository.get_by_id_sync(order_id)

    async def expire(self, order_id: int) -> bool:
        """pending -> expired; False when the order already left pending"""
        order = OrderRepository.get_by_id_sync(order_id)
        if not order:
            raise OrderNotFoundError(f"order {order_id}")
        if not OrderRepository.expire_sync(order_id):
            return False
        ORDERS_TRANSITION_TOTAL.labels(to_status="expired").inc()
        await self.notify_expired(order)
        return True

    async def notify_expired(self, order: Order) -> None:
        await self.notifier.delete_message(order.chat_id, order.qr_message_id)
        await self.notifier.send_message(
            order.chat_id or order.telegram_user_id,
            f"⏰ Pesanan {order.order_ref} kedaluwarsa karena belum dibayar.\n"
            "Silakan buat pesanan baru jika masih ingin membeli.",
        )

    async def cleanup_expired_orders(
        self, ttl_minutes: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Order]:
        """Expires pending orders older than the TTL and notifies their buyers"""
        ttl = ttl_minutes if ttl_minutes is not None else self.settings.ORDER_EXPIRY_MINUTES
        cutoff = (now or utcnow()) - timedelta(minutes=ttl)
        expired = OrderRepository.expire_stale_sync(cutoff)
        for order in expired:
            ORDERS_TRANSITION_TOTAL.labels(to_status="expired").inc()
            await self.notify_expired(order)
        if expired:
            logger.info(
                "Expired stale orders",
                extra={"count": len(expired), "refs": [o.order_ref for o in expired]},
            )
        return expired

    # ---------------------------------------------------------------- reads

    def get_order(self, order_id: int) -> Optional[Order]:
        return OrderRepository.get_by_id_sync(order_id)

    def get_order_by_ref(self, order_ref: str) -> Optional[Order]:
        return OrderRepository.get_by_ref_sync((order_ref or "").strip().upper())

    def list_recent(self, limit: int = 10) -> List[Order]:
        return OrderRepository.list_recent_sync(limit)

    def list_user_orders(self, user_id: int, limit: int = 10) -> List[Order]:
        return OrderRepository.list_by_user_sync(user_id, limit)

    def update_order(self, order_id: int, patch: Dict[str, Any]) -> bool:
        return OrderRepository.update_sync(order_id, patch)

    async def resend_credentials(self, order_id: int) -> bool:
        """Re-sends the bundle of a fulfilled order to its buyer"""
        order = OrderRepository.get_by_id_sync(order_id)
        if not order:
            raise OrderNotFoundError(f"order {order_id}")
        credentials = CredentialRepository.get_by_order_sync(order_id)
        if order.payment_status != PaymentStatus.PAID.value or not credentials:
            raise InvalidOrderStateError(f"order {order.order_ref} has nothing to resend")
        return await self.fulfillment.resend(order, credentials)
