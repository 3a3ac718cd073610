"""
Maps asynchronous payment notifications onto pending orders and top-ups

Matching order for a notification:
    1. explicit reference (order ref, gateway transaction id, TOPUP-...)
    2. relayed bank text "Pembayaran Rp 50.127 dari NAME berhasil", matched
       by amount against pending orders first, then pending top-ups
Unmatched notifications change nothing and map to HTTP 404.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.config import Settings, settings as default_settings
from core.telemetry import logger
from database.balance_repos import TopupRepository
from database.models import Order, PaymentStatus, TopupRequest
from database.repos import OrderRepository
from services.balance.topup_service import TopupService
from services.gateway.qris_client import (
    QrisClient,
    normalize_status,
    parse_notification_message,
)
from services.orders.exceptions import InvalidOrderStateError, PaymentGatewayError
from services.orders.metrics import WEBHOOKS_TOTAL
from services.orders.order_service import OrderService

REFERENCE_KEYS = ("order_id", "order_ref", "orderRef", "transaction_id", "transactionId")
TOPUP_PREFIX = "TOPUP-"


class WebhookPayloadError(ValueError):
    """Malformed notification; answered with HTTP 400."""


@dataclass
class ReconcileResult:
    outcome: str
    kind: Optional[str] = None
    ref: Optional[str] = None
    http_status: int = 200
    extra: Dict[str, Any] = field(default_factory=dict)

    def body(self) -> Dict[str, Any]:
        if self.http_status == 404:
            return {"error": "No matching order or topup"}
        body: Dict[str, Any] = {"success": True, "outcome": self.outcome}
        if self.kind:
            body["type"] = self.kind
        if self.ref:
            body["ref"] = self.ref
        body.update(self.extra)
        return body


def not_found() -> ReconcileResult:
    return ReconcileResult(outcome="not_found", http_status=404)


def explicit_reference(payload: Dict[str, Any]) -> Optional[str]:
    for key in REFERENCE_KEYS:
        value = payload.get(key)
        if value:
            return str(value).strip()
    return None


class PaymentReconciler:
    def __init__(
        self,
        orders: OrderService,
        topups: TopupService,
        gateway: Optional[QrisClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.orders = orders
        self.topups = topups
        self.gateway = gateway or orders.gateway
        self.settings = settings or default_settings

    async def handle_notification(self, payload: Dict[str, Any]) -> ReconcileResult:
        """
        Entry point for POST /webhook/qris

        Raises:
            WebhookPayloadError: missing fields or unparseable message text
        """
        result = await self._dispatch(payload or {})
        WEBHOOKS_TOTAL.labels(outcome=result.outcome).inc()
        logger.info(
            "Payment notification reconciled",
            extra={"outcome": result.outcome, "kind": result.kind, "ref": result.ref},
        )
        return result

    async def _dispatch(self, payload: Dict[str, Any]) -> ReconcileResult:
        reference = explicit_reference(payload)
        if reference:
            status = payload.get("status")
            if not status:
                raise WebhookPayloadError("status is required with a reference")
            return await self._by_reference(reference, normalize_status(status))

        message = payload.get("message")
        if message:
            parsed = parse_notification_message(message)
            if not parsed:
                raise WebhookPayloadError("unrecognised notification message")
            amount, sender = parsed
            return await self._by_amount(amount, sender)

        raise WebhookPayloadError("payload carries neither reference nor message")

    async def _by_reference(self, reference: str, status: str) -> ReconcileResult:
        # Our own refs are upper-case; gateway ids are matched as sent too
        raw = reference.strip()
        ref = raw.upper()
        if ref.startswith(TOPUP_PREFIX):
            topup = TopupRepository.get_by_transaction_id_sync(ref)
            if not topup:
                logger.warning("Topup not found", extra={"ref": reference})
                return not_found()
            return await self._apply_topup(topup, status)

        order = (
            OrderRepository.get_by_ref_sync(ref)
            or OrderRepository.get_by_gateway_tx_sync(raw)
            or OrderRepository.get_by_gateway_tx_sync(ref)
        )
        if order:
            return await self._apply_order(order, status)

        topup = TopupRepository.get_by_transaction_id_sync(
            raw
        ) or TopupRepository.get_by_transaction_id_sync(ref)
        if topup:
            return await self._apply_topup(topup, status)

        logger.warning("Order not found", extra={"ref": reference})
        return not_found()

    async def _by_amount(self, amount: int, sender: str) -> ReconcileResult:
        tolerance = self.settings.WEBHOOK_AMOUNT_TOLERANCE
        order = OrderRepository.find_pending_by_amount_sync(amount, tolerance)
        if order:
            result = await self._apply_order(order, "paid")
            result.extra["order_id"] = order.order_ref
            return result

        topup = TopupRepository.find_pending_by_amount_sync(amount, tolerance)
        if topup:
            result = await self._apply_topup(topup, "paid")
            result.extra["topup_id"] = topup.id
            return result

        logger.warning(
            "No pending payment matches amount",
            extra={"amount": amount, "sender": sender},
        )
        return not_found()

    async def _apply_order(
        self,
        order: Order,
        status: str,
        source: str = "webhook",
        allow_cancel: bool = False,
        paid_at=None,
    ) -> ReconcileResult:
        if status == "paid":
            confirmation = await self.orders.confirm_payment(order.id, source, paid_at)
            return ReconcileResult(
                outcome="confirmed" if confirmation.applied else "duplicate",
                kind="order",
                ref=order.order_ref,
            )
        if status == "expired":
            expired = await self.orders.expire(order.id)
            return ReconcileResult(
                outcome="expired" if expired else "ignored", kind="order", ref=order.order_ref
            )
        if status == "cancelled" and allow_cancel:
            try:
                await self.orders.cancel(order.id, reason="cancelled_by_gateway")
            except InvalidOrderStateError:
                return ReconcileResult(outcome="ignored", kind="order", ref=order.order_ref)
            return ReconcileResult(outcome="cancelled", kind="order", ref=order.order_ref)
        return ReconcileResult(outcome="ignored", kind="order", ref=order.order_ref)

    async def _apply_topup(
        self, topup: TopupRequest, status: str, source: str = "webhook"
    ) -> ReconcileResult:
        if status == "paid":
            completion = await self.topups.complete_topup(topup.id, source)
            return ReconcileResult(
                outcome="confirmed" if completion.applied else "duplicate",
                kind="topup",
                ref=topup.transaction_id,
            )
        if status == "expired":
            expired = await self.topups.expire_topup(topup.id)
            return ReconcileResult(
                outcome="expired" if expired else "ignored",
                kind="topup",
                ref=topup.transaction_id,
            )
        return ReconcileResult(outcome="ignored", kind="topup", ref=topup.transaction_id)

    async def handle_legacy(self, payload: Dict[str, Any]) -> ReconcileResult:
        """
        POST /webhook/pakasir: explicit order id, optional amount check

        Raises:
            WebhookPayloadError: missing order_id or an amount that matches
                neither the order total nor the charged amount
        """
        payload = payload or {}
        reference = payload.get("order_id")
        if not reference:
            raise WebhookPayloadError("Missing order_id")

        order = OrderRepository.get_by_ref_sync(str(reference))
        if not order:
            WEBHOOKS_TOTAL.labels(outcome="not_found").inc()
            logger.warning("Legacy webhook order not found", extra={"ref": reference})
            return not_found()

        amount = payload.get("amount")
        if amount not in (None, ""):
            try:
                amount = int(amount)
            except (TypeError, ValueError):
                raise WebhookPayloadError("Invalid amount")
            if amount not in (order.total_price, order.amount_to_pay):
                logger.error(
                    "Amount mismatch",
                    extra={"ref": reference, "expected": order.total_price, "received": amount},
                )
                raise WebhookPayloadError("Amount mismatch")

        result = await self._apply_order(
            order, normalize_status(payload.get("status")), allow_cancel=True
        )
        WEBHOOKS_TOTAL.labels(outcome=result.outcome).inc()
        return result

    # ---------------------------------------------------------- polling path

    async def poll_order(self, order_id: int) -> ReconcileResult:
        """Asks the gateway about a pending QRIS order and applies the answer"""
        order = OrderRepository.get_by_id_sync(order_id)
        if not order or not order.gateway_transaction_id:
            return not_found()
        if order.payment_status != PaymentStatus.PENDING.value:
            return ReconcileResult(outcome="settled", kind="order", ref=order.order_ref)
        try:
            status = await asyncio.to_thread(
                self.gateway.get_charge_status_sync, order.gateway_transaction_id
            )
        except PaymentGatewayError as e:
            logger.warning(
                "Order poll failed", extra={"ref": order.order_ref, "error": str(e)}
            )
            return ReconcileResult(outcome="error", kind="order", ref=order.order_ref)
        if status.status != "paid":
            return ReconcileResult(outcome="pending", kind="order", ref=order.order_ref)
        return await self._apply_order(order, "paid", source="poll", paid_at=status.paid_at)

    async def poll_topup(self, topup_id: int) -> ReconcileResult:
        topup = TopupRepository.get_by_id_sync(topup_id)
        if not topup or not topup.provider_transaction_id:
            return not_found()
        if topup.status != PaymentStatus.PENDING.value:
            return ReconcileResult(outcome="settled", kind="topup", ref=topup.transaction_id)
        try:
            status = await asyncio.to_thread(
                self.gateway.get_charge_status_sync, topup.provider_transaction_id
            )
        except PaymentGatewayError as e:
            logger.warning(
                "Topup poll failed", extra={"ref": topup.transaction_id, "error": str(e)}
            )
            return ReconcileResult(outcome="error", kind="topup", ref=topup.transaction_id)
        if status.status != "paid":
            return ReconcileResult(outcome="pending", kind="topup", ref=topup.transaction_id)
        return await self._apply_topup(topup, "paid", source="poll")
