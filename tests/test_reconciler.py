"""
Webhook and poll reconciliation
"""

import pytest

from database.balance_repos import TopupRepository
from database.models import PaymentStatus
from database.repos import OrderRepository
from services.orders.order_service import Buyer
from services.payments import WebhookPayloadError

BUYER = Buyer(user_id=42, username="budi", chat_id=42)


@pytest.fixture
def qris_order(container, make_product):
    async def _create(quantity: int = 1):
        product = make_product(stock=5)
        result = await container.orders.checkout_qris(BUYER, product.id, quantity)
        return result.order

    return _create


class TestExplicitReference:
    @pytest.mark.asyncio
    async def test_paid_by_order_ref(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_notification(
            {"order_id": order.order_ref, "status": "completed"}
        )

        assert result.http_status == 200
        assert result.body() == {
            "success": True,
            "outcome": "confirmed",
            "type": "order",
            "ref": order.order_ref,
        }
        assert OrderRepository.get_by_id_sync(order.id).fulfilled_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged(self, container, qris_order, notifier):
        order = await qris_order()
        payload = {"order_id": order.order_ref, "status": "paid"}

        await container.reconciler.handle_notification(payload)
        again = await container.reconciler.handle_notification(payload)

        assert again.http_status == 200
        assert again.outcome == "duplicate"
        assert len(notifier.deliveries) == 1

    @pytest.mark.asyncio
    async def test_gateway_transaction_id(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_notification(
            {"transaction_id": order.gateway_transaction_id, "status": "settlement"}
        )

        assert result.outcome == "confirmed"

    @pytest.mark.asyncio
    async def test_expired_status(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_notification(
            {"order_id": order.order_ref, "status": "expired"}
        )

        assert result.outcome == "expired"
        assert OrderRepository.get_by_id_sync(order.id).payment_status == "expired"

    @pytest.mark.asyncio
    async def test_cancel_status_is_ignored(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_notification(
            {"order_id": order.order_ref, "status": "cancelled"}
        )

        assert result.outcome == "ignored"
        assert OrderRepository.get_by_id_sync(order.id).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_reference_without_status(self, container, qris_order):
        order = await qris_order()

        with pytest.raises(WebhookPayloadError):
            await container.reconciler.handle_notification({"order_id": order.order_ref})

    @pytest.mark.asyncio
    async def test_unknown_reference(self, container):
        result = await container.reconciler.handle_notification(
            {"order_id": "ORD-MISSING", "status": "paid"}
        )

        assert result.http_status == 404
        assert result.body() == {"error": "No matching order or topup"}

    @pytest.mark.asyncio
    async def test_topup_reference(self, container):
        topup = await container.topups.create_topup(42, 50_000, "budi", 42)

        result = await container.reconciler.handle_notification(
            {"order_id": topup.transaction_id, "status": "completed"}
        )

        assert result.kind == "topup"
        assert result.outcome == "confirmed"
        assert container.ledger.get_balance(42) == 50_000

    @pytest.mark.asyncio
    async def test_lower_case_references(self, container, qris_order):
        order = await qris_order()
        topup = await container.topups.create_topup(42, 50_000, "budi", 42)

        order_result = await container.reconciler.handle_notification(
            {"order_id": f" {order.order_ref.lower()} ", "status": "completed"}
        )
        topup_result = await container.reconciler.handle_notification(
            {"order_id": topup.transaction_id.lower(), "status": "completed"}
        )

        assert order_result.outcome == "confirmed"
        assert OrderRepository.get_by_id_sync(order.id).payment_status == PaymentStatus.PAID.value
        assert topup_result.kind == "topup"
        assert topup_result.outcome == "confirmed"
        assert container.ledger.get_balance(42) == 50_000


class TestMessageMatching:
    @pytest.mark.asyncio
    async def test_amount_matches_order(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_notification(
            {"message": "Pembayaran Rp 25.127 dari BUDI SANTOSO berhasil"}
        )

        assert result.outcome == "confirmed"
        assert result.body()["order_id"] == order.order_ref

    @pytest.mark.asyncio
    async def test_amount_matches_topup(self, container):
        topup = await container.topups.create_topup(42, 50_000, "budi", 42)

        result = await container.reconciler.handle_notification(
            {"message": "Pembayaran Rp 50.127 dari BUDI berhasil"}
        )

        assert result.kind == "topup"
        assert result.body()["topup_id"] == topup.id
        assert TopupRepository.get_by_id_sync(topup.id).status == "paid"

    @pytest.mark.asyncio
    async def test_orders_win_over_topups(self, container, qris_order):
        await container.topups.create_topup(42, 25_000, "budi", 42)
        await qris_order()

        result = await container.reconciler.handle_notification(
            {"message": "Pembayaran Rp 25.127 dari BUDI berhasil"}
        )

        assert result.kind == "order"

    @pytest.mark.asyncio
    async def test_no_match(self, container, qris_order):
        await qris_order()

        result = await container.reconciler.handle_notification(
            {"message": "Pembayaran Rp 999.000 dari BUDI berhasil"}
        )

        assert result.http_status == 404

    @pytest.mark.asyncio
    async def test_unparseable_message(self, container):
        with pytest.raises(WebhookPayloadError):
            await container.reconciler.handle_notification({"message": "halo admin"})

    @pytest.mark.asyncio
    async def test_empty_payload(self, container):
        with pytest.raises(WebhookPayloadError):
            await container.reconciler.handle_notification({})


class TestLegacyWebhook:
    @pytest.mark.asyncio
    async def test_missing_order_id(self, container):
        with pytest.raises(WebhookPayloadError):
            await container.reconciler.handle_legacy({"status": "completed"})

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, container, qris_order):
        order = await qris_order()

        with pytest.raises(WebhookPayloadError):
            await container.reconciler.handle_legacy(
                {"order_id": order.order_ref, "amount": 1_000, "status": "completed"}
            )
        assert OrderRepository.get_by_id_sync(order.id).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_accepts_charged_amount(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_legacy(
            {"order_id": order.order_ref, "amount": order.amount_to_pay, "status": "completed"}
        )

        assert result.outcome == "confirmed"

    @pytest.mark.asyncio
    async def test_cancel_is_applied(self, container, qris_order):
        order = await qris_order()

        result = await container.reconciler.handle_legacy(
            {"order_id": order.order_ref, "status": "canceled"}
        )

        assert result.outcome == "cancelled"
        assert OrderRepository.get_by_id_sync(order.id).cancel_reason == "cancelled_by_gateway"

    @pytest.mark.asyncio
    async def test_unknown_order(self, container):
        result = await container.reconciler.handle_legacy({"order_id": "ORD-NONE", "status": "completed"})

        assert result.http_status == 404


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_confirms_paid_order(self, container, qris_order, gateway):
        order = await qris_order()
        gateway.statuses[order.gateway_transaction_id] = "paid"

        result = await container.reconciler.poll_order(order.id)

        assert result.outcome == "confirmed"
        assert OrderRepository.get_by_id_sync(order.id).payment_status == PaymentStatus.PAID.value

    @pytest.mark.asyncio
    async def test_poll_pending_and_settled(self, container, qris_order, gateway):
        order = await qris_order()

        assert (await container.reconciler.poll_order(order.id)).outcome == "pending"

        await container.orders.cancel(order.id)
        assert (await container.reconciler.poll_order(order.id)).outcome == "settled"

    @pytest.mark.asyncio
    async def test_poll_gateway_error(self, container, qris_order, gateway):
        order = await qris_order()
        gateway.fail_status = True

        result = await container.reconciler.poll_order(order.id)

        assert result.outcome == "error"
        assert OrderRepository.get_by_id_sync(order.id).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_poll_topup(self, container, gateway):
        topup = await container.topups.create_topup(42, 20_000, "budi", 42)
        gateway.statuses[topup.provider_transaction_id] = "completed"

        result = await container.reconciler.poll_topup(topup.id)

        assert result.outcome == "confirmed"
        assert container.ledger.get_balance(42) == 20_000
