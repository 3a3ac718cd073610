"""
Tests for the Celery workers and update routing
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from core.config import settings
from services.orders.order_service import Buyer
from services.session_state import CHECKOUT_FLOW, TOPUP_FLOW, SessionStateManager
from workers.payment_tasks import (
    _poll_countdowns,
    verify_all_pending_payments,
    verify_order_payment,
    verify_topup_payment,
)
from workers.sweeper_tasks import low_stock_sweep, sweep_expired
from workers.tasks import parse_command, route_callback, route_message

BUYER = Buyer(user_id=42, username="budi", chat_id=42)


@pytest.fixture
def telegram_api():
    """TelegramAPI double used by process_telegram_update"""
    api = MagicMock()
    api.edit_message_sync.return_value = {"ok": True}
    with patch("workers.api_clients.TelegramAPI", return_value=api):
        yield api


class TestParseCommand:
    def test_parse_command(self):
        assert parse_command("/topup 50000") == ("/topup", "50000")
        assert parse_command("/START@store_bot") == ("/start", "")
        assert parse_command("/addstock 3\na@x.com|pw") == ("/addstock", "3\na@x.com|pw")
        assert parse_command("halo") == (None, "")


class TestRouting:
    def test_unknown_callback(self, container):
        assert route_callback(1, "u", "U", 1, "bogus:1") is None

    def test_callback_routes_to_product(self, container, make_product):
        product = make_product()

        response = route_callback(1, "u", "U", 1, f"product:{product.id}")

        assert response["text"].startswith(f"📦 {product.name}")

    def test_text_goes_to_open_topup_flow(self, container):
        SessionStateManager.set_state(1, TOPUP_FLOW, "awaiting_amount")

        response = route_message(1, "u", "U", 1, "abc")

        assert "Nominal tidak valid" in response["text"]

    def test_batal_clears_every_flow(self, container):
        SessionStateManager.set_state(1, TOPUP_FLOW, "awaiting_amount")
        SessionStateManager.set_state(1, CHECKOUT_FLOW, "awaiting_notes", {"product_id": 1})

        response = route_message(1, "u", "U", 1, "/batal")

        assert response["text"] == "✅ Dibatalkan."
        assert SessionStateManager.active_flow(1) == (None, None)

    def test_free_text_without_flow_shows_menu(self, container):
        response = route_message(1, "u", "Budi", 1, "halo")

        assert "Halo Budi" in response["text"]

    def test_document_without_admin_flow_is_ignored(self, container):
        assert route_message(1, "u", "U", 1, "", document={"file_id": "F"}) is None


class TestTelegramUpdateProcessing:
    """process_telegram_update end to end with a mocked Bot API"""

    def test_process_start(self, container, telegram_update, telegram_api):
        from workers.tasks import process_telegram_update

        result = process_telegram_update.apply(args=[telegram_update]).get()

        assert result is None
        kwargs = telegram_api.send_message_sync.call_args.kwargs
        assert kwargs["chat_id"] == 987654321
        assert "Halo Test" in kwargs["text"]

    def test_process_callback_edits_message(self, container, telegram_callback_query, telegram_api):
        from workers.tasks import process_telegram_update

        process_telegram_update.apply(args=[telegram_callback_query]).get()

        telegram_api.answer_callback_query_sync.assert_called_once()
        kwargs = telegram_api.edit_message_sync.call_args.kwargs
        assert kwargs["message_id"] == 10
        assert kwargs["text"] == "📦 Belum ada produk tersedia."
        telegram_api.send_message_sync.assert_not_called()

    def test_failed_edit_falls_back_to_new_message(self, container, telegram_callback_query, telegram_api):
        from workers.tasks import process_telegram_update

        telegram_api.edit_message_sync.return_value = {"ok": False, "error": "400"}

        process_telegram_update.apply(args=[telegram_callback_query]).get()

        telegram_api.send_message_sync.assert_called_once()

    def test_rate_limited_message(self, container, telegram_update, telegram_api, monkeypatch):
        from workers import tasks

        monkeypatch.setattr(tasks, "check_rate_limit", lambda *args, **kwargs: False)

        tasks.process_telegram_update.apply(args=[telegram_update]).get()

        assert telegram_api.send_message_sync.call_args.kwargs["text"] == tasks.RATE_LIMIT_TEXT

    def test_message_without_sender(self, container, telegram_api):
        from workers.tasks import process_telegram_update

        process_telegram_update.apply(args=[{"update_id": 1, "message": {}}]).get()

        telegram_api.send_message_sync.assert_not_called()


class TestPaymentTasks:
    def test_poll_countdowns(self, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_POLL_SECONDS", 60)

        assert _poll_countdowns(3) == [60, 120, 180]

    def test_verify_order_payment_confirms(self, container, make_product, gateway, notifier):
        product = make_product()
        checkout = asyncio.run(container.orders.checkout_qris(BUYER, product.id, 1))
        gateway.statuses[checkout.order.gateway_transaction_id] = "completed"

        outcome = verify_order_payment.apply(args=[checkout.order.id]).get()
        again = verify_order_payment.apply(args=[checkout.order.id]).get()

        assert outcome == "confirmed"
        # lock still held by the first poll
        assert again is None
        assert len(notifier.deliveries) == 1

    def test_verify_topup_payment_pending(self, container):
        topup = asyncio.run(container.topups.create_topup(42, 20_000, "budi", 42))

        assert verify_topup_payment.apply(args=[topup.id]).get() == "pending"

    def test_verify_all_pending_payments(self, container, make_product, monkeypatch):
        from workers import payment_tasks

        product = make_product()
        asyncio.run(container.orders.checkout_qris(BUYER, product.id, 1))
        asyncio.run(container.topups.create_topup(42, 20_000, "budi", 42))
        order_task, topup_task = MagicMock(), MagicMock()
        monkeypatch.setattr(payment_tasks, "verify_order_payment", order_task)
        monkeypatch.setattr(payment_tasks, "verify_topup_payment", topup_task)

        counts = verify_all_pending_payments.apply().get()

        assert counts == {"orders": 1, "topups": 1}
        order_task.delay.assert_called_once()
        topup_task.delay.assert_called_once()


class TestSweeperTasks:
    def test_sweep_expired_with_nothing_due(self, container):
        assert sweep_expired.apply().get() == {"orders": 0, "topups": 0}

    def test_low_stock_sweep(self, container, make_product, notifier):
        make_product(stock=1)

        assert low_stock_sweep.apply().get() == {"low_stock": 1}
        assert len(notifier.alerts) == 1
