"""
Smoke tests - basic checks that the HTTP surface is up
"""
import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main
from core.config import settings
from main import app
from services.orders.order_service import Buyer


@pytest.fixture
def client(container, fake_redis, monkeypatch):
    monkeypatch.setattr(main, "redis_client", fake_redis)
    return TestClient(app)


@pytest.fixture
def queued(monkeypatch):
    """Captures updates handed to Celery"""
    task = MagicMock()
    monkeypatch.setattr(main, "process_telegram_update", task)
    return task


class TestSmokeAPI:
    """Basic endpoint checks"""

    def test_health_endpoint(self, client):
        """Health check responds"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "store_" in response.text


class TestTelegramWebhook:
    def test_update_is_queued_once(self, client, queued, telegram_update):
        first = client.post("/webhook/telegram", json=telegram_update)
        second = client.post("/webhook/telegram", json=telegram_update)

        assert first.json() == {"ok": True}
        assert second.json() == {"ok": True}
        queued.delay.assert_called_once_with(telegram_update)

    def test_old_message_is_dropped(self, client, queued, telegram_update):
        telegram_update["message"]["date"] = main.APP_START_TIME - 10

        response = client.post("/webhook/telegram", json=telegram_update)

        assert response.status_code == 200
        queued.delay.assert_not_called()

    def test_secret_token(self, client, queued, telegram_update, monkeypatch):
        monkeypatch.setattr(settings, "TELEGRAM_WEBHOOK_SECRET", "s3cret")

        denied = client.post("/webhook/telegram", json=telegram_update)
        allowed = client.post(
            "/webhook/telegram",
            json=telegram_update,
            headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
        )

        assert denied.status_code == 403
        assert allowed.status_code == 200
        queued.delay.assert_called_once()


class TestPaymentWebhooks:
    def test_forbidden_without_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "QRIS_WEBHOOK_SECRET", "gw-secret")

        response = client.post("/webhook/qris", json={"order_id": "ORD-1", "status": "paid"})

        assert response.status_code == 403

    def test_invalid_json(self, client):
        response = client.post(
            "/webhook/qris", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}

    def test_missing_fields(self, client):
        response = client.post("/webhook/qris", json={"foo": "bar"})

        assert response.status_code == 400

    def test_unknown_reference(self, client):
        response = client.post("/webhook/qris", json={"order_id": "ORD-NONE", "status": "paid"})

        assert response.status_code == 404

    def test_paid_order(self, client, container, make_product, notifier, monkeypatch):
        monkeypatch.setattr(settings, "QRIS_WEBHOOK_SECRET", "gw-secret")
        product = make_product()
        checkout = asyncio.run(
            container.orders.checkout_qris(Buyer(user_id=42, chat_id=42), product.id, 1)
        )

        response = client.post(
            "/webhook/qris",
            json={"order_id": checkout.order.order_ref, "status": "completed"},
            headers={"X-Webhook-Secret": "gw-secret"},
        )
        replay = client.post(
            "/webhook/qris",
            json={"order_id": checkout.order.order_ref, "status": "completed"},
            headers={"X-Webhook-Secret": "gw-secret"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "confirmed"
        assert replay.json()["outcome"] == "duplicate"
        assert len(notifier.deliveries) == 1

    def test_legacy_webhook(self, client):
        response = client.post("/webhook/pakasir", json={"status": "completed"})

        assert response.status_code == 400
