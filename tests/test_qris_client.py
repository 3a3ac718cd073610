"""
QRIS gateway client against a mocked transport
"""

import json

import httpx
import pytest

from services.gateway import QrisClient, normalize_status, parse_notification_message
from services.orders.exceptions import PaymentGatewayError


@pytest.fixture
def mock_http(monkeypatch):
    """Routes every httpx client through a MockTransport handler"""
    calls = []
    state = {"handler": None}

    def transport():
        def handle(request):
            calls.append(request)
            return state["handler"](request)

        return httpx.MockTransport(handle)

    real_async, real_sync = httpx.AsyncClient, httpx.Client
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kw: real_async(transport=transport(), **kw))
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_sync(transport=transport(), **kw))

    def install(handler):
        state["handler"] = handler
        return calls

    return install


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("completed", "paid"),
        ("SETTLEMENT", "paid"),
        ("expired", "expired"),
        ("canceled", "cancelled"),
        ("waiting", "pending"),
        (None, "pending"),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_parse_notification_message():
    assert parse_notification_message("Pembayaran Rp 50.127 dari JOHN DOE berhasil") == (
        50_127,
        "JOHN DOE",
    )
    assert parse_notification_message("Transfer masuk") is None
    assert parse_notification_message("") is None


class TestCreateCharge:
    @pytest.mark.asyncio
    async def test_success(self, mock_http):
        calls = mock_http(
            lambda request: httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "transaction_id": "TX123",
                        "amount_total": 25_127,
                        "qris_content": "000201010212",
                        "expires_at": "2024-01-01T10:15:00Z",
                    },
                },
            )
        )
        client = QrisClient(api_key="key", base_url="https://gw.test/api/")

        charge = await client.create_charge("ORD-1", 25_000, "telegram_42")

        assert charge.charge_id == "TX123"
        assert charge.amount == 25_000
        assert charge.amount_to_charge == 25_127
        assert charge.expires_at.hour == 10
        request = calls[0]
        assert str(request.url) == "https://gw.test/api/create-transaction"
        assert request.headers["Authorization"] == "Bearer key"
        assert json.loads(request.content) == {
            "amount": 25_000,
            "order_id": "ORD-1",
            "customer_id": "telegram_42",
        }

    @pytest.mark.asyncio
    async def test_http_error(self, mock_http):
        mock_http(lambda request: httpx.Response(500, json={"error": "down"}))

        with pytest.raises(PaymentGatewayError):
            await QrisClient(api_key="key").create_charge("ORD-1", 25_000)

    @pytest.mark.asyncio
    async def test_missing_fields(self, mock_http):
        mock_http(lambda request: httpx.Response(200, json={"data": {"transaction_id": "TX1"}}))

        with pytest.raises(PaymentGatewayError):
            await QrisClient(api_key="key").create_charge("ORD-1", 25_000)

    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        with pytest.raises(PaymentGatewayError):
            await QrisClient(api_key="").create_charge("ORD-1", 25_000)


class TestChargeStatus:
    def test_sync_status(self, mock_http):
        calls = mock_http(
            lambda request: httpx.Response(
                200, json={"data": {"transaction_id": "TX9", "status": "completed", "amount_total": 10_050}}
            )
        )

        status = QrisClient(api_key="key", base_url="https://gw.test").get_charge_status_sync("TX9")

        assert status.status == "paid"
        assert status.amount_total == 10_050
        assert calls[0].url.path == "/check-status/TX9"

    def test_sync_status_error_is_not_retried(self, mock_http):
        calls = mock_http(lambda request: httpx.Response(404))

        with pytest.raises(PaymentGatewayError):
            QrisClient(api_key="key").get_charge_status_sync("TX9")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_status(self, mock_http):
        mock_http(lambda request: httpx.Response(200, json={"status": "expired"}))

        status = await QrisClient(api_key="key").get_charge_status("TX9")

        assert status.status == "expired"
        assert status.charge_id == "TX9"
