"""
Tests for the Telegram Bot API client
"""

from io import BytesIO
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from workers.api_clients import TelegramAPI


def _async_client(response):
    """httpx.AsyncClient double returning ``response`` for get and post"""
    client = MagicMock()
    client.post = AsyncMock(return_value=response)
    client.get = AsyncMock(return_value=response)
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None
    return client


def _response(payload, status_code=200, content=b""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.content = content
    response.raise_for_status = MagicMock()
    return response


class TestTelegramAPI:
    """TelegramAPI request shapes"""

    @pytest.mark.asyncio
    async def test_send_message(self):
        """Keyboard and parse mode go in the JSON body"""
        api = TelegramAPI()
        client = _async_client(_response({"ok": True, "result": {"message_id": 5}}))

        with patch("httpx.AsyncClient", return_value=client):
            result = await api.send_message(
                "tok", 42, "halo", parse_mode="Markdown", reply_markup={"inline_keyboard": []}
            )

        assert result["result"]["message_id"] == 5
        url = client.post.call_args[0][0]
        body = client.post.call_args[1]["json"]
        assert url.endswith("bottok/sendMessage")
        assert body == {
            "chat_id": 42,
            "text": "halo",
            "parse_mode": "Markdown",
            "reply_markup": {"inline_keyboard": []},
        }

    @pytest.mark.asyncio
    async def test_send_photo_stream_is_multipart(self):
        """A BytesIO upload goes as multipart with the keyboard JSON-encoded"""
        api = TelegramAPI()
        client = _async_client(_response({"ok": True, "result": {"message_id": 6}}))
        photo = BytesIO(b"png")
        photo.name = "ORD-1.png"

        with patch("httpx.AsyncClient", return_value=client):
            await api.send_photo(
                "tok", 42, photo, caption="Scan", reply_markup={"inline_keyboard": [[]]}
            )

        kwargs = client.post.call_args[1]
        assert kwargs["files"]["photo"][0] == "ORD-1.png"
        assert kwargs["data"]["reply_markup"] == '{"inline_keyboard": [[]]}'
        assert kwargs["data"]["chat_id"] == "42"

    @pytest.mark.asyncio
    async def test_get_file_and_download(self):
        api = TelegramAPI()
        client = _async_client(
            _response({"ok": True, "result": {"file_path": "documents/a.txt"}}, content=b"isi")
        )

        with patch("httpx.AsyncClient", return_value=client):
            info = await api.get_file("tok", "F1")
            content = await api.download_file("tok", info["file_path"])

        assert info["file_path"] == "documents/a.txt"
        assert content == b"isi"
        assert client.get.call_args[0][0] == "https://api.telegram.org/file/bottok/documents/a.txt"

    def test_send_message_sync_retries_connect_errors(self):
        """Connection errors are retried with backoff"""
        api = TelegramAPI()
        client = MagicMock()
        client.__enter__.return_value = client
        client.__exit__.return_value = None
        client.post.side_effect = [
            httpx.ConnectError("down"),
            _response({"ok": True, "result": {"message_id": 1}}),
        ]

        with patch("httpx.Client", return_value=client), patch("time.sleep") as sleep:
            result = api.send_message_sync("tok", 42, "halo")

        assert result["ok"] is True
        assert client.post.call_count == 2
        sleep.assert_called_once_with(1)

    def test_edit_message_sync_400_is_not_an_error(self):
        api = TelegramAPI()
        request = httpx.Request("POST", "https://api.telegram.org/bottok/editMessageText")
        error = httpx.HTTPStatusError(
            "400", request=request, response=httpx.Response(400, request=request)
        )
        response = _response({})
        response.raise_for_status.side_effect = error
        client = MagicMock()
        client.__enter__.return_value = client
        client.__exit__.return_value = None
        client.post.return_value = response

        with patch("httpx.Client", return_value=client):
            result = api.edit_message_sync("tok", 42, 7, "teks")

        assert result["ok"] is False
