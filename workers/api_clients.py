"""
Telegram Bot API client
"""

import json
import time
from io import BytesIO
from typing import Any, Dict, Optional

import httpx

from core.telemetry import logger


class TelegramAPI:
    """Thin Bot API client; every call takes the bot token"""

    BASE_URL = "https://api.telegram.org/bot"
    FILE_URL = "https://api.telegram.org/file/bot"

    def send_message_sync(
        self,
        token: str,
        chat_id: int,
        text: str,
        keyboard: Optional[Dict] = None,
        parse_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send with retry, for Celery code paths without a loop"""
        payload = {"chat_id": chat_id, "text": text}
        if keyboard:
            payload["reply_markup"] = keyboard
        if parse_mode:
            payload["parse_mode"] = parse_mode

        max_retries = 3
        for attempt in range(max_retries):
            try:
                with httpx.Client(timeout=30.0) as client:
                    response = client.post(
                        f"{self.BASE_URL}{token}/sendMessage", json=payload
                    )
                    response.raise_for_status()
                    return response.json()
            except (httpx.ConnectError, httpx.ReadTimeout):
                if attempt < max_retries - 1:
                    time.sleep(2**attempt)  # 1s, 2s, 4s
                    continue
                raise

    def answer_callback_query_sync(
        self, token: str, callback_query_id: str, text: str = "", show_alert: bool = False
    ) -> Dict[str, Any]:
        max_retries = 3
        for attempt in range(max_retries):
            try:
                with httpx.Client(timeout=30.0) as client:
                    response = client.post(
                        f"{self.BASE_URL}{token}/answerCallbackQuery",
                        json={
                            "callback_query_id": callback_query_id,
                            "text": text,
                            "show_alert": show_alert,
                        },
                    )
                    response.raise_for_status()
                    return response.json()
            except (httpx.ConnectError, httpx.ReadTimeout):
                if attempt < max_retries - 1:
                    time.sleep(2**attempt)
                    continue
                raise

    def edit_message_sync(
        self,
        token: str,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Optional[Dict] = None,
        parse_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Edits a message; a 400 (not modified, or a photo message) is not an error"""
        payload = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if keyboard:
            payload["reply_markup"] = keyboard

        max_retries = 3
        for attempt in range(max_retries):
            try:
                with httpx.Client(timeout=30.0) as client:
                    response = client.post(
                        f"{self.BASE_URL}{token}/editMessageText", json=payload
                    )
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 400:
                    logger.warning(
                        "Edit message failed",
                        extra={"message_id": message_id, "error": str(e)},
                    )
                    return {"ok": False, "description": "edit rejected"}
                raise
            except (httpx.ConnectError, httpx.ReadTimeout):
                if attempt < max_retries - 1:
                    time.sleep(2**attempt)
                    continue
                raise

    async def send_message(
        self,
        token: str,
        chat_id: int,
        text: str,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        payload = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{self.BASE_URL}{token}/sendMessage",
                json=payload,
            )
            response.raise_for_status()
            return response.json()

    async def delete_message(self, token: str, chat_id: int, message_id: int) -> bool:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{self.BASE_URL}{token}/deleteMessage",
                json={"chat_id": chat_id, "message_id": message_id},
            )
            response.raise_for_status()
            return response.json()["result"]

    async def _send_media(
        self,
        token: str,
        method: str,
        field: str,
        chat_id: int,
        media,
        default_name: str,
        mime_type: str,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        # BytesIO goes as multipart, str (file_id or URL) as JSON
        async with httpx.AsyncClient(timeout=30.0) as client:
            if isinstance(media, BytesIO):
                data = {"chat_id": str(chat_id)}
                if caption:
                    data["caption"] = caption
                if parse_mode:
                    data["parse_mode"] = parse_mode
                if reply_markup:
                    data["reply_markup"] = json.dumps(reply_markup)
                filename = getattr(media, "name", default_name)
                files = {field: (filename, media, mime_type)}
                response = await client.post(
                    f"{self.BASE_URL}{token}/{method}", data=data, files=files
                )
            else:
                payload = {"chat_id": chat_id, field: media}
                if caption:
                    payload["caption"] = caption
                if parse_mode:
                    payload["parse_mode"] = parse_mode
                if reply_markup:
                    payload["reply_markup"] = reply_markup
                response = await client.post(
                    f"{self.BASE_URL}{token}/{method}", json=payload
                )
            response.raise_for_status()
            return response.json()

    async def send_photo(
        self,
        token: str,
        chat_id: int,
        photo,  # str (file_id / URL) or BytesIO
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        return await self._send_media(
            token,
            "sendPhoto",
            "photo",
            chat_id,
            photo,
            "photo.png",
            "image/png",
            caption,
            parse_mode,
            reply_markup,
        )

    async def send_document(
        self,
        token: str,
        chat_id: int,
        document,  # str (file_id / URL) or BytesIO
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        return await self._send_media(
            token,
            "sendDocument",
            "document",
            chat_id,
            document,
            "document.txt",
            "text/plain",
            caption,
            parse_mode,
            reply_markup,
        )

    async def get_file(self, token: str, file_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(
                f"{self.BASE_URL}{token}/getFile", params={"file_id": file_id}
            )
            response.raise_for_status()
            return response.json()["result"]

    async def download_file(self, token: str, file_path: str) -> bytes:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(f"{self.FILE_URL}{token}/{file_path}")
            response.raise_for_status()
            return response.content
