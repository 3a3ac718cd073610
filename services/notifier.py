"""
Outbound messaging for the store

Every method is best-effort: failures are logged and swallowed so they never
undo the state transition that triggered them.
"""

from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional

from core.config import settings
from core.telemetry import logger
from workers.api_clients import TelegramAPI


def _message_id(response: Optional[Dict[str, Any]]) -> Optional[int]:
    if not response:
        return None
    result = response.get("result") or {}
    message_id = result.get("message_id")
    return int(message_id) if message_id is not None else None


class Notifier:
    """Telegram delivery channel"""

    def __init__(
        self,
        api: Optional[TelegramAPI] = None,
        token: Optional[str] = None,
        admin_ids: Optional[Iterable[int]] = None,
    ) -> None:
        self.api = api or TelegramAPI()
        self.token = token if token is not None else settings.BOT_TOKEN
        self.admin_ids: List[int] = (
            list(admin_ids) if admin_ids is not None else settings.admin_ids_list
        )

    async def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Optional[int]:
        """Returns the sent message id, or None when sending failed"""
        try:
            response = await self.api.send_message(
                self.token, chat_id, text, parse_mode=parse_mode, reply_markup=reply_markup
            )
            return _message_id(response)
        except Exception as e:
            logger.warning(
                "Send message failed", extra={"chat_id": chat_id, "error": str(e)}
            )
            return None

    async def send_photo(
        self,
        chat_id: int,
        photo,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict] = None,
    ) -> Optional[int]:
        try:
            response = await self.api.send_photo(
                self.token,
                chat_id,
                photo,
                caption=caption,
                parse_mode=parse_mode,
                reply_markup=reply_markup,
            )
            return _message_id(response)
        except Exception as e:
            logger.warning(
                "Send photo failed", extra={"chat_id": chat_id, "error": str(e)}
            )
            return None

    async def deliver_credentials(
        self,
        chat_id: int,
        text: str,
        file_name: Optional[str] = None,
        file_content: Optional[str] = None,
        parse_mode: Optional[str] = "MarkdownV2",
    ) -> bool:
        """
        Sends the credential bundle inline and, when given, as a .txt file

        Returns:
            True if the inline message went through
        """
        delivered = await self.send_message(chat_id, text, parse_mode=parse_mode) is not None
        if file_name and file_content:
            stream = BytesIO(file_content.encode("utf-8"))
            stream.name = file_name
            try:
                await self.api.send_document(
                    self.token, chat_id, stream, caption="📄 File akun kamu"
                )
            except Exception as e:
                logger.warning(
                    "Credential file delivery failed",
                    extra={"chat_id": chat_id, "file_name": file_name, "error": str(e)},
                )
        return delivered

    async def delete_message(self, chat_id: Optional[int], message_id: Optional[int]) -> bool:
        if not chat_id or not message_id:
            return False
        try:
            return bool(await self.api.delete_message(self.token, chat_id, message_id))
        except Exception as e:
            logger.info(
                "Delete message failed",
                extra={"chat_id": chat_id, "message_id": message_id, "error": str(e)},
            )
            return False

    async def send_admin_alert(self, text: str, parse_mode: Optional[str] = None) -> int:
        """Sends ``text`` to every admin; returns how many got it"""
        sent = 0
        for admin_id in self.admin_ids:
            if await self.send_message(admin_id, text, parse_mode=parse_mode) is not None:
                sent += 1
        if not self.admin_ids:
            logger.warning("Admin alert without ADMIN_IDS", extra={"text": text[:200]})
        return sent

    async def post_channel(
        self, channel_id: Optional[str], text: str, parse_mode: Optional[str] = None
    ) -> bool:
        if not channel_id:
            return False
        return await self.send_message(channel_id, text, parse_mode=parse_mode) is not None
