"""Parsing of pipe-delimited credential lists sent by admins (text or .txt)."""

from __future__ import annotations

from io import BytesIO
from typing import Any, Dict, List, Optional

import httpx

from core.security import encrypt_optional
from core.telemetry import logger
from workers.api_clients import TelegramAPI

MAX_TXT_BYTES = 256 * 1024
LINE_FORMAT = "email|password|pin|info_tambahan"


class StockFileError(Exception):
    """Raised when a stock .txt document cannot be processed."""


def _field(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or value == "-":
        return None
    return value


def parse_credential_lines(text: str) -> List[Dict[str, Optional[str]]]:
    """
    Parses ``email|password|pin|extra_info`` lines

    ``-`` or an empty field means null. Lines with fewer than two fields,
    or without an email, are skipped. Values are returned in plain text.
    """
    rows: List[Dict[str, Optional[str]]] = []
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = [p.strip() for p in line.split("|")]
        if len(parts) < 2 or not _field(parts[0]):
            continue
        rows.append(
            {
                "email": parts[0],
                "password": _field(parts[1]),
                "pin": _field(parts[2]) if len(parts) > 2 else None,
                # extra info may itself contain pipes
                "extra_info": _field("|".join(parts[3:])) if len(parts) > 3 else None,
            }
        )
    return rows


def encrypt_rows(rows: List[Dict[str, Optional[str]]]) -> List[Dict[str, Optional[str]]]:
    """Encrypts password and pin for storage"""
    return [
        {
            **row,
            "password": encrypt_optional(row.get("password")),
            "pin": encrypt_optional(row.get("pin")),
        }
        for row in rows
    ]


def make_txt_stream(filename: str, content: str) -> BytesIO:
    stream = BytesIO(content.encode("utf-8"))
    stream.name = filename
    stream.seek(0)
    return stream


def _is_txt_document(document: Dict[str, Any]) -> bool:
    file_name = (document.get("file_name") or "").lower()
    mime_type = (document.get("mime_type") or "").lower()
    return file_name.endswith(".txt") or mime_type == "text/plain"


def _decode_content(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


async def download_stock_document(
    token: str, document: Dict[str, Any], api: Optional[TelegramAPI] = None
) -> str:
    """Downloads a Telegram .txt document and returns its text"""
    if not _is_txt_document(document):
        raise StockFileError("Kirim file .txt (teks biasa).")
    if int(document.get("file_size") or 0) > MAX_TXT_BYTES:
        raise StockFileError("File .txt terlalu besar (maks 256 KB).")
    file_id = document.get("file_id")
    if not file_id:
        raise StockFileError("File tidak valid.")

    api = api or TelegramAPI()
    try:
        info = await api.get_file(token, file_id)
        file_path = info.get("file_path")
        if not file_path:
            raise StockFileError("Telegram tidak mengembalikan path file.")
        content = await api.download_file(token, file_path)
    except httpx.HTTPError as exc:
        logger.warning("Stock file download failed", extra={"file_id": file_id, "error": str(exc)})
        raise StockFileError("Gagal mengambil file dari Telegram.") from exc

    if len(content) > MAX_TXT_BYTES:
        raise StockFileError("File .txt terlalu besar (maks 256 KB).")
    return _decode_content(content)
