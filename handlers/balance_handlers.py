"""Balance, top-up and transaction history handlers."""

from __future__ import annotations

import re
from datetime import timezone
from typing import Any, Dict, Optional

from core.config import settings
from core.rate_limiter import with_cooldown
from services.container import get_container
from services.orders.exceptions import OrderServiceError
from services.orders.rendering import WIB, fmt_idr
from services.session_state import TOPUP_FLOW, SessionStateManager
from workers.payment_tasks import start_topup_verification

TOPUP_PRESETS = (10_000, 25_000, 50_000, 100_000)

TX_LABELS = {"topup": "⬆️ Topup", "payment": "🛒 Bayar", "refund": "↩️ Refund"}


def parse_amount(text: str) -> Optional[int]:
    """'50.000', 'Rp 50000', '50,000' -> 50000"""
    digits = re.sub(r"\D", "", text or "")
    return int(digits) if digits else None


async def handle_saldo(user_id: int, username: Optional[str] = None) -> Dict[str, Any]:
    ledger = get_container().ledger
    ledger.get_or_create(user_id, username)
    balance = ledger.get_balance(user_id)
    text = (
        "💰 *Saldo Kamu*\n\n"
        f"💳 {fmt_idr(balance)}\n\n"
        "📌 Gunakan /topup <nominal> untuk isi saldo\n"
        "Contoh: /topup 50000"
    )
    keyboard = {
        "inline_keyboard": [
            [{"text": "💳 Topup", "callback_data": "menu:topup"}],
            [{"text": "📋 Riwayat", "callback_data": "menu:history"}],
            [{"text": "🔙 Kembali", "callback_data": "menu:main"}],
        ]
    }
    return {"text": text, "keyboard": keyboard, "parse_mode": "Markdown"}


async def handle_topup_menu(user_id: int) -> Dict[str, Any]:
    SessionStateManager.set_state(user_id, TOPUP_FLOW, "awaiting_amount")
    buttons = [
        [{"text": fmt_idr(amount), "callback_data": f"topup:{amount}"}]
        for amount in TOPUP_PRESETS
    ]
    buttons.append([{"text": "🔙 Kembali", "callback_data": "menu:main"}])
    text = (
        "💳 TOPUP SALDO\n\n"
        "Pilih nominal atau ketik nominal lain.\n"
        f"Minimal {fmt_idr(settings.TOPUP_MIN_AMOUNT)}, "
        f"maksimal {fmt_idr(settings.TOPUP_MAX_AMOUNT)}."
    )
    return {"text": text, "keyboard": {"inline_keyboard": buttons}}


async def handle_topup_amount(
    user_id: int, username: Optional[str], chat_id: int, amount: Optional[int]
) -> Optional[Dict[str, Any]]:
    """Creates the QRIS top-up; the QR photo is sent by the service"""
    if amount is None:
        return {
            "text": f"❌ Nominal tidak valid. Minimal topup {fmt_idr(settings.TOPUP_MIN_AMOUNT)}",
            "keyboard": None,
        }
    if not with_cooldown(user_id, "topup"):
        return None
    try:
        topup = await get_container().topups.create_topup(
            user_id, amount, username=username, chat_id=chat_id
        )
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}

    SessionStateManager.clear_state(user_id, TOPUP_FLOW)
    start_topup_verification.delay(topup.id)
    if not topup.qr_message_id:
        return {
            "text": f"⚠️ QR gagal dikirim untuk {topup.transaction_id}. Silakan coba lagi.",
            "keyboard": None,
        }
    return None


async def handle_topup_command(
    user_id: int, username: Optional[str], chat_id: int, args: str
) -> Optional[Dict[str, Any]]:
    if not (args or "").strip():
        return await handle_topup_menu(user_id)
    return await handle_topup_amount(user_id, username, chat_id, parse_amount(args))


async def handle_topup_text(
    user_id: int, username: Optional[str], chat_id: int, text: str
) -> Optional[Dict[str, Any]]:
    return await handle_topup_amount(user_id, username, chat_id, parse_amount(text))


async def handle_history(user_id: int) -> Dict[str, Any]:
    ledger = get_container().ledger
    balance = ledger.get_balance(user_id)
    transactions = ledger.history(user_id, limit=10)
    lines = ["📋 RIWAYAT TRANSAKSI", "", f"💳 Saldo: {fmt_idr(balance)}", ""]
    if not transactions:
        lines.append("Belum ada transaksi.")
    for tx in transactions:
        when = tx.created_at.replace(tzinfo=timezone.utc).astimezone(WIB)
        sign = "+" if tx.amount > 0 else "-"
        lines.append(
            f"{TX_LABELS.get(tx.type, tx.type)} {sign}{fmt_idr(abs(tx.amount))}\n"
            f"   {tx.description or '-'} | {when.strftime('%d/%m %H:%M')}"
        )
    return {
        "text": "\n".join(lines),
        "keyboard": {"inline_keyboard": [[{"text": "🔙 Kembali", "callback_data": "menu:main"}]]},
    }
