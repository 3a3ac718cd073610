"""
Celery tasks for incoming Telegram updates
"""

import asyncio
import re
from typing import Any, Dict, Optional

from core.config import settings
from core.rate_limiter import check_rate_limit
from core.telemetry import logger
from services.session_state import (
    ADMIN_FLOW,
    CHECKOUT_FLOW,
    TOPUP_FLOW,
    SessionStateManager,
)

from .celery_app import celery_app

COMMAND_RE = re.compile(r"^(/[A-Za-z_]+)(?:@\w+)?(?:\s+(.*))?$", re.DOTALL)

RATE_LIMIT_TEXT = "⏳ Terlalu banyak permintaan. Coba lagi sebentar."


def parse_command(text: str):
    """'/topup@store_bot 50000' -> ('/topup', '50000')"""
    match = COMMAND_RE.match((text or "").strip())
    if not match:
        return None, ""
    return match.group(1).lower(), (match.group(2) or "").strip()


def _ints(data: str, count: int):
    parts = data.split(":")[1 : count + 1]
    return [int(p) for p in parts]


def route_callback(
    user_id: int, username: Optional[str], first_name: Optional[str], chat_id: int, data: str
) -> Optional[Dict[str, Any]]:
    """Maps callback_data to its handler and returns the handler's response"""
    from handlers.admin_handlers import handle_resend
    from handlers.balance_handlers import (
        handle_history,
        handle_saldo,
        handle_topup_amount,
        handle_topup_menu,
    )
    from handlers.store_handlers import (
        handle_buy,
        handle_cancel_order,
        handle_category,
        handle_checkout_cancel,
        handle_help,
        handle_my_orders,
        handle_notes_prompt,
        handle_order_view,
        handle_pay_balance,
        handle_pay_qris,
        handle_product_detail,
        handle_products_menu,
        handle_start,
        handle_voucher_prompt,
    )

    response = None

    if data == "menu:main":
        response = asyncio.run(handle_start(user_id, first_name))
    elif data == "menu:products":
        response = asyncio.run(handle_products_menu(user_id))
    elif data == "menu:saldo":
        response = asyncio.run(handle_saldo(user_id, username))
    elif data == "menu:topup":
        response = asyncio.run(handle_topup_menu(user_id))
    elif data == "menu:orders":
        response = asyncio.run(handle_my_orders(user_id))
    elif data == "menu:history":
        response = asyncio.run(handle_history(user_id))
    elif data == "menu:help":
        response = asyncio.run(handle_help(user_id))
    elif data.startswith("category:"):
        (category_id,) = _ints(data, 1)
        response = asyncio.run(handle_category(user_id, category_id))
    elif data.startswith("product:"):
        (product_id,) = _ints(data, 1)
        response = asyncio.run(handle_product_detail(user_id, product_id))
    elif data.startswith("buy:"):
        (product_id,) = _ints(data, 1)
        response = asyncio.run(handle_buy(user_id, product_id))
    elif data.startswith("qty:"):
        product_id, quantity = _ints(data, 2)
        response = asyncio.run(handle_order_view(user_id, product_id, quantity))
    elif data.startswith("voucher:"):
        product_id, quantity = _ints(data, 2)
        response = asyncio.run(handle_voucher_prompt(user_id, product_id, quantity))
    elif data.startswith("notes:"):
        product_id, quantity = _ints(data, 2)
        response = asyncio.run(handle_notes_prompt(user_id, product_id, quantity))
    elif data.startswith("payqris:"):
        product_id, quantity = _ints(data, 2)
        response = asyncio.run(
            handle_pay_qris(user_id, username, chat_id, product_id, quantity)
        )
    elif data.startswith("paysaldo:"):
        product_id, quantity = _ints(data, 2)
        response = asyncio.run(
            handle_pay_balance(user_id, username, chat_id, product_id, quantity)
        )
    elif data == "checkout_cancel":
        response = asyncio.run(handle_checkout_cancel(user_id))
    elif data.startswith("cancel_order:"):
        (order_id,) = _ints(data, 1)
        response = asyncio.run(handle_cancel_order(user_id, order_id))
    elif data.startswith("topup:"):
        (amount,) = _ints(data, 1)
        response = asyncio.run(handle_topup_amount(user_id, username, chat_id, amount))
    elif data.startswith("admin:resend:"):
        order_id = int(data.split(":")[2])
        response = asyncio.run(handle_resend(user_id, order_id=order_id))
    elif data == "noop":
        response = None
    else:
        logger.info("Unknown callback", extra={"user_id": user_id, "data": data})

    return response


def route_message(
    user_id: int,
    username: Optional[str],
    first_name: Optional[str],
    chat_id: int,
    text: str,
    document: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Commands first, then whichever conversation flow is open"""
    from handlers import admin_handlers as admin
    from handlers.balance_handlers import (
        handle_history,
        handle_saldo,
        handle_topup_command,
        handle_topup_text,
    )
    from handlers.store_handlers import (
        handle_checkout_text,
        handle_help,
        handle_my_orders,
        handle_products_menu,
        handle_start,
    )

    command, args = parse_command(text)

    if command == "/start":
        return asyncio.run(handle_start(user_id, first_name))
    if command == "/help":
        return asyncio.run(handle_help(user_id))
    if command in ("/produk", "/products"):
        return asyncio.run(handle_products_menu(user_id))
    if command == "/saldo":
        return asyncio.run(handle_saldo(user_id, username))
    if command == "/topup":
        return asyncio.run(handle_topup_command(user_id, username, chat_id, args))
    if command == "/riwayat":
        return asyncio.run(handle_history(user_id))
    if command == "/pesanan":
        return asyncio.run(handle_my_orders(user_id))
    if command == "/batal":
        for flow in (ADMIN_FLOW, TOPUP_FLOW, CHECKOUT_FLOW):
            SessionStateManager.clear_state(user_id, flow)
        return {"text": "✅ Dibatalkan.", "keyboard": None}

    if command == "/admin":
        return asyncio.run(admin.handle_admin_command(user_id, args))
    if command == "/stock":
        return asyncio.run(admin.handle_stock_overview(user_id))
    if command == "/addcategory":
        return asyncio.run(admin.handle_add_category(user_id, args))
    if command == "/addproduct":
        return asyncio.run(admin.handle_add_product(user_id, args))
    if command == "/addstock":
        return asyncio.run(admin.handle_addstock_command(user_id, args))
    if command == "/withdraw":
        return asyncio.run(admin.handle_withdraw(user_id, args))
    if command == "/order":
        return asyncio.run(admin.handle_order_lookup(user_id, args))
    if command == "/resend":
        return asyncio.run(admin.handle_resend(user_id, args))
    if command == "/voucher":
        return asyncio.run(admin.handle_voucher_command(user_id, args))
    if command == "/cleanup":
        return asyncio.run(admin.handle_cleanup(user_id))

    flow, state = SessionStateManager.active_flow(user_id)

    if document:
        if flow == ADMIN_FLOW:
            return asyncio.run(admin.handle_admin_document(user_id, state, document))
        return None

    if command or not text:
        return None
    if flow == ADMIN_FLOW:
        return asyncio.run(admin.handle_admin_text(user_id, state, text))
    if flow == TOPUP_FLOW:
        return asyncio.run(handle_topup_text(user_id, username, chat_id, text))
    if flow == CHECKOUT_FLOW:
        return asyncio.run(handle_checkout_text(user_id, state, text))

    return asyncio.run(handle_start(user_id, first_name))


def _send_response(telegram_api, chat_id: int, response: Dict[str, Any]) -> None:
    document = response.get("document")
    if document:
        from services.stock import make_txt_stream

        asyncio.run(
            telegram_api.send_document(
                settings.BOT_TOKEN,
                chat_id,
                make_txt_stream(document["file_name"], document["content"]),
                caption=response.get("text"),
            )
        )
        return
    telegram_api.send_message_sync(
        token=settings.BOT_TOKEN,
        chat_id=chat_id,
        text=response["text"],
        keyboard=response.get("keyboard"),
        parse_mode=response.get("parse_mode"),
    )


@celery_app.task(bind=True, max_retries=3)
def process_telegram_update(self, update: dict):
    """Processes one bot update (message or callback query)"""
    from workers.api_clients import TelegramAPI

    telegram_api = TelegramAPI()

    callback_query = update.get("callback_query")
    if callback_query:
        sender = callback_query.get("from", {})
        user_id = sender.get("id")
        chat_id = callback_query["message"]["chat"]["id"]
        message_id = callback_query["message"]["message_id"]
        data = callback_query.get("data", "")

        if not check_rate_limit(user_id, "callback"):
            telegram_api.answer_callback_query_sync(
                token=settings.BOT_TOKEN,
                callback_query_id=callback_query["id"],
                text=RATE_LIMIT_TEXT,
            )
            return

        # answer before the slow work, Telegram times out after ~5 seconds
        try:
            telegram_api.answer_callback_query_sync(
                token=settings.BOT_TOKEN, callback_query_id=callback_query["id"]
            )
        except Exception as e:
            logger.warning(
                "Failed to answer callback (probably expired)",
                extra={"callback_id": callback_query["id"], "error": str(e)},
            )

        response = route_callback(
            user_id, sender.get("username"), sender.get("first_name"), chat_id, data
        )
        if not response:
            return
        if response.get("document"):
            _send_response(telegram_api, chat_id, response)
            return

        result = telegram_api.edit_message_sync(
            token=settings.BOT_TOKEN,
            chat_id=chat_id,
            message_id=message_id,
            text=response["text"],
            keyboard=response.get("keyboard"),
            parse_mode=response.get("parse_mode"),
        )
        # photo messages (the QR) cannot be edited into text
        if not result.get("ok"):
            _send_response(telegram_api, chat_id, response)
        return

    message = update.get("message", {})
    sender = message.get("from", {})
    user_id = sender.get("id")
    chat_id = message.get("chat", {}).get("id", user_id)
    text = message.get("text") or message.get("caption") or ""

    if not user_id or not chat_id:
        return

    command, _ = parse_command(text)
    if not check_rate_limit(user_id, f"cmd:{command}" if command else "default"):
        telegram_api.send_message_sync(
            token=settings.BOT_TOKEN, chat_id=chat_id, text=RATE_LIMIT_TEXT
        )
        return

    response = route_message(
        user_id,
        sender.get("username"),
        sender.get("first_name"),
        chat_id,
        text,
        document=message.get("document"),
    )
    if response:
        _send_response(telegram_api, chat_id, response)
