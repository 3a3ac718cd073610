"""Buyer-facing handlers: catalog, order confirmation and checkout."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings
from core.rate_limiter import with_cooldown
from core.telemetry import logger
from database.repos import CredentialRepository, ProductRepository
from services.container import get_container
from services.orders.exceptions import OrderServiceError, PaymentGatewayError
from services.orders.order_service import Buyer
from services.orders.rendering import WIB, fmt_idr
from services.session_state import CHECKOUT_FLOW, SessionStateManager
from workers.payment_tasks import start_order_verification

QTY_STEPS = (1, 10, 100)

STATUS_LABELS = {
    "pending": "⏳ Menunggu",
    "paid": "✅ Lunas",
    "expired": "⌛ Expired",
    "cancelled": "❌ Batal",
}


def main_menu_keyboard() -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": "🛍 List Produk", "callback_data": "menu:products"},
                {"text": "💰 Cek Saldo", "callback_data": "menu:saldo"},
            ],
            [
                {"text": "💳 Topup", "callback_data": "menu:topup"},
                {"text": "📋 Riwayat Order", "callback_data": "menu:orders"},
            ],
            [{"text": "❓ Bantuan", "callback_data": "menu:help"}],
        ]
    }


def _back(callback: str = "menu:main") -> list:
    return [{"text": "🔙 Kembali", "callback_data": callback}]


async def handle_start(user_id: int, first_name: Optional[str] = None) -> Dict[str, Any]:
    get_container().ledger.get_or_create(user_id)
    name = first_name or "kak"
    text = (
        f"👋 Halo {name}, selamat datang di *{settings.BOT_NAME}*!\n\n"
        "Akun digital siap kirim otomatis 24 jam.\n"
        "Bayar pakai QRIS atau saldo.\n\n"
        "Pilih menu di bawah:"
    )
    return {"text": text, "keyboard": main_menu_keyboard(), "parse_mode": "Markdown"}


async def handle_help(user_id: int) -> Dict[str, Any]:
    contact = f"@{settings.ADMIN_USERNAME}" if settings.ADMIN_USERNAME else "admin"
    text = (
        "❓ BANTUAN\n\n"
        "1. Pilih produk di List Produk\n"
        "2. Atur jumlah, voucher dan catatan\n"
        "3. Bayar dengan QRIS atau saldo\n"
        "4. Akun dikirim otomatis setelah pembayaran\n\n"
        "Perintah:\n"
        "/start - menu utama\n"
        "/saldo - cek saldo\n"
        "/topup <nominal> - isi saldo\n"
        "/riwayat - riwayat transaksi\n\n"
        f"Kendala? Hubungi {contact}"
    )
    return {"text": text, "keyboard": {"inline_keyboard": [_back()]}}


async def handle_products_menu(user_id: int) -> Dict[str, Any]:
    stock_map = CredentialRepository.get_stock_map_sync()
    categories = ProductRepository.list_categories_sync()
    loose = [p for p in ProductRepository.list_products_sync() if p.parent_id is None]

    if not categories and not loose:
        return {
            "text": "📦 Belum ada produk tersedia.",
            "keyboard": {"inline_keyboard": [_back()]},
        }

    buttons = [
        [{"text": f"📁 {c.name}", "callback_data": f"category:{c.id}"}] for c in categories
    ]
    for product in loose:
        stock = stock_map.get(product.id, 0)
        buttons.append(
            [
                {
                    "text": f"{product.name} - {fmt_idr(product.price)} ({stock})",
                    "callback_data": f"product:{product.id}",
                }
            ]
        )
    buttons.append(_back())
    return {
        "text": "🛍 *LIST PRODUK*\n\nPilih kategori atau produk:",
        "keyboard": {"inline_keyboard": buttons},
        "parse_mode": "Markdown",
    }


async def handle_category(user_id: int, category_id: int) -> Dict[str, Any]:
    category = ProductRepository.get_by_id_sync(category_id)
    if not category or not category.is_active:
        return {"text": "❌ Kategori tidak ditemukan.", "keyboard": {"inline_keyboard": [_back("menu:products")]}}

    stock_map = CredentialRepository.get_stock_map_sync()
    products = ProductRepository.list_products_sync(parent_id=category_id)
    lines = [f"📁 {category.name}", ""]
    if category.description:
        lines += [category.description, ""]
    buttons = []
    for idx, product in enumerate(products, start=1):
        stock = stock_map.get(product.id, 0)
        lines.append(f"{idx}. {product.name} - {fmt_idr(product.price)} | Stok: {stock}")
        buttons.append(
            [{"text": f"{idx}. {product.name}", "callback_data": f"product:{product.id}"}]
        )
    if not products:
        lines.append("Belum ada produk di kategori ini.")
    buttons.append(
        [
            {"text": "🔄 Refresh", "callback_data": f"category:{category_id}"},
            {"text": "🔙 Kembali", "callback_data": "menu:products"},
        ]
    )
    return {"text": "\n".join(lines), "keyboard": {"inline_keyboard": buttons}}


async def handle_product_detail(user_id: int, product_id: int) -> Dict[str, Any]:
    product = ProductRepository.get_by_id_sync(product_id)
    if not product or not product.is_active or product.is_category:
        return {"text": "❌ Produk tidak ditemukan.", "keyboard": {"inline_keyboard": [_back("menu:products")]}}

    stock = CredentialRepository.get_stock_sync(product_id)
    text = (
        f"📦 {product.name}\n\n"
        f"💰 Harga: {fmt_idr(product.price)}\n"
        f"📊 Stok: {stock}\n"
    )
    if product.description:
        text += f"\n📝 {product.description}\n"

    buttons = []
    if stock > 0:
        buttons.append([{"text": "🛒 Beli Sekarang", "callback_data": f"buy:{product_id}"}])
    else:
        buttons.append([{"text": "❌ Stok Habis", "callback_data": "noop"}])
    back = f"category:{product.parent_id}" if product.parent_id else "menu:products"
    buttons.append(
        [
            {"text": "🔄 Refresh", "callback_data": f"product:{product_id}"},
            {"text": "🔙 Kembali", "callback_data": back},
        ]
    )
    return {"text": text, "keyboard": {"inline_keyboard": buttons}}


def _checkout_data(user_id: int, product_id: int) -> Dict[str, Any]:
    state = SessionStateManager.get_state(user_id, CHECKOUT_FLOW)
    if state and state.get("data", {}).get("product_id") == product_id:
        return state["data"]
    return {"product_id": product_id}


async def handle_buy(user_id: int, product_id: int) -> Dict[str, Any]:
    """Starts a fresh checkout with quantity 1"""
    SessionStateManager.set_state(
        user_id, CHECKOUT_FLOW, "confirming", {"product_id": product_id}
    )
    return await handle_order_view(user_id, product_id, 1)


async def handle_order_view(user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
    """
    Order confirmation screen

    Quantity is clamped to stock by the quote; voucher and notes come from
    the checkout session.
    """
    data = _checkout_data(user_id, product_id)
    try:
        quote = get_container().orders.quote(product_id, quantity, data.get("voucher_code"))
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": {"inline_keyboard": [_back("menu:products")]}}

    SessionStateManager.set_state(
        user_id, CHECKOUT_FLOW, "confirming", {**data, "quantity": quote.quantity}
    )

    now = datetime.now(timezone.utc).astimezone(WIB).strftime("%H:%M:%S")
    lines = [
        "🛒 KONFIRMASI PESANAN",
        "",
        f"▸ Produk: {quote.product_name}",
        f"▸ Harga: {fmt_idr(quote.unit_price)}",
        f"▸ Stok: {quote.available_stock}",
        "",
        f"▸ Jumlah: x{quote.quantity}",
        f"▸ Subtotal: {fmt_idr(quote.subtotal)}",
    ]
    if quote.voucher_code:
        lines.append(f"🎟 Voucher: {quote.voucher_code}")
        lines.append(f"▸ Diskon: -{fmt_idr(quote.discount)}")
    elif quote.voucher_error:
        lines.append(f"❌ Voucher: {quote.voucher_error}")
    lines.append(f"▸ Total Bayar: {fmt_idr(quote.final_price)}")
    notes = data.get("notes")
    if notes and notes != "-":
        lines.append(f"📝 Catatan: {notes}")
    lines += ["", f"⏱ {now} WIB"]

    qty = quote.quantity
    keyboard = {
        "inline_keyboard": [
            [
                {"text": f"+ {step}", "callback_data": f"qty:{product_id}:{qty + step}"}
                for step in QTY_STEPS
            ],
            [
                {"text": f"- {step}", "callback_data": f"qty:{product_id}:{max(1, qty - step)}"}
                for step in QTY_STEPS
            ],
            [
                {"text": "🔄 Refresh", "callback_data": f"qty:{product_id}:{qty}"},
                {"text": "🎟️ Voucher", "callback_data": f"voucher:{product_id}:{qty}"},
                {"text": "📝 Notes", "callback_data": f"notes:{product_id}:{qty}"},
            ],
            [
                {"text": "💳 BAYAR QRIS", "callback_data": f"payqris:{product_id}:{qty}"},
                {"text": "💰 BAYAR SALDO", "callback_data": f"paysaldo:{product_id}:{qty}"},
            ],
            [{"text": "✖ BATAL", "callback_data": "checkout_cancel"}],
        ]
    }
    return {"text": "\n".join(lines), "keyboard": keyboard}


async def handle_voucher_prompt(user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
    data = {**_checkout_data(user_id, product_id), "quantity": quantity}
    SessionStateManager.set_state(user_id, CHECKOUT_FLOW, "awaiting_voucher", data)
    return {"text": "🎟️ Kirim kode voucher kamu:\n\n(Kirim - untuk menghapus voucher)", "keyboard": None}


async def handle_notes_prompt(user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
    data = {**_checkout_data(user_id, product_id), "quantity": quantity}
    SessionStateManager.set_state(user_id, CHECKOUT_FLOW, "awaiting_notes", data)
    return {"text": "📝 Kirim catatan untuk pesanan ini:\n\n(Kirim - untuk menghapus catatan)", "keyboard": None}


async def handle_checkout_text(user_id: int, state: Dict[str, Any], text: str) -> Optional[Dict[str, Any]]:
    """Consumes a typed voucher code or note for the open checkout"""
    step = state.get("step")
    data = dict(state.get("data") or {})
    value = (text or "").strip()
    if step == "awaiting_voucher":
        data["voucher_code"] = None if value == "-" else value.upper()
    elif step == "awaiting_notes":
        data["notes"] = None if value == "-" else value[:500]
    else:
        return None
    SessionStateManager.set_state(user_id, CHECKOUT_FLOW, "confirming", data)
    return await handle_order_view(user_id, data["product_id"], data.get("quantity") or 1)


async def handle_checkout_cancel(user_id: int) -> Dict[str, Any]:
    SessionStateManager.clear_state(user_id, CHECKOUT_FLOW)
    return {"text": "❌ Pesanan dibatalkan.", "keyboard": main_menu_keyboard()}


async def handle_pay_qris(
    user_id: int, username: Optional[str], chat_id: int, product_id: int, quantity: int
) -> Optional[Dict[str, Any]]:
    if not with_cooldown(user_id, f"pay:{product_id}"):
        return None
    data = _checkout_data(user_id, product_id)
    buyer = Buyer(user_id=user_id, username=username, chat_id=chat_id)
    try:
        result = await get_container().orders.checkout_qris(
            buyer, product_id, quantity, data.get("voucher_code"), data.get("notes")
        )
    except PaymentGatewayError as e:
        logger.error("QRIS checkout failed", extra={"user_id": user_id, "error": str(e)})
        return {"text": e.user_message, "keyboard": None}
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}

    SessionStateManager.clear_state(user_id, CHECKOUT_FLOW)
    if result.order.payment_status == "pending":
        start_order_verification.delay(result.order.id)
        if result.qr_message_id is None:
            return {
                "text": (
                    f"⚠️ QR gagal dikirim. Invoice: {result.order.order_ref}\n"
                    "Pesanan akan kedaluwarsa otomatis, silakan coba lagi."
                ),
                "keyboard": None,
            }
        return {"text": f"🧾 Invoice {result.order.order_ref} dibuat. Silakan scan QRIS di bawah.", "keyboard": None}
    return {"text": f"✅ Pesanan {result.order.order_ref} selesai.", "keyboard": main_menu_keyboard()}


async def handle_pay_balance(
    user_id: int, username: Optional[str], chat_id: int, product_id: int, quantity: int
) -> Optional[Dict[str, Any]]:
    if not with_cooldown(user_id, f"pay:{product_id}"):
        return None
    data = _checkout_data(user_id, product_id)
    buyer = Buyer(user_id=user_id, username=username, chat_id=chat_id)
    container = get_container()
    try:
        result = await container.orders.checkout_balance(
            buyer, product_id, quantity, data.get("voucher_code"), data.get("notes")
        )
    except OrderServiceError as e:
        text = e.user_message
        balance = getattr(e, "balance", None)
        if balance is not None and getattr(e, "required", None):
            text += (
                f"\n\n💳 Saldo: {fmt_idr(balance)}\n"
                f"💰 Dibutuhkan: {fmt_idr(e.required)}\n\n"
                "Isi saldo dengan /topup <nominal>"
            )
        return {"text": text, "keyboard": None}

    SessionStateManager.clear_state(user_id, CHECKOUT_FLOW)
    return {
        "text": (
            f"✅ Pembayaran saldo berhasil ({result.order.order_ref}).\n"
            f"💳 Sisa saldo: {fmt_idr(result.new_balance or 0)}"
        ),
        "keyboard": main_menu_keyboard(),
    }


async def handle_cancel_order(user_id: int, order_id: int) -> Dict[str, Any]:
    try:
        order = await get_container().orders.cancel(order_id, buyer_id=user_id)
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}
    return {"text": f"❌ Pesanan {order.order_ref} dibatalkan.", "keyboard": main_menu_keyboard()}


async def handle_my_orders(user_id: int) -> Dict[str, Any]:
    orders = get_container().orders.list_user_orders(user_id, limit=10)
    if not orders:
        return {"text": "📋 Belum ada pesanan.", "keyboard": {"inline_keyboard": [_back()]}}
    lines = ["📋 RIWAYAT ORDER", ""]
    for order in orders:
        created = order.created_at.replace(tzinfo=timezone.utc).astimezone(WIB)
        lines.append(
            f"{STATUS_LABELS.get(order.payment_status, order.payment_status)} "
            f"{order.order_ref}\n"
            f"   {order.product_name} x{order.quantity} - {fmt_idr(order.total_price)}\n"
            f"   {created.strftime('%d/%m/%Y %H:%M')}"
        )
    return {"text": "\n".join(lines), "keyboard": {"inline_keyboard": [_back()]}}
