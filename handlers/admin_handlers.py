"""Admin back-office commands (bot side)."""

from __future__ import annotations

import shlex
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.config import settings
from core.telemetry import logger
from database.repos import OrderRepository, ProductRepository
from services.container import get_container
from services.orders.exceptions import OrderServiceError
from services.orders.rendering import fmt_idr
from services.session_state import ADMIN_FLOW, SessionStateManager
from services.stock import StockFileError, StockService, download_stock_document
from services.vouchers import VoucherError, VoucherService

DENIED = {"text": "❌ Akses ditolak.", "keyboard": None}

ADMIN_HELP = (
    "🔧 ADMIN PANEL\n\n"
    "/admin stock - stok semua produk\n"
    "/admin stats - statistik order\n"
    "/addcategory <nama> - kategori baru\n"
    "/addproduct <nama>|<harga>|[id kategori] - produk baru\n"
    "/addstock <id produk> - tambah stok (teks atau file .txt)\n"
    "/withdraw <id produk> - tarik & hapus stok belum terjual\n"
    "/order <invoice> - detail order\n"
    "/resend <invoice> - kirim ulang akun\n"
    "/voucher add KODE percentage|fixed NILAI [MIN] [MAX] [HARI]\n"
    "/voucher list\n"
    "/voucher off KODE\n"
    "/cleanup - expire order pending yang lewat batas"
)


def is_admin(user_id: Optional[int]) -> bool:
    return bool(user_id) and user_id in settings.admin_ids_list


async def handle_admin_command(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    sub = (args or "").strip().lower()
    if sub == "stock":
        return await handle_stock_overview(user_id)
    if sub == "stats":
        return await handle_stats(user_id)
    return {"text": ADMIN_HELP, "keyboard": None}


async def handle_stock_overview(user_id: int) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    lines = ["📦 STOK PRODUK", ""]
    overview = StockService.overview()
    if not overview:
        lines.append("Belum ada produk.")
    for item in overview:
        flag = "⚠️ " if item.stock <= settings.LOW_STOCK_THRESHOLD else ""
        lines.append(f"{flag}[{item.product_id}] {item.name} - {fmt_idr(item.price)} | Stok: {item.stock}")
    return {"text": "\n".join(lines), "keyboard": None}


async def handle_stats(user_id: int) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    stats = OrderRepository.stats_sync()
    text = (
        "📊 STATISTIK ORDER\n\n"
        f"⏳ Pending: {stats.get('pending', 0)}\n"
        f"✅ Paid: {stats.get('paid', 0)}\n"
        f"⌛ Expired: {stats.get('expired', 0)}\n"
        f"❌ Cancelled: {stats.get('cancelled', 0)}\n\n"
        f"💰 Pendapatan: {fmt_idr(stats.get('revenue', 0))}"
    )
    return {"text": text, "keyboard": None}


async def handle_add_category(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    name = (args or "").strip()
    if not name:
        return {"text": "Format: /addcategory <nama>", "keyboard": None}
    category = ProductRepository.create_sync(name=name[:128], is_category=True)
    return {"text": f"✅ Kategori dibuat: [{category.id}] {category.name}", "keyboard": None}


async def handle_add_product(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    parts = [p.strip() for p in (args or "").split("|")]
    if len(parts) < 2 or not parts[0]:
        return {"text": "Format: /addproduct <nama>|<harga>|[id kategori]", "keyboard": None}
    try:
        price = int("".join(ch for ch in parts[1] if ch.isdigit()))
        parent_id = int(parts[2]) if len(parts) > 2 and parts[2] else None
    except ValueError:
        return {"text": "❌ Harga atau id kategori tidak valid.", "keyboard": None}
    if price <= 0:
        return {"text": "❌ Harga harus lebih dari 0.", "keyboard": None}
    if parent_id is not None:
        parent = ProductRepository.get_by_id_sync(parent_id)
        if not parent or not parent.is_category:
            return {"text": "❌ Kategori tidak ditemukan.", "keyboard": None}
    product = ProductRepository.create_sync(name=parts[0][:128], price=price, parent_id=parent_id)
    return {
        "text": f"✅ Produk dibuat: [{product.id}] {product.name} - {fmt_idr(product.price)}\n\nTambah stok: /addstock {product.id}",
        "keyboard": None,
    }


def _import_stock(product_id: int, text: str) -> Dict[str, Any]:
    try:
        added = StockService.add_from_text(product_id, text)
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}
    if not added:
        return {
            "text": "❌ Format tidak valid. Gunakan format: email|password|pin|info",
            "keyboard": None,
        }
    stock = StockService.get_stock(product_id)
    return {"text": f"✅ Berhasil menambahkan {added} akun. Stok sekarang: {stock}", "keyboard": None}


async def handle_addstock_command(user_id: int, args: str) -> Dict[str, Any]:
    """
    /addstock <product_id> with credentials on the following lines, or
    alone to wait for a text message or .txt document
    """
    if not is_admin(user_id):
        return DENIED
    head, _, body = (args or "").partition("\n")
    try:
        product_id = int(head.strip())
    except ValueError:
        return {"text": "Format: /addstock <id produk>", "keyboard": None}

    product = ProductRepository.get_by_id_sync(product_id)
    if not product or product.is_category:
        return {"text": "❌ Produk tidak ditemukan.", "keyboard": None}

    if body.strip():
        return _import_stock(product_id, body)

    SessionStateManager.set_state(user_id, ADMIN_FLOW, "awaiting_stock", {"product_id": product_id})
    return {
        "text": (
            f"✅ Produk: {product.name}\n\n"
            "Kirim credentials (teks atau file .txt) dengan format:\n"
            "email|password|pin|info_tambahan\n\n"
            "Contoh:\n"
            "user@email.com|pass123|1234|Link: https://...\n"
            "user2@email.com|pass456|-|-\n\n"
            "(Gunakan - untuk field kosong, /batal untuk membatalkan)"
        ),
        "keyboard": None,
    }


async def handle_admin_text(user_id: int, state: Dict[str, Any], text: str) -> Optional[Dict[str, Any]]:
    if not is_admin(user_id):
        return None
    if state.get("step") != "awaiting_stock":
        SessionStateManager.clear_state(user_id, ADMIN_FLOW)
        return None
    response = _import_stock(state["data"]["product_id"], text)
    if response["text"].startswith("✅"):
        SessionStateManager.clear_state(user_id, ADMIN_FLOW)
    return response


async def handle_admin_document(
    user_id: int, state: Dict[str, Any], document: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    if not is_admin(user_id) or state.get("step") != "awaiting_stock":
        return None
    try:
        text = await download_stock_document(settings.BOT_TOKEN, document)
    except StockFileError as e:
        return {"text": f"❌ {e}", "keyboard": None}
    response = _import_stock(state["data"]["product_id"], text)
    if response["text"].startswith("✅"):
        SessionStateManager.clear_state(user_id, ADMIN_FLOW)
    return response


async def handle_withdraw(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    try:
        product_id = int((args or "").strip())
        export = StockService.withdraw(product_id)
    except ValueError:
        return {"text": "Format: /withdraw <id produk>", "keyboard": None}
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}
    return {
        "text": "📥 Stok ditarik. File terlampir.",
        "keyboard": None,
        "document": {"file_name": f"stok_{product_id}.txt", "content": export},
    }


def _order_detail(order) -> str:
    def fmt(dt: Optional[datetime]) -> str:
        return dt.strftime("%d/%m/%Y %H:%M") if dt else "-"

    return (
        f"🧾 ORDER {order.order_ref}\n\n"
        f"Status: {order.payment_status}\n"
        f"Metode: {order.payment_method}\n"
        f"Buyer: {order.telegram_user_id} (@{order.telegram_username or '-'})\n"
        f"Produk: {order.product_name} x{order.quantity}\n"
        f"Subtotal: {fmt_idr(order.subtotal)}\n"
        f"Diskon: {fmt_idr(order.discount_amount or 0)} {order.voucher_code or ''}\n"
        f"Total: {fmt_idr(order.total_price)}\n"
        f"Dibayar: {fmt_idr(order.amount_to_pay) if order.amount_to_pay else '-'}\n"
        f"Dibuat: {fmt(order.created_at)} UTC\n"
        f"Lunas: {fmt(order.paid_at)} UTC\n"
        f"Terkirim: {fmt(order.fulfilled_at)} UTC\n"
        f"Alasan batal: {order.cancel_reason or '-'}\n"
        f"Catatan: {order.notes or '-'}"
    )


async def handle_order_lookup(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    ref = (args or "").strip()
    if not ref:
        recent = get_container().orders.list_recent(10)
        lines = ["🧾 ORDER TERBARU", ""] + [
            f"{o.order_ref} | {o.payment_status} | {o.product_name} x{o.quantity} | {fmt_idr(o.total_price)}"
            for o in recent
        ]
        return {"text": "\n".join(lines) if recent else "Belum ada order.", "keyboard": None}
    order = get_container().orders.get_order_by_ref(ref)
    if not order:
        return {"text": "❌ Pesanan tidak ditemukan.", "keyboard": None}
    keyboard = None
    if order.fulfilled_at:
        keyboard = {"inline_keyboard": [[{"text": "📤 Kirim Ulang", "callback_data": f"admin:resend:{order.id}"}]]}
    return {"text": _order_detail(order), "keyboard": keyboard}


async def handle_resend(user_id: int, args: str = "", order_id: Optional[int] = None) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    orders = get_container().orders
    if order_id is None:
        order = orders.get_order_by_ref(args)
        if not order:
            return {"text": "❌ Pesanan tidak ditemukan.", "keyboard": None}
        order_id = order.id
    try:
        delivered = await orders.resend_credentials(order_id)
    except OrderServiceError as e:
        return {"text": e.user_message, "keyboard": None}
    return {
        "text": "✅ Akun dikirim ulang." if delivered else "⚠️ Gagal mengirim ke pembeli.",
        "keyboard": None,
    }


async def handle_voucher_command(user_id: int, args: str) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    try:
        parts = shlex.split(args or "")
    except ValueError:
        parts = (args or "").split()
    action = parts[0].lower() if parts else "list"

    if action == "list":
        vouchers = VoucherService.list_all()
        if not vouchers:
            return {"text": "🎟️ Belum ada voucher.\n\nFormat: /voucher add KODE TYPE NILAI [MIN] [MAX]", "keyboard": None}
        lines = ["🎟️ DAFTAR VOUCHER", ""]
        for idx, v in enumerate(vouchers, start=1):
            discount = f"{v.discount_value}%" if v.discount_type == "percentage" else fmt_idr(v.discount_value)
            usage = f"{v.used_count}/{v.max_uses}" if v.max_uses else f"{v.used_count}/∞"
            status = "✅" if v.is_active else "❌"
            lines.append(f"{idx}. {status} {v.code} - {discount} | min {fmt_idr(v.min_purchase)} | {usage}")
        return {"text": "\n".join(lines), "keyboard": None}

    if action in ("add", "create") and len(parts) >= 4:
        try:
            value = int(parts[3])
            min_purchase = int(parts[4]) if len(parts) > 4 else 0
            max_uses = int(parts[5]) if len(parts) > 5 else None
            days = int(parts[6]) if len(parts) > 6 else None
        except ValueError:
            return {"text": "❌ Nilai harus berupa angka.", "keyboard": None}
        valid_until = datetime.utcnow() + timedelta(days=days) if days else None
        try:
            voucher = VoucherService.create(
                parts[1], parts[2].lower(), value, min_purchase, max_uses, valid_until
            )
        except VoucherError as e:
            return {"text": f"❌ {e}", "keyboard": None}
        discount = f"{voucher.discount_value}%" if voucher.discount_type == "percentage" else fmt_idr(voucher.discount_value)
        return {
            "text": f"✅ Voucher dibuat!\n\n🎟️ Kode: {voucher.code}\n💰 Diskon: {discount}\n📦 Min Order: {fmt_idr(voucher.min_purchase)}",
            "keyboard": None,
        }

    if action in ("off", "delete") and len(parts) >= 2:
        if VoucherService.deactivate(parts[1]):
            return {"text": f"✅ Voucher {parts[1].upper()} dinonaktifkan.", "keyboard": None}
        return {"text": "❌ Voucher tidak ditemukan atau sudah nonaktif.", "keyboard": None}

    return {
        "text": (
            "🎟️ Perintah voucher:\n"
            "/voucher list\n"
            "/voucher add KODE percentage|fixed NILAI [MIN] [MAX] [HARI]\n"
            "/voucher off KODE"
        ),
        "keyboard": None,
    }


async def handle_cleanup(user_id: int) -> Dict[str, Any]:
    if not is_admin(user_id):
        return DENIED
    expired = await get_container().orders.cleanup_expired_orders()
    logger.info("Manual cleanup", extra={"admin_id": user_id, "count": len(expired)})
    if not expired:
        return {"text": "✅ Tidak ada order pending yang kedaluwarsa.", "keyboard": None}
    refs = "\n".join(o.order_ref for o in expired)
    return {"text": f"🧹 {len(expired)} order di-expire:\n{refs}", "keyboard": None}
