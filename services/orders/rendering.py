"""Text rendering for delivered bundles, channel posts and admin alerts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from core.security import decrypt_optional

WIB = timezone(timedelta(hours=7), "WIB")
_MDV2_SPECIALS = r"_*[]()~`>#+-=|{}.!\\"


def escape_mdv2(text: str) -> str:
    """Escapes Telegram MarkdownV2 special chars."""
    if not text:
        return ""
    return "".join("\\" + ch if ch in _MDV2_SPECIALS else ch for ch in str(text))


def fmt_idr(amount: int) -> str:
    """50000 -> 'Rp 50.000'"""
    return "Rp " + f"{int(amount or 0):,}".replace(",", ".")


def _local_now(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(WIB).strftime("%d %b %Y %H:%M WIB")


def _present(value: Optional[str]) -> bool:
    return bool(value) and value != "-"


@dataclass
class CredentialBundle:
    """Decrypted credential as shown to the buyer"""

    email: str
    password: Optional[str]
    pin: Optional[str] = None
    extra_info: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "CredentialBundle":
        return cls(
            email=row.email,
            password=decrypt_optional(row.password),
            pin=decrypt_optional(row.pin),
            extra_info=row.extra_info,
        )

    def as_line(self) -> str:
        parts = [self.email, self.password or "-"]
        if _present(self.pin):
            parts.append(self.pin)
        if _present(self.extra_info):
            parts.append(self.extra_info)
        return "|".join(parts)


def render_success_message(order, bundles: Sequence[CredentialBundle]) -> str:
    """MarkdownV2 'payment successful' message with the credential lines"""
    lines = "\n".join(f"┊ {escape_mdv2(b.as_line())}" for b in bundles)
    return (
        "╭━━━━━━━━━━━━━━━\n"
        "┊ *PEMBAYARAN SUKSES*\n"
        "┊━━━━━━━━━━━━━━━\n"
        f"┊ Produk : {escape_mdv2(order.product_name)}\n"
        f"┊ Jumlah : {order.quantity}\n"
        f"┊ Total : {escape_mdv2(fmt_idr(order.total_price))}\n"
        f"┊ Invoice : `{escape_mdv2(order.order_ref)}`\n"
        "┊━━━━━━━━━━━━━━━\n"
        "┊ *DETAIL AKUN*\n"
        f"{lines}\n"
        "╰━━━━━━━━━━━━━━━\n"
        "_Note : Pastikan aplikasi terkait sudah versi terbaru\\._\n"
        "_Terima kasih telah berbelanja\\!_ 🙏"
    )


def render_credentials_file(
    order, bundles: Sequence[CredentialBundle], now: Optional[datetime] = None
) -> str:
    parts: List[str] = [
        "===== DETAIL AKUN =====",
        f"Produk: {order.product_name}",
        f"Jumlah: {order.quantity}",
        f"Total: {fmt_idr(order.total_price)}",
        f"Order ID: {order.order_ref}",
        f"Tanggal: {_local_now(now)}",
        "",
        "===== CREDENTIALS =====",
        "",
    ]
    for idx, bundle in enumerate(bundles, start=1):
        parts.append(f"--- Akun #{idx} ---")
        parts.append(f"Email: {bundle.email}")
        parts.append(f"Password: {bundle.password or '-'}")
        if _present(bundle.pin):
            parts.append(f"PIN: {bundle.pin}")
        if _present(bundle.extra_info):
            parts.append(f"Info: {bundle.extra_info}")
        parts.append("")
    parts.append("===== TERIMA KASIH =====")
    return "\n".join(parts) + "\n"


def credentials_file_name(order) -> str:
    return f"akun_{order.order_ref}.txt"


def _method_label(order) -> str:
    return "Saldo" if order.payment_method == "balance" else "QRIS"


def render_testimony(order, now: Optional[datetime] = None) -> str:
    return (
        "💰 *ORDER BERHASIL*\n\n"
        f"ID: `{order.order_ref}`\n"
        f"User: @{order.telegram_username or 'Anonymous'}\n"
        f"Total: {fmt_idr(order.total_price)}\n"
        "📱 Sumber: Telegram Bot\n"
        f"Metode: {_method_label(order)}\n"
        f"Date: {_local_now(now)}\n\n"
        "📊 *STATISTIK*\n"
        f"Produk: {order.product_name}\n"
        f"Qty: {order.quantity} pcs\n"
        "Status: ✅ Transaksi Sukses"
    )


def render_notes(order) -> Optional[str]:
    if not _present(order.notes):
        return None
    return (
        "📝 *CATATAN PESANAN*\n\n"
        f"ID: `{order.order_ref}`\n"
        f"Produk: {order.product_name}\n"
        f"User: @{order.telegram_username or 'Anonymous'}\n"
        "📱 Sumber: Telegram Bot\n"
        f"Metode: {_method_label(order)}\n\n"
        f"Catatan:\n{order.notes}"
    )


def render_order_log(
    order, bundles: Sequence[CredentialBundle], now: Optional[datetime] = None
) -> str:
    blocks = []
    for idx, bundle in enumerate(bundles, start=1):
        log = f"├ Email: {bundle.email}\n├ Password: {bundle.password or '-'}"
        if _present(bundle.pin):
            log += f"\n├ PIN: {bundle.pin}"
        if _present(bundle.extra_info):
            log += f"\n├ Info: {bundle.extra_info}"
        blocks.append(f"Akun #{idx}:\n{log}")
    return (
        f"📋 ORDER LOG #{order.order_ref}\n\n"
        f"👤 Buyer: @{order.telegram_username or 'Anonymous'}\n"
        f"📦 Produk: {order.product_name}\n"
        f"🔢 Jumlah: {order.quantity}\n"
        f"💰 Total: {fmt_idr(order.total_price)}\n"
        f"💳 Metode: {_method_label(order)}\n"
        f"📅 Waktu: {_local_now(now)}\n\n"
        "🔐 Detail Akun:\n" + "\n\n".join(blocks) + "\n\n━━━━━━━━━━━━━━━━━━━━━"
    )


def render_low_stock(product_name: str, stock: int) -> str:
    return (
        "⚠️ *STOK MENIPIS!*\n\n"
        f"📦 Produk: {product_name}\n"
        f"📊 Stok tersisa: {stock}\n\n"
        "Segera tambah stok!"
    )


def render_unfulfilled_alert(order, refunded: bool) -> str:
    action = (
        f"Saldo {fmt_idr(order.paid_amount)} sudah dikembalikan ke pembeli."
        if refunded
        else "Refund belum dilakukan, cek manual."
    )
    return (
        "🚨 ORDER GAGAL DIPENUHI\n\n"
        f"Order: {order.order_ref}\n"
        f"Buyer: {order.telegram_user_id} (@{order.telegram_username or '-'})\n"
        f"Produk: {order.product_name} x{order.quantity}\n"
        f"Metode: {_method_label(order)}\n"
        "Stok tidak cukup saat alokasi.\n"
        f"{action}"
    )
