#!/usr/bin/env python3
"""
Registers (or removes) the store bot webhook with Telegram.

    python scripts/setup_webhook.py          # set webhook + print info
    python scripts/setup_webhook.py delete   # remove webhook, keep pending updates
"""
import os
import sys

import httpx
from dotenv import load_dotenv

load_dotenv()

API = "https://api.telegram.org/bot{token}/{method}"


def _call(client: httpx.Client, token: str, method: str, payload=None) -> dict:
    response = client.post(API.format(token=token, method=method), json=payload or {})
    return response.json()


def set_webhook(client: httpx.Client, token: str, base_url: str, secret: str) -> bool:
    result = _call(
        client,
        token,
        "setWebhook",
        {
            "url": f"{base_url}/webhook/telegram",
            "secret_token": secret,
            "allowed_updates": ["message", "callback_query"],
            "drop_pending_updates": True,
        },
    )
    if not result.get("ok"):
        print(f"❌ Gagal: {result.get('description')}")
        return False

    print("✅ Webhook Telegram aktif")
    # The gateway callback is configured on the gateway dashboard, not via API
    print(f"💳 Callback QRIS: {base_url}/webhook/qris")
    print(f"💳 Callback lama: {base_url}/webhook/pakasir")
    return True


def show_info(client: httpx.Client, token: str) -> None:
    info = _call(client, token, "getWebhookInfo")
    if not info.get("ok"):
        return
    data = info["result"]
    print("\n📋 Info webhook:")
    print(f"  URL: {data.get('url') or '-'}")
    print(f"  Pending: {data.get('pending_update_count', 0)}")
    print(f"  Error terakhir: {data.get('last_error_message') or '-'}")


def main(argv) -> int:
    token = os.environ.get("BOT_TOKEN")
    if not token:
        print("❌ BOT_TOKEN belum diatur di .env")
        return 1

    with httpx.Client(timeout=30.0) as client:
        if argv[1:2] == ["delete"]:
            result = _call(client, token, "deleteWebhook", {"drop_pending_updates": False})
            print("🗑 Webhook dihapus" if result.get("ok") else f"❌ {result.get('description')}")
            return 0 if result.get("ok") else 1

        base_url = (os.environ.get("WEBHOOK_BASE_URL") or "").rstrip("/")
        secret = os.environ.get("TELEGRAM_WEBHOOK_SECRET")
        if not base_url or not secret:
            print("❌ WEBHOOK_BASE_URL dan TELEGRAM_WEBHOOK_SECRET wajib diatur di .env")
            return 1

        ok = set_webhook(client, token, base_url, secret)
        show_info(client, token)
        return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
