"""
Delivery side of a paid order

Renders the bundle, sends it to the buyer, posts to the testimony, notes and
log channels and raises low-stock alerts. Nothing here changes order state.
"""

from typing import Dict, List, Optional, Sequence

from core.config import Settings, settings as default_settings
from core.telemetry import logger
from database.repos import CredentialRepository, ProductRepository
from services.notifier import Notifier

from .metrics import ORDERS_FULFILLED_TOTAL
from .rendering import (
    CredentialBundle,
    credentials_file_name,
    render_credentials_file,
    render_low_stock,
    render_notes,
    render_order_log,
    render_success_message,
    render_testimony,
    render_unfulfilled_alert,
)

class FulfillmentService:
    def __init__(self, notifier: Notifier, settings: Optional[Settings] = None) -> None:
        self.notifier = notifier
        self.settings = settings or default_settings

    async def deliver(self, order, credentials: Sequence) -> bool:
        """
        Sends an allocated bundle to the buyer and the side channels

        Args:
            order: Paid order (ORM row)
            credentials: Credential rows bound to the order

        Returns:
            True when the buyer's inline message was delivered
        """
        bundles = [CredentialBundle.from_row(row) for row in credentials]
        chat_id = order.chat_id or order.telegram_user_id

        delivered = await self.notifier.deliver_credentials(
            chat_id,
            render_success_message(order, bundles),
            file_name=credentials_file_name(order),
            file_content=render_credentials_file(order, bundles),
        )
        if not delivered:
            logger.error(
                "Credential delivery to buyer failed",
                extra={"order_ref": order.order_ref, "chat_id": chat_id},
            )
        else:
            ORDERS_FULFILLED_TOTAL.inc()

        await self.notifier.post_channel(
            self.settings.TESTIMONY_CHANNEL_ID,
            render_testimony(order),
            parse_mode="Markdown",
        )
        notes = render_notes(order)
        if notes:
            await self.notifier.post_channel(
                self.settings.NOTES_CHANNEL_ID, notes, parse_mode="Markdown"
            )
        await self.notifier.post_channel(
            self.settings.LOG_CHANNEL_ID, render_order_log(order, bundles)
        )
        await self.check_low_stock(order.product_id, order.product_name)
        return delivered

    async def resend(self, order, credentials: Sequence) -> bool:
        bundles = [CredentialBundle.from_row(row) for row in credentials]
        return await self.notifier.deliver_credentials(
            order.chat_id or order.telegram_user_id,
            render_success_message(order, bundles),
            file_name=credentials_file_name(order),
            file_content=render_credentials_file(order, bundles),
        )

    def _threshold(self, product) -> int:
        if product is not None and product.low_stock_threshold is not None:
            return int(product.low_stock_threshold)
        return int(self.settings.LOW_STOCK_THRESHOLD)

    async def check_low_stock(
        self, product_id: int, product_name: Optional[str] = None
    ) -> Optional[int]:
        """Alerts admins when the remaining pool is at or under the threshold"""
        product = ProductRepository.get_by_id_sync(product_id)
        stock = CredentialRepository.get_stock_sync(product_id)
        if stock > self._threshold(product):
            return None
        name = product_name or (product.name if product else str(product_id))
        await self.notifier.send_admin_alert(
            render_low_stock(name, stock), parse_mode="Markdown"
        )
        logger.info("Low stock alert", extra={"product_id": product_id, "stock": stock})
        return stock

    async def low_stock_report(self) -> List[Dict[str, int]]:
        """Periodic scan over active products with 0 < stock <= threshold"""
        stock_map = CredentialRepository.get_stock_map_sync()
        flagged = []
        for product in ProductRepository.list_products_sync():
            stock = stock_map.get(product.id, 0)
            if 0 < stock <= self._threshold(product):
                flagged.append({"product_id": product.id, "name": product.name, "stock": stock})
        if flagged:
            lines = "\n".join(f"• {item['name']}: {item['stock']}" for item in flagged)
            await self.notifier.send_admin_alert(f"⚠️ STOK MENIPIS\n\n{lines}")
        return flagged

    async def alert_unfulfilled(self, order, refunded: bool) -> None:
        await self.notifier.send_admin_alert(render_unfulfilled_alert(order, refunded))
