"""
Periodic reclamation of abandoned QRIS orders and top-ups

Runs from Celery beat. Each row is flipped with a ``status = pending`` guard
in the UPDATE itself, so a payment confirmed mid-sweep is never expired.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core.telemetry import logger
from services.balance.topup_service import TopupService

from .fulfillment import FulfillmentService
from .order_service import OrderService


@dataclass
class SweepReport:
    orders: int = 0
    topups: int = 0


class ExpirySweeper:
    def __init__(
        self,
        orders: OrderService,
        topups: TopupService,
        fulfillment: Optional[FulfillmentService] = None,
    ) -> None:
        self.orders = orders
        self.topups = topups
        self.fulfillment = fulfillment or orders.fulfillment

    async def sweep_orders(self, now: Optional[datetime] = None) -> int:
        expired = await self.orders.cleanup_expired_orders(now=now)
        return len(expired)

    async def sweep_topups(self, now: Optional[datetime] = None) -> int:
        expired = await self.topups.cleanup_expired_topups(now=now)
        return len(expired)

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """One pass over orders then top-ups; a failing half does not stop the other"""
        report = SweepReport()
        try:
            report.orders = await self.sweep_orders(now)
        except Exception as e:
            logger.error("Order sweep failed", extra={"error": str(e)})
        try:
            report.topups = await self.sweep_topups(now)
        except Exception as e:
            logger.error("Topup sweep failed", extra={"error": str(e)})
        if report.orders or report.topups:
            logger.info(
                "Expiry sweep done",
                extra={"orders": report.orders, "topups": report.topups},
            )
        return report

    async def low_stock_sweep(self):
        return await self.fulfillment.low_stock_report()
