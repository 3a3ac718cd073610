"""
Service wiring

Collaborators are built once per process and shared by the FastAPI app and
the Celery workers. Tests call ``reset_container`` or build their own.
"""

from dataclasses import dataclass
from typing import Optional

from core.config import settings
from services.balance.ledger import BalanceLedger
from services.balance.topup_service import TopupService
from services.gateway.qris_client import QrisClient
from services.notifier import Notifier
from services.orders.expiry_sweeper import ExpirySweeper
from services.orders.fulfillment import FulfillmentService
from services.orders.order_service import OrderService
from services.payments.reconciler import PaymentReconciler


@dataclass
class Container:
    gateway: QrisClient
    notifier: Notifier
    ledger: BalanceLedger
    fulfillment: FulfillmentService
    orders: OrderService
    topups: TopupService
    reconciler: PaymentReconciler
    sweeper: ExpirySweeper


def build_container(
    gateway: Optional[QrisClient] = None,
    notifier: Optional[Notifier] = None,
    ledger: Optional[BalanceLedger] = None,
) -> Container:
    gateway = gateway or QrisClient()
    notifier = notifier or Notifier()
    ledger = ledger or BalanceLedger()
    fulfillment = FulfillmentService(notifier, settings)
    orders = OrderService(
        gateway=gateway,
        notifier=notifier,
        ledger=ledger,
        fulfillment=fulfillment,
        settings=settings,
    )
    topups = TopupService(gateway=gateway, notifier=notifier, settings=settings)
    return Container(
        gateway=gateway,
        notifier=notifier,
        ledger=ledger,
        fulfillment=fulfillment,
        orders=orders,
        topups=topups,
        reconciler=PaymentReconciler(orders, topups, gateway=gateway, settings=settings),
        sweeper=ExpirySweeper(orders, topups, fulfillment),
    )


_container: Optional[Container] = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container


def reset_container() -> None:
    set_container(None)
