"""
Celery tasks that poll the QRIS gateway for payments the webhook missed
"""

import asyncio
from datetime import datetime, timedelta

from core.config import settings
from core.locks import acquire_lock
from core.telemetry import logger
from database.balance_repos import TopupRepository
from database.repos import OrderRepository
from services.container import get_container
from workers.celery_app import celery_app


def _poll_countdowns(expiry_minutes: int):
    """60s, 120s, ... up to the end of the payment window"""
    step = max(settings.PAYMENT_POLL_SECONDS, 1)
    checks = max((expiry_minutes * 60) // step, 1)
    return [step * (i + 1) for i in range(checks)]


@celery_app.task
def start_order_verification(order_id: int):
    """
    Schedules gateway status checks for a pending QRIS order

    Args:
        order_id: Order primary key
    """
    logger.info("Starting order payment verification", extra={"order_id": order_id})
    for countdown in _poll_countdowns(settings.ORDER_EXPIRY_MINUTES):
        verify_order_payment.apply_async(args=[order_id], countdown=countdown)


@celery_app.task
def start_topup_verification(topup_id: int):
    logger.info("Starting topup payment verification", extra={"topup_id": topup_id})
    for countdown in _poll_countdowns(settings.TOPUP_EXPIRY_MINUTES):
        verify_topup_payment.apply_async(args=[topup_id], countdown=countdown)


@celery_app.task
def verify_order_payment(order_id: int):
    """Polls one order; settled orders are skipped by the reconciler"""
    # one poll per order at a time
    if not acquire_lock("poll", f"order:{order_id}", ttl_seconds=max(settings.PAYMENT_POLL_SECONDS - 5, 5)):
        logger.info("Poll already running, skipping", extra={"order_id": order_id})
        return None

    try:
        result = asyncio.run(get_container().reconciler.poll_order(order_id))
    except Exception as e:
        logger.error(
            "Error verifying order payment",
            extra={"order_id": order_id, "error": str(e)},
        )
        return None
    return result.outcome


@celery_app.task
def verify_topup_payment(topup_id: int):
    if not acquire_lock("poll", f"topup:{topup_id}", ttl_seconds=max(settings.PAYMENT_POLL_SECONDS - 5, 5)):
        logger.info("Poll already running, skipping", extra={"topup_id": topup_id})
        return None

    try:
        result = asyncio.run(get_container().reconciler.poll_topup(topup_id))
    except Exception as e:
        logger.error(
            "Error verifying topup payment",
            extra={"topup_id": topup_id, "error": str(e)},
        )
        return None
    return result.outcome


@celery_app.task
def verify_all_pending_payments():
    """
    Safety net run by beat: queues a poll for every pending order and
    top-up still inside its payment window
    """
    now = datetime.utcnow()
    orders = OrderRepository.list_pending_sync(
        newer_than=now - timedelta(minutes=settings.ORDER_EXPIRY_MINUTES)
    )
    topups = TopupRepository.list_pending_sync(
        newer_than=now - timedelta(minutes=settings.TOPUP_EXPIRY_MINUTES)
    )
    for order in orders:
        if order.gateway_transaction_id:
            verify_order_payment.delay(order.id)
    for topup in topups:
        verify_topup_payment.delay(topup.id)

    logger.info(
        "Queued pending payment checks",
        extra={"orders": len(orders), "topups": len(topups)},
    )
    return {"orders": len(orders), "topups": len(topups)}
