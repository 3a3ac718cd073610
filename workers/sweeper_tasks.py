"""
Periodic maintenance tasks (Celery Beat)
"""

import asyncio

from services.container import get_container
from workers.celery_app import celery_app


@celery_app.task
def sweep_expired():
    """Expires pending orders and top-ups past their payment window"""
    report = asyncio.run(get_container().sweeper.run_once())
    return {"orders": report.orders, "topups": report.topups}


@celery_app.task
def low_stock_sweep():
    low = asyncio.run(get_container().sweeper.low_stock_sweep())
    return {"low_stock": len(low or [])}
