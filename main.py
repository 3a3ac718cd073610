"""
FastAPI webhook receiver for the store bot and the QRIS gateway
"""

import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import settings
from core.redis_client import redis_client
from core.security import secrets_match
from core.telemetry import logger
from services.container import get_container
from services.orders.metrics import WEBHOOKS_TOTAL
from services.payments.reconciler import WebhookPayloadError
from workers.tasks import process_telegram_update

app = FastAPI(title="Credential Store Bot")

# Updates sent before startup are dropped
APP_START_TIME = int(time.time())

UPDATE_DEDUP_TTL_SECONDS = 3600


def _seen_update(update_id) -> bool:
    """True when Telegram already delivered this update_id"""
    if update_id is None:
        return False
    key = f"store:update:{update_id}"
    return not redis_client.set(key, "1", nx=True, ex=UPDATE_DEDUP_TTL_SECONDS)


@app.post("/webhook/telegram")
async def telegram_webhook(request: Request):
    """Receives bot updates and queues them for the workers"""
    if settings.TELEGRAM_WEBHOOK_SECRET:
        secret = request.headers.get("X-Telegram-Bot-Api-Secret-Token")
        if not secrets_match(secret, settings.TELEGRAM_WEBHOOK_SECRET):
            logger.warning(
                "Invalid telegram webhook secret",
                extra={"ip": request.client.host if request.client else None},
            )
            return JSONResponse({"ok": False}, status_code=403)

    try:
        update = await request.json()
        if _seen_update(update.get("update_id")):
            return JSONResponse({"ok": True}, status_code=200)

        message = update.get("message", {})
        if message and message.get("date", 0) < APP_START_TIME:
            return JSONResponse({"ok": True}, status_code=200)

        callback_query = update.get("callback_query", {})
        if callback_query:
            callback_date = callback_query.get("message", {}).get("date", 0)
            # callbacks may point at messages sent shortly before a restart
            if callback_date and callback_date < APP_START_TIME - 3600:
                return JSONResponse({"ok": True}, status_code=200)

        process_telegram_update.delay(update)
        return JSONResponse({"ok": True}, status_code=200)

    except Exception as e:
        # still 200 so Telegram does not redeliver
        logger.error(
            "Error processing telegram webhook",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return JSONResponse({"ok": False}, status_code=200)


def _gateway_authorized(request: Request) -> bool:
    if not settings.QRIS_WEBHOOK_SECRET:
        return True
    return secrets_match(
        request.headers.get("X-Webhook-Secret"), settings.QRIS_WEBHOOK_SECRET
    )


async def _json_body(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


@app.post("/webhook/qris")
async def qris_webhook(request: Request):
    """Payment notifications from the QRIS gateway or the bank relay"""
    if not _gateway_authorized(request):
        WEBHOOKS_TOTAL.labels(outcome="forbidden").inc()
        logger.warning(
            "Invalid payment webhook secret",
            extra={"ip": request.client.host if request.client else None},
        )
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    payload = await _json_body(request)
    if payload is None:
        WEBHOOKS_TOTAL.labels(outcome="invalid").inc()
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    try:
        result = await get_container().reconciler.handle_notification(payload)
    except WebhookPayloadError as e:
        WEBHOOKS_TOTAL.labels(outcome="invalid").inc()
        logger.warning("Rejected payment webhook", extra={"error": str(e)})
        return JSONResponse({"error": str(e)}, status_code=400)

    return JSONResponse(result.body(), status_code=result.http_status)


@app.post("/webhook/pakasir")
async def pakasir_webhook(request: Request):
    """Older gateway format carrying order_id, amount and status"""
    if not _gateway_authorized(request):
        WEBHOOKS_TOTAL.labels(outcome="forbidden").inc()
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    payload = await _json_body(request)
    if payload is None:
        WEBHOOKS_TOTAL.labels(outcome="invalid").inc()
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    try:
        result = await get_container().reconciler.handle_legacy(payload)
    except WebhookPayloadError as e:
        WEBHOOKS_TOTAL.labels(outcome="invalid").inc()
        logger.warning("Rejected legacy webhook", extra={"error": str(e)})
        return JSONResponse({"error": str(e)}, status_code=400)

    return JSONResponse(result.body(), status_code=result.http_status)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup_event():
    logger.info("Application starting...", extra={"env": settings.APP_ENV})
    get_container()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutting down...")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)  # nosec B104
