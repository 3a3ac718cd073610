"""QRIS gateway client (httpx) with retry and circuit breaker on status polls."""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError

from core.config import settings
from core.telemetry import logger
from services.orders.exceptions import PaymentGatewayError

MAX_RETRIES = 3
_JITTER = random.SystemRandom()

PAID_STATUSES = {"completed", "paid", "success", "settlement"}
EXPIRED_STATUSES = {"expired"}
CANCELLED_STATUSES = {"cancelled", "canceled"}

NOTIFICATION_PATTERN = re.compile(r"Pembayaran Rp ([\d.,]+) dari (.+) berhasil", re.I)


def normalize_status(raw: Optional[str]) -> str:
    """Maps provider vocabulary onto pending | paid | expired | cancelled"""
    value = (raw or "").strip().lower()
    if value in PAID_STATUSES:
        return "paid"
    if value in EXPIRED_STATUSES:
        return "expired"
    if value in CANCELLED_STATUSES:
        return "cancelled"
    return "pending"


def parse_notification_message(message: str) -> Optional[Tuple[int, str]]:
    """
    Extracts (amount, sender) from a relayed bank notification

    "Pembayaran Rp 50.127 dari JOHN DOE berhasil" -> (50127, "JOHN DOE")
    """
    if not message:
        return None
    match = NOTIFICATION_PATTERN.search(message)
    if not match:
        return None
    digits = match.group(1).replace(".", "").replace(",", "")
    if not digits.isdigit():
        return None
    return int(digits), match.group(2).strip()


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class Charge:
    charge_id: str
    amount: int
    amount_to_charge: int
    qr_payload: str
    qr_image_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ChargeStatus:
    charge_id: str
    status: str
    paid_at: Optional[datetime] = None
    amount_total: Optional[int] = None


class QrisClient:
    """Client for the QRIS gateway REST API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.QRIS_API_KEY
        self.base_url = (base_url or settings.QRIS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.QRIS_TIMEOUT
        self.breaker = CircuitBreaker(
            fail_max=settings.CIRCUIT_BREAKER_FAIL_MAX,
            reset_timeout=settings.CIRCUIT_BREAKER_TIMEOUT,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _to_charge(data: Dict[str, Any], amount: int) -> Charge:
        payload = data.get("data") if isinstance(data.get("data"), dict) else data
        charge_id = payload.get("transaction_id")
        qr_payload = payload.get("qris_content")
        if not charge_id or not qr_payload:
            raise PaymentGatewayError("Gateway response missing transaction data")
        return Charge(
            charge_id=str(charge_id),
            amount=int(amount),
            amount_to_charge=int(payload.get("amount_total") or amount),
            qr_payload=qr_payload,
            qr_image_url=payload.get("qris_image_url"),
            expires_at=_parse_datetime(payload.get("expires_at")),
        )

    @staticmethod
    def _to_status(charge_id: str, data: Dict[str, Any]) -> ChargeStatus:
        payload = data.get("data") if isinstance(data.get("data"), dict) else data
        amount_total = payload.get("amount_total")
        return ChargeStatus(
            charge_id=str(payload.get("transaction_id") or charge_id),
            status=normalize_status(payload.get("status")),
            paid_at=_parse_datetime(payload.get("paid_at")),
            amount_total=int(amount_total) if amount_total is not None else None,
        )

    async def create_charge(
        self, order_ref: str, amount: int, customer_ref: Optional[str] = None
    ) -> Charge:
        """
        Creates a QRIS charge

        Args:
            order_ref: Our reference (ORD-... or TOPUP-...)
            amount: Nominal amount in rupiah
            customer_ref: Optional customer id sent to the provider

        Returns:
            Charge; ``amount_to_charge`` carries the provider's uniquifier

        Raises:
            PaymentGatewayError: on any transport, HTTP or payload failure
        """
        if not self.api_key:
            raise PaymentGatewayError("QRIS_API_KEY not configured")
        body: Dict[str, Any] = {"amount": int(amount), "order_id": order_ref}
        if customer_ref:
            body["customer_id"] = customer_ref

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/create-transaction",
                    json=body,
                    headers=self._headers(),
                )
                response.raise_for_status()
                charge = self._to_charge(response.json(), amount)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "QRIS charge creation failed",
                extra={"order_ref": order_ref, "amount": amount, "error": str(exc)},
            )
            raise PaymentGatewayError(str(exc)) from exc

        logger.info(
            "QRIS charge created",
            extra={
                "order_ref": order_ref,
                "charge_id": charge.charge_id,
                "amount": amount,
                "amount_to_charge": charge.amount_to_charge,
            },
        )
        return charge

    async def get_charge_status(self, charge_id: str) -> ChargeStatus:
        """Async status lookup"""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/check-status/{charge_id}",
                    headers=self._headers(),
                )
                response.raise_for_status()
                return self._to_status(charge_id, response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "QRIS status check failed",
                extra={"charge_id": charge_id, "error": str(exc)},
            )
            raise PaymentGatewayError(str(exc)) from exc

    def _perform_status_request(self, charge_id: str) -> ChargeStatus:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.get(
                f"{self.base_url}/check-status/{charge_id}",
                headers=self._headers(),
            )
            response.raise_for_status()
            return self._to_status(charge_id, response.json())

    def get_charge_status_sync(self, charge_id: str) -> ChargeStatus:
        """
        Status lookup for Celery workers

        Retries connection and read timeouts with exponential backoff; the
        circuit breaker stops hammering a gateway that keeps failing.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return self.breaker.call(self._perform_status_request, charge_id)
            except (httpx.ConnectError, httpx.ReadTimeout) as exc:
                last_error = exc
                logger.warning(
                    "QRIS status poll failure",
                    extra={"attempt": attempt, "charge_id": charge_id, "error": str(exc)},
                )
                if attempt < MAX_RETRIES:
                    time.sleep((2 ** (attempt - 1)) + _JITTER.uniform(0.1, 0.5))
            except CircuitBreakerError as exc:
                last_error = exc
                logger.error("QRIS circuit breaker open", extra={"error": str(exc)})
                break
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                break
        raise PaymentGatewayError(str(last_error)) from last_error


__all__ = [
    "Charge",
    "ChargeStatus",
    "QrisClient",
    "normalize_status",
    "parse_notification_message",
]
