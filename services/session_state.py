"""
Per-user conversation state in Redis

Each (user, flow) pair has its own key with a TTL.
"""

import json
from typing import Any, Dict, Optional

from core.redis_client import redis_client
from core.telemetry import logger

CHECKOUT_FLOW = "checkout"
TOPUP_FLOW = "topup"
ADMIN_FLOW = "admin"


class SessionStateManager:
    """Conversation state keyed by user and flow"""

    TTL_SECONDS = 600

    @staticmethod
    def _get_key(user_id: int, flow: str) -> str:
        return f"store:session:{flow}:{user_id}"

    @classmethod
    def set_state(
        cls,
        user_id: int,
        flow: str,
        step: str,
        data: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Stores the current step of a flow

        Args:
            user_id: Telegram user id
            flow: checkout | topup | admin
            step: e.g. "awaiting_voucher", "awaiting_stock"
            data: Flow context (product id, quantity, ...)
            ttl_seconds: Override of TTL_SECONDS

        Returns:
            True if stored
        """
        try:
            value = {"step": step, "data": data or {}}
            redis_client.setex(
                cls._get_key(user_id, flow),
                ttl_seconds or cls.TTL_SECONDS,
                json.dumps(value),
            )
            logger.info(
                "Session state set",
                extra={"user_id": user_id, "flow": flow, "step": step},
            )
            return True
        except Exception as e:
            logger.error(
                "Failed to set session state",
                extra={"user_id": user_id, "flow": flow, "error": str(e)},
            )
            return False

    @classmethod
    def get_state(cls, user_id: int, flow: str) -> Optional[Dict[str, Any]]:
        try:
            value = redis_client.get(cls._get_key(user_id, flow))
            if not value:
                return None
            return json.loads(value)
        except Exception as e:
            logger.error(
                "Failed to get session state",
                extra={"user_id": user_id, "flow": flow, "error": str(e)},
            )
            return None

    @classmethod
    def clear_state(cls, user_id: int, flow: str) -> bool:
        try:
            redis_client.delete(cls._get_key(user_id, flow))
            return True
        except Exception as e:
            logger.error(
                "Failed to clear session state",
                extra={"user_id": user_id, "flow": flow, "error": str(e)},
            )
            return False

    @classmethod
    def update_data(cls, user_id: int, flow: str, key: str, value: Any) -> bool:
        """Sets one data field and refreshes the TTL; False if no state exists"""
        current = cls.get_state(user_id, flow)
        if not current:
            return False
        current["data"][key] = value
        try:
            redis_client.setex(
                cls._get_key(user_id, flow), cls.TTL_SECONDS, json.dumps(current)
            )
            return True
        except Exception as e:
            logger.error(
                "Failed to update session data",
                extra={"user_id": user_id, "flow": flow, "key": key, "error": str(e)},
            )
            return False

    @classmethod
    def active_flow(cls, user_id: int, flows=(ADMIN_FLOW, TOPUP_FLOW, CHECKOUT_FLOW)):
        """First flow with live state, in priority order, as (flow, state)"""
        for flow in flows:
            state = cls.get_state(user_id, flow)
            if state:
                return flow, state
        return None, None
