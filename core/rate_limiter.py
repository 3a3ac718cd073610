"""
Distributed rate limiter on Redis
"""

import json
import time

from core.config import settings
from core.redis_client import redis_client

RATE_LIMITS = json.loads(settings.RATE_LIMITS_JSON)


def check_rate_limit(
    user_id: int,
    action: str = "default",
    limit: int = None,
    window: int = None,
) -> bool:
    """
    Fixed window rate limit per user and action

    Args:
        user_id: Telegram user id
        action: Action type (default, cmd:/start, cb:pay_qris, ...)
        limit: Max requests (override)
        window: Window in seconds (override)

    Returns:
        True when inside the limit, False when exceeded
    """
    config = RATE_LIMITS.get(action, RATE_LIMITS.get("default", {}))
    limit = limit or config.get("limit", 30)
    window = window or config.get("window", 60)

    now = int(time.time())
    key = f"rl:{user_id}:{action}:{now // window}"

    with redis_client.pipeline() as pipe:
        pipe.incr(key, 1)
        pipe.expire(key, window + 5)
        result = pipe.execute()
        current_count = result[0]

    return current_count <= limit


def with_cooldown(user_id: int, action: str, seconds: int = 3) -> bool:
    """
    Double-tap guard for payment buttons

    Returns:
        True if the action may run, False while still cooling down
    """
    key = f"cd:{user_id}:{action}"
    return bool(redis_client.set(key, "1", nx=True, ex=seconds))
