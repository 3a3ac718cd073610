"""Short-lived Redis locks that keep background polls from overlapping."""

from __future__ import annotations

from core.redis_client import redis_client

DEFAULT_LOCK_TTL_SECONDS = 300


def _build_key(kind: str, ref: object) -> str:
    return f"store:{kind}:lock:{ref}"


def acquire_lock(
    kind: str, ref: object, *, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
) -> bool:
    """Tries to take an ephemeral lock.

    Returns ``True`` when acquired, ``False`` if someone else holds it. The
    database conditional update stays the source of truth; this only keeps two
    workers from polling the gateway for the same payment side by side.
    """

    return bool(redis_client.set(_build_key(kind, ref), "1", nx=True, ex=ttl_seconds))


__all__ = ["acquire_lock", "DEFAULT_LOCK_TTL_SECONDS"]
