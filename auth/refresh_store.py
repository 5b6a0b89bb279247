"""
auth/refresh_store.py -- One refresh-token slot per user, kept in Redis.

Key: refresh:<user_id>  ->  the last refresh token issued to that user.

Saving overwrites the slot, so at most one refresh token per user is valid at
any moment. Rotation therefore doubles as reuse detection: once a token has
been exchanged, the slot holds its successor and the old string no longer
matches.

Unlike the entity cache, this store IS the source of truth for refresh
validity. A missing or failing backend is an InternalError, never a silent
miss -- otherwise an outage would look like "token not found" to clients.

Layer rule: no imports from api/ or rbac/.
"""

from __future__ import annotations

import logging

from redis import Redis, RedisError

from core.errors import internal_error, unauthorized

logger = logging.getLogger("gatekeeper.auth")

_KEY_PREFIX = "refresh"


def refresh_key(user_id: int) -> str:
    return f"{_KEY_PREFIX}:{user_id}"


class RefreshTokenStore:
    """Usage:
    store = RefreshTokenStore(cache.client)
    store.save(42, token, 7 * 24 * 3600)
    store.get(42)       # token, or AppError(UNAUTHORIZED)
    store.delete(42)
    """

    def __init__(self, client: Redis | None) -> None:
        self._client = client

    def _require_client(self) -> Redis:
        if self._client is None:
            raise internal_error("Refresh token store is not configured (REDIS_URL is empty)")
        return self._client

    def save(self, user_id: int, token: str, ttl_seconds: int) -> None:
        client = self._require_client()
        try:
            client.set(refresh_key(user_id), token, ex=ttl_seconds)
        except RedisError as exc:
            logger.error("Failed to save refresh token for user %s: %s", user_id, exc)
            raise internal_error(f"Failed to save refresh token: {exc}") from exc

    def get(self, user_id: int) -> str:
        """Return the stored token. Raises Unauthorized if absent or expired."""
        client = self._require_client()
        try:
            stored = client.get(refresh_key(user_id))
        except RedisError as exc:
            logger.error("Failed to read refresh token for user %s: %s", user_id, exc)
            raise internal_error(f"Failed to read refresh token: {exc}") from exc
        if stored is None:
            raise unauthorized("Refresh token not found")
        return stored.decode("utf-8") if isinstance(stored, bytes) else stored

    def delete(self, user_id: int) -> None:
        client = self._require_client()
        try:
            client.delete(refresh_key(user_id))
        except RedisError as exc:
            logger.error("Failed to delete refresh token for user %s: %s", user_id, exc)
            raise internal_error(f"Failed to delete refresh token: {exc}") from exc
