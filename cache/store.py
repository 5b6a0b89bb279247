"""
cache/store.py -- Redis-backed cache-aside layer for RBAC entities.

The cache is an optimization, never a source of truth. Every backend failure
(connection refused, timeout, corrupt entry, or no backend at all) is logged
and reported to the caller as a miss, so reads always fall through to the
database.

Two layers:
  CacheStore   thin wrapper over a redis.Redis client (or None = nil-store
               mode). get/set-with-expiry/delete/keys/delete_pattern.
  EntityCache  per-entity-type view on a CacheStore: typed get/set by id or by
               an alternate key, paginated-list caching, and invalidation.

Key layout (one family per entity type):
  pkg:<entity>:get:<id>            single entity by primary key
  pkg:<entity>:<index>:<value>     alternate key (email, name, user, role...)
  pkg:<entity>:list:<params>       one page of a list query

TTL = base + random jitter so entries written together do not expire together.
List pages use a shorter base TTL than single entities because any write to
the entity type invalidates the whole list family.

Usage:
    store = CacheStore.from_url("redis://localhost:6379/0")
    roles = EntityCache(store, "role", Role)
    roles.set(role)
    roles.get(role.id)          # Role or None
    roles.invalidate(role.id, name=role.name)
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import asdict
from typing import Generic, TypeVar

import redis
from redis import Redis, RedisError

logger = logging.getLogger("gatekeeper.cache")

T = TypeVar("T")

_DEFAULT_TTL = 15 * 60  # 15 minutes
_DEFAULT_LIST_TTL = 60  # 1 minute
_DEFAULT_JITTER = 60  # up to +59 seconds


def jittered_ttl(base: int, jitter: int = _DEFAULT_JITTER) -> int:
    """Return base plus a uniform random offset in [0, jitter)."""
    return base + random.randrange(max(jitter, 1))


class CacheStore:
    """Failure-tolerant key/value operations over an optional Redis client."""

    def __init__(self, client: Redis | None = None) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> CacheStore:
        """Connect and ping. Falls back to nil-store mode if Redis is unreachable."""
        if not url:
            logger.info("No REDIS_URL configured -- running without a cache backend")
            return cls(None)
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
        except RedisError as exc:
            logger.warning("Redis not available (%s): %s -- running without a cache backend", url, exc)
            return cls(None)
        logger.info("Redis connected: %s", url)
        return cls(client)

    @property
    def available(self) -> bool:
        return self.client is not None

    def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            logger.warning("Cache ping failed: %s", exc)
            return False

    def get(self, key: str) -> str | None:
        if self.client is None:
            return None
        try:
            return self.client.get(key)
        except RedisError as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if self.client is None:
            return
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    def delete(self, *keys: str) -> None:
        if self.client is None or not keys:
            return
        try:
            self.client.delete(*keys)
        except RedisError as exc:
            logger.warning("Cache delete failed for %s: %s", ", ".join(keys), exc)

    def keys(self, pattern: str) -> list[str]:
        if self.client is None:
            return []
        try:
            return list(self.client.scan_iter(match=pattern))
        except RedisError as exc:
            logger.warning("Cache key scan failed for %s: %s", pattern, exc)
            return []

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching pattern. Returns the number of keys found."""
        found = self.keys(pattern)
        if found:
            self.delete(*found)
        return len(found)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


class EntityCache(Generic[T]):
    """Typed cache-aside helper for one entity type (a dataclass)."""

    def __init__(
        self,
        store: CacheStore,
        entity: str,
        cls: type[T],
        ttl: int = _DEFAULT_TTL,
        list_ttl: int = _DEFAULT_LIST_TTL,
        jitter: int = _DEFAULT_JITTER,
    ) -> None:
        self._store = store
        self._cls = cls
        self._prefix = f"pkg:{entity}"
        self._ttl = ttl
        self._list_ttl = list_ttl
        self._jitter = jitter

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def key(self, index: str, value: object) -> str:
        return f"{self._prefix}:{index}:{value}"

    def list_key(self, params: dict) -> str:
        # Parameters are sorted so {"page": 1, "per_page": 10} and its
        # reordering hit the same entry.
        encoded = "&".join(f"{k}={params[k]}" for k in sorted(params))
        return self.key("list", encoded)

    # ------------------------------------------------------------------
    # Single entities
    # ------------------------------------------------------------------

    def get(self, entity_id: int) -> T | None:
        return self.get_by("get", entity_id)

    def set(self, entity: T) -> None:
        self.set_by("get", entity.id, entity)

    def get_by(self, index: str, value: object) -> T | None:
        return self._load_one(self._store.get(self.key(index, value)))

    def set_by(self, index: str, value: object, entity: T) -> None:
        self._store.set(self.key(index, value), json.dumps(asdict(entity)), jittered_ttl(self._ttl, self._jitter))

    # ------------------------------------------------------------------
    # Collections (alternate-key fan-out such as "roles of user 5")
    # ------------------------------------------------------------------

    def get_many_by(self, index: str, value: object) -> list[T] | None:
        return self._load_many(self._store.get(self.key(index, value)))

    def set_many_by(self, index: str, value: object, items: list[T]) -> None:
        payload = json.dumps([asdict(i) for i in items])
        self._store.set(self.key(index, value), payload, jittered_ttl(self._ttl, self._jitter))

    # ------------------------------------------------------------------
    # Paginated lists
    # ------------------------------------------------------------------

    def get_list(self, params: dict) -> list[T] | None:
        return self._load_many(self._store.get(self.list_key(params)))

    def set_list(self, params: dict, items: list[T]) -> None:
        payload = json.dumps([asdict(i) for i in items])
        self._store.set(self.list_key(params), payload, jittered_ttl(self._list_ttl, self._jitter))

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, entity_id: int | None, **alternate_keys: object) -> None:
        """Drop the entity entry, its alternate-key entries, and every list page.

        Alternate keys are passed as index=value, e.g. invalidate(7, email="a@x.com").
        None values are ignored so callers can pass optional keys blindly.
        """
        keys = []
        if entity_id is not None:
            keys.append(self.key("get", entity_id))
        keys.extend(self.key(index, value) for index, value in alternate_keys.items() if value is not None)
        self._store.delete(*keys)
        self.invalidate_all_lists()

    def invalidate_related(self, entity: str, index: str, value: object = "*") -> None:
        """Drop entries of another entity family sharing this store.

        Used when a database cascade removes rows the other family has cached.
        value="*" drops the whole index, e.g. every "roles of user N" entry.
        """
        prefix = f"pkg:{entity}"
        if value == "*":
            self._store.delete_pattern(f"{prefix}:{index}:*")
        else:
            self._store.delete(f"{prefix}:{index}:{value}")
        self._store.delete_pattern(f"{prefix}:list:*")

    def invalidate_all_lists(self) -> None:
        # Pages are keyed by arbitrary pagination parameters, so they cannot
        # be targeted individually: the whole family goes.
        self._store.delete_pattern(f"{self._prefix}:list:*")

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _load_one(self, raw: str | None) -> T | None:
        if not raw:
            return None
        try:
            return self._cls(**json.loads(raw))
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding corrupt %s cache entry: %s", self._prefix, exc)
            return None

    def _load_many(self, raw: str | None) -> list[T] | None:
        if raw is None or raw == "":
            return None
        try:
            return [self._cls(**item) for item in json.loads(raw)]
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding corrupt %s cache entry: %s", self._prefix, exc)
            return None
